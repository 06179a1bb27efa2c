from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from ecoscore import services
from ecoscore.config import Settings
from ecoscore.db import get_session_factory, init_db
from ecoscore.normalizer import normalize_detailed
from ecoscore.notifier import WebhookNotifier
from ecoscore.poller import PollState, PollSupervisor, check_analysis as check_once, lookup_by_institution_name
from ecoscore.schemas import InstitutionOut
from ecoscore.store import SORT_KEYS, RecordStore, StoreAccessError

log = logging.getLogger(__name__)

_settings: Settings | None = None
_supervisor: PollSupervisor | None = None

_STORE_ERROR = {"error": "The record store is unavailable right now. Please try again."}


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def ecoscore_lifespan(server: FastMCP) -> AsyncIterator[None]:
    global _settings
    _settings = Settings.from_env()
    init_db(_settings.database_url)
    try:
        yield
    finally:
        if _supervisor is not None:
            _supervisor.cancel()


mcp = FastMCP(
    "EcoScore",
    instructions=(
        "EcoScore rates universities, corporations and government bodies on animal "
        "welfare and environmental impact. Use submit_institution(name) to request an "
        "evaluation, then wait_for_analysis(submission_id) or check_analysis(submission_id) "
        "to retrieve the result. lookup_analysis(name) finds existing analyses."
    ),
    lifespan=ecoscore_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_settings() -> Settings:
    return _settings if _settings is not None else Settings.from_env()


def _store() -> RecordStore:
    return RecordStore(get_session_factory())


def _poll_supervisor() -> PollSupervisor:
    global _supervisor
    if _supervisor is None:
        settings = _get_settings()
        _supervisor = PollSupervisor(
            _store(), interval=settings.poll_interval, timeout=settings.poll_timeout,
        )
    return _supervisor


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("ecoscore://overview")
def ecoscore_overview() -> str:
    """Overview of EcoScore: data model, workflow, and poll states."""
    return json.dumps({
        "system": "EcoScore: animal welfare and environmental scoring of institutions",
        "data_model": {
            "institution": "A scored university, corporation or government body. Names are matched case-insensitively.",
            "submission": "A request to evaluate an institution. Status: pending, processing, completed, or duplicate.",
            "detailed_analysis": "Structured result: sub-scores (0-100), overall grade, percentile score and grade score.",
            "legacy_analysis": "Older free-text result, shown only until a detailed analysis exists.",
        },
        "workflow": [
            "1. submit_institution(name) returns a submission id, or marks it a duplicate.",
            "2. wait_for_analysis(submission_id) polls until a detailed analysis appears or the timeout passes.",
            "3. After a timeout, check_analysis(submission_id) checks once more.",
            "4. For duplicates, lookup_analysis(name) returns the newest existing analysis.",
        ],
        "poll_states": [s.value for s in PollState],
        "vegan_accommodation": "A number, 'not-applicable' (hide vegan scoring), or null (not computed).",
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Submissions
# ---------------------------------------------------------------------------


@mcp.tool()
async def submit_institution(institution_name: str, email: str | None = None) -> dict:
    """Submit an institution for scoring. Duplicates are recorded with status 'duplicate'."""
    settings = _get_settings()
    notifier = WebhookNotifier(settings.webhook_url, timeout=settings.webhook_timeout)
    try:
        result = await services.submit_institution(_store(), institution_name, email, notifier)
    except services.SubmissionValidationError as exc:
        return {"error": str(exc)}
    except StoreAccessError:
        return _STORE_ERROR
    return services.submit_response(result).model_dump(mode="json")


# ---------------------------------------------------------------------------
# Tools: Analyses
# ---------------------------------------------------------------------------


@mcp.tool()
async def check_analysis(submission_id: str) -> dict:
    """Check once whether the analysis for a submission is available."""
    store = _store()
    try:
        if await store.get_submission(submission_id) is None:
            return {"error": f"Submission {submission_id} not found"}
        event = await check_once(store, submission_id)
    except StoreAccessError:
        return _STORE_ERROR
    return event.to_out().model_dump(mode="json")


@mcp.tool()
async def wait_for_analysis(
    submission_id: str, timeout_seconds: float | None = None, interval_seconds: float | None = None,
) -> dict:
    """Poll until a detailed analysis is available or the timeout passes.

    Returns the final poll event, either 'found-detailed' or 'timeout'. A timeout
    carries the latest legacy analysis if one was seen. Starting a new wait
    cancels the previous one.
    """
    store = _store()
    try:
        if await store.get_submission(submission_id) is None:
            return {"error": f"Submission {submission_id} not found"}
        poller = _poll_supervisor().start(
            submission_id, interval=interval_seconds, timeout=timeout_seconds,
        )
        last = None
        legacy = None
        async for event in poller.events():
            last = event
            if event.legacy is not None:
                legacy = event.legacy
    except StoreAccessError:
        return _STORE_ERROR
    if last is None:
        return {"state": "cancelled", "submission_id": submission_id}
    out = last.to_out()
    if out.legacy is None:
        out.legacy = legacy
    return out.model_dump(mode="json")


@mcp.tool()
async def lookup_analysis(institution_name: str) -> dict:
    """Newest detailed and legacy analyses recorded for an institution name."""
    try:
        lookup = await lookup_by_institution_name(_store(), institution_name)
    except services.SubmissionValidationError as exc:
        return {"error": str(exc)}
    except StoreAccessError:
        return _STORE_ERROR
    return lookup.to_out().model_dump(mode="json")


@mcp.tool()
async def recent_analyses(limit: int = 10) -> list[dict] | dict:
    """Most recent detailed analyses, normalized."""
    try:
        rows = await _store().recent_detailed_analyses(max(1, min(limit, 100)))
    except StoreAccessError:
        return _STORE_ERROR
    return [normalize_detailed(r).model_dump(mode="json") for r in rows]


# ---------------------------------------------------------------------------
# Tools: Institutions
# ---------------------------------------------------------------------------


@mcp.tool()
async def list_institutions(
    type: str | None = None, search: str | None = None, sort_by: str = "score", limit: int = 50,
) -> list[dict] | dict:
    """List scored institutions.

    Args:
        type: University, Corporation, Government, or 'all'.
        search: Case-insensitive substring of the institution name.
        sort_by: score (highest first), name, or created_at (newest first).
        limit: Max results (default 50, max 500).
    """
    if sort_by not in SORT_KEYS:
        return {"error": f"sort_by must be one of {', '.join(SORT_KEYS)}"}
    try:
        rows = await _store().list_institutions(type=type, search=search, sort_by=sort_by)
    except StoreAccessError:
        return _STORE_ERROR
    return [InstitutionOut.model_validate(r).model_dump(mode="json") for r in rows[:max(1, min(limit, 500))]]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the EcoScore MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
