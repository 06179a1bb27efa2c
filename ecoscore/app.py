from __future__ import annotations

import logging
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Generator

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from ecoscore import services
from ecoscore.config import Settings
from ecoscore.db import get_session_factory, init_db, session_generator
from ecoscore.importer import import_xlsx
from ecoscore.normalizer import normalize_detailed
from ecoscore.notifier import WebhookNotifier
from ecoscore.poller import PollSupervisor, check_analysis, lookup_by_institution_name
from ecoscore.schemas import (
    AnalysisLookupOut,
    ImportResult,
    InstitutionOut,
    NormalizedDetailedAnalysis,
    PollEventOut,
    SubmissionCreate,
    SubmissionOut,
    SubmitResponse,
)
from ecoscore.store import SORT_KEYS, RecordStore, StoreAccessError

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings.from_env()
    app.state.settings = settings
    init_db(settings.database_url)
    yield
    for supervisor in list(_supervisors.values()):
        supervisor.cancel()
    _supervisors.clear()


app = FastAPI(
    title="EcoScore",
    version="0.1.0",
    description=(
        "Submit institutions for animal welfare and environmental scoring, "
        "then follow the external analysis until it completes. "
        "All endpoints return JSON; the poll stream is Server-Sent Events."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Submissions", "description": "Submit institutions and inspect submissions."},
        {"name": "Analyses", "description": "Poll for and look up completed analyses."},
        {"name": "Institutions", "description": "Browse the institution index."},
        {"name": "Import", "description": "Bulk import institutions from XLSX spreadsheets."},
    ],
)

# One supervisor per client id: a new stream for the same client cancels the old poller.
_supervisors: dict[str, PollSupervisor] = {}


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def get_settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    return settings if settings is not None else Settings.from_env()


def get_store() -> RecordStore:
    return RecordStore(get_session_factory())


def get_notifier(settings: Settings = Depends(get_settings)) -> WebhookNotifier:
    return WebhookNotifier(settings.webhook_url, timeout=settings.webhook_timeout)


@app.exception_handler(StoreAccessError)
async def store_error_handler(request: Request, exc: StoreAccessError):
    return JSONResponse(
        status_code=503,
        content={"detail": "The record store is unavailable right now. Please try again."},
    )


async def _get_submission_or_404(store: RecordStore, submission_id: str):
    submission = await store.get_submission(submission_id)
    if submission is None:
        raise HTTPException(404, "Submission not found")
    return submission


def _sse(payload: str) -> str:
    return f"data: {payload}\n\n"


def _client_supervisor(client_id: str | None, store: RecordStore, settings: Settings) -> PollSupervisor:
    """The supervisor scoped to *client_id*, created on first use."""
    supervisor = _supervisors.get(client_id) if client_id else None
    if supervisor is None:
        supervisor = PollSupervisor(store, interval=settings.poll_interval, timeout=settings.poll_timeout)
        if client_id:
            _supervisors[client_id] = supervisor
        return supervisor
    # Reused across requests; follow the current store and settings.
    supervisor.store = store
    supervisor.interval = settings.poll_interval
    supervisor.timeout = settings.poll_timeout
    return supervisor


# ---------------------------------------------------------------------------
# Routes: Submissions
# ---------------------------------------------------------------------------


@app.post("/api/submissions", response_model=SubmitResponse, status_code=201,
          tags=["Submissions"], summary="Submit an institution for scoring")
async def create_submission(
    body: SubmissionCreate,
    store: RecordStore = Depends(get_store),
    notifier: WebhookNotifier = Depends(get_notifier),
):
    try:
        result = await services.submit_institution(store, body.institution_name, body.email, notifier)
    except services.SubmissionValidationError as exc:
        raise HTTPException(400, str(exc)) from exc
    return services.submit_response(result)


@app.get("/api/submissions", response_model=list[SubmissionOut],
         tags=["Submissions"], summary="Most recent submissions")
async def list_submissions(limit: int = Query(10, ge=1, le=100), store: RecordStore = Depends(get_store)):
    return await store.recent_submissions(limit)


@app.get("/api/submissions/{submission_id}", response_model=SubmissionOut,
         tags=["Submissions"], summary="Get a submission by id")
async def get_submission(submission_id: str, store: RecordStore = Depends(get_store)):
    return await _get_submission_or_404(store, submission_id)


# ---------------------------------------------------------------------------
# Routes: Analyses
# ---------------------------------------------------------------------------


@app.get("/api/submissions/{submission_id}/analysis", response_model=PollEventOut,
         tags=["Analyses"], summary="Check once for a submission's analysis")
async def get_submission_analysis(submission_id: str, store: RecordStore = Depends(get_store)):
    await _get_submission_or_404(store, submission_id)
    event = await check_analysis(store, submission_id)
    return event.to_out()


@app.get("/api/submissions/{submission_id}/analysis/stream",
         tags=["Analyses"], summary="Poll for a submission's analysis (SSE stream)")
async def stream_submission_analysis(
    submission_id: str,
    interval: float | None = Query(None, gt=0, description="Seconds between polls"),
    timeout: float | None = Query(None, gt=0, description="Seconds before giving up"),
    client_id: str | None = Query(None, description="Starting a new stream for the same client cancels the previous one"),
    store: RecordStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    submission = await _get_submission_or_404(store, submission_id)
    supervisor = _client_supervisor(client_id, store, settings)
    poller = supervisor.start(submission.id, interval=interval, timeout=timeout)

    async def stream():
        try:
            async for event in poller.events():
                yield _sse(event.to_out().model_dump_json())
        except StoreAccessError as exc:
            log.warning("Polling failed for submission %s: %s", submission.id, exc)
            yield _sse('{"state": "error", "message": "The record store is unavailable right now."}')
        finally:
            if supervisor.active is poller:
                supervisor.cancel()
                if client_id:
                    _supervisors.pop(client_id, None)

    return StreamingResponse(stream(), media_type="text/event-stream")


@app.get("/api/analyses/lookup", response_model=AnalysisLookupOut,
         tags=["Analyses"], summary="Newest analyses for an institution name")
async def lookup_analysis(name: str = Query(...), store: RecordStore = Depends(get_store)):
    try:
        lookup = await lookup_by_institution_name(store, name)
    except services.SubmissionValidationError as exc:
        raise HTTPException(400, str(exc)) from exc
    return lookup.to_out()


@app.get("/api/analyses/recent", response_model=list[NormalizedDetailedAnalysis],
         tags=["Analyses"], summary="Most recent detailed analyses")
async def recent_analyses(limit: int = Query(10, ge=1, le=100), store: RecordStore = Depends(get_store)):
    return [normalize_detailed(a) for a in await store.recent_detailed_analyses(limit)]


# ---------------------------------------------------------------------------
# Routes: Institutions
# ---------------------------------------------------------------------------


@app.get("/api/institutions", response_model=list[InstitutionOut],
         tags=["Institutions"], summary="List institutions with filtering and sorting")
async def list_institutions(
    type: str | None = Query(None, description="University, Corporation, Government, or 'all'"),
    search: str | None = Query(None, description="Case-insensitive substring of the name"),
    sort_by: str = Query("created_at", description="score, name, or created_at"),
    store: RecordStore = Depends(get_store),
):
    if sort_by not in SORT_KEYS:
        raise HTTPException(400, f"sort_by must be one of {', '.join(SORT_KEYS)}")
    return await store.list_institutions(type=type, search=search, sort_by=sort_by)


# ---------------------------------------------------------------------------
# Routes: Import
# ---------------------------------------------------------------------------


@app.post("/api/import", response_model=ImportResult,
          tags=["Import"], summary="Import institutions from XLSX spreadsheet")
async def import_file(file: UploadFile = File(...), session: Session = Depends(db_session)):
    if not file.filename or not file.filename.endswith(".xlsx"):
        raise HTTPException(400, "Only .xlsx files are supported")
    content = await file.read()
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
            tmp_path = Path(f.name)
            f.write(content)
        try:
            return import_xlsx(tmp_path, session)
        except ValueError as exc:
            raise HTTPException(400, str(exc)) from exc
    finally:
        if tmp_path:
            tmp_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("ecoscore.app:app", host="127.0.0.1", port=8000, reload=True)


if __name__ == "__main__":
    main()
