"""Shared business logic for the EcoScore API and MCP server."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from ecoscore.models import Institution, Submission
from ecoscore.schemas import InstitutionOut, SubmissionOut, SubmitResponse
from ecoscore.store import RecordStore

log = logging.getLogger(__name__)


class SubmissionValidationError(ValueError):
    """Submitted input is missing or blank."""


class Notifier(Protocol):
    async def notify(self, submission: Submission) -> bool: ...


@dataclass
class DuplicateCheck:
    is_duplicate: bool
    institution: Institution | None = None


@dataclass
class SubmitResult:
    submission: Submission
    is_duplicate: bool
    notified: bool
    institution: Institution | None = None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_institution_name(name: str | None) -> str:
    """Strip and validate an institution name. Raises SubmissionValidationError if blank."""
    name = (name or "").strip()
    if not name:
        raise SubmissionValidationError("Institution name is required")
    return name


def clean_email(email: str | None) -> str | None:
    email = (email or "").strip()
    return email or None


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def resolve_duplicate(store: RecordStore, candidate_name: str) -> DuplicateCheck:
    """Exact case-insensitive match against institution names.

    StoreAccessError propagates; a failed lookup is never reported as "not a duplicate".
    """
    name = validate_institution_name(candidate_name)
    institution = await store.find_institution_by_name(name)
    return DuplicateCheck(is_duplicate=institution is not None, institution=institution)


async def submit_institution(
    store: RecordStore,
    name: str | None,
    email: str | None = None,
    notifier: Notifier | None = None,
) -> SubmitResult:
    """Record a submission, then notify the pipeline (best-effort).

    The insert commits before the notification is attempted. Duplicate and
    insert are two separate store calls, so two concurrent submissions of a
    new name can both come back ``pending``.
    """
    name = validate_institution_name(name)
    email = clean_email(email)
    check = await resolve_duplicate(store, name)
    status = "duplicate" if check.is_duplicate else "pending"
    submission = await store.create_submission(name, email, status)
    log.info("Submission %s created for %r (status=%s)", submission.id, name, status)

    notified = False
    if notifier is not None:
        try:
            notified = await notifier.notify(submission)
        except Exception as exc:
            log.warning(
                "Notification failed for submission %s, submission itself succeeded: %s",
                submission.id, exc,
            )
    return SubmitResult(
        submission=submission, is_duplicate=check.is_duplicate,
        notified=notified, institution=check.institution,
    )


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def submit_response(result: SubmitResult) -> SubmitResponse:
    return SubmitResponse(
        submission=SubmissionOut.model_validate(result.submission),
        is_duplicate=result.is_duplicate,
        notified=result.notified,
        existing_institution=(
            InstitutionOut.model_validate(result.institution) if result.institution else None
        ),
    )
