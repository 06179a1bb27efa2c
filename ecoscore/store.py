"""Async query surface over the EcoScore record store.

Every public method runs one short-lived SQLAlchemy session in a worker
thread, so callers on the event loop see each query as a single awaitable
I/O boundary.  Database errors are re-raised as :class:`StoreAccessError`;
nothing here converts a failed query into an empty result.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ecoscore.models import Analysis, DetailedAnalysis, Institution, Submission, casefold_name

log = logging.getLogger(__name__)

T = TypeVar("T")

SORT_KEYS = ("score", "name", "created_at")


class StoreAccessError(Exception):
    """A read or write against the record store failed."""


class RecordStore:
    def __init__(self, session_factory: sessionmaker[Session] | Callable[[], Session]):
        self._session_factory = session_factory

    async def _run(self, op: Callable[[Session], T], label: str) -> T:
        return await asyncio.to_thread(self._run_sync, op, label)

    def _run_sync(self, op: Callable[[Session], T], label: str) -> T:
        session = self._session_factory()
        try:
            return op(session)
        except SQLAlchemyError as exc:
            session.rollback()
            log.warning("Record store %s failed: %s", label, exc)
            raise StoreAccessError(f"Record store {label} failed") from exc
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Institutions
    # ------------------------------------------------------------------

    async def list_institutions(
        self, *, type: str | None = None, search: str | None = None, sort_by: str = "created_at",
    ) -> list[Institution]:
        """List institutions, optionally filtered by exact type and name substring."""
        def op(session: Session) -> list[Institution]:
            query = select(Institution)
            if type and type != "all":
                query = query.where(Institution.type == type)
            if search and search.strip():
                query = query.where(Institution.name.icontains(search.strip(), autoescape=True))
            if sort_by == "score":
                query = query.order_by(Institution.numeric_score.desc().nulls_last(), Institution.name)
            elif sort_by == "name":
                query = query.order_by(Institution.name.asc())
            else:
                query = query.order_by(Institution.created_at.desc())
            return list(session.execute(query).scalars().all())
        return await self._run(op, "list_institutions")

    async def find_institution_by_name(self, name: str) -> Institution | None:
        """Exact case-insensitive name match; the most recently created wins."""
        key = casefold_name(name)

        def op(session: Session) -> Institution | None:
            return session.execute(
                select(Institution)
                .where(Institution.name_key == key)
                .order_by(Institution.created_at.desc())
                .limit(1)
            ).scalars().first()
        return await self._run(op, "find_institution_by_name")

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    async def create_submission(self, institution_name: str, submitter_email: str | None, status: str) -> Submission:
        def op(session: Session) -> Submission:
            submission = Submission(
                institution_name=institution_name,
                submitter_email=submitter_email,
                status=status,
            )
            session.add(submission)
            session.commit()
            return submission
        return await self._run(op, "create_submission")

    async def get_submission(self, submission_id: str) -> Submission | None:
        def op(session: Session) -> Submission | None:
            return session.get(Submission, submission_id)
        return await self._run(op, "get_submission")

    async def recent_submissions(self, limit: int = 10) -> list[Submission]:
        def op(session: Session) -> list[Submission]:
            return list(session.execute(
                select(Submission).order_by(Submission.created_at.desc()).limit(limit)
            ).scalars().all())
        return await self._run(op, "recent_submissions")

    # ------------------------------------------------------------------
    # Analyses
    # ------------------------------------------------------------------

    async def get_analysis(self, submission_id: str) -> Analysis | None:
        return await self._latest(Analysis, Analysis.submission_id == submission_id, "get_analysis")

    async def get_detailed_analysis(self, submission_id: str) -> DetailedAnalysis | None:
        return await self._latest(
            DetailedAnalysis, DetailedAnalysis.submission_id == submission_id, "get_detailed_analysis",
        )

    async def find_analysis_by_name(self, name: str) -> Analysis | None:
        return await self._latest(
            Analysis, Analysis.institution_key == casefold_name(name), "find_analysis_by_name",
        )

    async def find_detailed_analysis_by_name(self, name: str) -> DetailedAnalysis | None:
        return await self._latest(
            DetailedAnalysis,
            DetailedAnalysis.institution_key == casefold_name(name),
            "find_detailed_analysis_by_name",
        )

    async def recent_detailed_analyses(self, limit: int = 10) -> list[DetailedAnalysis]:
        def op(session: Session) -> list[DetailedAnalysis]:
            return list(session.execute(
                select(DetailedAnalysis).order_by(DetailedAnalysis.created_at.desc()).limit(limit)
            ).scalars().all())
        return await self._run(op, "recent_detailed_analyses")

    async def _latest(self, model: Any, criterion: Any, label: str) -> Any:
        def op(session: Session) -> Any:
            return session.execute(
                select(model).where(criterion).order_by(model.created_at.desc()).limit(1)
            ).scalars().first()
        return await self._run(op, label)
