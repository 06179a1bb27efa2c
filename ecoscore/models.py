from __future__ import annotations

import uuid
from datetime import datetime, UTC

from sqlalchemy import DateTime, Float, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates

SUBMISSION_STATUSES = ("pending", "processing", "completed", "duplicate")
INSTITUTION_TYPES = ("University", "Corporation", "Government")


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


def casefold_name(name: str | None) -> str:
    """Case-insensitive match key for institution names (full Unicode casefold)."""
    return (name or "").strip().casefold()


class Base(DeclarativeBase):
    pass


class Institution(Base):
    __tablename__ = "institutions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(300), nullable=False, index=True)
    name_key: Mapped[str] = mapped_column(String(300), nullable=False, index=True, default="")
    type: Mapped[str] = mapped_column(String(50), default="")  # University | Corporation | Government | other
    location: Mapped[str | None] = mapped_column(String(300), nullable=True)
    website: Mapped[str | None] = mapped_column(String(500), nullable=True)
    # Legacy score fields populated by ingestion
    score: Mapped[str | None] = mapped_column(String(5), nullable=True)
    numeric_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    animal_welfare_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    environmental_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    students: Mapped[int | None] = mapped_column(Integer, nullable=True)
    employees: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    @validates("name")
    def _keep_name_key(self, _key: str, value: str) -> str:
        self.name_key = casefold_name(value)
        return value


class Submission(Base):
    __tablename__ = "institution_submissions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    institution_name: Mapped[str] = mapped_column(String(300), nullable=False)
    submitter_email: Mapped[str | None] = mapped_column(String(300), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")  # pending | processing | completed | duplicate
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class Analysis(Base):
    """Legacy free-text analysis written by the external pipeline."""

    __tablename__ = "institution_analyses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    submission_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    institution_name: Mapped[str] = mapped_column(String(300), nullable=False)
    institution_key: Mapped[str] = mapped_column(String(300), nullable=False, index=True, default="")
    analysis_content: Mapped[str] = mapped_column(Text, default="")
    animal_welfare_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    environmental_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    overall_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    @validates("institution_name")
    def _keep_institution_key(self, _key: str, value: str) -> str:
        self.institution_key = casefold_name(value)
        return value


class DetailedAnalysis(Base):
    """Structured analysis written by the external pipeline.

    The ``*_json`` columns hold the pipeline's payload verbatim; they are only
    ever read through :mod:`ecoscore.normalizer`.
    """

    __tablename__ = "detailed_institution_analyses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    submission_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    institution_name: Mapped[str] = mapped_column(String(300), nullable=False)
    institution_key: Mapped[str] = mapped_column(String(300), nullable=False, index=True, default="")
    institution_type: Mapped[str] = mapped_column(String(50), default="")
    environmental_policy: Mapped[str | None] = mapped_column(Text, nullable=True)
    carbon_emissions_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    carbon_emissions_report_link: Mapped[str | None] = mapped_column(String(500), nullable=True)
    animal_welfare_policy: Mapped[str | None] = mapped_column(Text, nullable=True)
    vegan_options: Mapped[str | None] = mapped_column(Text, nullable=True)
    ratings_reviews: Mapped[str | None] = mapped_column(Text, nullable=True)
    certifications_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # string or list of strings
    sources_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    scores_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    overall_assessment_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    overall_grade: Mapped[str | None] = mapped_column(String(5), nullable=True)
    overall_percentile_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    overall_grade_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    @validates("institution_name")
    def _keep_institution_key(self, _key: str, value: str) -> str:
        self.institution_key = casefold_name(value)
        return value
