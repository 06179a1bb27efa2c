"""Pydantic request/response schemas and canonical analysis shapes."""
from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, computed_field

NOT_APPLICABLE = "not-applicable"

VeganScore = float | Literal["not-applicable"] | None


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class InstitutionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    type: str
    location: str | None = None
    website: str | None = None
    score: str | None = None
    numeric_score: float | None = None
    animal_welfare_score: float | None = None
    environmental_score: float | None = None
    students: int | None = None
    employees: int | None = None
    last_updated: datetime | None = None
    created_at: datetime | None = None


class SubmissionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    institution_name: str
    submitter_email: str | None = None
    status: str
    created_at: datetime
    processed_at: datetime | None = None
    notes: str | None = None


class SubmissionCreate(BaseModel):
    institution_name: str
    email: str | None = None


class SubmitResponse(BaseModel):
    submission: SubmissionOut
    is_duplicate: bool
    notified: bool
    existing_institution: InstitutionOut | None = None


# ---------------------------------------------------------------------------
# Canonical analysis structures (produced only by ecoscore.normalizer)
# ---------------------------------------------------------------------------


class ScoreBreakdown(BaseModel):
    environmental_impact: float | None = None
    animal_welfare: float | None = None
    vegan_accommodation: VeganScore = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def show_vegan_score(self) -> bool:
        return isinstance(self.vegan_accommodation, float)


class OverallAssessment(BaseModel):
    summary: str | None = None
    recommendations: list[str] = []


class NormalizedDetailedAnalysis(BaseModel):
    id: str | None = None
    submission_id: str | None = None
    institution_name: str
    institution_type: str
    environmental_policy: str | None = None
    carbon_emissions_details: str | None = None
    carbon_emissions_report_link: str | None = None
    animal_welfare_policy: str | None = None
    vegan_options: str | None = None
    ratings_reviews: str | None = None
    certifications: list[str] = []
    sources: list[str] = []
    scores: ScoreBreakdown = ScoreBreakdown()
    overall_assessment: OverallAssessment = OverallAssessment()
    overall_grade: str | None = None
    overall_percentile_score: float | None = None
    overall_grade_score: float | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class LegacySections(BaseModel):
    animal_welfare: str | None = None
    environmental: str | None = None
    overall: str | None = None


class ContentBlock(BaseModel):
    kind: Literal["heading", "text"]
    content: str


class NormalizedLegacyAnalysis(BaseModel):
    id: str | None = None
    submission_id: str | None = None
    institution_name: str
    analysis_content: str
    sections: LegacySections = LegacySections()
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------


class PollEventOut(BaseModel):
    state: Literal["pending", "found-detailed", "found-legacy", "timeout"]
    tick: int
    elapsed: float
    message: str | None = None
    detailed: NormalizedDetailedAnalysis | None = None
    legacy: NormalizedLegacyAnalysis | None = None


class AnalysisLookupOut(BaseModel):
    detailed: NormalizedDetailedAnalysis | None = None
    legacy: NormalizedLegacyAnalysis | None = None


class ImportResult(BaseModel):
    total_rows: int
    imported: int
    updated: int
    skipped: int
