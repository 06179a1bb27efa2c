"""Normalization of analysis payloads written by the external pipeline.

The pipeline is loosely typed: ``certifications`` arrives as a string or a
list, the vegan accommodation score may be a number, the token ``"NA"`` or
missing, and legacy analyses are free text with bold section labels.  This
module absorbs all of that and hands everything downstream a single shape
(:class:`~ecoscore.schemas.NormalizedDetailedAnalysis` /
:class:`~ecoscore.schemas.NormalizedLegacyAnalysis`).

Two kinds of missing vegan score stay distinct:

- ``NOT_APPLICABLE``: the pipeline said the score does not apply to this kind
  of institution; consumers hide vegan scoring entirely.
- ``None``: nothing was computed (yet).
"""
from __future__ import annotations

import logging
import math
import re
from collections.abc import Mapping
from typing import Any

from ecoscore.schemas import (
    NOT_APPLICABLE,
    ContentBlock,
    LegacySections,
    NormalizedDetailedAnalysis,
    NormalizedLegacyAnalysis,
    OverallAssessment,
    ScoreBreakdown,
    VeganScore,
)
from ecoscore.utils import json_parse

log = logging.getLogger(__name__)

_NA_TOKEN = "NA"
_MISSING = object()

# ---------------------------------------------------------------------------
# Grades
# ---------------------------------------------------------------------------

GRADE_ORDER = ("A+", "A", "A-", "B+", "B", "B-", "C+", "C", "C-", "D")
GRADE_RANK = {g: i for i, g in enumerate(GRADE_ORDER)}

INSTITUTION_TYPES = {
    "university": "University",
    "corporation": "Corporation",
    "government": "Government",
    "ngo": "NGO",
}


def normalize_grade(raw: Any) -> str | None:
    """Upper-case a letter grade; unknown grades become ``None``."""
    if raw is None:
        return None
    grade = str(raw).strip().upper().replace(" ", "")
    if grade not in GRADE_RANK:
        if grade:
            log.warning("Unrecognizable grade %r", raw)
        return None
    return grade


def grade_rank(grade: str | None) -> int:
    """Sort key for grades: A+ first, unknown last."""
    return GRADE_RANK.get(grade or "", len(GRADE_ORDER))


def normalize_institution_type(raw: Any) -> str:
    text = str(raw or "").strip()
    if not text:
        return "Other"
    return INSTITUTION_TYPES.get(text.lower(), text)


# ---------------------------------------------------------------------------
# Scalars
# ---------------------------------------------------------------------------


def normalize_percentage(raw: Any) -> float | None:
    """Coerce a 0-100 score; out-of-range values are clamped, junk becomes ``None``."""
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw.strip() if isinstance(raw, str) else raw)
    except (TypeError, ValueError):
        log.warning("Unparseable percentage %r", raw)
        return None
    if math.isnan(value):
        return None
    return max(0.0, min(100.0, value))


def normalize_vegan_score(raw: Any) -> VeganScore:
    """Return a percentage, ``NOT_APPLICABLE`` for the ``"NA"`` token, or ``None``."""
    if isinstance(raw, str) and raw.strip().upper() == _NA_TOKEN:
        return NOT_APPLICABLE
    if isinstance(raw, str) and not raw.strip():
        return None
    return normalize_percentage(raw)


def normalize_certifications(raw: Any) -> list[str]:
    """Certifications arrive as one string or a list of strings."""
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = raw.strip()
        return [raw] if raw else []
    if isinstance(raw, (list, tuple)):
        return [str(c).strip() for c in raw if isinstance(c, str) and c.strip()]
    log.warning("Unexpected certifications payload of type %s", type(raw).__name__)
    return []


def normalize_sources(raw: Any) -> list[str]:
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, (list, tuple)):
        return []
    return [s.strip() for s in raw if isinstance(s, str) and s.strip()]


def _text(raw: Any) -> str | None:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def _optional_text(raw: Any) -> str | None:
    """Free text where the pipeline writes ``"NA"`` for "does not apply"."""
    text = _text(raw)
    return None if text is not None and text.upper() == _NA_TOKEN else text


# ---------------------------------------------------------------------------
# Structured fields
# ---------------------------------------------------------------------------


def _percentage_of(scores: Mapping[str, Any], key: str) -> Any:
    entry = scores.get(key)
    if isinstance(entry, Mapping):
        return entry.get("percentage")
    return entry


def normalize_scores(raw: Any) -> ScoreBreakdown:
    if not isinstance(raw, Mapping):
        return ScoreBreakdown()
    return ScoreBreakdown(
        environmental_impact=normalize_percentage(_percentage_of(raw, "environmental_impact")),
        animal_welfare=normalize_percentage(_percentage_of(raw, "animal_welfare")),
        vegan_accommodation=normalize_vegan_score(_percentage_of(raw, "vegan_accommodation")),
    )


def normalize_overall_assessment(raw: Any) -> OverallAssessment:
    if isinstance(raw, str):
        return OverallAssessment(summary=_text(raw))
    if not isinstance(raw, Mapping):
        return OverallAssessment()
    recommendations = raw.get("recommendations")
    if not isinstance(recommendations, (list, tuple)):
        recommendations = []
    return OverallAssessment(
        summary=_text(raw.get("summary")),
        recommendations=[str(r).strip() for r in recommendations if r is not None and str(r).strip()],
    )


# ---------------------------------------------------------------------------
# Legacy free text
# ---------------------------------------------------------------------------

_LEGACY_LABELS = {
    "animal_welfare": "Animal Welfare",
    "environmental": "Environmental Practices",
    "overall": "Overall Assessment",
}


def _section_pattern(label: str) -> re.Pattern[str]:
    # Accepts "**Label:**" and "**Label**:"; the run ends at the next bold marker.
    return re.compile(
        r"\*\*\s*" + re.escape(label) + r"\s*:?\s*\*\*\s*:?(.*?)(?=\*\*|\Z)",
        re.IGNORECASE | re.DOTALL,
    )


_SECTION_PATTERNS = {key: _section_pattern(label) for key, label in _LEGACY_LABELS.items()}
_BOLD_SPLIT = re.compile(r"\*\*(.*?)\*\*", re.DOTALL)


def extract_legacy_sections(content: str | None) -> LegacySections:
    """Best-effort extraction of the three summaries from legacy analysis text."""
    if not content:
        return LegacySections()
    found: dict[str, str | None] = {}
    for key, pattern in _SECTION_PATTERNS.items():
        m = pattern.search(content)
        found[key] = _text(m.group(1)) if m else None
    return LegacySections(**found)


def split_content_blocks(content: str | None) -> list[ContentBlock]:
    """Split legacy text into ordered heading/text blocks on ``**bold**`` runs."""
    if not content:
        return []
    parts = _BOLD_SPLIT.split(content)
    blocks: list[ContentBlock] = []
    # re.split alternates: text, heading, text, heading, ...
    for idx, part in enumerate(parts):
        part = part.strip()
        if part:
            blocks.append(ContentBlock(kind="heading" if idx % 2 else "text", content=part))
    return blocks


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


def _field(raw: Any, name: str, default: Any = None) -> Any:
    if isinstance(raw, Mapping):
        return raw.get(name, default)
    return getattr(raw, name, default)


def _json_field(raw: Any, name: str) -> Any:
    """Read a structured field from a mapping or from its ``*_json`` ORM column."""
    if isinstance(raw, Mapping):
        return raw.get(name)
    text = getattr(raw, f"{name}_json", None)
    if text is None:
        return None
    value = json_parse(text, _MISSING)
    # A bare string column (not valid JSON) is the value itself.
    return text if value is _MISSING else value


def _id(raw: Any, name: str) -> str | None:
    value = _field(raw, name)
    return None if value is None else str(value)


def normalize_detailed(raw: Any) -> NormalizedDetailedAnalysis:
    """Convert a DetailedAnalysis row or raw pipeline mapping to the canonical shape."""
    return NormalizedDetailedAnalysis(
        id=_id(raw, "id"),
        submission_id=_id(raw, "submission_id"),
        institution_name=_text(_field(raw, "institution_name")) or "",
        institution_type=normalize_institution_type(_field(raw, "institution_type")),
        environmental_policy=_text(_field(raw, "environmental_policy")),
        carbon_emissions_details=_text(_field(raw, "carbon_emissions_details")),
        carbon_emissions_report_link=_text(_field(raw, "carbon_emissions_report_link")),
        animal_welfare_policy=_text(_field(raw, "animal_welfare_policy")),
        vegan_options=_optional_text(_field(raw, "vegan_options")),
        ratings_reviews=_text(_field(raw, "ratings_reviews")),
        certifications=normalize_certifications(_json_field(raw, "certifications")),
        sources=normalize_sources(_json_field(raw, "sources")),
        scores=normalize_scores(_json_field(raw, "scores")),
        overall_assessment=normalize_overall_assessment(_json_field(raw, "overall_assessment")),
        overall_grade=normalize_grade(_field(raw, "overall_grade")),
        overall_percentile_score=normalize_percentage(_field(raw, "overall_percentile_score")),
        overall_grade_score=normalize_percentage(_field(raw, "overall_grade_score")),
        created_at=_field(raw, "created_at"),
        updated_at=_field(raw, "updated_at"),
    )


def normalize_legacy(raw: Any) -> NormalizedLegacyAnalysis:
    """Convert a legacy Analysis row or mapping; stored summaries win over extraction."""
    content = _field(raw, "analysis_content") or ""
    extracted = extract_legacy_sections(content)
    sections = LegacySections(
        animal_welfare=_text(_field(raw, "animal_welfare_summary")) or extracted.animal_welfare,
        environmental=_text(_field(raw, "environmental_summary")) or extracted.environmental,
        overall=_text(_field(raw, "overall_summary")) or extracted.overall,
    )
    return NormalizedLegacyAnalysis(
        id=_id(raw, "id"),
        submission_id=_id(raw, "submission_id"),
        institution_name=_text(_field(raw, "institution_name")) or "",
        analysis_content=content,
        sections=sections,
        created_at=_field(raw, "created_at"),
    )
