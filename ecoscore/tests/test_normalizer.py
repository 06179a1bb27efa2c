"""Tests for analysis payload normalization."""
from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from ecoscore.models import Analysis, DetailedAnalysis
from ecoscore.normalizer import (
    extract_legacy_sections,
    grade_rank,
    normalize_certifications,
    normalize_detailed,
    normalize_grade,
    normalize_institution_type,
    normalize_legacy,
    normalize_percentage,
    normalize_vegan_score,
    split_content_blocks,
)
from ecoscore.schemas import NOT_APPLICABLE


class TestNormalizeCertifications:
    def test_list_passes_through(self):
        assert normalize_certifications(["A", "B"]) == ["A", "B"]

    def test_single_string_is_wrapped(self):
        assert normalize_certifications("A") == ["A"]

    def test_missing_is_empty(self):
        assert normalize_certifications(None) == []

    def test_blank_and_non_string_entries_dropped(self):
        assert normalize_certifications(["ISO 14001", "", "  ", 3, None]) == ["ISO 14001"]

    def test_blank_string_is_empty(self):
        assert normalize_certifications("   ") == []

    def test_unexpected_type_is_empty(self):
        assert normalize_certifications({"name": "LEED"}) == []


class TestNormalizeVeganScore:
    def test_na_is_not_applicable(self):
        assert normalize_vegan_score("NA") == NOT_APPLICABLE

    def test_na_is_distinct_from_missing_and_numeric(self):
        na = normalize_vegan_score("NA")
        missing = normalize_vegan_score(None)
        numeric = normalize_vegan_score(42)
        assert na != missing
        assert na != numeric
        assert missing != numeric
        assert missing is None
        assert numeric == 42.0

    def test_na_token_tolerates_case_and_whitespace(self):
        assert normalize_vegan_score(" na ") == NOT_APPLICABLE

    def test_numeric_string(self):
        assert normalize_vegan_score("65") == 65.0

    def test_garbage_is_missing(self):
        assert normalize_vegan_score("lots") is None
        assert normalize_vegan_score("") is None

    def test_bool_is_not_a_score(self):
        assert normalize_vegan_score(True) is None


class TestNormalizePercentage:
    def test_clamped(self):
        assert normalize_percentage(140) == 100.0
        assert normalize_percentage(-3) == 0.0

    def test_zero_is_kept(self):
        assert normalize_percentage(0) == 0.0

    def test_nan_is_missing(self):
        assert normalize_percentage(float("nan")) is None


class TestGrades:
    def test_normalize_grade(self):
        assert normalize_grade(" a+ ") == "A+"
        assert normalize_grade("B -") == "B-"
        assert normalize_grade("Z") is None
        assert normalize_grade(None) is None

    def test_grade_rank_orders_best_first(self):
        grades = ["B", None, "A+", "C-", "A-"]
        assert sorted(grades, key=grade_rank) == ["A+", "A-", "B", "C-", None]


class TestInstitutionType:
    @pytest.mark.parametrize("raw,expected", [
        ("university", "University"),
        ("CORPORATION", "Corporation"),
        ("government", "Government"),
        ("NGO", "NGO"),
        ("Foundation", "Foundation"),
        (None, "Other"),
    ])
    def test_canonical_names(self, raw, expected):
        assert normalize_institution_type(raw) == expected


class TestExtractLegacySections:
    def test_bold_labels(self):
        sections = extract_legacy_sections(
            "**Animal Welfare:** Good. **Environmental Practices:** Weak."
        )
        assert sections.animal_welfare == "Good."
        assert sections.environmental == "Weak."
        assert sections.overall is None

    def test_all_three_multiline(self):
        content = (
            "Intro text.\n\n"
            "**Animal Welfare:**\nCage-free sourcing since 2021.\n\n"
            "**Environmental Practices:**\nSolar on 40% of buildings.\n\n"
            "**Overall Assessment:**\nSolid progress."
        )
        sections = extract_legacy_sections(content)
        assert sections.animal_welfare == "Cage-free sourcing since 2021."
        assert sections.environmental == "Solar on 40% of buildings."
        assert sections.overall == "Solid progress."

    def test_colon_outside_bold(self):
        sections = extract_legacy_sections("**Overall Assessment**: Mixed record.")
        assert sections.overall == "Mixed record."

    def test_no_markers_is_not_an_error(self):
        sections = extract_legacy_sections("Just some prose without headers.")
        assert sections.animal_welfare is None
        assert sections.environmental is None
        assert sections.overall is None

    def test_empty_content(self):
        assert extract_legacy_sections("").overall is None
        assert extract_legacy_sections(None).overall is None

    def test_empty_run_is_absent(self):
        sections = extract_legacy_sections("**Animal Welfare:** **Overall Assessment:** Fine.")
        assert sections.animal_welfare is None
        assert sections.overall == "Fine."


class TestSplitContentBlocks:
    def test_alternating_blocks(self):
        blocks = split_content_blocks("Preface. **Animal Welfare:** Good. **Environmental Practices:** Weak.")
        assert [(b.kind, b.content) for b in blocks] == [
            ("text", "Preface."),
            ("heading", "Animal Welfare:"),
            ("text", "Good."),
            ("heading", "Environmental Practices:"),
            ("text", "Weak."),
        ]

    def test_empty(self):
        assert split_content_blocks("") == []


class TestNormalizeDetailed:
    def _row(self, **overrides) -> DetailedAnalysis:
        fields = dict(
            id="d-1",
            submission_id="s-1",
            institution_name="Example University",
            institution_type="university",
            environmental_policy="Net zero by 2040.",
            vegan_options="NA",
            certifications_json=json.dumps("ISO 14001"),
            sources_json=json.dumps(["https://example.edu/sustainability", 7]),
            scores_json=json.dumps({
                "environmental_impact": {"percentage": 82},
                "animal_welfare": {"percentage": 55},
                "vegan_accommodation": {"percentage": "NA"},
            }),
            overall_assessment_json=json.dumps({
                "summary": "Above average.",
                "recommendations": ["Publish scope 3 emissions", ""],
            }),
            overall_grade="b+",
            overall_percentile_score=71,
            overall_grade_score=64,
            created_at=datetime(2025, 3, 1, tzinfo=UTC),
        )
        fields.update(overrides)
        return DetailedAnalysis(**fields)

    def test_row_is_normalized(self):
        result = normalize_detailed(self._row())
        assert result.institution_type == "University"
        assert result.certifications == ["ISO 14001"]
        assert result.sources == ["https://example.edu/sustainability"]
        assert result.vegan_options is None
        assert result.overall_grade == "B+"
        assert result.overall_assessment.summary == "Above average."
        assert result.overall_assessment.recommendations == ["Publish scope 3 emissions"]

    def test_environmental_score_is_the_computed_value(self):
        result = normalize_detailed(self._row())
        assert result.scores.environmental_impact == 82.0
        assert result.scores.animal_welfare == 55.0

    def test_percentile_and_grade_scores_are_kept_apart(self):
        result = normalize_detailed(self._row())
        assert result.overall_percentile_score == 71.0
        assert result.overall_grade_score == 64.0

    def test_vegan_not_applicable_hides_score(self):
        scores = normalize_detailed(self._row()).scores
        assert scores.vegan_accommodation == NOT_APPLICABLE
        assert scores.show_vegan_score is False

    def test_vegan_numeric_shows_score(self):
        row = self._row(scores_json=json.dumps({"vegan_accommodation": {"percentage": 40}}))
        scores = normalize_detailed(row).scores
        assert scores.vegan_accommodation == 40.0
        assert scores.show_vegan_score is True
        assert scores.environmental_impact is None

    def test_bare_string_certification_column(self):
        # The pipeline sometimes writes plain text rather than JSON.
        result = normalize_detailed(self._row(certifications_json="B Corp"))
        assert result.certifications == ["B Corp"]

    def test_missing_json_columns(self):
        result = normalize_detailed(self._row(
            certifications_json=None, sources_json=None, scores_json=None,
            overall_assessment_json=None,
        ))
        assert result.certifications == []
        assert result.sources == []
        assert result.scores.vegan_accommodation is None
        assert result.overall_assessment.summary is None
        assert result.overall_assessment.recommendations == []

    def test_plain_mapping_payload(self):
        result = normalize_detailed({
            "institution_name": "Acme Corp",
            "institution_type": "corporation",
            "certifications": ["LEED", "B Corp"],
            "scores": {"environmental_impact": {"percentage": "48"}},
            "overall_assessment": "Lagging peers.",
            "overall_grade": "C",
        })
        assert result.institution_type == "Corporation"
        assert result.certifications == ["LEED", "B Corp"]
        assert result.scores.environmental_impact == 48.0
        assert result.overall_assessment.summary == "Lagging peers."
        assert result.id is None


class TestNormalizeLegacy:
    def test_summaries_extracted_when_not_stored(self):
        row = Analysis(
            id="a-1", submission_id="s-1", institution_name="Example University",
            analysis_content="**Animal Welfare:** Good. **Environmental Practices:** Weak.",
        )
        result = normalize_legacy(row)
        assert result.sections.animal_welfare == "Good."
        assert result.sections.environmental == "Weak."
        assert result.sections.overall is None

    def test_stored_summary_wins(self):
        row = Analysis(
            id="a-2", submission_id="s-1", institution_name="Example University",
            analysis_content="**Animal Welfare:** Good.",
            animal_welfare_summary="Stored summary.",
        )
        assert normalize_legacy(row).sections.animal_welfare == "Stored summary."
