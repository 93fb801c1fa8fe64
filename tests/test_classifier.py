"""
Unit tests for deterministic classification.
"""

from triage_guard.core.classifier import (
    DETERMINISTIC_MODEL_LABEL,
    BibRecord,
    DecisionSource,
    TriageStatus,
    build_decision,
    classify,
    classify_records,
    summarize_decisions,
)
from triage_guard.core.criteria import (
    CriteriaRule,
    CriteriaText,
    ScreeningCriteria,
    build_criteria,
    default_criteria,
)


BASE_FIELDS = {
    "title": "Adult learners improving speaking skills through behavioral coaching",
    "abstract": "An experiment with adult ESL students focusing on oral proficiency and motivation.",
    "keywords": "Adult, ESL",
    "year": "2024",
}


def make_record(key="sample", **overrides):
    fields = dict(BASE_FIELDS)
    fields.update(overrides)
    return BibRecord(type="article", key=key, fields=fields)


class TestClassify:
    """Test status and confidence rules."""

    def test_population_mismatch_is_excluded(self):
        """A K-12 abstract trips exclusion rules of the default protocol."""
        record = make_record(key="k12", abstract="A commentary on K-12 secondary school teachers.")

        result = classify(record, default_criteria())

        assert len(result.exclusion_matches) >= 1
        assert result.status == TriageStatus.EXCLUDE
        assert result.confidence > 0.5

    def test_strong_inclusion_evidence(self):
        """Several matched inclusion terms with no exclusion evidence include the record."""
        criteria = build_criteria(CriteriaText(
            inclusion="Adult learners speaking proficiency\nESL oral practice",
            exclusion="Children K-12 school",
        ))

        result = classify(make_record(), criteria)

        assert result.status == TriageStatus.INCLUDE
        assert result.exclusion_matches == ()
        assert [match.rule_id for match in result.inclusion_matches] == ["inc_adult", "inc_esl"]
        assert result.confidence == 0.92

    def test_conflicting_evidence_is_maybe(self):
        """Comparable inclusion and exclusion evidence yields Maybe."""
        criteria = build_criteria(CriteriaText(
            inclusion="Adults speaking outcomes reported",
            exclusion="Exclude K-12 populations",
        ))
        record = make_record(abstract=(
            "Adult ESL learners focus on speaking proficiency but the cohort "
            "mixes K-12 students, so results are ambiguous."
        ))

        result = classify(record, criteria)

        assert result.status == TriageStatus.MAYBE
        assert 0.3 < result.confidence <= 0.65

    def test_no_exclusion_match_never_excluded(self):
        """Without an exclusion match the record is never excluded."""
        criteria = ScreeningCriteria(inclusion=(), exclusion=(CriteriaRule(id="exc", terms=("unrelated",)),))

        result = classify(make_record(), criteria)

        assert result.exclusion_matches == ()
        assert result.status != TriageStatus.EXCLUDE

    def test_exclusion_needs_two_weak_terms(self):
        """A single short exclusion term is not enough to match."""
        criteria = ScreeningCriteria(
            inclusion=(),
            exclusion=(CriteriaRule(id="exc", terms=("oral", "zzzz")),),
        )

        assert classify(make_record(), criteria).exclusion_matches == ()

    def test_keyword_scope_matches_keywords_only(self):
        """Keyword-scoped rules match whole keywords, not text."""
        criteria = ScreeningCriteria(
            inclusion=(
                CriteriaRule(id="inc_kw", terms=("esl",), scope="keywords"),
                CriteriaRule(id="inc_kw_miss", terms=("coaching",), scope="keywords"),
            ),
            exclusion=(),
        )

        result = classify(make_record(), criteria)

        assert [match.rule_id for match in result.inclusion_matches] == ["inc_kw"]

    def test_deterministic(self):
        """Classifying twice gives the same result."""
        criteria = default_criteria()
        record = make_record()

        assert classify(record, criteria) == classify(record, criteria)


class TestDecisions:
    """Test decision wrapping and summaries."""

    def test_build_decision(self):
        """Deterministic decisions carry record details and source."""
        record = make_record()
        result = classify(record, default_criteria())

        decision = build_decision(record, result, rationale="why")
        data = decision.to_dict()

        assert decision.source == DecisionSource.DETERMINISTIC
        assert data["key"] == "sample"
        assert data["year"] == "2024"
        assert data["model"] == DETERMINISTIC_MODEL_LABEL
        assert data["source"] == "deterministic"
        assert data["rationale"] == "why"
        assert data["status"] == result.status.value

    def test_classify_records_and_summary(self):
        """Batches keep order and are counted per status."""
        records = [
            make_record(key="a"),
            make_record(key="b", abstract="A commentary on K-12 secondary school teachers."),
        ]

        decisions = classify_records(records, default_criteria())
        summary = summarize_decisions(decisions)

        assert [d.record_key for d in decisions] == ["a", "b"]
        assert summary.total == 2
        assert sum(summary.by_status.values()) == 2
        assert summary.by_status.get("Exclude", 0) >= 1

    def test_status_parse(self):
        """Status strings parse case-insensitively."""
        assert TriageStatus.parse(" include ") == TriageStatus.INCLUDE
        assert TriageStatus.parse("Exclude") == TriageStatus.EXCLUDE
        assert TriageStatus.parse("perhaps") is None
        assert TriageStatus.parse(None) is None
