"""
Deterministic record classification.

Matches a bibliographic record against compiled screening criteria and
produces a status with a calibrated confidence. The result is both the
fallback decision and the anchor sent to any LLM provider.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .criteria import KEYWORD_SCOPE, CriteriaRule, ScreeningCriteria


INDEXED_FIELDS = ("title", "abstract", "keywords", "note", "notes")

DETERMINISTIC_MODEL_LABEL = "Deterministic heuristics"


class TriageStatus(Enum):
    """Screening outcome for a record."""
    INCLUDE = "Include"
    EXCLUDE = "Exclude"
    MAYBE = "Maybe"

    @classmethod
    def parse(cls, value: object) -> Optional["TriageStatus"]:
        """Case-insensitive lookup; unknown values map to None."""
        if not isinstance(value, str):
            return None
        normalized = value.strip().lower()
        for status in cls:
            if status.value.lower() == normalized:
                return status
        return None


class DecisionSource(Enum):
    """Where the final decision came from."""
    DETERMINISTIC = "deterministic"
    LLM = "llm"


@dataclass(frozen=True)
class BibRecord:
    """Parsed bibliographic entry: entry type, citation key and raw fields."""
    type: str
    key: str
    fields: Dict[str, str] = field(default_factory=dict)

    def get(self, name: str) -> str:
        return self.fields.get(name) or ""


@dataclass(frozen=True)
class RuleMatch:
    """Terms of one rule found in a record."""
    rule_id: str
    matched_terms: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.rule_id, "matchedTerms": list(self.matched_terms)}


@dataclass(frozen=True)
class DeterministicResult:
    """Rule-engine verdict for a single record."""
    status: TriageStatus
    confidence: float
    inclusion_matches: Tuple[RuleMatch, ...]
    exclusion_matches: Tuple[RuleMatch, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "confidence": self.confidence,
            "inclusionMatches": [match.to_dict() for match in self.inclusion_matches],
            "exclusionMatches": [match.to_dict() for match in self.exclusion_matches],
        }


@dataclass(frozen=True)
class TriageDecision:
    """Final, immutable decision for one record in one run."""
    record_key: str
    status: TriageStatus
    confidence: float
    inclusion_matches: Tuple[RuleMatch, ...]
    exclusion_matches: Tuple[RuleMatch, ...]
    rationale: Optional[str]
    model_label: str
    source: DecisionSource
    record_type: str = ""
    title: str = ""
    year: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Wire representation used by the API and the run history."""
        return {
            "key": self.record_key,
            "type": self.record_type,
            "title": self.title,
            "year": self.year,
            "status": self.status.value,
            "confidence": self.confidence,
            "inclusionMatches": [match.to_dict() for match in self.inclusion_matches],
            "exclusionMatches": [match.to_dict() for match in self.exclusion_matches],
            "rationale": self.rationale,
            "model": self.model_label,
            "source": self.source.value,
        }


@dataclass
class TriageSummary:
    """Decision counts for a batch."""
    total: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class _TextIndex:
    combined: str
    keywords: Set[str]


def classify(record: BibRecord, criteria: ScreeningCriteria) -> DeterministicResult:
    """Classify a record against screening criteria.

    Exclusion rules need two matched terms (inclusion rules one) unless a
    strong term matched. A record with no exclusion match is never excluded.

    Args:
        record: Record to classify
        criteria: Compiled inclusion and exclusion rules

    Returns:
        DeterministicResult with status, confidence and rule matches
    """
    index = _build_text_index(record)
    inclusion_matches = _match_rules(criteria.inclusion, index, min_terms=1)
    exclusion_matches = _match_rules(criteria.exclusion, index, min_terms=2)

    inclusion_score = _score_matches(inclusion_matches)
    exclusion_score = _score_matches(exclusion_matches)

    status = TriageStatus.MAYBE
    if _should_exclude(inclusion_score, exclusion_score, len(exclusion_matches)):
        status = TriageStatus.EXCLUDE
    elif _should_include(inclusion_score, exclusion_score):
        status = TriageStatus.INCLUDE

    return DeterministicResult(
        status=status,
        confidence=_compute_confidence(status, inclusion_score, exclusion_score),
        inclusion_matches=tuple(inclusion_matches),
        exclusion_matches=tuple(exclusion_matches),
    )


def build_decision(
    record: BibRecord,
    result: DeterministicResult,
    rationale: Optional[str] = None,
) -> TriageDecision:
    """Wrap a rule-engine result as a deterministic decision."""
    return TriageDecision(
        record_key=record.key,
        status=result.status,
        confidence=result.confidence,
        inclusion_matches=result.inclusion_matches,
        exclusion_matches=result.exclusion_matches,
        rationale=rationale,
        model_label=DETERMINISTIC_MODEL_LABEL,
        source=DecisionSource.DETERMINISTIC,
        record_type=record.type,
        title=record.get("title"),
        year=record.get("year"),
    )


def classify_records(
    records: Iterable[BibRecord],
    criteria: ScreeningCriteria,
) -> List[TriageDecision]:
    """Deterministically classify a batch of records, preserving order."""
    return [build_decision(record, classify(record, criteria)) for record in records]


def summarize_decisions(decisions: Sequence[TriageDecision]) -> TriageSummary:
    """Count decisions per status."""
    summary = TriageSummary()
    for decision in decisions:
        summary.total += 1
        label = decision.status.value
        summary.by_status[label] = summary.by_status.get(label, 0) + 1
    return summary


def _build_text_index(record: BibRecord) -> _TextIndex:
    values = [record.fields.get(name) for name in INDEXED_FIELDS]
    combined = " \n ".join(value for value in values if value).lower()

    keywords = {
        keyword.strip().lower()
        for keyword in record.get("keywords").split(",")
        if keyword.strip()
    }
    return _TextIndex(combined=combined, keywords=keywords)


def _is_strong_term(term: str) -> bool:
    return len(term) >= 6 or "-" in term or any(char.isdigit() for char in term)


def _match_rules(
    rules: Sequence[CriteriaRule],
    index: _TextIndex,
    min_terms: int,
) -> List[RuleMatch]:
    matches = []
    for rule in rules:
        if rule.scope == KEYWORD_SCOPE:
            matched = [term for term in rule.terms if term in index.keywords]
        else:
            matched = [term for term in rule.terms if term in index.combined]

        has_strong_term = any(_is_strong_term(term) for term in matched)
        if len(matched) >= min_terms or has_strong_term:
            matches.append(RuleMatch(rule_id=rule.id, matched_terms=tuple(matched)))
    return matches


def _score_matches(matches: Sequence[RuleMatch]) -> int:
    return sum(min(len(match.matched_terms), 3) for match in matches)


def _should_exclude(inclusion_score: int, exclusion_score: int, exclusion_hits: int) -> bool:
    if exclusion_hits == 0:
        return False
    if inclusion_score == 0:
        return exclusion_score >= 2 or exclusion_hits >= 2
    return exclusion_score >= inclusion_score and exclusion_score >= 2


def _should_include(inclusion_score: int, exclusion_score: int) -> bool:
    if inclusion_score < 2:
        return False
    if exclusion_score > 0:
        return inclusion_score >= exclusion_score + 2
    return True


def _compute_confidence(status: TriageStatus, inclusion_score: int, exclusion_score: int) -> float:
    if status == TriageStatus.INCLUDE:
        confidence = 0.55 + min(inclusion_score, 6) * 0.08 - min(exclusion_score, 3) * 0.05
        upper = 0.92
    elif status == TriageStatus.EXCLUDE:
        confidence = 0.5 + min(exclusion_score, 6) * 0.09 - min(inclusion_score, 2) * 0.04
        upper = 0.92
    else:
        confidence = 0.35 + min(inclusion_score + exclusion_score, 6) * 0.05
        upper = 0.65
    return _clamp(confidence, 0.2, upper)


def _clamp(value: float, lower: float, upper: float) -> float:
    return min(max(value, lower), upper)
