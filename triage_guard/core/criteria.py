"""
Screening criteria compilation.

Turns free-text inclusion/exclusion criteria into rule sets that the
deterministic classifier can match against bibliographic records.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple


KEYWORD_SCOPE = "keywords"

MAX_TERMS_PER_RULE = 20

STOP_WORDS = frozenset({
    "with", "without", "where", "which", "from", "that", "this", "these",
    "those", "their", "there", "about", "using", "among", "after", "before",
    "study", "studies", "report", "reports", "paper", "papers", "analysis",
    "include", "includes", "including", "exclusion", "criteria", "only",
    "not", "and", "both", "such", "present", "neutrality", "design",
    "provides", "evidence", "scope", "technology",
})

# Short domain abbreviations that survive the length filter
ALWAYS_KEEP = frozenset({
    "l2", "esl", "efl", "ell", "tesol", "toefl", "ielts", "ai", "caf",
    "cefr", "actfl", "opic",
})

_WORD_PATTERN = re.compile(r"[a-z0-9][a-z0-9-]+")
_BULLET_PATTERN = re.compile(r"^[-*•\s]+")
_ID_CLEAN_PATTERN = re.compile(r"[^a-z0-9_-]", re.IGNORECASE)


@dataclass(frozen=True)
class CriteriaRule:
    """A single compiled criterion.

    Terms keep first-seen order so the per-rule cap is deterministic.
    """
    id: str
    terms: Tuple[str, ...]
    scope: Optional[str] = None

    def __post_init__(self):
        """Validate scope value."""
        if self.scope is not None and self.scope != KEYWORD_SCOPE:
            raise ValueError(f"Unsupported rule scope: {self.scope}")


@dataclass(frozen=True)
class ScreeningCriteria:
    """Ordered inclusion and exclusion rule sets."""
    inclusion: Tuple[CriteriaRule, ...]
    exclusion: Tuple[CriteriaRule, ...]


@dataclass(frozen=True)
class CriteriaText:
    """User-edited criteria text, one criterion per line."""
    inclusion: str
    exclusion: str


DEFAULT_INCLUSION_TEXT = """1. Adults only – learners are adults (higher ed, workplace, community, immigration) or adult subgroup is clearly analyzable.
2. Speaking performance target – study targets L2 English speaking or a real-time production analog (speaking, oral proficiency, conversation, fluency, CAF, CEFR/ACTFL/OPIc ratings, pronunciation intelligibility, speech rate, articulation rate, pause metrics, response latency, role-play performance).
3. Behavioral-science mechanism present – intervention explicitly implements a skill-acquisition or adherence mechanism (spacing, interleaving, variable practice, retrieval/production practice, scaffolding, feedback timing/bandwidth/focus, adaptive difficulty/mastery criteria, implementation intentions, habit formation, reminders/prompts, commitment devices, incentives/reinforcement, goal/plan prompts, progress feedback, social accountability).
4. Performance outcome, not vibes – reports change in speaking performance or validated proxy for automaticity/transfer (CAF on novel tasks, latency, error decay, CEFR/ACTFL level change, intelligibility ratings). Attitudes/engagement alone do not qualify.
5. Design provides evidence – empirical primary study (RCT, quasi-experimental, pre-post with documented practice dose, field/classroom deployment) or a systematic/scoping review that maps mechanisms to outcomes with methods. Mixed methods allowed if performance outcomes are reported.
6. Scope fit – published 2015–present, or pre-2015 only if foundational mechanism directly applied to speaking design. ESL/EAL/EFL context or language-general mechanism with explicit mapping to speaking.
7. Technology neutrality – AI use is optional; include human-delivered mechanisms if portable to AI-assisted speaking systems."""

DEFAULT_EXCLUSION_TEXT = """E01. Not adult population or adult data not separable.
E02. No speaking or real-time production outcome (knowledge tests, attitudes, usage only).
E03. No behavioral mechanism (tech/tool use without an explicit skill/adherence mechanism).
E04. Opinion/theory only; no data or evaluative pathway.
E05. AI/system paper with zero learner outcomes.
E06. Gray/industry report without transparent methods or outcomes.
E07. Out of timeframe and not a foundational mechanism applied to speaking.
E08. Mixed population where adult/speaking subset cannot be disaggregated.
E09. No comparator and practice dose uncontrolled/unstated in a way that prevents interpreting performance change.
E10. Insufficient intervention detail to implement the mechanism (cannot tell what was spaced/interleaved, how feedback was timed, what the adherence device was).
E11. Language/skill mismatch with no explicit mapping to speaking (e.g., reading/listening only, motor-skill analogs with no L2 transfer argument).
E12. Duplicate publication of an included study (retain the most complete version)."""

DEFAULT_CRITERIA_TEXT = CriteriaText(
    inclusion=DEFAULT_INCLUSION_TEXT,
    exclusion=DEFAULT_EXCLUSION_TEXT,
)


def build_criteria(text: CriteriaText) -> ScreeningCriteria:
    """Compile both criteria lists.

    Args:
        text: Inclusion and exclusion criteria text

    Returns:
        ScreeningCriteria with ``inc_`` and ``exc_`` prefixed rule ids
    """
    return ScreeningCriteria(
        inclusion=tuple(compile_rules(text.inclusion, "inc")),
        exclusion=tuple(compile_rules(text.exclusion, "exc")),
    )


def default_criteria() -> ScreeningCriteria:
    """Criteria compiled from the default review protocol."""
    return build_criteria(DEFAULT_CRITERIA_TEXT)


def compile_rules(text: str, prefix: str) -> List[CriteriaRule]:
    """Compile criteria text into rules, one rule per non-empty line.

    Pure function: identical text always yields an identical rule list.

    Args:
        text: Criteria text
        prefix: Prefix for derived rule ids

    Returns:
        Rules in line order; lines without usable terms are dropped
    """
    lines = [line.strip() for line in (text or "").splitlines()]
    lines = [line for line in lines if line]

    rules = []
    for index, line in enumerate(lines):
        terms = extract_terms(line)
        if not terms:
            continue
        rules.append(CriteriaRule(id=_derive_rule_id(line, prefix, index), terms=terms))
    return rules


def extract_terms(line: str) -> Tuple[str, ...]:
    """Extract matchable terms from a single criterion line."""
    words = _WORD_PATTERN.findall(line.lower())

    # dict keeps insertion order
    unique: Dict[str, None] = {}
    for word in words:
        has_digits = any(char.isdigit() for char in word)
        keep = (
            word in ALWAYS_KEEP
            or has_digits
            or (len(word) >= 4 and word not in STOP_WORDS)
        )
        if not keep:
            continue

        unique[word] = None

        if len(word) > 4 and word.endswith("s"):
            unique[word[:-1]] = None

        if "-" in word:
            unique[word.replace("-", "")] = None

    return tuple(list(unique)[:MAX_TERMS_PER_RULE])


def _derive_rule_id(line: str, prefix: str, index: int) -> str:
    stripped = _BULLET_PATTERN.sub("", line)
    tokens = stripped.split()
    first_token = tokens[0] if tokens else ""
    cleaned = _ID_CLEAN_PATTERN.sub("", first_token).lower()
    if len(cleaned) >= 2:
        return f"{prefix}_{cleaned}"
    return f"{prefix}_{index + 1}"


def criteria_to_dict(criteria: ScreeningCriteria) -> Dict[str, Any]:
    """Serialize rules as ``{inclusion: [{id, terms, scope?}], exclusion: [...]}``."""
    def _rule(rule: CriteriaRule) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": rule.id, "terms": list(rule.terms)}
        if rule.scope:
            data["scope"] = rule.scope
        return data

    return {
        "inclusion": [_rule(rule) for rule in criteria.inclusion],
        "exclusion": [_rule(rule) for rule in criteria.exclusion],
    }


def criteria_from_dict(data: Mapping[str, Any]) -> ScreeningCriteria:
    """Load precompiled rules supplied by a client.

    Terms are lowercased; rules left without terms are dropped.

    Raises:
        ValueError: If a rule is malformed
    """
    def _rules(items: Any, side: str) -> Tuple[CriteriaRule, ...]:
        if items is None:
            return ()
        if not isinstance(items, list):
            raise ValueError(f"{side} rules must be a list")
        rules = []
        for item in items:
            if not isinstance(item, Mapping) or not isinstance(item.get("id"), str):
                raise ValueError(f"Each {side} rule needs a string id")
            terms = item.get("terms") or []
            if not isinstance(terms, list) or not all(isinstance(term, str) for term in terms):
                raise ValueError(f"Rule {item['id']} terms must be a list of strings")
            cleaned = tuple(term.strip().lower() for term in terms if term.strip())
            if cleaned:
                rules.append(CriteriaRule(id=item["id"], terms=cleaned, scope=item.get("scope")))
        return tuple(rules)

    return ScreeningCriteria(
        inclusion=_rules(data.get("inclusion"), "inclusion"),
        exclusion=_rules(data.get("exclusion"), "exclusion"),
    )
