"""
Prompt construction shared by provider adapters.
"""

import json
from typing import Any, Dict

from ..core.classifier import BibRecord, DeterministicResult
from ..core.criteria import CriteriaText


SYSTEM_PROMPT = (
    "You are a rigorous systematic review screening assistant. Always return valid JSON "
    "with keys: status, confidence, rationale, criteria_refs, model."
)

EXPECTED_JSON = {
    "status": "Include | Exclude | Maybe",
    "confidence": "0-1 number",
    "rationale": "50-150 word explanation citing criteria IDs",
    "criteria_refs": "array of criteria IDs referenced",
}


def build_user_prompt(
    record: BibRecord,
    criteria_text: CriteriaText,
    anchor: DeterministicResult,
    limit: int,
) -> Dict[str, Any]:
    """Assemble the user prompt object sent to a model.

    Criteria text is truncated to ``limit`` characters per list.
    """
    return {
        "record": extract_record_fields(record),
        "instructions": {
            "inclusion": truncate(criteria_text.inclusion, limit),
            "exclusion": truncate(criteria_text.exclusion, limit),
        },
        "deterministic": anchor.to_dict(),
        "expected_json": EXPECTED_JSON,
    }


def render_user_prompt(prompt: Dict[str, Any]) -> str:
    return json.dumps(prompt, ensure_ascii=False)


def extract_record_fields(record: BibRecord) -> Dict[str, Any]:
    keywords = [item.strip() for item in record.get("keywords").split(",") if item.strip()]
    return {
        "key": record.key,
        "type": record.type,
        "title": record.get("title"),
        "abstract": record.get("abstract"),
        "keywords": keywords,
        "year": record.get("year"),
        "notes": record.get("note") or record.get("notes"),
        "venue": record.get("journal") or record.get("booktitle"),
    }


def truncate(text: str, limit: int) -> str:
    text = text or ""
    if len(text) <= limit:
        return text
    return f"{text[:limit - 3]}..."
