"""
Request models for the HTTP surface.

Field names follow the JSON wire format (camelCase); Python attributes are
snake_case.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..core.classifier import BibRecord
from ..core.criteria import (
    DEFAULT_CRITERIA_TEXT,
    CriteriaText,
    ScreeningCriteria,
    criteria_from_dict,
)


class RecordModel(BaseModel):
    type: str = "article"
    key: str = Field(min_length=1)
    fields: Dict[str, str] = Field(default_factory=dict)

    def to_record(self) -> BibRecord:
        return BibRecord(type=self.type, key=self.key, fields=dict(self.fields))


class CriteriaTextModel(BaseModel):
    inclusion: str = ""
    exclusion: str = ""


class RuleModel(BaseModel):
    id: str = Field(min_length=1)
    terms: List[str]
    scope: Optional[str] = None


class HeuristicsModel(BaseModel):
    inclusion: List[RuleModel] = Field(default_factory=list)
    exclusion: List[RuleModel] = Field(default_factory=list)

    def to_criteria(self) -> ScreeningCriteria:
        return criteria_from_dict(self.model_dump(exclude_none=True))


class TriageRequestBody(BaseModel):
    """Body of ``POST /triage``."""
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    record: RecordModel
    criteria_text: Optional[CriteriaTextModel] = Field(default=None, alias="criteriaText")
    heuristics: Optional[HeuristicsModel] = None
    provider: str = "deterministic"
    mode: str = "byok"
    reasoning_effort: Optional[str] = Field(default=None, alias="reasoningEffort")
    model_id: Optional[str] = Field(default=None, alias="modelId")
    api_key: Optional[str] = Field(default=None, alias="apiKey")

    def to_criteria_text(self) -> CriteriaText:
        if self.criteria_text is None:
            return DEFAULT_CRITERIA_TEXT
        return CriteriaText(
            inclusion=self.criteria_text.inclusion,
            exclusion=self.criteria_text.exclusion,
        )
