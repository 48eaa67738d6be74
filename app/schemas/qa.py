"""QA judge verdict schemas."""

from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class QACategory(str, Enum):
    """Closed set of issue / failure codes a judge may report."""

    INVALID_INPUT = "INVALID_INPUT"
    MISSING_SPACE = "MISSING_SPACE"
    DUPLICATED_OBJECTS = "DUPLICATED_OBJECTS"
    GEOMETRY_DISTORTION = "GEOMETRY_DISTORTION"
    WRONG_ROOM_TYPE = "WRONG_ROOM_TYPE"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    AMBIGUOUS_CLASSIFICATION = "AMBIGUOUS_CLASSIFICATION"
    SCALE_MISMATCH = "SCALE_MISMATCH"
    FURNITURE_MISMATCH = "FURNITURE_MISMATCH"
    STYLE_INCONSISTENCY = "STYLE_INCONSISTENCY"
    WALL_RECTIFICATION = "WALL_RECTIFICATION"
    MISSING_FURNISHINGS = "MISSING_FURNISHINGS"
    RESOLUTION_MISMATCH = "RESOLUTION_MISMATCH"
    SEAM_ARTIFACTS = "SEAM_ARTIFACTS"
    COLOR_INCONSISTENCY = "COLOR_INCONSISTENCY"
    PERSPECTIVE_ERROR = "PERSPECTIVE_ERROR"
    SCHEMA_INVALID = "SCHEMA_INVALID"
    API_ERROR = "API_ERROR"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"


QA_CATEGORY_CODES = frozenset(c.value for c in QACategory)

Severity = Literal["low", "medium", "high", "critical"]

SUGGESTION_TYPES = ("prompt_delta", "settings_delta", "seed_change", "input_change", "manual_review")

RecommendedAction = Literal["proceed", "retry", "needs_human"]


class QAIssue(BaseModel):
    """One defect observed by the judge."""

    category: QACategory
    severity: Severity
    evidence: str = ""

    @field_validator("category", mode="before")
    @classmethod
    def _unknown_category(cls, value):
        # Issue codes outside the closed set collapse to UNKNOWN
        if isinstance(value, str) and value.upper() in QA_CATEGORY_CODES:
            return value.upper()
        return QACategory.UNKNOWN.value


class RetrySuggestion(BaseModel):
    """What the judge thinks should change in the next attempt."""

    type: str = "manual_review"
    instruction: str = ""


class QAVerdict(BaseModel):
    """Structured verdict returned by the QA judge."""

    model_config = ConfigDict(populate_by_name=True)

    passed: bool = Field(alias="pass")
    score: float = Field(ge=0, le=100)
    confidence: float = Field(ge=0.0, le=1.0)
    issues: List[QAIssue] = Field(default_factory=list)
    retry_suggestion: RetrySuggestion = Field(default_factory=RetrySuggestion)
    approval_reasons: List[str] = Field(default_factory=list)
    failure_categories: List[str] = Field(default_factory=list)
    failure_explanation: Optional[str] = None
    recommended_action: Optional[RecommendedAction] = None
    contract_violations: List[str] = Field(default_factory=list)

    def to_record(self) -> dict:
        """JSON-safe snapshot for persistence."""
        return self.model_dump(mode="json", by_alias=True)
