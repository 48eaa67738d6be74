"""Agent input/output schemas."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# Render Agent
class GenerationRequest(BaseModel):
    """Input for RenderAgent."""

    asset_id: str
    step_index: int
    prompt: str
    reference_refs: List[str]
    seed: Optional[int] = None
    settings: Dict[str, Any] = Field(default_factory=dict)
    model: Optional[str] = None


class GenerationResult(BaseModel):
    """Output from RenderAgent."""

    artifact_ref: str
    model: str


# QA Judge Agent
class JudgeRequest(BaseModel):
    """Input for QAJudgeAgent."""

    asset_id: str
    artifact_ref: str
    category: str
    context: Dict[str, Any] = Field(default_factory=dict)
    calibration_hint: Optional[Any] = None
    model: Optional[str] = None
