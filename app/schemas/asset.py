"""Space and asset Pydantic schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SpaceCreate(BaseModel):
    name: str = Field(min_length=1)
    space_type: Optional[str] = None


class SpacesCreate(BaseModel):
    """Spaces detected for a run."""

    spaces: List[SpaceCreate] = Field(min_length=1)


class SpaceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    space_id: UUID
    run_id: UUID
    name: str
    space_type: Optional[str] = None
    primary_status: str
    opposite_status: str


class AssetCreateItem(BaseModel):
    """One candidate slot; per-space steps require space_id."""

    space_id: Optional[UUID] = None
    prompt: str = ""
    opposite_prompt: Optional[str] = None


class AssetsCreate(BaseModel):
    items: List[AssetCreateItem] = Field(min_length=1)


class AssetResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    asset_id: UUID
    run_id: UUID
    space_id: Optional[UUID] = None
    step_index: int
    kind: str
    status: str
    attempt_count: int
    output_ref: Optional[str] = None
    anchor_ref: Optional[str] = None
    qa_status: Optional[str] = None
    qa_result: Optional[Dict[str, Any]] = None
    block_reason: Optional[Dict[str, Any]] = None


class StartGenerationRequest(BaseModel):
    """Optional caller hint for the Primary output and stale-supersede flag."""

    primary_output_ref: Optional[str] = None
    force: bool = False


class StartGenerationResponse(BaseModel):
    asset_id: UUID
    accepted: bool
    status: str
    idempotent: bool = False


class AttemptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    attempt_index: int
    prompt: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    model: Optional[str] = None
    output_ref: Optional[str] = None
    qa_verdict: Optional[Dict[str, Any]] = None
    decision: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None


class ReviewRequest(BaseModel):
    notes: Optional[str] = None
