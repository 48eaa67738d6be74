"""Asset routes."""

import logging
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.asset import Attempt
from app.schemas.asset import (
    AssetResponse,
    AttemptResponse,
    ReviewRequest,
    StartGenerationRequest,
    StartGenerationResponse,
)
from app.services import orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/assets", tags=["assets"])


@router.post("/{asset_id}/generate", response_model=StartGenerationResponse)
def start_generation(
    asset_id: uuid.UUID,
    data: Optional[StartGenerationRequest] = None,
    db: Session = Depends(get_db),
):
    """Admit an asset into generation; returns immediately with the in-flight handle."""
    data = data or StartGenerationRequest()
    admission = orchestrator.start_generation(
        db,
        asset_id,
        hint_ref=data.primary_output_ref,
        force=data.force,
    )
    return StartGenerationResponse(
        asset_id=admission.asset_id,
        accepted=admission.accepted,
        status=admission.status,
        idempotent=admission.idempotent,
    )


@router.get("/{asset_id}", response_model=AssetResponse)
def get_asset(
    asset_id: uuid.UUID,
    db: Session = Depends(get_db),
):
    """Get an asset."""
    return AssetResponse.model_validate(orchestrator.get_asset(db, asset_id))


@router.get("/{asset_id}/attempts", response_model=List[AttemptResponse])
def list_attempts(
    asset_id: uuid.UUID,
    db: Session = Depends(get_db),
):
    """Get the attempt history of an asset."""
    orchestrator.get_asset(db, asset_id)
    attempts = (
        db.query(Attempt)
        .filter(Attempt.asset_id == asset_id)
        .order_by(Attempt.attempt_index)
        .all()
    )
    return [AttemptResponse.model_validate(a) for a in attempts]


@router.post("/{asset_id}/approve", response_model=AssetResponse)
def approve_asset(
    asset_id: uuid.UUID,
    data: Optional[ReviewRequest] = None,
    db: Session = Depends(get_db),
):
    """Approve and lock an asset."""
    asset = orchestrator.approve_asset(db, asset_id, notes=data.notes if data else None)
    return AssetResponse.model_validate(asset)


@router.post("/{asset_id}/reject", response_model=AssetResponse)
def reject_asset(
    asset_id: uuid.UUID,
    data: Optional[ReviewRequest] = None,
    db: Session = Depends(get_db),
):
    """Reject an asset after review."""
    asset = orchestrator.reject_asset(db, asset_id, notes=data.notes if data else None)
    return AssetResponse.model_validate(asset)
