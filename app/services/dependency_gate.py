"""Dependency gate between the Primary and Opposite assets of a space."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from app.errors import DependencyNotReadyError
from app.models.asset import ANCHOR_READY_STATUSES, OPPOSITE, PRIMARY, GenerationAsset

logger = logging.getLogger(__name__)

PRIMARY_DEPENDENCY_REQUIRED = "PRIMARY_DEPENDENCY_REQUIRED"


@dataclass
class AnchorResolution:
    """Primary output an Opposite attempt is anchored on."""

    primary_asset_id: str
    anchor_ref: str
    hint_ignored: bool = False


def is_anchor_ready(primary: Optional[GenerationAsset]) -> bool:
    """A Primary anchors its Opposite once it has an output in a review-or-locked status."""
    return (
        primary is not None
        and primary.output_ref is not None
        and primary.status in ANCHOR_READY_STATUSES
    )


def find_primary(db: Session, asset: GenerationAsset) -> Optional[GenerationAsset]:
    """Primary sibling of an asset (same run, step and space)."""
    candidates = (
        db.query(GenerationAsset)
        .filter(
            GenerationAsset.run_id == asset.run_id,
            GenerationAsset.step_index == asset.step_index,
            GenerationAsset.space_id == asset.space_id,
            GenerationAsset.kind == PRIMARY,
        )
        .order_by(GenerationAsset.created_at.desc())
        .all()
    )
    if not candidates:
        return None
    for candidate in candidates:
        if is_anchor_ready(candidate):
            return candidate
    return candidates[0]


def find_opposites(db: Session, primary: GenerationAsset):
    """Opposite siblings waiting on a Primary."""
    return (
        db.query(GenerationAsset)
        .filter(
            GenerationAsset.run_id == primary.run_id,
            GenerationAsset.step_index == primary.step_index,
            GenerationAsset.space_id == primary.space_id,
            GenerationAsset.kind == OPPOSITE,
        )
        .all()
    )


def block_opposite(db: Session, opposite: GenerationAsset, primary: Optional[GenerationAsset]) -> dict:
    """Mark an Opposite blocked on its Primary and commit. Returns the block reason."""
    primary_status = primary.status if primary is not None else None
    reason = {
        "code": PRIMARY_DEPENDENCY_REQUIRED,
        "message": "Primary output must be ready (needs_review or locked_approved) before the Opposite can start",
        "primary_asset_id": str(primary.asset_id) if primary is not None else None,
        "primary_status": primary_status,
    }
    opposite.mark("blocked", block_reason=reason)
    db.commit()
    logger.warning(
        f"Opposite {opposite.asset_id} blocked: Primary {reason['primary_asset_id']} status={primary_status}"
    )
    return reason


def resolve_anchor(
    db: Session,
    asset: GenerationAsset,
    hint_ref: Optional[str] = None,
) -> Optional[AnchorResolution]:
    """
    Resolve the anchor for an Opposite asset from the datastore.

    The datastore's current Primary output is authoritative. A caller hint
    that disagrees with it is logged and ignored, and a hint alone never
    satisfies the gate.

    Args:
        db: Database session
        asset: Asset about to be admitted or attempted
        hint_ref: Optional caller-supplied Primary output reference

    Returns:
        AnchorResolution for Opposites, None for assets with no dependency

    Raises:
        DependencyNotReadyError: If the Primary has no usable output (the
            Opposite is moved to blocked first)
    """
    if asset.kind != OPPOSITE or asset.space_id is None:
        return None

    primary = find_primary(db, asset)
    if not is_anchor_ready(primary):
        reason = block_opposite(db, asset, primary)
        raise DependencyNotReadyError(
            f"Primary for space {asset.space_id} has no usable output",
            {
                "asset_id": str(asset.asset_id),
                "primary_asset_id": reason["primary_asset_id"],
                "primary_status": reason["primary_status"],
            },
        )

    hint_ignored = False
    if hint_ref is not None and hint_ref != primary.output_ref:
        hint_ignored = True
        logger.warning(
            f"Caller Primary hint {hint_ref!r} conflicts with stored output "
            f"{primary.output_ref!r} for asset {asset.asset_id}; using stored output"
        )

    return AnchorResolution(
        primary_asset_id=str(primary.asset_id),
        anchor_ref=primary.output_ref,
        hint_ignored=hint_ignored,
    )
