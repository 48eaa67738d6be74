"""Idempotency guard: admits an asset into generation at most once at a time."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.errors import DuplicateInProgressError, InvalidInputError
from app.models.asset import IN_FLIGHT_STATUSES, GenerationAsset

logger = logging.getLogger(__name__)

STALE_SUPERSEDED = "STALE_SUPERSEDED"


@dataclass
class Admission:
    """Handle returned to the caller of StartGeneration."""

    asset_id: str
    status: str
    accepted: bool
    idempotent: bool = False


def is_stale(asset: GenerationAsset, now: Optional[datetime] = None) -> bool:
    """In-flight asset whose last event is older than the staleness threshold."""
    if asset.status not in IN_FLIGHT_STATUSES or asset.last_event_at is None:
        return False
    now = now or datetime.utcnow()
    return now - asset.last_event_at > timedelta(seconds=settings.STALE_GENERATION_SECONDS)


def find_inflight_sibling(db: Session, asset: GenerationAsset) -> Optional[GenerationAsset]:
    """Another asset with the same (run, step, space, kind) key that is in flight."""
    return (
        db.query(GenerationAsset)
        .filter(
            GenerationAsset.run_id == asset.run_id,
            GenerationAsset.step_index == asset.step_index,
            GenerationAsset.space_id == asset.space_id,
            GenerationAsset.kind == asset.kind,
            GenerationAsset.asset_id != asset.asset_id,
            GenerationAsset.status.in_(IN_FLIGHT_STATUSES),
        )
        .first()
    )


def supersede(db: Session, asset: GenerationAsset) -> None:
    """Fail a stale in-flight asset so new work can be admitted."""
    logger.warning(f"Superseding stale asset {asset.asset_id} (status {asset.status}, last event {asset.last_event_at})")
    asset.mark(
        "failed",
        block_reason={"code": STALE_SUPERSEDED, "message": "Stale in-flight generation superseded"},
    )
    db.flush()


def check_admission(db: Session, asset: GenerationAsset, force: bool = False) -> Optional[Admission]:
    """
    Pre-admission checks with no side effect unless a stale asset is superseded.

    Returns:
        An idempotent Admission if the asset is already in flight, else None
        (the caller may go on to claim it)

    Raises:
        InvalidInputError: If the asset is locked_approved
        DuplicateInProgressError: If a sibling with the same key is in flight
    """
    if asset.is_locked:
        raise InvalidInputError(
            f"Asset {asset.asset_id} is locked_approved and cannot be regenerated",
            {"asset_id": str(asset.asset_id)},
        )

    if asset.status in IN_FLIGHT_STATUSES:
        if force and is_stale(asset):
            supersede(db, asset)
        else:
            logger.info(f"Asset {asset.asset_id} already {asset.status}, returning in-flight handle")
            return Admission(str(asset.asset_id), asset.status, accepted=True, idempotent=True)

    sibling = find_inflight_sibling(db, asset)
    if sibling is not None:
        if force and is_stale(sibling):
            supersede(db, sibling)
        else:
            raise DuplicateInProgressError(
                f"Asset {sibling.asset_id} is already {sibling.status} for this space and kind",
                str(sibling.asset_id),
            )
    return None


def claim(db: Session, asset: GenerationAsset, **fields) -> Admission:
    """
    Atomically flip an asset to queued.

    The conditional UPDATE only matches when the asset is neither in flight
    nor locked, so two concurrent callers cannot both win.
    """
    now = datetime.utcnow()
    values = {
        GenerationAsset.status: "queued",
        GenerationAsset.last_event_at: now,
        GenerationAsset.updated_at: now,
        GenerationAsset.block_reason: None,
    }
    for name, value in fields.items():
        values[getattr(GenerationAsset, name)] = value

    rows = (
        db.query(GenerationAsset)
        .filter(
            GenerationAsset.asset_id == asset.asset_id,
            GenerationAsset.status.notin_(IN_FLIGHT_STATUSES + ("locked_approved",)),
        )
        .update(values, synchronize_session=False)
    )
    db.refresh(asset)

    if rows == 0:
        logger.info(f"Lost admission race for asset {asset.asset_id} (now {asset.status})")
        return Admission(str(asset.asset_id), asset.status, accepted=asset.status in IN_FLIGHT_STATUSES, idempotent=True)

    # Mirror onto the space row
    asset.mark("queued")
    return Admission(str(asset.asset_id), "queued", accepted=True)


def admit(db: Session, asset: GenerationAsset, force: bool = False, **fields) -> Admission:
    """check_admission followed by claim."""
    existing = check_admission(db, asset, force=force)
    if existing is not None:
        return existing
    return claim(db, asset, **fields)
