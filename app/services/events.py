"""Pipeline event log helpers."""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.models.event import PipelineEvent

logger = logging.getLogger(__name__)


def record_event(
    db: Session,
    run_id,
    step_index: int,
    event_type: str,
    message: str,
    asset_id=None,
    payload: Optional[Dict[str, Any]] = None,
) -> PipelineEvent:
    """Append an event to the run log (flushed with the caller's transaction)."""
    event = PipelineEvent(
        run_id=run_id,
        step_index=step_index,
        asset_id=asset_id,
        type=event_type,
        message=message,
        payload=payload,
    )
    db.add(event)
    logger.debug(f"Event {event_type} run={run_id} step={step_index}: {message}")
    return event
