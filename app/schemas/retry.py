"""Retry controller schemas."""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class RetryDelta(BaseModel):
    """Bounded regeneration adjustment drawn from a closed vocabulary."""

    changes_made: List[str] = Field(default_factory=list)
    new_seed: Optional[int] = None
    prompt_adjustments: List[str] = Field(default_factory=list)
    settings_adjustments: Dict[str, Any] = Field(default_factory=dict)
    input_modified: bool = False
    # Audit only, never sent to the generator
    suggestion_applied: Optional[Dict[str, str]] = None


class RetryDecision(BaseModel):
    """Outcome of evaluating a verdict against the retry policy."""

    action: Literal["retry", "block_for_human", "proceed"]
    reason: str
    # Machine-readable cause when blocking, e.g. STEP_BUDGET_EXHAUSTED
    code: Optional[str] = None
    retry_delta: Optional[RetryDelta] = None
    delay_seconds: Optional[float] = None

    @property
    def should_retry(self) -> bool:
        return self.action == "retry"
