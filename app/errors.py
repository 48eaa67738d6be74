"""Error taxonomy surfaced to API callers and recorded on assets."""

from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base class for errors with a stable caller-facing code."""

    code = "PipelineError"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses and persisted block reasons."""
        return {"error": self.code, "message": self.message, **self.details}


class InvalidInputError(PipelineError):
    """Bad caller input, rejected before any side effect."""

    code = "ValidationError"
    status_code = 400


class NotFoundError(PipelineError):
    code = "NotFound"
    status_code = 404


class InvalidTransitionError(PipelineError):
    """Requested phase is not a legal successor of the current phase."""

    code = "InvalidTransition"
    status_code = 409


class DependencyNotReadyError(PipelineError):
    """Opposite asset requested before its Primary has a usable output."""

    code = "DependencyNotReady"
    status_code = 409


class DuplicateInProgressError(PipelineError):
    """Another asset for the same space/kind is already in flight."""

    code = "DuplicateInProgress"
    status_code = 409

    def __init__(self, message: str, existing_id: str):
        super().__init__(message, {"existing_id": existing_id})
        self.existing_id = existing_id


class BudgetExhaustedError(PipelineError):
    """Step or run attempt ceiling reached."""

    code = "BudgetExhausted"
    status_code = 409


class QAParseError(PipelineError):
    """Judge output could not be parsed into a verdict."""

    code = "QAParseFailed"
    status_code = 422


class GenerationServiceError(PipelineError):
    """Upstream generation/judgment call failed."""

    code = "GenerationServiceError"
    status_code = 502

    def __init__(self, message: str, retryable: bool = True, status: Optional[int] = None):
        super().__init__(message, {"retryable": retryable, "upstream_status": status})
        self.retryable = retryable
        self.status = status
