"""SQLAlchemy ORM models."""

from app.models.run import PipelineRun
from app.models.step import StepOutput, StepRetryState
from app.models.space import Space
from app.models.asset import Attempt, GenerationAsset
from app.models.event import PipelineEvent
from app.models.job import Job

__all__ = [
    "PipelineRun",
    "StepOutput",
    "StepRetryState",
    "Space",
    "GenerationAsset",
    "Attempt",
    "PipelineEvent",
    "Job",
]
