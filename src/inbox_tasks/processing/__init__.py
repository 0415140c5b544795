"""Task materialization and batch orchestration."""

from .materializer import (
    CONSTRAINT_RECOVERIES,
    DUPLICATE_CONSTRAINT,
    UNEXPECTED_CONSTRAINT,
    CandidateFailure,
    MaterializeOutcome,
    TaskMaterializer,
)
from .orchestrator import ACTIONABLE_LABEL, BatchOrchestrator, BatchRequest

__all__ = [
    "ACTIONABLE_LABEL",
    "BatchOrchestrator",
    "BatchRequest",
    "CONSTRAINT_RECOVERIES",
    "CandidateFailure",
    "DUPLICATE_CONSTRAINT",
    "MaterializeOutcome",
    "TaskMaterializer",
    "UNEXPECTED_CONSTRAINT",
]
