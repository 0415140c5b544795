"""Exception taxonomy shared by the extraction pipeline."""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for errors raised by the extraction pipeline."""


class InputError(PipelineError):
    """Raised when a body cannot be parsed structurally.

    The normalizer recovers from it locally; it never reaches callers.
    """


class UpstreamCallError(PipelineError):
    """Raised when the classification provider cannot be reached or refuses us."""

    def __init__(self, message: str, *, kind: str = "unreachable") -> None:
        super().__init__(message)
        self.kind = kind


class SchemaViolationError(PipelineError):
    """Raised when a classification response matches neither expected shape."""

    def __init__(self, message: str, *, raw_response: str | None = None) -> None:
        super().__init__(message)
        self.raw_response = raw_response


class PersistenceConstraintError(PipelineError):
    """Raised when the task store rejects a row on a constraint."""

    def __init__(self, message: str, *, constraint: str = "unknown") -> None:
        super().__init__(message)
        self.constraint = constraint


class BatchTimeoutError(PipelineError):
    """Reported when a batch deadline passes before every email was started."""


class BatchPreconditionError(PipelineError, ValueError):
    """Raised when batch selection parameters are invalid."""


__all__ = [
    "BatchPreconditionError",
    "BatchTimeoutError",
    "InputError",
    "PersistenceConstraintError",
    "PipelineError",
    "SchemaViolationError",
    "UpstreamCallError",
]
