"""
Exception taxonomy for the calculation engine.

Configuration errors abort a whole batch before any entity is processed.
Lifecycle errors reject a transition and leave the batch untouched.
Persistence failures come from the row store / batch store boundary.
Missing data is deliberately NOT an exception: it is recorded as a trace status.
"""
from typing import Optional


class EngineError(Exception):
    """Base class for every error raised by icm_engine."""


class ConfigurationError(EngineError):
    """A rule-set authoring defect (undefined metric, cycle, malformed ladder)."""

    def __init__(self, message: str, rule: Optional[str] = None):
        self.rule = rule
        if rule:
            message = f"{message} (rule: {rule})"
        super().__init__(message)


class LifecycleError(EngineError):
    """Base class for rejected lifecycle operations."""


class InvalidTransition(LifecycleError):
    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid transition: {current} -> {requested}")


class SeparationOfDutiesViolation(LifecycleError):
    def __init__(self, actor: str, requested: str):
        self.actor = actor
        self.requested = requested
        super().__init__(
            f"Submitter '{actor}' cannot move the batch to {requested} (separation of duties)"
        )


class ConcurrentTransitionError(LifecycleError):
    """The batch changed between validation and write (optimistic check failed)."""

    def __init__(self, batch_id: str, expected_version: int, actual_version: int):
        self.batch_id = batch_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Batch {batch_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


class BatchNotFound(LifecycleError):
    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Calculation batch not found: {batch_id}")


class PersistenceFailure(EngineError):
    """Row store, batch store or trace store I/O failure."""
