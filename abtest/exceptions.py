"""Typed errors raised by the experimentation engine.

Routine outcomes such as "user not in the audience", "experiment not
running" or "conversion has no prior assignment" are not errors; the
service returns ``None``/``False`` for those.
"""
from typing import Optional


class ExperimentError(Exception):
    """Base class for all experimentation errors."""
    pass


class ValidationError(ExperimentError):
    """Input rejected before any mutation took place."""
    pass


class InvalidTransitionError(ValidationError):
    """Requested lifecycle transition is not allowed from the current status."""

    def __init__(self, experiment_id: str, current: str, target: str, message: Optional[str] = None):
        self.experiment_id = experiment_id
        self.current = current
        self.target = target
        super().__init__(
            message or f"Cannot move experiment {experiment_id} from {current} to {target}"
        )


class NotFoundError(ExperimentError):
    """Referenced experiment, variant or assignment does not exist."""
    pass


class ConflictError(ExperimentError):
    """Action violates an invariant of the experiment's current state."""
    pass


class StoreError(ExperimentError):
    """Underlying persistence failure."""
    pass
