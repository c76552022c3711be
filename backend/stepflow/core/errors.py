"""Exception hierarchy for the goal progression engine."""
from __future__ import annotations


class StepflowError(Exception):
    """Base class for engine errors."""


class ValidationError(StepflowError):
    """Raised before any generation status is written; the goal keeps its prior state."""


class InvalidDateRange(ValidationError):
    pass


class NoOccurrencesFound(ValidationError):
    pass


class ScheduleOverflow(ValidationError):
    pass


class InvalidWizardContext(ValidationError):
    pass


class TransientServiceError(StepflowError):
    """The generation service failed in a way worth retrying."""


class RateLimitedError(TransientServiceError):
    """The generation service asked us to slow down."""


class GlobalTimeoutError(StepflowError):
    pass


class OccurrenceGenerationError(StepflowError):
    """The occurrence that unlocks the rest of a goal could not be generated."""

    def __init__(self, index: int, message: str):
        super().__init__(message)
        self.index = index


class InvalidGenerationTransition(StepflowError):
    pass
