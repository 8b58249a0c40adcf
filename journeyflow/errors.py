"""Exception hierarchy for journey execution."""

from __future__ import annotations


class JourneyError(Exception):
    """Base error raised by the journey engine.

    ``retryable`` tells the worker whether the transport should redeliver the
    unit of work. Races such as a wake-up arriving for a canceled execution
    are expected and never retried.
    """

    retryable: bool = True

    def __init__(self, message: str, retryable: bool | None = None) -> None:
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class NonRetryableError(JourneyError):
    """Unit of work that should be logged and dropped."""

    retryable = False


class ExecutionNotActive(NonRetryableError):
    """Execution is missing or no longer ``active``."""


class StepNotFound(NonRetryableError):
    """Step referenced by a unit of work does not exist."""


class JourneyNotFound(NonRetryableError):
    """Journey does not exist in the organization."""


class NoPublishedVersion(NonRetryableError):
    """Journey has never been published."""


class ExecutionAlreadyActive(NonRetryableError):
    """Contact already has an active execution of the journey."""


class InvalidTransition(JourneyError):
    """Illegal lifecycle transition on a journey entity."""

    retryable = False
