from __future__ import annotations


class JobError(Exception):
    """Base class for failures raised by a habit job run."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InputError(JobError):
    """Raised when the request names no action, an unknown one, or a bad date."""

    status_code = 404


class EmptyResultError(JobError):
    """Raised when a store query matches no documents."""


class NotificationDeliveryError(JobError):
    """Raised after finalize when one or more notification groups failed."""


class WriteCommitError(JobError):
    """Raised after finalize when one or more commit groups failed."""


class InternalError(JobError):
    """Wraps any unexpected exception raised while a run is processing."""
