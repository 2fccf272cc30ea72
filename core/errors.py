from typing import Optional


class LearningApiError(Exception):
    """Base error for calls to the learning content backend."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransientApiError(LearningApiError):
    """Network failure, timeout or 5xx. Recoverable by an explicit retry."""


class SessionRequiredError(LearningApiError):
    """Backend reports that no content session is active."""


class NotFoundError(LearningApiError):
    pass


class AuthRequiredError(LearningApiError):
    pass


class CooldownViolationError(LearningApiError):
    """A new batch was requested while the cooldown is still running."""

    def __init__(self, message: str, remaining_seconds: int, status: Optional[int] = 429):
        super().__init__(message, status)
        self.remaining_seconds = remaining_seconds


class StorageUnavailableError(Exception):
    """Durable storage refused a read or write (quota, disabled, connection)."""


class InvalidTransitionError(Exception):
    def __init__(self, current, requested):
        super().__init__(f"Cannot move from {current} to {requested}")
        self.current = current
        self.requested = requested


class ContentExhaustedError(Exception):
    """No item could be selected even after re-initializing the batch."""
