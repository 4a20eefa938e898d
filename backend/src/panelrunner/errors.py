"""
Error taxonomy for the job pipeline.

Every terminal failure of a job maps to one ``FailureReason``; the matching
exception carries the human-readable message that is stored, broadcast and
written to the audit log.
"""

from __future__ import annotations

from enum import StrEnum


class FailureReason(StrEnum):
    """Why a job ended without success."""

    INVALID_JOB = "invalid_job"
    CREDENTIALS_MISSING = "credentials_missing"
    CAPTCHA_EXHAUSTED = "captcha_exhausted"
    LOGIN_REJECTED = "login_rejected"
    TIMEOUT = "timeout"
    ACTION_FAILED = "action_failed"
    CANCELLED = "cancelled"


class PanelRunnerError(Exception):
    """Base exception for job pipeline errors."""

    reason: FailureReason = FailureReason.ACTION_FAILED

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidJobError(PanelRunnerError):
    """Raised when a submission is missing required fields."""

    reason = FailureReason.INVALID_JOB

    def __init__(self, message: str, missing: list[str] | None = None) -> None:
        super().__init__(message)
        self.missing = missing or []


class CredentialsMissingError(PanelRunnerError):
    """Raised when automatic re-login has no stored credentials to use."""

    reason = FailureReason.CREDENTIALS_MISSING


class CaptchaExhaustedError(PanelRunnerError):
    """Raised when every captcha round of a login was rejected."""

    reason = FailureReason.CAPTCHA_EXHAUSTED

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class LoginRejectedError(PanelRunnerError):
    """Raised when a login fails for a reason other than the captcha."""

    reason = FailureReason.LOGIN_REJECTED


class JobTimeoutError(PanelRunnerError):
    """Raised when a job exceeds its wall-clock deadline."""

    reason = FailureReason.TIMEOUT


class ActionFailedError(PanelRunnerError):
    """Raised when an action cannot be performed or fails unexpectedly."""

    reason = FailureReason.ACTION_FAILED


class JobCancelledError(PanelRunnerError):
    """Raised when a running job observes its cancellation flag."""

    reason = FailureReason.CANCELLED


class BrowserSessionError(PanelRunnerError):
    """Raised when a browser, context or page cannot be opened."""


class CaptchaSolverError(Exception):
    """Raised when the vision endpoint cannot produce an answer."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StorageError(Exception):
    """Raised when a datastore operation fails."""
