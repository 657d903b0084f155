from __future__ import annotations


class AbuseGuardError(Exception):
    """Base error for abuseguard."""


class QuotaValidationError(AbuseGuardError, ValueError):
    """Rejected quota write; `code` is stable for callers mapping to responses."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class DetectionConfigError(AbuseGuardError, ValueError):
    """Invalid spike or error-rate detection configuration."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field} {message}")
        self.field = field


class ProjectNotFoundError(AbuseGuardError, LookupError):
    """Referenced project does not exist."""


class UnknownChannelError(AbuseGuardError, LookupError):
    """Notification channel has no registered processor."""


class OverrideValidationError(AbuseGuardError, ValueError):
    """Malformed manual override request."""


class SenderConfigError(AbuseGuardError):
    """Missing or invalid channel sender configuration."""
