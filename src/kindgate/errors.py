"""Custom exceptions for KindGate."""

from typing import Any


class KindGateError(Exception):
    """Base exception for KindGate errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class WorkflowError(KindGateError):
    """Raised when a parental approval operation is invalid."""

    pass


class RequestNotFoundError(WorkflowError):
    """Raised when an approval request id is unknown."""

    pass


class RequestNotPendingError(WorkflowError):
    """Raised when deciding on a request that already reached a terminal state."""

    pass


class RuleError(KindGateError):
    """Base class for rule store errors."""

    pass


class RuleNotFoundError(RuleError):
    """Raised when a rule id is unknown."""

    pass


class RuleValidationError(RuleError):
    """Raised when a rule fails validation."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message, details={"errors": errors or []})
        self.errors = errors or []


class ConfigurationImportError(KindGateError):
    """Raised when a rule configuration document cannot be imported."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message, details={"errors": errors or []})
        self.errors = errors or []


class NotificationError(KindGateError):
    """Raised when a notification channel rejects an event."""

    pass
