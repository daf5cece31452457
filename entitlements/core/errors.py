"""Error taxonomy and the stable error contract."""

from typing import Optional

from entitlements.core.logging import get_correlation_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, correlation_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.correlation_id = correlation_id or get_correlation_id()

    def to_payload(self) -> dict:
        return error_payload(self.code, self.message, self.correlation_id)


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class ConfigValidationError(AppError):
    """A built-in definition or plan mapping is malformed. Fatal at start-up."""
    code = "config_invalid"
    status_code = 500


class DefinitionNotFound(NotFoundError):
    """No seeded definition matches the requested name/kind/id."""
    code = "definition_not_found"


class AccountNotFound(NotFoundError):
    code = "account_not_found"


class EmailAlreadyUsed(ConflictError):
    code = "email_already_used"

    def __init__(self, message: str = "This email has already been registered.", **kwargs):
        super().__init__(message, **kwargs)


class NoActiveQuota(AppError):
    """Account integrity violation: every account must hold exactly one active quota."""
    code = "no_active_quota"
    status_code = 500


class TransientStorageError(AppError):
    code = "storage_unavailable"
    status_code = 503


class UnknownEventError(ValidationError):
    code = "unknown_event"


def error_payload(code: str, message: str, correlation_id: Optional[str]) -> dict:
    return {
        "error": {"code": code, "message": message, "correlation_id": correlation_id},
        "detail": message,
    }
