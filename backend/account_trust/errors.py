"""
Account Trust Errors

Every rejection carries a stable machine-readable code next to its
human-readable message, so callers never pattern-match message text.
"""

from typing import Optional

from .config import ERROR_CODES


class TrustEngineError(Exception):
    """Base class for all engine rejections."""
    status_code = 500
    default_code = "internal_error"

    def __init__(self, code: Optional[str] = None, message: Optional[str] = None, **extra):
        self.code = code or self.default_code
        self.message = message or ERROR_CODES.get(self.code, self.code)
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self):
        """Convert to API response format."""
        body = {"error": self.code, "message": self.message}
        body.update({k: v for k, v in self.extra.items() if v is not None})
        return body


class AuthError(TrustEngineError):
    """Missing, invalid or expired session/admin credential."""
    status_code = 401
    default_code = "INVALID_SESSION"


class AccountBlockedError(TrustEngineError):
    """Credentials were valid but the account state refuses login."""
    status_code = 403
    default_code = "approval_pending"


class ForbiddenError(TrustEngineError):
    status_code = 403
    default_code = "ADMIN_REQUIRED"


class QuotaExceeded(TrustEngineError):
    """Throttle or tier-limit denial."""
    status_code = 429
    default_code = "rate_limit"

    def __init__(
        self,
        code: Optional[str] = None,
        message: Optional[str] = None,
        upgrade_required: bool = False,
        wait_seconds: Optional[int] = None,
    ):
        super().__init__(code, message, upgrade_required=upgrade_required, wait_seconds=wait_seconds)
        self.upgrade_required = upgrade_required
        self.wait_seconds = wait_seconds

    @property
    def reason(self) -> str:
        return self.code


class ValidationError(TrustEngineError):
    """Malformed input: bad guardian email, unknown tier, etc."""
    status_code = 400
    default_code = "invalid_input"


class ConsentExpiredError(ValidationError):
    status_code = 410
    default_code = "consent_expired"


class ConsentStateError(ValidationError):
    """Transition not allowed from the current consent state."""
    status_code = 409
    default_code = "consent_already_processed"


class NotFoundError(TrustEngineError):
    status_code = 404
    default_code = "not_found"


class TransientBackendError(TrustEngineError):
    """A storage or provider call failed."""
    status_code = 503
    default_code = "backend_unavailable"

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(self.default_code, message, operation=operation)
        self.operation = operation


class ProviderNotConfiguredError(TrustEngineError):
    status_code = 503
    default_code = "provider_not_configured"
