from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from repairdesk.logging import get_logger

logger = get_logger(__name__)


class SessionError(Exception):
    """Base class for session, tenant and settings failures.

    Each subclass defines a stable ``error_code``. ``message`` is always a
    short human-readable sentence safe to show to a user; provider errors also
    carry the provider's own code in ``provider_code``.
    """

    error_code: str = "session_error"
    default_message: str = "Something went wrong with your session"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        error_code: Optional[str] = None,
        provider_code: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        if error_code is not None:
            self.error_code = error_code
        self.provider_code = provider_code
        self.detail = detail or {}


class NoSession(SessionError):
    """No token is held (signed out or never signed in)."""
    error_code = "no_session"
    default_message = "You are not signed in"


class NoActiveTenant(SessionError):
    """A tenant-scoped call was attempted before a tenant was selected."""
    error_code = "no_active_tenant"
    default_message = "No organization is selected"


class TokenRenewalFailure(SessionError):
    """The provider refused to renew the token, including the retry."""
    error_code = "token_renewal_failed"
    default_message = "Your session could not be renewed. Please sign in again"


RenewalFailed = TokenRenewalFailure


class AuthenticationError(SessionError):
    """Sign-in failed at the identity provider."""
    error_code = "authentication_failed"
    default_message = "Authentication failed"


class ProviderConfigError(AuthenticationError):
    """Provider misconfiguration: unauthorized domain, disabled method, internal error."""
    error_code = "provider_config_error"


class ProviderCredentialError(AuthenticationError):
    """Bad password, unknown user, weak password, invalid email."""
    error_code = "provider_credential_error"


class ProviderInteractionError(AuthenticationError):
    """Popup blocked, closed or cancelled."""
    error_code = "provider_interaction_error"


class LocalSessionDisabled(AuthenticationError):
    error_code = "local_session_disabled"
    default_message = "Local sessions are not available in this deployment"


class UserSyncFailure(SessionError):
    """The backend could not confirm or create the user record."""
    error_code = "user_sync_failed"
    default_message = "Failed to load user data"


class TenantFetchFailure(SessionError):
    error_code = "tenant_fetch_failed"
    default_message = "Failed to load organizations"


class TenantProvisionFailure(SessionError):
    error_code = "tenant_provision_failed"
    default_message = "Failed to create a default organization"


class UnknownTenant(SessionError):
    error_code = "unknown_tenant"
    default_message = "Organization not found"


class BackendRejected(SessionError):
    """The backend refused to record the new active tenant."""
    error_code = "backend_rejected"
    default_message = "Failed to switch organization"


class BackendError(SessionError):
    """A backend call failed; ``status_code`` is None for transport errors."""

    error_code = "backend_error"
    default_message = "The server could not complete the request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.status_code = status_code


class BackendUnauthorized(BackendError):
    error_code = "unauthorized"
    default_message = "The server rejected your credentials"


@dataclass(frozen=True)
class ErrorNotice:
    """What a UI shows for a failure: a short message and an optional code."""

    message: str
    code: Optional[str] = None


def notice_for(exc: BaseException) -> ErrorNotice:
    """Build a user-facing notice; unknown exceptions never leak their text."""

    if isinstance(exc, SessionError):
        return ErrorNotice(message=exc.message, code=exc.provider_code)
    logger.error("unexpected_session_error", error_type=type(exc).__name__, error=str(exc))
    return ErrorNotice(message=SessionError.default_message)


__all__ = [
    "SessionError",
    "NoSession",
    "NoActiveTenant",
    "TokenRenewalFailure",
    "RenewalFailed",
    "AuthenticationError",
    "ProviderConfigError",
    "ProviderCredentialError",
    "ProviderInteractionError",
    "LocalSessionDisabled",
    "UserSyncFailure",
    "TenantFetchFailure",
    "TenantProvisionFailure",
    "UnknownTenant",
    "BackendRejected",
    "BackendError",
    "BackendUnauthorized",
    "ErrorNotice",
    "notice_for",
]
