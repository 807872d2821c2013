from __future__ import annotations

from typing import Awaitable, Callable, Optional, Protocol

from repairdesk.service.errors import (
    AuthenticationError,
    ProviderConfigError,
    ProviderCredentialError,
    ProviderInteractionError,
)
from repairdesk.storage.models import ProviderIdentity

IdentityListener = Callable[[Optional[ProviderIdentity]], Awaitable[None]]


class ProviderError(Exception):
    """Raw failure reported by the identity provider SDK, e.g. ``auth/wrong-password``."""

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(message or code)
        self.code = code
        self.message = message or code


class IdentityProvider(Protocol):
    """The slice of the identity-provider SDK the session core depends on."""

    async def sign_in_with_password(self, email: str, password: str) -> ProviderIdentity: ...

    async def sign_up(
        self, email: str, password: str, display_name: Optional[str] = None
    ) -> ProviderIdentity: ...

    async def sign_in_with_popup(self) -> ProviderIdentity: ...

    async def sign_out(self) -> None: ...

    def subscribe(self, listener: IdentityListener) -> Callable[[], None]:
        """Register for identity changes; returns an unsubscribe callable."""
        ...

    async def get_id_token(
        self, identity: ProviderIdentity, *, force_refresh: bool = False
    ) -> str: ...


# Errors that justify a local session outside production
CONFIG_ERROR_CODES = {
    "auth/unauthorized-domain": "This domain is not authorized for sign-in",
    "auth/operation-not-allowed": "This authentication method is not enabled for this project",
    "auth/internal-error": "The authentication service encountered an internal error",
}

CREDENTIAL_ERROR_CODES = {
    "auth/user-not-found": "Invalid email or password",
    "auth/wrong-password": "Invalid email or password",
    "auth/invalid-credential": "The authentication credential is invalid",
    "auth/email-already-in-use": "Email already in use",
    "auth/weak-password": "Password is too weak",
    "auth/invalid-email": "Invalid email address",
    "auth/account-exists-with-different-credential": (
        "An account already exists with the same email address but different sign-in credentials"
    ),
    "auth/requires-recent-login": "This action requires a recent login. Please sign in again",
}

INTERACTION_ERROR_CODES = {
    "auth/popup-blocked": "Sign-in popup was blocked by your browser. Please allow popups for this site",
    "auth/popup-closed-by-user": "Sign-in popup was closed before completing the process",
    "auth/cancelled-popup-request": "The sign-in operation was cancelled",
}

OTHER_ERROR_CODES = {
    "auth/network-request-failed": "Network error. Please check your connection",
}


def classify_provider_error(exc: ProviderError) -> AuthenticationError:
    """Map a raw provider error onto the session error taxonomy."""

    code = exc.code
    if code in CONFIG_ERROR_CODES:
        return ProviderConfigError(CONFIG_ERROR_CODES[code], provider_code=code)
    if code in CREDENTIAL_ERROR_CODES:
        return ProviderCredentialError(CREDENTIAL_ERROR_CODES[code], provider_code=code)
    if code in INTERACTION_ERROR_CODES:
        return ProviderInteractionError(INTERACTION_ERROR_CODES[code], provider_code=code)
    if code in OTHER_ERROR_CODES:
        return AuthenticationError(OTHER_ERROR_CODES[code], provider_code=code)
    return AuthenticationError(provider_code=code)
