"""Google sign-in, credential storage and API client utilities."""

from gtasks_desktop.google.callback import AuthorizationResult, LoopbackCallbackServer
from gtasks_desktop.google.consent import (
    ConsentWindow,
    PlaywrightConsentWindow,
    SystemBrowserConsentWindow,
    create_consent_window,
)
from gtasks_desktop.google.exceptions import (
    AuthorizationCancelled,
    ConfigurationError,
    GoogleTasksError,
    InvalidArgument,
    MissingRefreshToken,
    NotAuthenticated,
    ProviderAuthError,
    ProviderCommunicationError,
    ProviderContractViolation,
)
from gtasks_desktop.google.oauth import (
    AuthProfile,
    AuthState,
    AuthStatus,
    GoogleAuthService,
    execute_request,
)
from gtasks_desktop.google.store import Credentials, CredentialStore

__all__ = [
    "GoogleAuthService",
    "AuthState",
    "AuthProfile",
    "AuthStatus",
    "Credentials",
    "CredentialStore",
    "LoopbackCallbackServer",
    "AuthorizationResult",
    "ConsentWindow",
    "PlaywrightConsentWindow",
    "SystemBrowserConsentWindow",
    "create_consent_window",
    "execute_request",
    "GoogleTasksError",
    "ConfigurationError",
    "AuthorizationCancelled",
    "ProviderAuthError",
    "MissingRefreshToken",
    "NotAuthenticated",
    "InvalidArgument",
    "ProviderContractViolation",
    "ProviderCommunicationError",
]
