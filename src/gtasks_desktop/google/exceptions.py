"""Google authentication and Tasks API exceptions."""

from __future__ import annotations


class GoogleTasksError(Exception):
    """Base exception for sign-in and Tasks API errors."""

    pass


class ConfigurationError(GoogleTasksError):
    """Raised when the OAuth client identity is not configured."""

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(
            f"Missing Google OAuth configuration ({', '.join(missing)}). "
            "Populate GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET in your .env.local file."
        )


class AuthorizationCancelled(GoogleTasksError):
    """Raised when the user closes the consent window before finishing."""

    def __init__(self, message: str = "Google sign-in was cancelled."):
        super().__init__(message)


class ProviderAuthError(GoogleTasksError):
    """Raised when Google reports an authorization or token exchange error."""

    def __init__(self, message: str, error: str | None = None):
        self.error = error
        super().__init__(message)


class MissingRefreshToken(ProviderAuthError):
    """Raised when the token response carries no refresh token."""

    def __init__(self):
        super().__init__(
            "Google did not return a refresh token. Ensure that the OAuth consent screen "
            "is configured for desktop access, then sign in again and grant offline access.",
            error="missing_refresh_token",
        )


class NotAuthenticated(GoogleTasksError):
    """Raised when an API call needs credentials that are not available."""

    def __init__(self, message: str = "Not signed in with Google yet."):
        super().__init__(message)


class InvalidArgument(GoogleTasksError, ValueError):
    """Raised when a request fails local validation."""

    pass


class ProviderContractViolation(GoogleTasksError):
    """Raised when Google accepts a call but the response is unusable."""

    pass


class ProviderCommunicationError(GoogleTasksError):
    """Raised when talking to Google fails (transport error, timeout, HTTP error)."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)
