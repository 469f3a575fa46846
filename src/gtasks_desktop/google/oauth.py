"""Google sign-in and credential lifecycle using Authlib.

This module owns the signed-in Google account for the desktop client:
- Authorization code + PKCE flow through a loopback redirect and a consent window
- Credential persistence, with the refresh token kept across refreshes
- Token refresh on demand, persisted from Authlib's ``update_token`` hook
- Google API service creation (Tasks, OAuth2 userinfo)

Example:
    >>> auth = GoogleAuthService(Settings.from_env())
    >>> await auth.initialize()
    >>> if not auth.get_auth_state().is_authenticated:
    ...     await auth.sign_in()
    >>> tasks_service = await auth.build_service("tasks", "v1")
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

import requests
from authlib.common.errors import AuthlibBaseError
from authlib.common.security import generate_token
from authlib.integrations.requests_client import OAuth2Session
from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials as GoogleCredentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from httplib2 import HttpLib2Error

from gtasks_desktop.google.callback import AuthorizationResult, LoopbackCallbackServer
from gtasks_desktop.google.consent import ConsentWindow, create_consent_window
from gtasks_desktop.google.exceptions import (
    AuthorizationCancelled,
    GoogleTasksError,
    MissingRefreshToken,
    NotAuthenticated,
    ProviderAuthError,
    ProviderCommunicationError,
)
from gtasks_desktop.google.store import Credentials, CredentialStore

if TYPE_CHECKING:
    from gtasks_desktop.config import Settings

logger = logging.getLogger(__name__)


SCOPES = {
    "tasks": "https://www.googleapis.com/auth/tasks",
    "tasks_readonly": "https://www.googleapis.com/auth/tasks.readonly",
    "email": "https://www.googleapis.com/auth/userinfo.email",
    "profile": "https://www.googleapis.com/auth/userinfo.profile",
}

DEFAULT_SCOPES = ["tasks", "email", "profile"]


def resolve_scopes(scopes: list[str]) -> list[str]:
    """Resolve scope names to full URLs."""
    resolved = []
    for scope in scopes:
        if scope.startswith("https://"):
            resolved.append(scope)
        elif scope in SCOPES:
            resolved.append(SCOPES[scope])
        else:
            raise ValueError(f"Unknown scope: {scope}. Use full URL or one of: {list(SCOPES.keys())}")
    return resolved


async def execute_request(request: Any) -> dict[str, Any]:
    """Execute a Google API client request off the event loop.

    Raises:
        NotAuthenticated: If Google rejects the credentials.
        ProviderCommunicationError: On any other HTTP or transport failure.
    """
    try:
        response = await asyncio.to_thread(request.execute)
    except HttpError as e:
        status = int(e.resp.status)
        if status == 401:
            raise NotAuthenticated("Google rejected the stored credentials. Sign in again.") from e
        raise ProviderCommunicationError(
            f"Google API request failed ({status}): {e.reason}", status_code=status
        ) from e
    except RefreshError as e:
        raise NotAuthenticated("Google rejected the stored credentials. Sign in again.") from e
    except (HttpLib2Error, OSError) as e:
        raise ProviderCommunicationError(f"Could not reach Google: {e}") from e

    return response or {}


class AuthStatus(str, Enum):
    SIGNED_OUT = "signed_out"
    AUTHENTICATING = "authenticating"
    SIGNED_IN = "signed_in"
    REFRESH_FAILED = "refresh_failed"


@dataclass
class AuthProfile:
    """Basic profile of the signed-in Google account."""

    email: str
    name: str
    picture: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"email": self.email, "name": self.name}
        if self.picture:
            data["picture"] = self.picture
        return data


@dataclass
class AuthState:
    """Derived view of the current sign-in; never persisted."""

    is_authenticated: bool
    profile: AuthProfile | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"isAuthenticated": self.is_authenticated}
        if self.profile is not None:
            data["profile"] = self.profile.to_dict()
        return data


@dataclass
class PendingAuthorization:
    """State of one in-flight sign-in attempt."""

    code_verifier: str
    server: LoopbackCallbackServer
    state: str | None = None
    window: ConsentWindow | None = None

    @property
    def redirect_uri(self) -> str:
        return self.server.redirect_uri

    async def teardown(self) -> None:
        """Stop the listener and close the window, whichever are still open."""
        try:
            await self.server.stop()
        finally:
            if self.window is not None:
                await self.window.close()


class GoogleAuthService:
    """Sign-in orchestration and credential lifecycle for one Google account.

    Coordinates the credential store, the loopback callback server and the
    consent window into a single sign-in transaction, exposes the current
    auth state and hands out authenticated clients for the Tasks gateway.
    """

    AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    REVOKE_URL = "https://oauth2.googleapis.com/revoke"

    # Refresh this many seconds before the access token actually expires
    REFRESH_LEEWAY = 60

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore | None = None,
        *,
        scopes: list[str] | None = None,
        server_factory: Callable[[], LoopbackCallbackServer] = LoopbackCallbackServer,
        window_factory: Callable[[], ConsentWindow] | None = None,
        session_factory: Callable[..., OAuth2Session] = OAuth2Session,
        service_builder: Callable[..., Any] = build,
    ):
        """Initialize the auth service.

        Args:
            settings: Client identity, data directory and flow options.
            store: Credential store. Defaults to the record under settings.data_dir.
            scopes: Scope names or full URLs. Defaults to tasks + email + profile.
            server_factory: Creates the loopback callback server for each attempt.
            window_factory: Creates the consent window for each attempt.
            session_factory: Creates Authlib OAuth2 sessions.
            service_builder: Builds Google API discovery clients.
        """
        self.settings = settings
        self.store = store or CredentialStore(settings.token_path)
        self.scopes = resolve_scopes(scopes or DEFAULT_SCOPES)

        self._server_factory = server_factory
        self._window_factory = window_factory or (
            lambda: create_consent_window(settings.consent_window)
        )
        self._session_factory = session_factory
        self._service_builder = service_builder

        self._credentials: Credentials | None = None
        self._profile: AuthProfile | None = None
        self._status = AuthStatus.SIGNED_OUT
        self._cell_lock = threading.Lock()
        self._refresh_lock = asyncio.Lock()
        self._sign_in_task: asyncio.Task[AuthState] | None = None
        # Single worker so credential writes land in the order they were made
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="credential-writer")

        self.last_refresh: datetime | None = None
        self.refresh_count = 0

    # =========================================================================
    # State
    # =========================================================================

    @property
    def status(self) -> AuthStatus:
        return self._status

    @property
    def credentials(self) -> Credentials | None:
        return self._credentials

    def get_auth_state(self) -> AuthState:
        return AuthState(is_authenticated=self._credentials is not None, profile=self._profile)

    def is_authorized(self) -> bool:
        """Check if credentials with all required scopes are loaded."""
        if self._credentials is None:
            return False
        return set(self.scopes).issubset(self._credentials.scopes)

    async def initialize(self) -> AuthState:
        """Restore the persisted sign-in, if any, and fetch the profile.

        A stored record that cannot be used to fetch the profile is dropped
        from memory and the service stays signed out.
        """
        credentials = await asyncio.to_thread(self.store.load)
        if credentials is None:
            return self.get_auth_state()

        self._set_credentials(credentials)
        try:
            await self._refresh_profile()
        except GoogleTasksError as e:
            logger.warning("Stored Google credentials are unusable: %s", e)
            self._clear()
            return self.get_auth_state()

        self._status = AuthStatus.SIGNED_IN
        logger.info("Restored Google sign-in")
        return self.get_auth_state()

    # =========================================================================
    # Sign in / sign out
    # =========================================================================

    async def sign_in(self) -> AuthState:
        """Run the interactive sign-in and return the new auth state.

        Concurrent calls share the attempt already in flight.

        Raises:
            ConfigurationError: If the client id or secret is missing.
            AuthorizationCancelled: If the user closed the consent window.
            ProviderAuthError: If Google reported an error or rejected the code.
            MissingRefreshToken: If Google did not grant offline access.
        """
        self.settings.require_client_identity()

        if self._sign_in_task is not None and not self._sign_in_task.done():
            logger.info("Sign-in already in progress, waiting for it")
        else:
            self._sign_in_task = asyncio.create_task(self._sign_in())

        # Cancelling one caller leaves the shared attempt running
        return await asyncio.shield(self._sign_in_task)

    async def _sign_in(self) -> AuthState:
        previous = self._status
        self._status = AuthStatus.AUTHENTICATING
        credentials: Credentials | None = None
        try:
            token = await self._authorize()
            credentials = Credentials.from_dict(token)
            await self._write(self.store.save, credentials)
            self._set_credentials(credentials)
            await self._refresh_profile()
        except BaseException:
            if credentials is not None:
                # A failed attempt keeps no credentials in memory or on disk
                self._clear()
                await asyncio.shield(self._write(self.store.delete))
            # A failed re-authentication leaves an earlier sign-in in place
            still_signed_in = previous is AuthStatus.SIGNED_IN and self._credentials is not None
            self._status = AuthStatus.SIGNED_IN if still_signed_in else AuthStatus.SIGNED_OUT
            raise

        self._status = AuthStatus.SIGNED_IN
        logger.info("Signed in to Google")
        return self.get_auth_state()

    async def sign_out(self) -> None:
        """Forget the signed-in account. Safe to call when already signed out."""
        if self._sign_in_task is not None and not self._sign_in_task.done():
            self._sign_in_task.cancel()

        credentials = self._credentials
        self._clear()
        if credentials is not None:
            await asyncio.to_thread(self._revoke, credentials)

        await self._write(self.store.delete)
        logger.info("Signed out of Google")

    def _revoke(self, credentials: Credentials) -> None:
        token = credentials.refresh_token or credentials.access_token
        try:
            response = requests.post(self.REVOKE_URL, params={"token": token}, timeout=10)
        except requests.RequestException as e:
            logger.warning(f"Failed to revoke token remotely: {e}")
            return

        if response.status_code != 200:
            logger.warning("Google declined token revocation (%s)", response.status_code)

    # =========================================================================
    # Authorization code flow
    # =========================================================================

    async def _authorize(self) -> dict[str, Any]:
        pending = PendingAuthorization(
            code_verifier=generate_token(64),
            server=self._server_factory(),
        )
        await pending.server.start()
        try:
            session = self._create_session(redirect_uri=pending.redirect_uri)
            url = self._create_authorization_url(session, pending)

            pending.window = self._window_factory()
            await pending.window.open(url)

            result = await self._wait_for_outcome(pending)
            await pending.teardown()
            self._check_result(result, pending.state)

            token = await asyncio.to_thread(
                self._fetch_token, session, result.code, pending.code_verifier, pending.redirect_uri
            )
        finally:
            await pending.teardown()

        if not token.get("refresh_token"):
            raise MissingRefreshToken()
        return token

    def _create_authorization_url(self, session: OAuth2Session, pending: PendingAuthorization) -> str:
        kwargs: dict[str, Any] = {"access_type": "offline", "prompt": "consent"}
        code_verifier: str | None = pending.code_verifier

        if self.settings.pkce_method == "plain":
            logger.warning("Using the plain PKCE method; the verifier is sent in the authorization URL")
            kwargs["code_challenge"] = pending.code_verifier
            kwargs["code_challenge_method"] = "plain"
            code_verifier = None

        url, state = session.create_authorization_url(
            self.AUTHORIZE_URL, code_verifier=code_verifier, **kwargs
        )
        pending.state = state
        return url

    async def _wait_for_outcome(self, pending: PendingAuthorization) -> AuthorizationResult:
        """Race the callback against the user closing the consent window."""
        callback = asyncio.create_task(pending.server.wait_for_code())
        closed = asyncio.create_task(pending.window.wait_closed())
        try:
            done, _ = await asyncio.wait({callback, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (callback, closed):
                task.cancel()
            await asyncio.gather(callback, closed, return_exceptions=True)

        if callback in done and not callback.cancelled():
            return callback.result()
        raise AuthorizationCancelled()

    def _check_result(self, result: AuthorizationResult, state: str | None) -> None:
        if result.kind == "provider_error":
            raise ProviderAuthError(f"Google sign-in failed: {result.error}", error=result.error)
        if result.kind == "missing_code":
            raise ProviderAuthError(
                "Google sign-in failed. Missing authorization code.", error="missing_code"
            )
        if state is not None and result.state != state:
            raise ProviderAuthError(
                "Google sign-in failed. The authorization response did not match this request.",
                error="state_mismatch",
            )

    def _fetch_token(
        self, session: OAuth2Session, code: str, code_verifier: str, redirect_uri: str
    ) -> dict[str, Any]:
        try:
            token = session.fetch_token(
                self.TOKEN_URL,
                grant_type="authorization_code",
                code=code,
                code_verifier=code_verifier,
                redirect_uri=redirect_uri,
            )
        except AuthlibBaseError as e:
            raise ProviderAuthError(
                f"Google rejected the authorization code: {e.description or e.error}",
                error=e.error,
            ) from e
        except requests.RequestException as e:
            raise ProviderCommunicationError(f"Could not reach Google: {e}") from e

        return dict(token)

    # =========================================================================
    # Authenticated clients and refresh
    # =========================================================================

    def _create_session(
        self, token: dict[str, Any] | None = None, redirect_uri: str | None = None
    ) -> OAuth2Session:
        kwargs: dict[str, Any] = {
            "client_id": self.settings.client_id,
            "client_secret": self.settings.client_secret,
            "scope": " ".join(self.scopes),
            "token": token,
            "update_token": self._on_token_refreshed,
            "token_endpoint": self.TOKEN_URL,
            "token_endpoint_auth_method": "client_secret_post",
        }
        if redirect_uri:
            kwargs["redirect_uri"] = redirect_uri
        if self.settings.pkce_method == "S256":
            kwargs["code_challenge_method"] = "S256"
        return self._session_factory(**kwargs)

    def get_authenticated_client(self) -> OAuth2Session:
        """Get an OAuth2 session holding the current token.

        The session reports refreshed tokens back through ``update_token``,
        which updates and persists the stored credentials.

        Raises:
            NotAuthenticated: If nobody is signed in.
        """
        return self._create_session(token=self._require_credentials().to_token())

    async def get_credentials(self) -> GoogleCredentials:
        """Get Google Credentials for API client libraries, refreshing if expired.

        Raises:
            NotAuthenticated: If nobody is signed in or Google rejects the refresh.
            ProviderCommunicationError: If the refresh request cannot reach Google.
        """
        credentials = self._require_credentials()
        if credentials.is_expired(self.REFRESH_LEEWAY):
            async with self._refresh_lock:
                credentials = self._require_credentials()
                if credentials.is_expired(self.REFRESH_LEEWAY):
                    await self._refresh(credentials)
                    credentials = self._require_credentials()

        # Token only: refreshes go through the Authlib session so they get persisted
        return GoogleCredentials(token=credentials.access_token, scopes=credentials.scopes or None)

    async def _refresh(self, credentials: Credentials) -> None:
        logger.info("Token expired, refreshing...")
        if not credentials.refresh_token:
            await self._refresh_failed("no refresh token stored")
            raise NotAuthenticated("Your Google session has expired. Sign in again.")

        session = self.get_authenticated_client()
        try:
            await asyncio.to_thread(
                session.refresh_token, self.TOKEN_URL, refresh_token=credentials.refresh_token
            )
        except AuthlibBaseError as e:
            await self._refresh_failed(e.description or e.error)
            raise NotAuthenticated("Your Google session has expired. Sign in again.") from e
        except requests.RequestException as e:
            raise ProviderCommunicationError(f"Could not refresh Google token: {e}") from e

    async def _refresh_failed(self, reason: str | None) -> None:
        self._status = AuthStatus.REFRESH_FAILED
        logger.warning("Google token refresh failed, signing out: %s", reason)
        self._clear()
        await self._write(self.store.delete)

    def _on_token_refreshed(
        self,
        token: dict[str, Any],
        refresh_token: str | None = None,
        access_token: str | None = None,
    ) -> None:
        """Authlib ``update_token`` hook.

        Fires on every refresh, possibly from a worker thread. Merges the new
        token into the stored credentials and queues a write. Never raises.
        """
        try:
            with self._cell_lock:
                current = self._credentials
                if current is None:
                    logger.info("Ignoring token refresh after sign-out")
                    return
                if refresh_token and current.refresh_token and refresh_token != current.refresh_token:
                    logger.info("Ignoring token refresh for a replaced sign-in")
                    return

                updated = current.merged(token)
                if access_token:
                    updated.access_token = access_token
                self._credentials = updated
                self.last_refresh = datetime.now()
                self.refresh_count += 1

            self._writer.submit(self.store.save, updated).add_done_callback(_log_refresh_write)
            logger.info("Google access token refreshed")
        except Exception:
            logger.exception("Failed to apply refreshed Google token")

    async def build_service(self, service_name: str = "tasks", version: str = "v1") -> Any:
        """Build a Google API service with current credentials.

        Args:
            service_name: Name of the service (e.g., 'tasks', 'oauth2').
            version: API version (e.g., 'v1').

        Returns:
            Google API service object.
        """
        credentials = await self.get_credentials()
        return await asyncio.to_thread(
            self._service_builder,
            service_name,
            version,
            credentials=credentials,
            cache_discovery=False,
        )

    async def _refresh_profile(self) -> None:
        service = await self.build_service("oauth2", "v2")
        data = await execute_request(service.userinfo().get())
        email = data.get("email")
        if email:
            self._profile = AuthProfile(
                email=email,
                name=data.get("name") or email,
                picture=data.get("picture") or None,
            )

    # =========================================================================
    # Credential cell
    # =========================================================================

    def _require_credentials(self) -> Credentials:
        credentials = self._credentials
        if credentials is None:
            raise NotAuthenticated()
        return credentials

    def _set_credentials(self, credentials: Credentials) -> None:
        with self._cell_lock:
            self._credentials = credentials

    def _clear(self) -> None:
        with self._cell_lock:
            self._credentials = None
            self._profile = None
            self._status = AuthStatus.SIGNED_OUT

    async def _write(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a store operation on the writer thread and wait for it."""
        return await asyncio.wrap_future(self._writer.submit(fn, *args))

    def get_token_info(self) -> dict[str, Any]:
        """Get information about the current token.

        Returns:
            Dictionary with token status, scopes, expiry, etc.
        """
        credentials = self._credentials
        if credentials is None:
            return {"status": "no_token"}

        expires_at = credentials.expires_at
        if expires_at:
            expires_in = expires_at - datetime.now().timestamp()
            expires_str = str(timedelta(seconds=int(max(0, expires_in))))
            is_expired = credentials.is_expired(leeway=0)
        else:
            expires_str = "unknown"
            is_expired = False

        return {
            "status": "valid" if not is_expired else "expired",
            "scopes": credentials.scopes,
            "expires_in": expires_str,
            "has_refresh_token": bool(credentials.refresh_token),
            "refresh_count": self.refresh_count,
            "last_refresh": self.last_refresh.isoformat() if self.last_refresh else None,
        }

    async def aclose(self) -> None:
        """Cancel any sign-in in flight and flush pending credential writes."""
        if self._sign_in_task is not None and not self._sign_in_task.done():
            self._sign_in_task.cancel()
            await asyncio.gather(self._sign_in_task, return_exceptions=True)
        await asyncio.to_thread(self._writer.shutdown, wait=True)


def _log_refresh_write(future: Future) -> None:
    error = future.exception()
    if error is not None:
        logger.error("Failed to persist refreshed Google credentials: %s", error)
