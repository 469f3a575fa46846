"""Tests for Google sign-in orchestration."""

import asyncio
import socket
import threading
import time
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import httplib2
import pytest
from authlib.integrations.base_client import OAuthError
from googleapiclient.errors import HttpError

from gtasks_desktop.config import Settings
from gtasks_desktop.google import (
    AuthorizationCancelled,
    AuthStatus,
    ConfigurationError,
    Credentials,
    MissingRefreshToken,
    NotAuthenticated,
    ProviderAuthError,
    ProviderCommunicationError,
)
from gtasks_desktop.google.oauth import SCOPES, resolve_scopes

from conftest import (
    TOKEN_RESPONSE,
    USERINFO,
    FakeConsentWindow,
    RecordingServerFactory,
    close_window_on_open,
    follow_redirect,
    make_service_builder,
    make_session_factory,
)


def http_error(status):
    return HttpError(httplib2.Response({"status": status}), b'{"error": {"message": "boom"}}')


def windows_with(on_open):
    """Window factory that remembers every window it creates."""
    windows = []

    def factory():
        window = FakeConsentWindow(on_open)
        windows.append(window)
        return window

    factory.windows = windows
    return factory


def assert_port_closed(port):
    with pytest.raises(OSError):
        socket.create_connection(("127.0.0.1", port), timeout=1).close()


class TestScopes:
    def test_scope_resolution(self):
        """Should resolve scope names to URLs."""
        assert resolve_scopes(["tasks", "email"]) == [SCOPES["tasks"], SCOPES["email"]]

    def test_unknown_scope_raises(self):
        """Should raise error for unknown scope names."""
        with pytest.raises(ValueError, match="Unknown scope"):
            resolve_scopes(["unknown_scope"])

    def test_full_url_scopes_accepted(self):
        """Should accept full scope URLs."""
        url = "https://www.googleapis.com/auth/tasks.readonly"
        assert resolve_scopes([url]) == [url]

    def test_default_scopes(self, make_auth):
        """Should request Tasks plus basic profile by default."""
        auth = make_auth()
        assert auth.scopes == [SCOPES["tasks"], SCOPES["email"], SCOPES["profile"]]


class TestSignIn:
    @pytest.mark.asyncio
    async def test_missing_client_identity(self, make_auth, tmp_path):
        """Should fail before any listener or window is created."""
        servers = RecordingServerFactory()
        windows = windows_with(follow_redirect(code="auth-code"))
        auth = make_auth(
            auth_settings=Settings(client_id="", client_secret="", data_dir=tmp_path),
            server_factory=servers,
            window_factory=windows,
        )

        with pytest.raises(ConfigurationError) as exc_info:
            await auth.sign_in()

        assert exc_info.value.missing == ["GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET"]
        assert servers.servers == []
        assert windows.windows == []

    @pytest.mark.asyncio
    async def test_successful_sign_in(self, make_auth, store):
        """Should exchange the code, persist credentials and load the profile."""
        servers = RecordingServerFactory()
        windows = windows_with(follow_redirect(code="auth-code"))
        sessions = make_session_factory()
        auth = make_auth(server_factory=servers, window_factory=windows, session_factory=sessions)

        state = await auth.sign_in()

        assert state.to_dict() == {
            "isAuthenticated": True,
            "profile": {
                "email": "ada@example.com",
                "name": "Ada Lovelace",
                "picture": "https://example.com/ada.png",
            },
        }
        assert auth.status is AuthStatus.SIGNED_IN
        assert auth.is_authorized()

        saved = store.load()
        assert saved.access_token == "test-access-token"
        assert saved.refresh_token == "test-refresh-token"

        window = windows.windows[0]
        assert window.callback_status == 200
        assert window.close_calls >= 1
        server = servers.servers[0]
        assert not server.is_serving
        assert_port_closed(server.port)

    @pytest.mark.asyncio
    async def test_authorization_request(self, make_auth):
        """Should send PKCE S256, offline access and the loopback redirect."""
        servers = RecordingServerFactory()
        windows = windows_with(follow_redirect(code="auth-code"))
        sessions = make_session_factory()
        auth = make_auth(server_factory=servers, window_factory=windows, session_factory=sessions)

        await auth.sign_in()

        url = windows.windows[0].opened_url
        assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        query = parse_qs(urlparse(url).query)
        assert query["client_id"] == ["test-client-id"]
        assert query["response_type"] == ["code"]
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["code_challenge_method"] == ["S256"]
        assert query["redirect_uri"] == [servers.servers[0].redirect_uri]
        assert set(query["scope"][0].split()) == set(auth.scopes)

        fetch = sessions.sessions[0].fetch_token
        fetch.assert_called_once()
        kwargs = fetch.call_args.kwargs
        assert kwargs["code"] == "auth-code"
        assert kwargs["redirect_uri"] == servers.servers[0].redirect_uri
        assert kwargs["code_verifier"]
        assert query["code_challenge"] != [kwargs["code_verifier"]]

    @pytest.mark.asyncio
    async def test_plain_pkce(self, make_auth, tmp_path):
        """Should put the verifier itself in the URL when plain PKCE is configured."""
        windows = windows_with(follow_redirect(code="auth-code"))
        sessions = make_session_factory()
        auth = make_auth(
            auth_settings=Settings(
                client_id="test-client-id",
                client_secret="test-client-secret",
                data_dir=tmp_path,
                pkce_method="plain",
            ),
            window_factory=windows,
            session_factory=sessions,
        )

        await auth.sign_in()

        query = parse_qs(urlparse(windows.windows[0].opened_url).query)
        verifier = sessions.sessions[0].fetch_token.call_args.kwargs["code_verifier"]
        assert query["code_challenge_method"] == ["plain"]
        assert query["code_challenge"] == [verifier]

    @pytest.mark.asyncio
    async def test_window_closed_cancels(self, make_auth, store):
        """Should cancel the attempt and close the listener when the user closes the window."""
        servers = RecordingServerFactory()
        sessions = make_session_factory()
        auth = make_auth(
            server_factory=servers,
            window_factory=windows_with(close_window_on_open()),
            session_factory=sessions,
        )

        with pytest.raises(AuthorizationCancelled, match="cancelled"):
            await auth.sign_in()

        assert auth.status is AuthStatus.SIGNED_OUT
        assert not auth.get_auth_state().is_authenticated
        assert not store.exists()
        sessions.sessions[0].fetch_token.assert_not_called()
        assert_port_closed(servers.servers[0].port)

    @pytest.mark.asyncio
    async def test_provider_error(self, make_auth, store):
        """Should surface the error Google put in the redirect."""
        sessions = make_session_factory()
        auth = make_auth(
            window_factory=windows_with(follow_redirect(error="access_denied")),
            session_factory=sessions,
        )

        with pytest.raises(ProviderAuthError, match="access_denied") as exc_info:
            await auth.sign_in()

        assert exc_info.value.error == "access_denied"
        sessions.sessions[0].fetch_token.assert_not_called()
        assert not store.exists()

    @pytest.mark.asyncio
    async def test_missing_code(self, make_auth):
        """Should reject a redirect that carries neither code nor error."""
        auth = make_auth(window_factory=windows_with(follow_redirect()))

        with pytest.raises(ProviderAuthError, match="Missing authorization code"):
            await auth.sign_in()

    @pytest.mark.asyncio
    async def test_state_mismatch(self, make_auth):
        """Should reject a redirect answering a different request."""
        windows = windows_with(follow_redirect(code="auth-code", state="forged"))
        auth = make_auth(window_factory=windows)

        with pytest.raises(ProviderAuthError) as exc_info:
            await auth.sign_in()

        assert exc_info.value.error == "state_mismatch"

    @pytest.mark.asyncio
    async def test_rejected_code(self, make_auth, store):
        """Should map a token endpoint error to ProviderAuthError."""
        sessions = make_session_factory()

        def failing_factory(**kwargs):
            session = sessions(**kwargs)
            session.fetch_token.side_effect = OAuthError(
                error="invalid_grant", description="Bad code"
            )
            return session

        auth = make_auth(
            window_factory=windows_with(follow_redirect(code="auth-code")),
            session_factory=failing_factory,
        )

        with pytest.raises(ProviderAuthError, match="Bad code") as exc_info:
            await auth.sign_in()

        assert exc_info.value.error == "invalid_grant"
        assert not store.exists()

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, make_auth, store):
        """Should refuse a token response without offline access."""
        token = {k: v for k, v in TOKEN_RESPONSE.items() if k != "refresh_token"}
        auth = make_auth(
            window_factory=windows_with(follow_redirect(code="auth-code")),
            session_factory=make_session_factory(token_response=token),
        )

        with pytest.raises(MissingRefreshToken, match="refresh token"):
            await auth.sign_in()

        assert not store.exists()
        assert not auth.get_auth_state().is_authenticated

    @pytest.mark.asyncio
    async def test_profile_failure_discards_sign_in(self, make_auth, store):
        """Should not keep credentials whose profile cannot be fetched."""
        auth = make_auth(
            window_factory=windows_with(follow_redirect(code="auth-code")),
            service_builder=make_service_builder(userinfo_error=http_error(500)),
        )

        with pytest.raises(ProviderCommunicationError) as exc_info:
            await auth.sign_in()

        assert exc_info.value.status_code == 500
        assert not store.exists()
        assert auth.status is AuthStatus.SIGNED_OUT

    @pytest.mark.asyncio
    async def test_concurrent_sign_in_shares_attempt(self, make_auth):
        """Should run one transaction for overlapping sign-in calls."""
        servers = RecordingServerFactory()
        windows = windows_with(follow_redirect(code="auth-code"))
        auth = make_auth(server_factory=servers, window_factory=windows)

        first, second = await asyncio.gather(auth.sign_in(), auth.sign_in())

        assert first == second
        assert first.is_authenticated
        assert len(servers.servers) == 1
        assert len(windows.windows) == 1

    @pytest.mark.asyncio
    async def test_failed_reauth_keeps_existing_sign_in(self, make_auth, stored_credentials, store):
        """Should leave an earlier sign-in in place when a new attempt is cancelled."""
        auth = make_auth(window_factory=windows_with(close_window_on_open()))
        await auth.initialize()

        with pytest.raises(AuthorizationCancelled):
            await auth.sign_in()

        assert auth.status is AuthStatus.SIGNED_IN
        assert auth.get_auth_state().is_authenticated
        assert store.load().refresh_token == "stored-refresh-token"

    @pytest.mark.asyncio
    async def test_cancelled_during_profile_fetch(self, make_auth, store):
        """Should drop the new credentials when the attempt is cancelled after the exchange."""
        started = threading.Event()
        release = threading.Event()

        def slow_userinfo():
            started.set()
            release.wait(5)
            return USERINFO

        auth = make_auth(
            window_factory=windows_with(follow_redirect(code="auth-code")),
            service_builder=make_service_builder(userinfo_execute=slow_userinfo),
        )
        caller = asyncio.create_task(auth.sign_in())
        await asyncio.to_thread(started.wait, 5)
        assert store.exists()

        try:
            await auth.aclose()
        finally:
            release.set()

        with pytest.raises(asyncio.CancelledError):
            await caller
        assert auth.status is AuthStatus.SIGNED_OUT
        assert auth.get_auth_state().to_dict() == {"isAuthenticated": False}
        assert not store.exists()

    @pytest.mark.asyncio
    async def test_cancelled_caller_leaves_shared_attempt_running(self, make_auth):
        """Should finish the attempt for the remaining caller when another one goes away."""
        gate = asyncio.Event()
        follow = follow_redirect(code="auth-code")

        async def on_open(window, url):
            await gate.wait()
            await follow(window, url)

        windows = windows_with(on_open)
        auth = make_auth(window_factory=windows)
        first = asyncio.create_task(auth.sign_in())
        second = asyncio.create_task(auth.sign_in())
        while not windows.windows:
            await asyncio.sleep(0.01)

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        gate.set()

        state = await asyncio.wait_for(second, timeout=5)
        assert state.is_authenticated
        assert auth.status is AuthStatus.SIGNED_IN
        assert len(windows.windows) == 1


class TestSignOut:
    @pytest.mark.asyncio
    async def test_sign_out(self, make_auth, stored_credentials, store):
        """Should revoke remotely, delete the record and clear state."""
        auth = make_auth()
        await auth.initialize()

        with patch("gtasks_desktop.google.oauth.requests.post") as post:
            post.return_value = MagicMock(status_code=200)
            await auth.sign_out()

        post.assert_called_once()
        assert post.call_args.kwargs["params"] == {"token": "stored-refresh-token"}
        assert not store.exists()
        assert auth.get_auth_state().to_dict() == {"isAuthenticated": False}
        assert auth.status is AuthStatus.SIGNED_OUT

    @pytest.mark.asyncio
    async def test_sign_out_twice(self, make_auth, stored_credentials, store):
        """Should be a no-op the second time."""
        auth = make_auth()
        await auth.initialize()

        with patch("gtasks_desktop.google.oauth.requests.post") as post:
            post.return_value = MagicMock(status_code=200)
            await auth.sign_out()
            await auth.sign_out()

        assert post.call_count == 1
        assert not store.exists()

    @pytest.mark.asyncio
    async def test_revoke_failure_still_signs_out(self, make_auth, stored_credentials, store):
        """Should sign out locally when the revoke request fails."""
        import requests

        auth = make_auth()
        await auth.initialize()

        with patch("gtasks_desktop.google.oauth.requests.post") as post:
            post.side_effect = requests.ConnectionError("offline")
            await auth.sign_out()

        assert not store.exists()
        assert not auth.get_auth_state().is_authenticated


class TestInitialize:
    @pytest.mark.asyncio
    async def test_no_stored_credentials(self, make_auth):
        """Should stay signed out when nothing is stored."""
        auth = make_auth()
        state = await auth.initialize()

        assert state.to_dict() == {"isAuthenticated": False}
        assert auth.status is AuthStatus.SIGNED_OUT

    @pytest.mark.asyncio
    async def test_restores_sign_in(self, make_auth, stored_credentials):
        """Should restore the stored record and fetch the profile."""
        builder = make_service_builder()
        auth = make_auth(service_builder=builder)

        state = await auth.initialize()

        assert state.is_authenticated
        assert state.profile.email == "ada@example.com"
        assert auth.status is AuthStatus.SIGNED_IN
        assert builder.calls[0][:2] == ("oauth2", "v2")
        assert builder.calls[0][2].token == "stored-access-token"

    @pytest.mark.asyncio
    async def test_profile_name_falls_back_to_email(self, make_auth, stored_credentials):
        auth = make_auth(service_builder=make_service_builder(userinfo={"email": "x@example.com"}))

        state = await auth.initialize()

        assert state.profile.to_dict() == {"email": "x@example.com", "name": "x@example.com"}

    @pytest.mark.asyncio
    async def test_profile_failure_keeps_record(self, make_auth, stored_credentials, store):
        """Should stay signed out but keep the record when Google is unreachable."""
        auth = make_auth(service_builder=make_service_builder(userinfo_error=http_error(503)))

        state = await auth.initialize()

        assert not state.is_authenticated
        assert store.exists()

    @pytest.mark.asyncio
    async def test_rejected_refresh_deletes_record(self, make_auth, store):
        """Should delete an expired record whose refresh token Google rejects."""
        store.save(
            Credentials(
                access_token="old",
                refresh_token="revoked",
                expires_at=time.time() - 10,
                scope=TOKEN_RESPONSE["scope"],
            )
        )

        def reject(kwargs):
            return OAuthError(error="invalid_grant", description="Token has been revoked.")

        auth = make_auth(session_factory=make_session_factory(refresh_side_effect=reject))

        state = await auth.initialize()

        assert not state.is_authenticated
        assert not store.exists()


class TestRefresh:
    @pytest.fixture
    def expired_credentials(self, store):
        credentials = Credentials(
            access_token="expired-access-token",
            refresh_token="stored-refresh-token",
            expires_at=time.time() - 10,
            scope=TOKEN_RESPONSE["scope"],
            extra={"client_note": "kept"},
        )
        store.save(credentials)
        return credentials

    @staticmethod
    def refresh_with(new_token):
        """Refresh side effect that reports ``new_token`` through update_token."""

        def side_effect(kwargs):
            def refresh(url, refresh_token=None, **_):
                kwargs["update_token"](dict(new_token), refresh_token=refresh_token)
                return dict(new_token)

            return refresh

        return side_effect

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_and_persisted(
        self, make_auth, store, expired_credentials
    ):
        """Should refresh on demand and keep the refresh token Google left out."""
        sessions = make_session_factory(
            refresh_side_effect=self.refresh_with(
                {"access_token": "fresh-access-token", "expires_in": 3600, "token_type": "Bearer"}
            )
        )
        auth = make_auth(session_factory=sessions)
        await auth.initialize()

        credentials = await auth.get_credentials()
        await auth.aclose()

        assert credentials.token == "fresh-access-token"
        assert auth.refresh_count == 1
        saved = store.load()
        assert saved.access_token == "fresh-access-token"
        assert saved.refresh_token == "stored-refresh-token"
        assert saved.extra == {"client_note": "kept"}
        assert not saved.is_expired()

    @pytest.mark.asyncio
    async def test_refresh_for_replaced_sign_in_ignored(self, make_auth, store, stored_credentials):
        """Should ignore refresh results for a refresh token that is no longer current."""
        auth = make_auth()
        await auth.initialize()

        auth._on_token_refreshed({"access_token": "other"}, refresh_token="someone-else")
        await auth.aclose()

        assert auth.credentials.access_token == "stored-access-token"
        assert store.load().access_token == "stored-access-token"

    @pytest.mark.asyncio
    async def test_refresh_after_sign_out_ignored(self, make_auth, store):
        """Should not resurrect a record after sign-out."""
        auth = make_auth()

        auth._on_token_refreshed({"access_token": "late"}, refresh_token="stored-refresh-token")
        await auth.aclose()

        assert auth.credentials is None
        assert not store.exists()

    @pytest.mark.asyncio
    async def test_refresh_write_failure_logged(self, make_auth, stored_credentials, caplog):
        """Should log, not raise, when a refreshed token cannot be written."""
        auth = make_auth()
        await auth.initialize()
        auth.store.save = MagicMock(side_effect=OSError("disk full"))

        auth._on_token_refreshed({"access_token": "fresh"}, refresh_token="stored-refresh-token")
        await auth.aclose()

        assert auth.credentials.access_token == "fresh"
        assert "Failed to persist refreshed Google credentials" in caplog.text

    @pytest.mark.asyncio
    async def test_refresh_transport_error(self, make_auth, store, expired_credentials):
        """Should keep the record when the refresh cannot reach Google."""
        import requests

        def offline(kwargs):
            return requests.ConnectionError("offline")

        auth = make_auth(session_factory=make_session_factory(refresh_side_effect=offline))
        auth._set_credentials(expired_credentials)

        with pytest.raises(ProviderCommunicationError):
            await auth.get_credentials()

        assert store.exists()
        assert auth.credentials is not None

    @pytest.mark.asyncio
    async def test_no_refresh_token(self, make_auth, store):
        """Should sign out when an expired record has no refresh token."""
        credentials = Credentials(access_token="old", expires_at=time.time() - 10)
        store.save(credentials)
        auth = make_auth()
        auth._set_credentials(credentials)

        with pytest.raises(NotAuthenticated):
            await auth.get_credentials()

        assert not store.exists()
        assert auth.credentials is None

    @pytest.mark.asyncio
    async def test_not_signed_in(self, make_auth):
        auth = make_auth()
        with pytest.raises(NotAuthenticated, match="Not signed in"):
            await auth.get_credentials()


class TestTokenInfo:
    def test_get_token_info_no_token(self, make_auth):
        """Should return no_token status when no token exists."""
        assert make_auth().get_token_info() == {"status": "no_token"}

    @pytest.mark.asyncio
    async def test_get_token_info_with_token(self, make_auth, stored_credentials):
        """Should return token info when token exists."""
        auth = make_auth()
        await auth.initialize()

        info = auth.get_token_info()
        assert info["status"] == "valid"
        assert info["has_refresh_token"] is True
        assert len(info["scopes"]) == 3
        assert info["refresh_count"] == 0
