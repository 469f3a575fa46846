"""Shared fixtures and fakes for the desktop client tests."""

import asyncio
import time
import urllib.request
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlencode, urlparse

import pytest
from authlib.integrations.requests_client import OAuth2Session

from gtasks_desktop.config import Settings
from gtasks_desktop.google import CredentialStore, GoogleAuthService, LoopbackCallbackServer
from gtasks_desktop.google.store import Credentials

TOKEN_RESPONSE = {
    "access_token": "test-access-token",
    "refresh_token": "test-refresh-token",
    "expires_in": 3599,
    "scope": (
        "https://www.googleapis.com/auth/tasks "
        "https://www.googleapis.com/auth/userinfo.email "
        "https://www.googleapis.com/auth/userinfo.profile"
    ),
    "token_type": "Bearer",
}

USERINFO = {
    "email": "ada@example.com",
    "name": "Ada Lovelace",
    "picture": "https://example.com/ada.png",
}


class FakeConsentWindow:
    """Consent window stand-in that can follow the redirect or be closed by the 'user'."""

    def __init__(self, on_open=None):
        self.on_open = on_open
        self.opened_url = None
        self.close_calls = 0
        self._closed = None

    async def open(self, url):
        self._closed = asyncio.get_running_loop().create_future()
        self.opened_url = url
        if self.on_open is not None:
            await self.on_open(self, url)

    async def wait_closed(self):
        await self._closed

    def user_close(self):
        if not self._closed.done():
            self._closed.set_result(None)

    async def close(self):
        self.close_calls += 1
        if self._closed is not None and not self._closed.done():
            self._closed.cancel()


def redirect_params(url):
    """Extract redirect_uri and state from an authorization URL."""
    query = parse_qs(urlparse(url).query)
    return query["redirect_uri"][0], query["state"][0]


def http_get(url):
    """GET a URL and return the status code."""
    with urllib.request.urlopen(url, timeout=5) as resp:
        return resp.status


def follow_redirect(**params):
    """on_open hook: act like Google redirecting the browser to the callback."""

    async def on_open(window, url):
        redirect_uri, state = redirect_params(url)
        query = {"state": state, **params}
        window.callback_status = await asyncio.to_thread(
            http_get, f"{redirect_uri}?{urlencode(query)}"
        )

    return on_open


def close_window_on_open():
    """on_open hook: the user closes the window straight away."""

    async def on_open(window, url):
        asyncio.get_running_loop().call_soon(window.user_close)

    return on_open


class RecordingServerFactory:
    """Creates real loopback servers and remembers them."""

    def __init__(self):
        self.servers = []

    def __call__(self):
        server = LoopbackCallbackServer()
        self.servers.append(server)
        return server


def make_session_factory(token_response=None, refresh_side_effect=None):
    """Real Authlib sessions with the network calls replaced."""
    sessions = []

    def factory(**kwargs):
        session = OAuth2Session(**kwargs)
        session.fetch_token = MagicMock(return_value=dict(token_response or TOKEN_RESPONSE))
        if refresh_side_effect is not None:
            session.refresh_token = MagicMock(side_effect=refresh_side_effect(kwargs))
        sessions.append(session)
        return session

    factory.sessions = sessions
    return factory


def make_service_builder(
    userinfo=None, tasks_service=None, userinfo_error=None, userinfo_execute=None
):
    """Google API discovery builder returning mocks for oauth2 and tasks."""
    calls = []

    def builder(service_name, version, credentials=None, cache_discovery=True):
        calls.append((service_name, version, credentials))
        if service_name == "oauth2":
            service = MagicMock()
            execute = service.userinfo.return_value.get.return_value.execute
            if userinfo_execute is not None:
                execute.side_effect = userinfo_execute
            elif userinfo_error is not None:
                execute.side_effect = userinfo_error
            else:
                execute.return_value = USERINFO if userinfo is None else userinfo
            return service
        return tasks_service or MagicMock()

    builder.calls = calls
    return builder


@pytest.fixture
def settings(tmp_path):
    return Settings(client_id="test-client-id", client_secret="test-client-secret", data_dir=tmp_path)


@pytest.fixture
def store(settings):
    return CredentialStore(settings.token_path)


@pytest.fixture
def stored_credentials(store):
    credentials = Credentials(
        access_token="stored-access-token",
        refresh_token="stored-refresh-token",
        expires_at=time.time() + 3600,
        scope=TOKEN_RESPONSE["scope"],
    )
    store.save(credentials)
    return credentials


@pytest.fixture
def make_auth(settings, store):
    """Build a GoogleAuthService wired to fakes; keyword arguments override them."""
    created = []

    def factory(auth_settings=None, **overrides):
        kwargs = {
            "store": store,
            "server_factory": RecordingServerFactory(),
            "window_factory": lambda: FakeConsentWindow(),
            "session_factory": make_session_factory(),
            "service_builder": make_service_builder(),
        }
        kwargs.update(overrides)
        auth = GoogleAuthService(auth_settings or settings, **kwargs)
        created.append(auth)
        return auth

    yield factory

    for auth in created:
        auth._writer.shutdown(wait=True)
