"""
Shared fixtures for the TensorTours client test suite.

Provides an in-memory credential store, a scriptable identity provider, a
controllable clock and an in-process fake backend served by aiohttp.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from jose import jwt

from tourclient.auth.session_manager import SessionManager
from tourclient.dispatcher import RequestDispatcher
from tourclient.response_cache import ResponseCache
from tourshared.exceptions import IdentityProviderError
from tourshared.interfaces import ICredentialStore, IIdentityProvider
from tourshared.models import Session, ProviderSession

HOUR_MILLIS = 60 * 60 * 1000
MINUTE_MILLIS = 60 * 1000


def make_jwt(claims: Dict[str, Any]) -> str:
    """Test JWT signed with a throwaway key; only the claims matter."""
    return jwt.encode(claims, "test-secret", algorithm="HS256")


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: Optional[int] = None):
        self.now = start if start is not None else int(time.time() * 1000)

    def __call__(self) -> int:
        return self.now

    def advance(self, millis: int) -> None:
        self.now += millis


class InMemoryCredentialStore(ICredentialStore):
    """Credential store that keeps the serialized session in memory."""

    def __init__(self, session: Optional[Session] = None):
        self.data = session.to_dict() if session else None
        self.save_calls = 0
        self.clear_calls = 0

    async def save(self, session: Session) -> None:
        await asyncio.sleep(0)
        self.save_calls += 1
        self.data = session.to_dict()

    async def load(self) -> Optional[Session]:
        await asyncio.sleep(0)
        return Session.from_dict(self.data) if self.data else None

    async def clear(self) -> None:
        await asyncio.sleep(0)
        self.clear_calls += 1
        self.data = None


class ScriptedIdentityProvider(IIdentityProvider):
    """
    Identity provider whose refresh behaviour is set per test.

    ``refresh_results`` is consumed in order; each item is a ProviderSession
    to return or an exception to raise. ``refresh_gate`` can hold refreshes
    until the test releases it. Like the Cognito provider, a successful
    sign-in or refresh leaves a live handle that ``get_current_session``
    refreshes through.
    """

    def __init__(self):
        self.refresh_calls: List[Dict[str, Any]] = []
        self.refresh_results: List[Any] = []
        self.refresh_gate: Optional[asyncio.Event] = None
        self.sign_in_result: Any = None
        self.sign_out_calls = 0
        self.sign_out_error: Optional[Exception] = None
        self.live = False
        self.current: Optional[ProviderSession] = None
        self.account_calls: List[tuple] = []

    async def sign_in(self, username: str, password: str) -> ProviderSession:
        if isinstance(self.sign_in_result, Exception):
            raise self.sign_in_result
        self.live = True
        self.current = self.sign_in_result
        return self.sign_in_result

    async def sign_up(self, username: str, password: str, attributes: Dict[str, str]) -> Dict:
        self.account_calls.append(('sign_up', username, attributes))
        return {'UserConfirmed': False}

    async def confirm_sign_up(self, username: str, code: str) -> None:
        self.account_calls.append(('confirm_sign_up', username, code))

    async def resend_confirmation_code(self, username: str) -> Dict:
        self.account_calls.append(('resend_confirmation_code', username))
        return {}

    async def forgot_password(self, username: str) -> Dict:
        self.account_calls.append(('forgot_password', username))
        return {}

    async def confirm_new_password(self, username: str, code: str, new_password: str) -> None:
        self.account_calls.append(('confirm_new_password', username, code))

    async def delete_account(self, access_token: Optional[str] = None) -> None:
        self.account_calls.append(('delete_account', access_token))
        self.live = False
        self.current = None

    async def get_current_session(self) -> Optional[ProviderSession]:
        if not self.live or self.current is None or not self.current.refresh_token:
            return None
        return await self.refresh_session(self.current.username, self.current.refresh_token)

    async def refresh_session(self, username: Optional[str], refresh_token: str) -> ProviderSession:
        self.refresh_calls.append({'username': username, 'refresh_token': refresh_token})
        if self.refresh_gate is not None:
            await self.refresh_gate.wait()
        else:
            await asyncio.sleep(0)
        if not self.refresh_results:
            raise IdentityProviderError("Refresh Token has expired", provider_code='NotAuthorizedException')
        result = self.refresh_results.pop(0)
        if isinstance(result, Exception):
            raise result
        self.current = replace(result, refresh_token=result.refresh_token or refresh_token)
        self.live = True
        return self.current

    async def sign_out(self) -> None:
        self.sign_out_calls += 1
        self.live = False
        self.current = None
        if self.sign_out_error is not None:
            raise self.sign_out_error

    def has_live_session(self) -> bool:
        return self.live


@dataclass
class RecordedRequest:
    method: str
    path: str
    headers: Dict[str, str]
    query: Dict[str, str]
    body: Any


class FakeBackend:
    """
    In-process stand-in for the TensorTours backend.

    Handlers are registered per path and receive the aiohttp request and the
    decoded JSON body. Unregistered paths answer 404.
    """

    def __init__(self):
        self.requests: List[RecordedRequest] = []
        self.handlers: Dict[str, Callable] = {}
        self.url = ""
        self.app = web.Application()
        self.app.router.add_route('*', '/{tail:.*}', self._handle)

    async def _handle(self, request: web.Request) -> web.StreamResponse:
        body = None
        if request.can_read_body:
            text = await request.text()
            try:
                body = await request.json() if text else None
            except ValueError:
                body = text

        self.requests.append(RecordedRequest(
            method=request.method,
            path=request.path,
            headers=dict(request.headers),
            query=dict(request.query),
            body=body,
        ))

        handler = self.handlers.get(request.path)
        if handler is None:
            return web.json_response({'message': 'Not Found'}, status=404)
        result = handler(request, body)
        if inspect.isawaitable(result):
            result = await result
        return result

    def route(self, path: str, handler: Callable) -> None:
        self.handlers[path] = handler

    def calls(self, path: str) -> List[RecordedRequest]:
        return [r for r in self.requests if r.path == path]


def make_session(clock: FakeClock, expires_in_millis: int = HOUR_MILLIS,
                 id_token: str = "id-token-1", refresh_token: Optional[str] = "refresh-1",
                 username: Optional[str] = "alice") -> Session:
    return Session(
        id_token=id_token,
        expires_at_millis=clock() + expires_in_millis,
        refresh_token=refresh_token,
        username=username,
        access_token="access-1",
    )


def make_provider_session(clock: FakeClock, id_token: str = "id-token-2",
                          expires_in_millis: int = HOUR_MILLIS,
                          refresh_token: Optional[str] = None) -> ProviderSession:
    return ProviderSession(
        id_token=id_token,
        access_token="access-2",
        refresh_token=refresh_token,
        expires_at_millis=clock() + expires_in_millis,
        username="alice",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def credential_store():
    return InMemoryCredentialStore()


@pytest.fixture
def identity_provider():
    return ScriptedIdentityProvider()


@pytest.fixture
def session_manager(credential_store, identity_provider, clock):
    return SessionManager(
        credential_store,
        identity_provider,
        refresh_buffer_seconds=300,
        auto_refresh=False,
        clock=clock
    )


@pytest_asyncio.fixture
async def backend():
    fake = FakeBackend()
    server = TestServer(fake.app)
    await server.start_server()
    fake.url = str(server.make_url('')).rstrip('/')
    yield fake
    await server.close()


@pytest_asyncio.fixture
async def dispatcher(session_manager, backend, clock):
    dispatcher = RequestDispatcher(
        session_manager,
        ResponseCache(ttl_seconds=300, max_distance_meters=300, clock=clock),
        base_url=backend.url,
        timeout=5.0
    )
    yield dispatcher
    await dispatcher.close()
    await session_manager.shutdown()
