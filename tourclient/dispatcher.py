"""
Request Dispatcher for the TensorTours client.

This module issues backend calls: it consults the response cache, collapses
identical concurrent calls into one network request, attaches the ID token,
and retries exactly once after a forced refresh when the backend rejects the
token.
"""

import asyncio
import json
import logging
import time
import uuid
from typing import Optional, Dict, Any, Callable, Tuple

import aiohttp
from aiohttp import ClientSession, ClientTimeout

from tourclient.auth.session_manager import SessionManager
from tourclient.response_cache import ResponseCache, CacheCategory
from tourshared.exceptions import (
    TourClientError, AuthenticationError, NoSessionError, RefreshRejectedError, RequestFailedError,
    UnreachableError, ValidationError, ErrorCode
)
from tourshared.logging_config import OperationLogger
from tourshared.models import ApiRequest, OperationKind

logger = logging.getLogger(__name__)

UNAUTHORIZED_STATUSES = (401, 403)

RequestBuilder = Callable[[Optional[str]], ApiRequest]


class RequestDispatcher:
    """
    Dispatches backend operations with caching, deduplication and one retry.

    Pending operations are shared tasks keyed by signature; every caller with
    the same signature awaits the same task and receives the same result or
    error. Entries are removed once the task settles.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        response_cache: Optional[ResponseCache] = None,
        base_url: str = "https://api.tensortours.com",
        timeout: float = 30.0,
        operation_logger: Optional[OperationLogger] = None
    ):
        self.session_manager = session_manager
        self.response_cache = response_cache or ResponseCache()
        self.base_url = base_url.rstrip('/')
        self.timeout = ClientTimeout(total=timeout)
        self._operations = operation_logger or OperationLogger()

        self._session: Optional[ClientSession] = None
        self._pending: Dict[str, asyncio.Task] = {}

        logger.info(f"Request dispatcher initialized for {self.base_url}")

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> None:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            self._session = ClientSession(
                timeout=self.timeout,
                headers={'User-Agent': 'TensorToursClient/1.0'}
            )

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def dispatch(
        self,
        signature: Optional[str],
        operation_kind: OperationKind,
        requires_auth: bool,
        build: RequestBuilder,
        *,
        cache_category: Optional[CacheCategory] = None,
        origin: Optional[Tuple[float, float]] = None
    ) -> Any:
        """
        Run a backend operation.

        Args:
            signature: Canonical key for deduplication; None disables it
            operation_kind: Kind of operation, for logging
            requires_auth: Whether the ID token must be attached
            build: Builds the request from the token (None when unauthenticated)
            cache_category: Response cache category, for cacheable operations
            origin: (lat, lng) the request is anchored to, for cacheable operations

        Returns:
            The decoded JSON payload

        Raises:
            NoSessionError: Authentication required but no session exists
            RefreshRejectedError: The backend rejected the freshly refreshed token
            RequestFailedError: Non-2xx response
            UnreachableError: No response received
            ValidationError: The response body is not JSON
        """
        cacheable = cache_category is not None and origin is not None
        if cacheable:
            cached = self.response_cache.lookup(cache_category, origin[0], origin[1])
            if cached is not None:
                return cached

        if signature is not None:
            pending = self._pending.get(signature)
            if pending is not None:
                logger.debug(f"Joining in-flight request: {signature}")
                return await asyncio.shield(pending)

        task = asyncio.create_task(
            self._execute(signature, operation_kind, requires_auth, build, cache_category, origin)
        )
        if signature is not None:
            self._pending[signature] = task
            task.add_done_callback(lambda t: self._operation_settled(signature, t))
        return await asyncio.shield(task)

    def _operation_settled(self, signature: str, task: asyncio.Task) -> None:
        if self._pending.get(signature) is task:
            del self._pending[signature]
        if not task.cancelled():
            # Mark the error retrieved even if every waiter went away
            task.exception()

    async def _execute(
        self,
        signature: Optional[str],
        operation_kind: OperationKind,
        requires_auth: bool,
        build: RequestBuilder,
        cache_category: Optional[CacheCategory],
        origin: Optional[Tuple[float, float]]
    ) -> Any:
        operation_id = signature or f"{operation_kind.value}:{uuid.uuid4()}"
        started = time.monotonic()
        self._operations.log_operation_start(operation_kind.value, operation_id,
                                             context={'requires_auth': requires_auth})
        try:
            payload = await self._call_with_retry(requires_auth, build)

            if cache_category is not None and origin is not None:
                self.response_cache.store(cache_category, operation_id, origin[0], origin[1], payload)

            self._operations.log_operation_complete(operation_id, True, time.monotonic() - started)
            return payload

        except TourClientError as e:
            self._operations.log_operation_complete(
                operation_id, False, time.monotonic() - started,
                result_summary=f"{e.error_code.value}: {e.message}"
            )
            raise

    async def _token(self) -> str:
        result = await self.session_manager.get_token()
        if not result.ok:
            raise self._auth_error(result.error)
        return result.token

    @staticmethod
    def _auth_error(error: Optional[TourClientError]) -> AuthenticationError:
        if error is None:
            return NoSessionError()
        if isinstance(error, AuthenticationError):
            return error
        # Storage or transport failure while looking up the token
        return NoSessionError(f"No token available: {error.message}", cause=error)

    async def _call_with_retry(self, requires_auth: bool, build: RequestBuilder) -> Any:
        token = await self._token() if requires_auth else None
        status, body = await self._send(build(token), token)

        if requires_auth and status in UNAUTHORIZED_STATUSES:
            logger.info(f"Backend returned {status}; forcing token refresh and retrying once")
            refreshed = await self.session_manager.refresh(force=True)
            if not refreshed.ok:
                raise self._auth_error(refreshed.error)

            status, body = await self._send(build(refreshed.token), refreshed.token)
            if status in UNAUTHORIZED_STATUSES:
                await self.session_manager.invalidate()
                raise RefreshRejectedError(
                    f"Request still unauthorized ({status}) after token refresh",
                    context={'status': status}
                )

        return self._decode(status, body)

    async def _send(self, request: ApiRequest, token: Optional[str]) -> Tuple[int, str]:
        """
        Perform one HTTP exchange.

        Returns:
            (status, body text)
        """
        await self._ensure_session()

        url = f"{(request.base_url or self.base_url).rstrip('/')}/{request.path.lstrip('/')}"
        headers = {}
        if request.json is not None:
            headers['Content-Type'] = 'application/json'
        if token:
            # Raw ID token, no Bearer prefix
            headers['Authorization'] = token

        logger.debug(f"Making {request.method} request to {url}")

        try:
            async with self._session.request(
                method=request.method,
                url=url,
                json=request.json,
                params=request.params,
                headers=headers
            ) as response:
                return response.status, await response.text()
        except asyncio.TimeoutError as e:
            raise UnreachableError(f"Request to {url} timed out",
                                   error_code=ErrorCode.NETWORK_TIMEOUT, cause=e)
        except aiohttp.ClientError as e:
            raise UnreachableError(f"Cannot reach {url}: {e}", cause=e)

    @staticmethod
    def _decode(status: int, body: str) -> Any:
        try:
            payload = json.loads(body) if body else None
            is_json = True
        except json.JSONDecodeError:
            payload = None
            is_json = False

        if 200 <= status < 300:
            if not is_json or payload is None:
                raise ValidationError(f"Expected JSON response body (status {status})")
            return payload

        server_message = None
        if isinstance(payload, dict):
            server_message = payload.get('message') or payload.get('error') or payload.get('detail')
            if server_message is not None and not isinstance(server_message, str):
                server_message = str(server_message)

        message = f"Request failed with status {status}"
        if server_message:
            message += f": {server_message}"
        raise RequestFailedError(message, status=status, server_message=server_message)
