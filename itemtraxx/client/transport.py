from __future__ import annotations

import asyncio
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar

import httpx

from itemtraxx.client.errors import ClientError, error_from_response
from itemtraxx.config import Settings
from itemtraxx.logging import get_logger
from itemtraxx.service.errors import ErrorKind

logger = get_logger(__name__)

T = TypeVar("T")

TeardownListener = Callable[[ClientError], Awaitable[None]]

# Kinds that end the local session
TEARDOWN_KINDS = frozenset({ErrorKind.SESSION_REVOKED, ErrorKind.TENANT_DISABLED})
RETRYABLE_KINDS = frozenset({ErrorKind.TIMEOUT, ErrorKind.TRANSPORT})


class TokenSource(Protocol):
    @property
    def access_token(self) -> Optional[str]: ...

    async def refresh_access_token(self) -> Optional[str]: ...


def _discard_orphan(task: asyncio.Future) -> None:
    # The caller stopped waiting; consume the outcome so it is not reported
    if not task.cancelled():
        task.exception()


async def call_with_token_refresh(
    attempt: Callable[[Optional[str]], Awaitable[T]],
    refresh: Callable[[], Awaitable[Optional[str]]],
    token: Optional[str],
) -> T:
    """Run ``attempt(token)``; on an invalid-token 401, refresh and replay once.

    The replay's outcome is returned or raised unmodified. When the refresh
    yields no token the original error is raised.
    """
    try:
        return await attempt(token)
    except ClientError as exc:
        if token is None or not exc.is_invalid_token:
            raise
        first_error = exc

    try:
        new_token = await refresh()
    except ClientError as refresh_exc:
        logger.warning("token_refresh_failed", kind=refresh_exc.kind.value)
        new_token = None
    if not new_token:
        raise first_error
    logger.info("token_refreshed_replaying")
    return await attempt(new_token)


class EdgeClient:
    """HTTP client for the ItemTraxx API with a hard deadline per call.

    Idempotent reads are retried on timeout or transport failure up to
    ``read_retry_attempts`` total attempts with a fixed delay. A call is a
    read when ``idempotent`` says so; left unset, only GET counts. Errors of kind
    ``session_revoked`` or ``tenant_disabled`` notify teardown listeners
    before being raised.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 10.0,
        read_retry_attempts: int = 2,
        read_retry_delay_seconds: float = 0.25,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.read_retry_attempts = max(1, read_retry_attempts)
        self.read_retry_delay_seconds = read_retry_delay_seconds
        self._client = httpx.AsyncClient(base_url=self.base_url, transport=transport)
        self._teardown_listeners: List[TeardownListener] = []

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "EdgeClient":
        return cls(
            settings.api_base_url,
            timeout_seconds=settings.edge_function_timeout_seconds,
            read_retry_attempts=settings.read_retry_attempts,
            read_retry_delay_seconds=settings.read_retry_delay_seconds,
            **kwargs,
        )

    def add_teardown_listener(self, listener: TeardownListener) -> None:
        self._teardown_listeners.append(listener)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send_once(
        self,
        method: str,
        path: str,
        *,
        json: Any,
        token: Optional[str],
        headers: Optional[Dict[str, str]],
    ) -> httpx.Response:
        request_id = str(uuid.uuid4())
        request_headers = {"X-Request-ID": request_id, **(headers or {})}
        if token:
            request_headers["Authorization"] = f"Bearer {token}"
        task = asyncio.ensure_future(
            self._client.request(method, path, json=json, headers=request_headers)
        )
        try:
            return await asyncio.wait_for(asyncio.shield(task), self.timeout_seconds)
        except asyncio.TimeoutError:
            task.add_done_callback(_discard_orphan)
            logger.warning("edge_request_timeout", method=method, path=path, request_id=request_id)
            raise ClientError(
                ErrorKind.TIMEOUT, "Request timed out. Please try again.", request_id=request_id
            ) from None
        except httpx.TimeoutException as exc:
            raise ClientError(
                ErrorKind.TIMEOUT, "Request timed out. Please try again.", request_id=request_id
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "edge_request_transport_error",
                method=method,
                path=path,
                request_id=request_id,
                error=str(exc),
            )
            raise ClientError(
                ErrorKind.TRANSPORT, "Network request failed.", request_id=request_id
            ) from exc

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        token: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        idempotent: Optional[bool] = None,
    ) -> Any:
        """Send one logical call and return the envelope's ``data``."""
        method = method.upper()
        if idempotent is None:
            idempotent = method == "GET"
        attempts = self.read_retry_attempts if idempotent else 1
        for attempt in range(1, attempts + 1):
            try:
                response = await self._send_once(
                    method, path, json=json, token=token, headers=headers
                )
                break
            except ClientError as exc:
                if attempt >= attempts or exc.kind not in RETRYABLE_KINDS:
                    raise
                logger.info(
                    "edge_read_retry",
                    path=path,
                    attempt=attempt,
                    kind=exc.kind.value,
                )
                await asyncio.sleep(self.read_retry_delay_seconds)

        if not response.is_success:
            error = error_from_response(response)
            if error.kind in TEARDOWN_KINDS:
                await self._notify_teardown(error)
            raise error

        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, dict) and "status" in body and "data" in body:
            return body["data"]
        return body

    async def call(
        self,
        method: str,
        path: str,
        *,
        credentials: TokenSource,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        idempotent: Optional[bool] = None,
    ) -> Any:
        """Authenticated call with one refresh-and-replay on an invalid token."""

        async def attempt(token: Optional[str]) -> Any:
            return await self.request(
                method, path, json=json, token=token, headers=headers, idempotent=idempotent
            )

        return await call_with_token_refresh(
            attempt, credentials.refresh_access_token, credentials.access_token
        )

    async def _notify_teardown(self, error: ClientError) -> None:
        logger.info("edge_session_teardown", kind=error.kind.value, request_id=error.request_id)
        for listener in list(self._teardown_listeners):
            await listener(error)
