from __future__ import annotations

from typing import Any, Optional

import httpx

from itemtraxx.service.errors import ErrorKind, user_message

_STATUS_TO_KIND = {
    400: ErrorKind.VALIDATION,
    401: ErrorKind.UNAUTHENTICATED,
    403: ErrorKind.ACCESS_DENIED,
    404: ErrorKind.NOT_FOUND,
    409: ErrorKind.CONFLICT,
    422: ErrorKind.VALIDATION,
    429: ErrorKind.RATE_LIMITED,
    503: ErrorKind.UNAVAILABLE,
}


class ClientError(Exception):
    """A failed backend call, classified into one :class:`ErrorKind`."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str = "",
        *,
        status: int = 0,
        retry_after_seconds: Optional[int] = None,
        request_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message
        self.status = status
        self.retry_after_seconds = retry_after_seconds
        self.request_id = request_id
        self.reason = reason

    @property
    def user_message(self) -> str:
        return user_message(self.kind, self.message)

    @property
    def is_invalid_token(self) -> bool:
        """True for the 401 that asks the caller to refresh and replay once."""
        if self.status != 401 or self.kind is not ErrorKind.UNAUTHENTICATED:
            return False
        return self.reason == "invalid_token" or "invalid jwt" in self.message.lower()

    def __repr__(self) -> str:
        return (
            f"ClientError(kind={self.kind.value!r}, status={self.status}, "
            f"request_id={self.request_id!r})"
        )


def _kind_for(status: int, code: Optional[str]) -> ErrorKind:
    if code:
        try:
            return ErrorKind(code)
        except ValueError:
            pass
    if status >= 500 and status != 503:
        return ErrorKind.SERVER
    return _STATUS_TO_KIND.get(status, ErrorKind.SERVER)


def _retry_after(body: dict, response: httpx.Response) -> Optional[int]:
    value: Any = body.get("retry_after_seconds")
    if value is None:
        value = response.headers.get("Retry-After")
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def error_from_response(response: httpx.Response, *, request_id: Optional[str] = None) -> ClientError:
    """Classify a non-2xx response from the envelope's ``code`` or the status."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        body = {}
    message = body.get("error") or body.get("message") or ""
    if not isinstance(message, str):
        message = str(message)
    details = body.get("details") if isinstance(body.get("details"), dict) else {}
    return ClientError(
        _kind_for(response.status_code, body.get("code")),
        message,
        status=response.status_code,
        retry_after_seconds=_retry_after(body, response),
        request_id=response.headers.get("X-Request-ID") or body.get("request_id") or request_id,
        reason=details.get("reason"),
    )
