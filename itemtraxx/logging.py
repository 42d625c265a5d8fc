from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, mirrored into the X-Request-ID response header
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid) to the current context and return it."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


# Secrets are masked entirely; contact details keep enough to tell accounts apart
_SECRET_KEYS = ("password", "secret", "token", "authorization", "access_code")
_CONTACT_KEYS = ("email",)


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def _redact_pii(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or key == "event":
            continue
        lowered = key.lower()
        if any(part in lowered for part in _SECRET_KEYS):
            event_dict[key] = "***"
        elif any(part in lowered for part in _CONTACT_KEYS):
            event_dict[key] = _mask_email(value)
    return event_dict


def _configure_structlog(log_level: str, *, json_output: bool, development_mode: bool) -> None:
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


_configure_structlog(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Backend details that must not reach clients through validation messages
_SENSITIVE_PATTERNS = [
    re.compile(p)
    for p in (
        r'(?i)\b(select|insert|update|delete)\s+.{0,50}\b(from|into|set|where)\b.{0,50}',
        r'(?i)(relation|column|constraint)\s+"[^"]+"',
        r'(?i)connection\s+.*\s+(failed|refused|timeout)',
        r'(?i)(password|secret|token|key|credential)\s*[:=]\s*[^\s]+',
        r'(?i)traceback\s*\(most recent call last\)',
    )
]

MAX_CLIENT_MESSAGE_LENGTH = 300


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip SQL fragments, credentials and stack traces from a client-facing message."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern in _SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    if len(result) > MAX_CLIENT_MESSAGE_LENGTH:
        result = result[: MAX_CLIENT_MESSAGE_LENGTH - 3] + "..."
    return result
