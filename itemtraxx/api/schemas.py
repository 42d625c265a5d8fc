from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from itemtraxx.service.errors import ErrorKind

# Action payload limits
MAX_PAYLOAD_DEPTH = 20
MAX_PAYLOAD_LIST_ITEMS = 1000

# Zero-width characters and bidi embedding/override/isolate controls
_INVISIBLE = re.compile("[\u200b-\u200d\ufeff\u202a-\u202e\u2066-\u2069]")

_EMAIL = re.compile(
    r"^(?P<local>[a-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64})"
    r"@(?P<domain>(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?)$"
)
MAX_EMAIL_LENGTH = 254


def _check_payload_shape(node: Any, depth: int = 0) -> None:
    if depth > MAX_PAYLOAD_DEPTH:
        raise ValueError(f"payload nesting exceeds {MAX_PAYLOAD_DEPTH} levels")
    if isinstance(node, dict):
        children = node.values()
    elif isinstance(node, list):
        if len(node) > MAX_PAYLOAD_LIST_ITEMS:
            raise ValueError(f"payload lists are limited to {MAX_PAYLOAD_LIST_ITEMS} items")
        children = node
    else:
        return
    for child in children:
        _check_payload_shape(child, depth + 1)


def clean_text(value: str) -> str:
    """Drop invisible formatting characters and apply NFKC normalization."""
    return unicodedata.normalize("NFKC", _INVISIBLE.sub("", value))


def normalize_email(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    email = clean_text(value.strip().lower())
    if len(email) > MAX_EMAIL_LENGTH or not _EMAIL.match(email):
        raise ValueError("invalid email address")
    return email


_ERROR_CODES = frozenset(kind.value for kind in ErrorKind)


class Envelope(BaseModel):
    """Response envelope: ``data`` on success, ``error`` (a message) on failure."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[str] = None
    code: Optional[str] = None
    retry_after_seconds: Optional[int] = None
    details: Optional[Any] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))

    @field_validator("code")
    @classmethod
    def _known_code(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in _ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return normalize_email(value)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class TenantLookupRequest(BaseModel):
    access_code: str = Field(..., min_length=1, max_length=64)

    @field_validator("access_code")
    @classmethod
    def _normalize_code(cls, value: str) -> str:
        return clean_text(value.strip())


class ActionRequest(BaseModel):
    action: str = Field(..., min_length=1, max_length=64)
    payload: dict = Field(default_factory=dict)

    @field_validator("payload")
    @classmethod
    def _payload_shape(cls, value: dict) -> dict:
        _check_payload_shape(value)
        return value


class SignInResponse(BaseModel):
    user_id: str
    email: str
    session_id: str
    signed_in_at: datetime
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: str


class SessionResponse(BaseModel):
    user_id: str
    email: str
    session_id: str
    signed_in_at: datetime
    expires_at: datetime


class ProfileResponse(BaseModel):
    id: str
    role: str
    tenant_id: Optional[str] = None
    auth_email: str
    is_active: bool = True


class TenantStatusResponse(BaseModel):
    tenant_id: str
    status: str


class TenantLookupResponse(BaseModel):
    tenant_id: str
    auth_email: str
