from __future__ import annotations

import base64
import hashlib
import hmac
import json
import threading
import time
from typing import Any, Optional, Union

from itemtraxx.logging import get_logger
from itemtraxx.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _unb64url(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


class TokenCodec:
    """HS256 JWT signing and verification bound to one issuer and audience."""

    def __init__(
        self, secret: str, *, issuer: str, audience: str, leeway_seconds: float = 120.0
    ) -> None:
        self._key = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._header_segment = _b64url(json.dumps(_HEADER, separators=(",", ":")).encode())

    def _sign(self, signing_input: str) -> str:
        return _b64url(hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest())

    def encode(self, claims: dict[str, Any]) -> str:
        body = {"iss": self.issuer, "aud": self.audience, **claims}
        signing_input = (
            f"{self._header_segment}.{_b64url(json.dumps(body, separators=(',', ':')).encode())}"
        )
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str, *, token_type: str) -> Optional[dict[str, Any]]:
        """Return verified claims, or ``None`` for anything untrustworthy."""
        parts = token.split(".")
        if len(parts) != 3:
            return None
        header_segment, body_segment, signature = parts
        try:
            header = json.loads(_unb64url(header_segment))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        alg = header.get("alg") if isinstance(header, dict) else None
        # Only HS256; "none" and asymmetric algorithms are refused outright
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            return None
        if not hmac.compare_digest(self._sign(f"{header_segment}.{body_segment}"), signature):
            return None
        try:
            claims = json.loads(_unb64url(body_segment))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(claims, dict):
            return None
        if claims.get("iss") != self.issuer or claims.get("aud") != self.audience:
            return None
        if claims.get("token_type") != token_type:
            return None
        try:
            expires = float(claims.get("exp"))
        except (TypeError, ValueError):
            return None
        if expires <= time.time() - self.leeway_seconds:
            return None
        return claims


class RevocationList:
    """Revoked refresh-token and denylisted access-token ids.

    Ids are kept process-locally and, when a cache is configured, mirrored to
    Redis so every node sees them. A cache read failure counts as revoked for
    refresh tokens and as not denylisted for access tokens; the store-side
    session revocation still rejects the latter.
    """

    def __init__(self, cache: Optional[Union[RedisCache, SyncRedisCache]]) -> None:
        self.cache = cache
        self._lock = threading.Lock()
        self._refresh: set[str] = set()
        self._access: set[str] = set()

    async def revoke_refresh(self, jti: str, ttl_seconds: int) -> None:
        with self._lock:
            self._refresh.add(jti)
        if self.cache is None:
            return
        try:
            await self.cache.mark_refresh_revoked(jti, max(ttl_seconds, 0))
        except Exception as exc:
            logger.warning("cache_revoked_refresh_token_failed", jti=jti, error=str(exc))

    async def is_refresh_revoked(self, jti: str) -> bool:
        with self._lock:
            if jti in self._refresh:
                return True
        if self.cache is None:
            return False
        try:
            return await self.cache.is_refresh_revoked(jti)
        except Exception as exc:
            logger.warning(
                "check_revoked_refresh_token_failed_defaulting_to_revoked",
                jti=jti,
                error=str(exc),
            )
            return True

    async def denylist_access(self, jti: str, ttl_seconds: int) -> None:
        with self._lock:
            self._access.add(jti)
        if self.cache is None or ttl_seconds <= 0:
            return
        try:
            await self.cache.denylist_access_token(jti, ttl_seconds)
        except Exception as exc:
            logger.warning("access_token_denylist_failed", jti=jti, error=str(exc))

    async def is_access_denylisted(self, jti: str) -> bool:
        with self._lock:
            if jti in self._access:
                return True
        if self.cache is None:
            return False
        try:
            return await self.cache.is_access_token_denylisted(jti)
        except Exception as exc:
            logger.warning("check_access_denylist_failed", jti=jti, error=str(exc))
            return False
