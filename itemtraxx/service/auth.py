from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from itemtraxx.config import Settings
from itemtraxx.logging import get_logger
from itemtraxx.service.errors import AuthenticationError, InvalidTokenError
from itemtraxx.service.tokens import RevocationList, TokenCodec
from itemtraxx.storage.models import AuthSession, Profile, Role
from itemtraxx.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
# Allowance for small clock skew across nodes
CLOCK_SKEW = timedelta(seconds=120)

SignInResult = tuple[Optional[Profile], Optional[AuthSession], dict[str, str]]


class AuthStore(Protocol):
    def create_profile(
        self,
        auth_email: str,
        role: Role,
        *,
        tenant_id: Optional[str] = None,
        profile_id: Optional[str] = None,
        is_active: bool = True,
    ) -> Profile: ...

    def get_profile(self, user_id: str) -> Optional[Profile]: ...

    def get_profile_by_email(self, email: str) -> Optional[Profile]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        tenant_id: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> AuthSession: ...

    def get_session(self, session_id: str) -> Optional[AuthSession]: ...

    def set_session_meta(self, session_id: str, meta: dict) -> None: ...

    def revoke_session(self, session_id: str) -> None: ...


@dataclass
class AuthContext:
    """Identity behind a verified bearer token."""

    user_id: str
    email: str
    session_id: str
    signed_in_at: datetime
    expires_at: datetime


def _bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


class AuthService:
    """Credential store: password sign-in, JWT issue/verify, refresh rotation.

    Each sign-in creates an :class:`AuthSession`; the ids of the token pair
    currently issued for it live in the session's ``meta`` so that a refresh
    token is accepted only while it is the latest one for its session.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[Union[RedisCache, SyncRedisCache]],
        settings: Settings,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.tokens = TokenCodec(
            settings.resolved_jwt_secret(),
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=CLOCK_SKEW.total_seconds(),
        )
        self.revocations = RevocationList(cache)
        self._hasher = PasswordHasher(type=Type.ID)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- accounts --------------------------------------------------------

    def register_profile(
        self,
        email: str,
        password: str,
        role: Role,
        *,
        tenant_id: Optional[str] = None,
    ) -> Profile:
        """Create a profile with a password credential (bootstrap and tests)."""
        profile = self.store.create_profile(email, role, tenant_id=tenant_id)
        self.save_password(profile.id, password)
        logger.info("profile_registered", user_id=profile.id, role=Role(role).value)
        return profile

    def _hash_password(self, password: str) -> tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def save_password(self, user_id: str, password: str) -> None:
        digest, algo = self._hash_password(password)
        self.store.save_password(user_id, digest, algo)

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        digest, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._hasher.verify(digest, password)
        except (InvalidHash, VerifyMismatchError):
            logger.warning("password_verification_failed", user_id=user_id)
            return False

    # -- sign in / refresh / sign out ------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> SignInResult:
        profile = self.store.get_profile_by_email(email)
        if profile is None or not self.verify_password(profile.id, password):
            return None, None, {}
        if not profile.is_active:
            logger.warning("login_inactive_profile", user_id=profile.id)
            return None, None, {}
        session = self.store.create_session(
            profile.id,
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
            tenant_id=profile.tenant_id,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        tokens = self._issue_tokens(profile, session)
        logger.info("login_succeeded", user_id=profile.id)
        return profile, session, tokens

    async def refresh_tokens(self, refresh_token: str) -> SignInResult:
        """Rotate a refresh token; the presented one is revoked on success."""
        claims = self.tokens.decode(refresh_token, token_type="refresh")
        jti = claims.get("jti") if claims else None
        if not jti or await self.revocations.is_refresh_revoked(jti):
            return None, None, {}
        session = self._live_session(claims.get("sid"))
        if session is None:
            return None, None, {}
        profile = self.store.get_profile(session.user_id)
        if profile is None or not profile.is_active or claims.get("sub") != profile.id:
            return None, None, {}
        if (session.meta or {}).get("refresh_jti") != jti:
            logger.info("refresh_token_superseded", session_id=session.id)
            return None, None, {}
        tokens = self._issue_tokens(profile, session)
        await self.revocations.revoke_refresh(jti, self._ttl_until(claims.get("exp")))
        return profile, session, tokens

    async def revoke(self, session_id: str) -> None:
        """Revoke a session and the tokens currently issued for it."""
        session = self.store.get_session(session_id)
        meta = session.meta if session and isinstance(session.meta, dict) else {}
        if meta.get("refresh_jti"):
            await self.revocations.revoke_refresh(
                meta["refresh_jti"], self._ttl_until(meta.get("refresh_exp"))
            )
        if meta.get("access_jti") and meta.get("access_exp"):
            await self.revocations.denylist_access(
                meta["access_jti"], self._ttl_until(meta["access_exp"])
            )
        self.store.revoke_session(session_id)
        logger.info("session_signed_out", session_id=session_id)

    # -- bearer verification ---------------------------------------------

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Verify a bearer header.

        Raises :class:`AuthenticationError` when no bearer is supplied and
        :class:`InvalidTokenError` when the token cannot be trusted.
        """
        token = _bearer(authorization)
        if not token:
            raise AuthenticationError("Unauthorized")
        claims = self.tokens.decode(token, token_type="access")
        if claims is None:
            raise InvalidTokenError()
        jti = claims.get("jti")
        if jti and await self.revocations.is_access_denylisted(jti):
            logger.info("access_token_denylisted", jti=jti)
            raise InvalidTokenError()
        session = self._live_session(claims.get("sid"))
        profile = self.store.get_profile(claims.get("sub")) if session else None
        if session is None or profile is None or not profile.is_active:
            raise InvalidTokenError()
        return AuthContext(
            user_id=profile.id,
            email=profile.auth_email,
            session_id=session.id,
            signed_in_at=session.created_at,
            expires_at=datetime.fromtimestamp(float(claims["exp"]), tz=timezone.utc),
        )

    # -- helpers ---------------------------------------------------------

    def _live_session(self, session_id: Any) -> Optional[AuthSession]:
        if not session_id:
            return None
        session = self.store.get_session(session_id)
        if session is None or session.expires_at <= self._now() - CLOCK_SKEW:
            return None
        return session

    def _ttl_until(self, exp: Any) -> int:
        if isinstance(exp, (int, float)):
            return max(int(exp - self._now().timestamp()), 0)
        return self.settings.refresh_token_ttl_minutes * 60

    def _issue_tokens(self, profile: Profile, session: AuthSession) -> dict[str, str]:
        now = self._now()
        access_exp = int((now + timedelta(minutes=self.settings.access_token_ttl_minutes)).timestamp())
        refresh_exp = int((now + timedelta(minutes=self.settings.refresh_token_ttl_minutes)).timestamp())
        access_jti, refresh_jti = str(uuid.uuid4()), str(uuid.uuid4())
        subject = {"sub": profile.id, "sid": session.id}
        access_token = self.tokens.encode(
            {**subject, "token_type": "access", "jti": access_jti, "exp": access_exp}
        )
        refresh_token = self.tokens.encode(
            {**subject, "token_type": "refresh", "jti": refresh_jti, "exp": refresh_exp}
        )
        meta = {
            **(session.meta or {}),
            "access_jti": access_jti,
            "access_exp": access_exp,
            "refresh_jti": refresh_jti,
            "refresh_exp": refresh_exp,
        }
        session.meta = meta
        self.store.set_session_meta(session.id, meta)
        return {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "token_type": "bearer",
            "expires_at": datetime.fromtimestamp(access_exp, tz=timezone.utc).isoformat(),
        }
