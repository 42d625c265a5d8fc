from __future__ import annotations

from dataclasses import dataclass, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, List, Optional

from itemtraxx.logging import get_logger
from itemtraxx.storage.models import Role

logger = get_logger(__name__)


class AuthPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    HYDRATING = "hydrating"
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class AuthState:
    """Immutable snapshot of the client's identity, role and tenant context."""

    is_initialized: bool = False
    is_authenticated: bool = False
    user_id: Optional[str] = None
    email: Optional[str] = None
    signed_in_at: Optional[datetime] = None
    role: Optional[Role] = None
    session_tenant_id: Optional[str] = None
    tenant_context_id: Optional[str] = None
    is_admin: bool = False
    is_super_admin: bool = False
    has_secondary_auth: bool = False
    super_verified_at: Optional[datetime] = None
    admin_verified_at: Optional[datetime] = None
    hydrating: bool = False

    @property
    def phase(self) -> AuthPhase:
        if not self.is_initialized:
            return AuthPhase.HYDRATING if self.hydrating else AuthPhase.UNINITIALIZED
        return AuthPhase.AUTHENTICATED if self.is_authenticated else AuthPhase.ANONYMOUS


_FIELD_NAMES = frozenset(f.name for f in fields(AuthState))
# Flags owned by named transitions rather than backend merges
_DERIVED = frozenset({"is_admin", "is_super_admin", "hydrating"})

Listener = Callable[[AuthState], None]


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


class AuthStateStore:
    """Single-writer container for :class:`AuthState`.

    Readers take snapshots; every write goes through a named transition, and
    subscribers receive the new snapshot after each one. ``is_initialized``
    only ever moves from false to true.
    """

    def __init__(self, initial: Optional[AuthState] = None) -> None:
        self._state = initial or AuthState()
        self._listeners: List[Listener] = []
        self._hydration_started = self._state.is_initialized or self._state.hydrating

    @property
    def state(self) -> AuthState:
        return self._state

    def snapshot(self) -> AuthState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _commit(self, new_state: AuthState, transition: str) -> AuthState:
        if self._state.is_initialized and not new_state.is_initialized:
            new_state = replace(new_state, is_initialized=True)
        self._state = new_state
        logger.debug("auth_state_transition", transition=transition, phase=new_state.phase.value)
        for listener in list(self._listeners):
            listener(new_state)
        return new_state

    # -- transitions -----------------------------------------------------

    def begin_hydration(self) -> bool:
        """Enter Hydrating; allowed only once, from Uninitialized."""
        if self._hydration_started or self._state.phase is not AuthPhase.UNINITIALIZED:
            return False
        self._hydration_started = True
        self._commit(replace(self._state, hydrating=True), "begin_hydration")
        return True

    def finish_hydration(self) -> AuthState:
        """Mark the first hydration attempt as settled, whatever its outcome."""
        self._hydration_started = True
        if self._state.is_initialized:
            return self._state
        return self._commit(
            replace(self._state, is_initialized=True, hydrating=False), "finish_hydration"
        )

    def set_from_backend(self, **partial: Any) -> AuthState:
        """Authoritative merge of backend-derived fields; admin flags follow the role."""
        rejected = (set(partial) - _FIELD_NAMES) | (set(partial) & _DERIVED)
        if rejected:
            raise TypeError(f"unsupported auth state fields: {sorted(rejected)}")
        if partial.get("role") is not None:
            partial["role"] = Role(partial["role"])
        merged = replace(self._state, **partial)
        merged = replace(
            merged,
            is_admin=merged.role is Role.TENANT_ADMIN,
            is_super_admin=merged.role is Role.SUPER_ADMIN,
            hydrating=False if merged.is_initialized else self._state.hydrating,
        )
        return self._commit(merged, "set_from_backend")

    def set_tenant_context(self, tenant_id: Optional[str]) -> AuthState:
        return self._commit(replace(self._state, tenant_context_id=tenant_id), "set_tenant_context")

    def set_secondary_auth(self, value: bool, *, now: Optional[datetime] = None) -> AuthState:
        return self._commit(
            replace(
                self._state,
                has_secondary_auth=value,
                super_verified_at=_now(now) if value else None,
            ),
            "set_secondary_auth",
        )

    def mark_admin_verified(self, *, now: Optional[datetime] = None) -> AuthState:
        return self._commit(replace(self._state, admin_verified_at=_now(now)), "mark_admin_verified")

    def clear_admin_verification(self) -> AuthState:
        return self._commit(replace(self._state, admin_verified_at=None), "clear_admin_verification")

    def clear(self, mark_initialized: bool = False) -> AuthState:
        """Reset to defaults. Idempotent; never un-initializes."""
        initialized = self._state.is_initialized or mark_initialized
        # A clear during the first hydration does not leave Hydrating
        hydrating = self._state.hydrating and not initialized
        return self._commit(AuthState(is_initialized=initialized, hydrating=hydrating), "clear")
