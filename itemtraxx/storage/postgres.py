from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from itemtraxx.logging import get_logger
from itemtraxx.storage.capabilities import StoreCapabilities, probe_postgres_capabilities
from itemtraxx.storage.errors import CapabilityMissing, ConstraintViolation
from itemtraxx.storage.models import (
    AuthSession,
    DeviceSession,
    Profile,
    Role,
    Tenant,
    TenantStatus,
    TouchResult,
)

_REQUIRED_TABLES = ("tenant", "profile", "auth_credential", "auth_session")


def _load_json(value: Any) -> Optional[dict]:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


class PostgresStore:
    """Postgres-backed store for tenants, profiles, credentials and device sessions."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()
        self.capabilities = self._probe_capabilities()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Ensure core tables exist before serving requests."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT table_name FROM information_schema.tables
                WHERE table_schema = 'public' AND table_name = ANY(%s)
                """,
                (list(_REQUIRED_TABLES),),
            ).fetchall()
        present = {row["table_name"] for row in rows}
        missing = [name for name in _REQUIRED_TABLES if name not in present]
        if missing:
            raise RuntimeError(
                f"missing tables {', '.join(missing)}; apply scripts/schema.sql before starting"
            )

    def _probe_capabilities(self) -> StoreCapabilities:
        with self._connect() as conn:
            caps = probe_postgres_capabilities(conn)
        if not caps.supports_session_table:
            self.logger.warning(
                "device_session_table_missing",
                message="admin device sessions disabled until admin_device_session is migrated",
            )
        if not caps.supports_feature_flags:
            self.logger.warning("tenant_feature_flags_column_missing")
        return caps

    # -- row mapping -----------------------------------------------------

    def _tenant_from_row(self, row: dict) -> Tenant:
        flags = _load_json(row.get("feature_flags")) if self.capabilities.supports_feature_flags else None
        return Tenant(
            id=str(row["id"]),
            name=row["name"],
            access_code=row.get("access_code"),
            status=TenantStatus(row.get("status") or TenantStatus.ACTIVE.value),
            feature_flags=flags,
            checkout_due_hours=row.get("checkout_due_hours") or 72,
            created_at=row["created_at"],
        )

    @staticmethod
    def _profile_from_row(row: dict) -> Profile:
        tenant_id = row.get("tenant_id")
        return Profile(
            id=str(row["id"]),
            role=Role(row["role"]),
            auth_email=row["auth_email"],
            tenant_id=str(tenant_id) if tenant_id else None,
            is_active=bool(row.get("is_active", True)),
            created_at=row["created_at"],
        )

    @staticmethod
    def _device_session_from_row(row: dict) -> DeviceSession:
        return DeviceSession(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            profile_id=str(row["profile_id"]),
            device_id=row["device_id"],
            device_label=row.get("device_label"),
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
            last_seen_at=row["last_seen_at"],
            revoked_at=row.get("revoked_at"),
            revoked_by=str(row["revoked_by"]) if row.get("revoked_by") else None,
        )

    def _tenant_columns(self) -> str:
        cols = "id, name, access_code, status, checkout_due_hours, created_at"
        if self.capabilities.supports_feature_flags:
            cols += ", feature_flags"
        return cols

    # -- tenants ---------------------------------------------------------

    def create_tenant(
        self,
        name: str,
        *,
        access_code: Optional[str] = None,
        tenant_id: Optional[str] = None,
        status: TenantStatus = TenantStatus.ACTIVE,
    ) -> Tenant:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO tenant (id, name, access_code, status)
                    VALUES (%s, %s, %s, %s)
                    RETURNING {self._tenant_columns()}
                    """,
                    (tenant_id or str(uuid.uuid4()), name, access_code, TenantStatus(status).value),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("access code already in use", {"access_code": access_code}) from exc
        return self._tenant_from_row(row)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {self._tenant_columns()} FROM tenant WHERE id = %s", (tenant_id,)
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    def get_tenant_by_access_code(self, access_code: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {self._tenant_columns()} FROM tenant WHERE access_code = %s",
                (access_code,),
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    def list_tenants(self, limit: int = 100) -> List[Tenant]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {self._tenant_columns()} FROM tenant ORDER BY created_at LIMIT %s",
                (limit,),
            ).fetchall()
        return [self._tenant_from_row(row) for row in rows]

    def set_tenant_status(self, tenant_id: str, status: TenantStatus) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE tenant SET status = %s WHERE id = %s RETURNING {self._tenant_columns()}",
                (TenantStatus(status).value, tenant_id),
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    def update_tenant_settings(
        self,
        tenant_id: str,
        *,
        checkout_due_hours: Optional[int] = None,
        feature_flags: Optional[dict] = None,
    ) -> Optional[Tenant]:
        if feature_flags is not None and not self.capabilities.supports_feature_flags:
            raise CapabilityMissing("feature_flags")
        with self._connect() as conn:
            if checkout_due_hours is not None:
                conn.execute(
                    "UPDATE tenant SET checkout_due_hours = %s WHERE id = %s",
                    (checkout_due_hours, tenant_id),
                )
            if feature_flags is not None:
                conn.execute(
                    """
                    UPDATE tenant
                    SET feature_flags = COALESCE(feature_flags, '{}'::jsonb) || %s::jsonb
                    WHERE id = %s
                    """,
                    (json.dumps(feature_flags), tenant_id),
                )
            row = conn.execute(
                f"SELECT {self._tenant_columns()} FROM tenant WHERE id = %s", (tenant_id,)
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    # -- profiles & credentials -----------------------------------------

    def create_profile(
        self,
        auth_email: str,
        role: Role,
        *,
        tenant_id: Optional[str] = None,
        profile_id: Optional[str] = None,
        is_active: bool = True,
    ) -> Profile:
        email = auth_email.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO profile (id, role, tenant_id, auth_email, is_active)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (profile_id or str(uuid.uuid4()), Role(role).value, tenant_id, email, is_active),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already registered", {"email": email}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id}) from exc
        return self._profile_from_row(row)

    def get_profile(self, user_id: str) -> Optional[Profile]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM profile WHERE id = %s", (user_id,)).fetchone()
        return self._profile_from_row(row) if row else None

    def get_my_profile_rpc(self, user_id: str) -> Optional[Profile]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM get_my_profile(%s)", (user_id,)).fetchone()
        if not row or not row.get("id"):
            return None
        return self._profile_from_row(row)

    def get_profile_by_email(self, email: str) -> Optional[Profile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM profile WHERE auth_email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._profile_from_row(row) if row else None

    def list_profiles(self, tenant_id: str, *, role: Optional[Role] = None) -> List[Profile]:
        query = "SELECT * FROM profile WHERE tenant_id = %s"
        params: list[Any] = [tenant_id]
        if role is not None:
            query += " AND role = %s"
            params.append(Role(role).value)
        query += " ORDER BY created_at"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._profile_from_row(row) for row in rows]

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = EXCLUDED.last_updated_at
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("profile does not exist", {"user_id": user_id}) from exc

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # -- credential sessions ---------------------------------------------

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        tenant_id: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> AuthSession:
        sess = AuthSession.new(
            user_id=user_id,
            ttl_minutes=ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
            tenant_id=tenant_id,
            meta=meta,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, tenant_id, created_at, expires_at, user_agent, ip_addr, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        tenant_id,
                        sess.created_at,
                        sess.expires_at,
                        user_agent,
                        ip_addr,
                        json.dumps(meta) if meta else None,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("profile does not exist", {"user_id": user_id}) from exc
        return sess

    def get_session(self, session_id: str) -> Optional[AuthSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s AND revoked_at IS NULL",
                (session_id,),
            ).fetchone()
        if not row:
            return None
        tenant_id = row.get("tenant_id")
        return AuthSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_addr=str(row["ip_addr"]) if row.get("ip_addr") else None,
            tenant_id=str(tenant_id) if tenant_id else None,
            meta=_load_json(row.get("meta")),
        )

    def set_session_meta(self, session_id: str, meta: Dict) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET meta = %s WHERE id = %s",
                (json.dumps(meta), session_id),
            )

    def revoke_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET revoked_at = now() WHERE id = %s AND revoked_at IS NULL",
                (session_id,),
            )

    def revoke_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET revoked_at = now() WHERE user_id = %s AND revoked_at IS NULL",
                (user_id,),
            )
            return cur.rowcount

    # -- device sessions -------------------------------------------------

    def _require_session_table(self) -> None:
        if not self.capabilities.supports_session_table:
            raise CapabilityMissing("session_table")

    def touch_device_session(
        self,
        tenant_id: str,
        profile_id: str,
        device_id: str,
        *,
        device_label: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TouchResult:
        if not self.capabilities.supports_session_table:
            return TouchResult.MISSING_TABLE
        # admin_device_session_active_idx is a partial unique index on
        # (tenant_id, profile_id, device_id) WHERE revoked_at IS NULL
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO admin_device_session
                    (id, tenant_id, profile_id, device_id, device_label, user_agent, created_at, last_seen_at)
                VALUES (%s, %s, %s, %s, %s, %s, now(), now())
                ON CONFLICT (tenant_id, profile_id, device_id) WHERE revoked_at IS NULL
                DO UPDATE SET
                    last_seen_at = now(),
                    device_label = COALESCE(EXCLUDED.device_label, admin_device_session.device_label),
                    user_agent = COALESCE(EXCLUDED.user_agent, admin_device_session.user_agent)
                """,
                (str(uuid.uuid4()), tenant_id, profile_id, device_id, device_label, user_agent),
            )
        return TouchResult.OK

    def find_active_device_session(
        self, tenant_id: str, profile_id: str, device_id: str
    ) -> Optional[DeviceSession]:
        self._require_session_table()
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM admin_device_session
                WHERE tenant_id = %s AND profile_id = %s AND device_id = %s AND revoked_at IS NULL
                LIMIT 1
                """,
                (tenant_id, profile_id, device_id),
            ).fetchone()
        return self._device_session_from_row(row) if row else None

    def list_device_sessions(self, tenant_id: str, profile_id: str) -> List[DeviceSession]:
        self._require_session_table()
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM admin_device_session
                WHERE tenant_id = %s AND profile_id = %s AND revoked_at IS NULL
                ORDER BY last_seen_at DESC
                """,
                (tenant_id, profile_id),
            ).fetchall()
        return [self._device_session_from_row(row) for row in rows]

    def revoke_device_session(
        self, tenant_id: str, profile_id: str, session_id: str, *, revoked_by: str
    ) -> bool:
        self._require_session_table()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE admin_device_session
                SET revoked_at = now(), revoked_by = %s
                WHERE id = %s AND tenant_id = %s AND profile_id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (revoked_by, session_id, tenant_id, profile_id),
            ).fetchone()
        return row is not None

    def revoke_all_device_sessions(
        self,
        tenant_id: str,
        profile_id: str,
        *,
        revoked_by: str,
        except_device_id: Optional[str] = None,
    ) -> int:
        self._require_session_table()
        query = """
            UPDATE admin_device_session
            SET revoked_at = now(), revoked_by = %s
            WHERE tenant_id = %s AND profile_id = %s AND revoked_at IS NULL
        """
        params: list[Any] = [revoked_by, tenant_id, profile_id]
        if except_device_id:
            query += " AND device_id <> %s"
            params.append(except_device_id)
        with self._connect() as conn:
            cur = conn.execute(query, params)
            return cur.rowcount
