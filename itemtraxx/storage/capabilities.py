from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class StoreCapabilities:
    """Optional schema features a backend may or may not have migrated yet.

    Callers branch on these flags instead of catching undefined-table or
    undefined-column errors from the driver.
    """

    supports_session_table: bool = True
    supports_feature_flags: bool = True

    def as_dict(self) -> dict[str, bool]:
        return {
            "session_table": self.supports_session_table,
            "feature_flags": self.supports_feature_flags,
        }


FULL_CAPABILITIES = StoreCapabilities()


def probe_postgres_capabilities(conn: Any) -> StoreCapabilities:
    """Inspect ``information_schema`` for the optional tables and columns."""

    session_table = conn.execute(
        """
        SELECT 1 FROM information_schema.tables
        WHERE table_schema = 'public' AND table_name = 'admin_device_session'
        """
    ).fetchone()
    flags_column = conn.execute(
        """
        SELECT 1 FROM information_schema.columns
        WHERE table_schema = 'public' AND table_name = 'tenant' AND column_name = 'feature_flags'
        """
    ).fetchone()
    return StoreCapabilities(
        supports_session_table=bool(session_table),
        supports_feature_flags=bool(flags_column),
    )
