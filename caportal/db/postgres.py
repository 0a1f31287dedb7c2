from __future__ import annotations

from collections.abc import Callable
from typing import Any

# app.current_org value for platform-wide work: ingestion and lookups ahead of an access check
PLATFORM_SCOPE = "*"


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


def scope_setting(scope: Any) -> str:
    """Render an OrgScope as the ``app.current_org`` value the row-level policies read."""
    if scope.unrestricted:
        return PLATFORM_SCOPE
    org_ids = sorted(scope.org_ids)
    for org_id in org_ids:
        if org_id == PLATFORM_SCOPE or "," in org_id:
            raise ValueError(f"invalid organization id in scope: {org_id!r}")
    return ",".join(org_ids)


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction with the organization scope pinned.

    ``org_scope`` is one organization id, a comma-separated list of ids, or
    ``PLATFORM_SCOPE``. Without it ``app.current_org`` stays empty and the
    row-level policies match no organization-owned rows.
    """

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    def run_in_tx(
        self,
        *,
        fn: Callable[[Any], Any],
        org_scope: str | None = None,
    ) -> Any:
        if org_scope is not None and not org_scope.strip():
            raise ValueError("org_scope must not be empty")

        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT set_config('app.current_org', %s, true)", (org_scope or "",))
            result = fn(conn)
            conn.commit()
            return result
