from __future__ import annotations

import logging
import re

from caportal.db.postgres import PLATFORM_SCOPE, _import_psycopg

logger = logging.getLogger(__name__)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class PostgresRlsManager:
    """Apply organization isolation policies on organization-owned tables.

    ``app.current_org`` holds one organization id or a comma-separated list
    of ids; rows of other organizations are invisible and cannot be written.
    ``*`` opens every row and is set only for platform-wide work. An unset or
    empty value matches nothing, rows without an organization included.
    """

    DEFAULT_TABLES: tuple[str, ...] = (
        "analyses",
        "documents",
        "analysis_notes",
    )

    def __init__(self, dsn: str, *, tables: list[str] | tuple[str, ...] | None = None) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        target_tables = list(self.DEFAULT_TABLES if tables is None else tables)
        if not target_tables:
            raise ValueError("tables must not be empty")
        self._tables = [_validate_identifier(name) for name in target_tables]

    @staticmethod
    def policy_predicate(table: str) -> str:
        current = "current_setting('app.current_org', true)"
        return (
            f"({current} = '{PLATFORM_SCOPE}' "
            f"OR {table}.organization_id = ANY(string_to_array(NULLIF({current}, ''), ',')))"
        )

    def apply(self) -> list[str]:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                for table in self._tables:
                    policy = f"{table}_org_isolation"
                    predicate = self.policy_predicate(table)
                    cur.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
                    cur.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
                    cur.execute(f"DROP POLICY IF EXISTS {policy} ON {table}")
                    cur.execute(
                        f"""
                        CREATE POLICY {policy} ON {table}
                        USING {predicate}
                        WITH CHECK {predicate}
                        """
                    )
            conn.commit()
        logger.info("rls_policies_applied tables=%s", ",".join(self._tables))
        return list(self._tables)
