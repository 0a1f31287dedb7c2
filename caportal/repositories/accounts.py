from __future__ import annotations

import json
import re
from typing import Any

from caportal.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryAccountsRepository:
    def __init__(self, accounts: dict[str, dict[str, Any]]) -> None:
        self._accounts = accounts

    def upsert(self, *, account: dict[str, Any]) -> dict[str, Any]:
        item = dict(account)
        item["invited_orgs"] = list(item.get("invited_orgs") or [])
        self._accounts[str(item["account_id"])] = item
        return dict(item)

    def get(self, *, account_id: str) -> dict[str, Any] | None:
        row = self._accounts.get(account_id)
        if row is None:
            return None
        return {**row, "invited_orgs": list(row.get("invited_orgs") or [])}

    def list_by_primary_org(self, *, org_id: str) -> list[dict[str, Any]]:
        return [dict(x) for x in self._accounts.values() if x.get("primary_org") == org_id]

    def list_by_invited_org(self, *, org_id: str) -> list[dict[str, Any]]:
        return [dict(x) for x in self._accounts.values() if org_id in (x.get("invited_orgs") or [])]


class PostgresAccountsRepository:
    """Accounts are platform-owned, so no organization is pinned on these transactions."""

    _COLUMNS = "account_id, email, name, role, primary_org, invited_orgs, is_active, created_at, updated_at"

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "accounts") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    @staticmethod
    def _row_to_dict(row: Any) -> dict[str, Any]:
        return {
            "account_id": row[0],
            "email": row[1],
            "name": row[2],
            "role": row[3],
            "primary_org": row[4],
            "invited_orgs": row[5] if isinstance(row[5], list) else [],
            "is_active": bool(row[6]),
            "created_at": row[7],
            "updated_at": row[8],
        }

    def upsert(self, *, account: dict[str, Any]) -> dict[str, Any]:
        item = dict(account)
        sql = f"""
            INSERT INTO {self._table_name} ({self._COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s)
            ON CONFLICT(account_id) DO UPDATE
            SET email = EXCLUDED.email,
                name = EXCLUDED.name,
                role = EXCLUDED.role,
                primary_org = EXCLUDED.primary_org,
                invited_orgs = EXCLUDED.invited_orgs,
                is_active = EXCLUDED.is_active,
                updated_at = EXCLUDED.updated_at
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["account_id"],
                        item.get("email", ""),
                        item.get("name", ""),
                        item.get("role"),
                        item.get("primary_org"),
                        json.dumps(list(item.get("invited_orgs") or []), ensure_ascii=True),
                        bool(item.get("is_active", True)),
                        item.get("created_at", ""),
                        item.get("updated_at", ""),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, account_id: str) -> dict[str, Any] | None:
        sql = f"SELECT {self._COLUMNS} FROM {self._table_name} WHERE account_id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (account_id,))
                row = cur.fetchone()
            if row is None:
                return None
            return self._row_to_dict(row)

        return self._tx_runner.run_in_tx(fn=_op)

    def _list(self, sql: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall() or []
            return [self._row_to_dict(row) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def list_by_primary_org(self, *, org_id: str) -> list[dict[str, Any]]:
        sql = f"SELECT {self._COLUMNS} FROM {self._table_name} WHERE primary_org = %s ORDER BY account_id ASC"
        return self._list(sql, (org_id,))

    def list_by_invited_org(self, *, org_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT {self._COLUMNS} FROM {self._table_name}
            WHERE invited_orgs @> %s::jsonb
            ORDER BY account_id ASC
        """
        return self._list(sql, (json.dumps([org_id], ensure_ascii=True),))
