from __future__ import annotations

import json
import re
from typing import Any

from caportal.db.postgres import PostgresTxRunner
from caportal.models import OrgScope


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _copy(row: dict[str, Any]) -> dict[str, Any]:
    item = dict(row)
    item["admins"] = list(item.get("admins") or [])
    item["invitations"] = [dict(x) for x in item.get("invitations") or []]
    return item


class InMemoryOrganizationsRepository:
    def __init__(self, organizations: dict[str, dict[str, Any]]) -> None:
        self._organizations = organizations

    def upsert(self, *, organization: dict[str, Any]) -> dict[str, Any]:
        item = _copy(organization)
        self._organizations[str(item["org_id"])] = item
        return _copy(item)

    def get(self, *, org_id: str) -> dict[str, Any] | None:
        row = self._organizations.get(org_id)
        if row is None:
            return None
        return _copy(row)

    def list(self, *, scope: OrgScope) -> list[dict[str, Any]]:
        rows = [_copy(x) for x in self._organizations.values() if scope.matches(str(x.get("org_id")))]
        rows.sort(key=lambda x: (str(x.get("created_at") or ""), str(x["org_id"])))
        return rows

    def delete(self, *, org_id: str) -> bool:
        return self._organizations.pop(org_id, None) is not None


class PostgresOrganizationsRepository:
    _COLUMNS = "org_id, name, representative, admins, invitations, is_active, created_by, created_at, updated_at"

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "organizations") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    @staticmethod
    def _row_to_dict(row: Any) -> dict[str, Any]:
        return {
            "org_id": row[0],
            "name": row[1],
            "representative": row[2],
            "admins": row[3] if isinstance(row[3], list) else [],
            "invitations": row[4] if isinstance(row[4], list) else [],
            "is_active": bool(row[5]),
            "created_by": row[6],
            "created_at": row[7],
            "updated_at": row[8],
        }

    def upsert(self, *, organization: dict[str, Any]) -> dict[str, Any]:
        item = _copy(organization)
        sql = f"""
            INSERT INTO {self._table_name} ({self._COLUMNS})
            VALUES (%s, %s, %s, %s::jsonb, %s::jsonb, %s, %s, %s, %s)
            ON CONFLICT(org_id) DO UPDATE
            SET name = EXCLUDED.name,
                representative = EXCLUDED.representative,
                admins = EXCLUDED.admins,
                invitations = EXCLUDED.invitations,
                is_active = EXCLUDED.is_active,
                updated_at = EXCLUDED.updated_at
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["org_id"],
                        item.get("name", ""),
                        item.get("representative"),
                        json.dumps(item["admins"], ensure_ascii=True),
                        json.dumps(item["invitations"], ensure_ascii=True, sort_keys=True),
                        bool(item.get("is_active", True)),
                        item.get("created_by"),
                        item.get("created_at", ""),
                        item.get("updated_at", ""),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, org_id: str) -> dict[str, Any] | None:
        sql = f"SELECT {self._COLUMNS} FROM {self._table_name} WHERE org_id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (org_id,))
                row = cur.fetchone()
            if row is None:
                return None
            return self._row_to_dict(row)

        return self._tx_runner.run_in_tx(fn=_op)

    def list(self, *, scope: OrgScope) -> list[dict[str, Any]]:
        if scope.unrestricted:
            sql = f"SELECT {self._COLUMNS} FROM {self._table_name} ORDER BY created_at ASC, org_id ASC"
            params: tuple[Any, ...] = ()
        else:
            if not scope.org_ids:
                return []
            sql = f"""
                SELECT {self._COLUMNS} FROM {self._table_name}
                WHERE org_id = ANY(%s)
                ORDER BY created_at ASC, org_id ASC
            """
            params = (sorted(scope.org_ids),)

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall() or []
            return [self._row_to_dict(row) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def delete(self, *, org_id: str) -> bool:
        sql = f"DELETE FROM {self._table_name} WHERE org_id = %s"

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (org_id,))
                return int(getattr(cur, "rowcount", 0) or 0) > 0

        return self._tx_runner.run_in_tx(fn=_op)
