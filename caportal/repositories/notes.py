from __future__ import annotations

import json
import re
from typing import Any

from caportal.db.postgres import PLATFORM_SCOPE, PostgresTxRunner, scope_setting
from caportal.models import OrgScope


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _copy(row: dict[str, Any]) -> dict[str, Any]:
    item = dict(row)
    item["attachments"] = [dict(x) for x in item.get("attachments") or []]
    return item


def _newest_first(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    rows.sort(key=lambda x: (str(x.get("created_at") or ""), str(x["note_id"])), reverse=True)
    return rows


class InMemoryNotesRepository:
    def __init__(self, notes: dict[str, dict[str, Any]]) -> None:
        self._notes = notes

    def upsert(self, *, note: dict[str, Any]) -> dict[str, Any]:
        item = _copy(note)
        self._notes[str(item["note_id"])] = item
        return _copy(item)

    def get(self, *, note_id: str) -> dict[str, Any] | None:
        row = self._notes.get(note_id)
        if row is None:
            return None
        return _copy(row)

    def delete(self, *, note_id: str, org_id: str) -> bool:
        row = self._notes.get(note_id)
        if row is None or row.get("organization_id") != org_id:
            return False
        del self._notes[note_id]
        return True

    def list(
        self,
        *,
        scope: OrgScope,
        org_id: str | None = None,
        analysis_id: str | None = None,
        include_private: bool = False,
    ) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        for row in self._notes.values():
            row_org = row.get("organization_id")
            if org_id is not None and row_org != org_id:
                continue
            if not scope.matches(row_org):
                continue
            if analysis_id is not None and row.get("analysis_id") != analysis_id:
                continue
            if row.get("is_private") and not include_private:
                continue
            rows.append(_copy(row))
        return _newest_first(rows)


class PostgresNotesRepository:
    """Analysis notes under row-level security; every write is pinned to the note's organization."""

    _COLUMNS = (
        "note_id, analysis_id, organization_id, created_by, note_type, title, content, "
        "is_private, attachments, edited_at, created_at, updated_at"
    )

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "analysis_notes") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    @staticmethod
    def _row_to_dict(row: Any) -> dict[str, Any]:
        return {
            "note_id": row[0],
            "analysis_id": row[1],
            "organization_id": row[2],
            "created_by": row[3],
            "note_type": row[4],
            "title": row[5],
            "content": row[6],
            "is_private": bool(row[7]),
            "attachments": row[8] if isinstance(row[8], list) else [],
            "edited_at": row[9],
            "created_at": row[10],
            "updated_at": row[11],
        }

    def upsert(self, *, note: dict[str, Any]) -> dict[str, Any]:
        item = _copy(note)
        sql = f"""
            INSERT INTO {self._table_name} ({self._COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s)
            ON CONFLICT(note_id) DO UPDATE
            SET note_type = EXCLUDED.note_type,
                title = EXCLUDED.title,
                content = EXCLUDED.content,
                is_private = EXCLUDED.is_private,
                attachments = EXCLUDED.attachments,
                edited_at = EXCLUDED.edited_at,
                updated_at = EXCLUDED.updated_at
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["note_id"],
                        item["analysis_id"],
                        item["organization_id"],
                        item.get("created_by"),
                        item.get("note_type", "general"),
                        item.get("title", ""),
                        item["content"],
                        bool(item.get("is_private", False)),
                        json.dumps(item["attachments"], ensure_ascii=True, sort_keys=True),
                        item.get("edited_at"),
                        item.get("created_at", ""),
                        item.get("updated_at", ""),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op, org_scope=str(item["organization_id"]))

    def get(self, *, note_id: str) -> dict[str, Any] | None:
        sql = f"SELECT {self._COLUMNS} FROM {self._table_name} WHERE note_id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (note_id,))
                row = cur.fetchone()
            if row is None:
                return None
            return self._row_to_dict(row)

        # lookup by key ahead of the access check
        return self._tx_runner.run_in_tx(fn=_op, org_scope=PLATFORM_SCOPE)

    def delete(self, *, note_id: str, org_id: str) -> bool:
        sql = f"DELETE FROM {self._table_name} WHERE note_id = %s AND organization_id = %s"

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (note_id, org_id))
                return int(getattr(cur, "rowcount", 0) or 0) > 0

        return self._tx_runner.run_in_tx(fn=_op, org_scope=org_id)

    def list(
        self,
        *,
        scope: OrgScope,
        org_id: str | None = None,
        analysis_id: str | None = None,
        include_private: bool = False,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if org_id is not None:
            clauses.append("organization_id = %s")
            params.append(org_id)
        if not scope.unrestricted:
            if not scope.org_ids:
                return []
            clauses.append("organization_id = ANY(%s)")
            params.append(sorted(scope.org_ids))
        if analysis_id is not None:
            clauses.append("analysis_id = %s")
            params.append(analysis_id)
        if not include_private:
            clauses.append("is_private = FALSE")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"""
            SELECT {self._COLUMNS} FROM {self._table_name}
            {where}
            ORDER BY created_at DESC, note_id DESC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall() or []
            return [self._row_to_dict(row) for row in rows]

        org_scope = org_id if org_id is not None else scope_setting(scope)
        return self._tx_runner.run_in_tx(fn=_op, org_scope=org_scope)
