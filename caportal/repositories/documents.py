from __future__ import annotations

import re
from typing import Any

from caportal.db.postgres import PLATFORM_SCOPE, PostgresTxRunner, scope_setting
from caportal.models import OrgScope


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryDocumentsRepository:
    def __init__(self, documents: dict[str, dict[str, Any]]) -> None:
        self._documents = documents

    def upsert(self, *, document: dict[str, Any]) -> dict[str, Any]:
        doc = dict(document)
        self._documents[str(doc["document_id"])] = doc
        return dict(doc)

    def get(self, *, document_id: str) -> dict[str, Any] | None:
        row = self._documents.get(document_id)
        if row is None:
            return None
        return dict(row)

    def get_many(self, *, document_ids: list[str]) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        seen: set[str] = set()
        for document_id in document_ids:
            if document_id in seen:
                continue
            seen.add(document_id)
            row = self._documents.get(document_id)
            if row is not None:
                items.append(dict(row))
        return items

    def list(self, *, scope: OrgScope, org_id: str | None = None) -> list[dict[str, Any]]:
        rows = []
        for row in self._documents.values():
            row_org = row.get("organization_id")
            if org_id is not None and row_org != org_id:
                continue
            if not scope.matches(row_org):
                continue
            rows.append(dict(row))
        rows.sort(key=lambda x: (str(x.get("created_at") or ""), str(x["document_id"])), reverse=True)
        return rows

    def mark_analyzed(self, *, document_ids: list[str], analysis_id: str, updated_at: str) -> int:
        updated = 0
        for document_id in dict.fromkeys(document_ids):
            row = self._documents.get(document_id)
            if row is None:
                continue
            row["status"] = "ANALYZED"
            row["analysis_id"] = analysis_id
            row["updated_at"] = updated_at
            updated += 1
        return updated


class PostgresDocumentsRepository:
    """Documents under row-level security.

    Lists run in the caller's organization scope and a registration in the
    document's own organization. Key lookups and the ANALYZED sync serve the
    ingestion pipeline and run platform-wide.
    """

    _COLUMNS = (
        "document_id, organization_id, filename, file_type, original_name, uploaded_by, "
        "status, analysis_id, created_at, updated_at"
    )

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "documents") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    @staticmethod
    def _row_to_dict(row: Any) -> dict[str, Any]:
        return {
            "document_id": row[0],
            "organization_id": row[1],
            "filename": row[2],
            "file_type": row[3],
            "original_name": row[4],
            "uploaded_by": row[5],
            "status": row[6],
            "analysis_id": row[7],
            "created_at": row[8],
            "updated_at": row[9],
        }

    def upsert(self, *, document: dict[str, Any]) -> dict[str, Any]:
        doc = dict(document)
        sql = f"""
            INSERT INTO {self._table_name} ({self._COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT(document_id) DO UPDATE
            SET organization_id = EXCLUDED.organization_id,
                filename = EXCLUDED.filename,
                file_type = EXCLUDED.file_type,
                original_name = EXCLUDED.original_name,
                uploaded_by = EXCLUDED.uploaded_by,
                status = EXCLUDED.status,
                analysis_id = EXCLUDED.analysis_id,
                updated_at = EXCLUDED.updated_at
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        doc["document_id"],
                        doc.get("organization_id"),
                        doc.get("filename"),
                        doc.get("file_type", "other"),
                        doc.get("original_name", ""),
                        doc.get("uploaded_by"),
                        doc.get("status", "UPLOADED"),
                        doc.get("analysis_id"),
                        doc.get("created_at", ""),
                        doc.get("updated_at", ""),
                    ),
                )
            return doc

        return self._tx_runner.run_in_tx(fn=_op, org_scope=str(doc["organization_id"]))

    def get(self, *, document_id: str) -> dict[str, Any] | None:
        sql = f"SELECT {self._COLUMNS} FROM {self._table_name} WHERE document_id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (document_id,))
                row = cur.fetchone()
            if row is None:
                return None
            return self._row_to_dict(row)

        return self._tx_runner.run_in_tx(fn=_op, org_scope=PLATFORM_SCOPE)

    def get_many(self, *, document_ids: list[str]) -> list[dict[str, Any]]:
        wanted = list(dict.fromkeys(document_ids))
        if not wanted:
            return []
        sql = f"SELECT {self._COLUMNS} FROM {self._table_name} WHERE document_id = ANY(%s)"

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (wanted,))
                rows = cur.fetchall() or []
            by_id = {str(row[0]): self._row_to_dict(row) for row in rows}
            return [by_id[x] for x in wanted if x in by_id]

        return self._tx_runner.run_in_tx(fn=_op, org_scope=PLATFORM_SCOPE)

    def list(self, *, scope: OrgScope, org_id: str | None = None) -> list[dict[str, Any]]:
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
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"""
            SELECT {self._COLUMNS} FROM {self._table_name}
            {where}
            ORDER BY created_at DESC, document_id DESC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall() or []
            return [self._row_to_dict(row) for row in rows]

        org_scope = org_id if org_id is not None else scope_setting(scope)
        return self._tx_runner.run_in_tx(fn=_op, org_scope=org_scope)

    def mark_analyzed(self, *, document_ids: list[str], analysis_id: str, updated_at: str) -> int:
        wanted = list(dict.fromkeys(document_ids))
        if not wanted:
            return 0
        sql = f"""
            UPDATE {self._table_name}
            SET status = 'ANALYZED', analysis_id = %s, updated_at = %s
            WHERE document_id = ANY(%s)
        """

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, (analysis_id, updated_at, wanted))
                return int(getattr(cur, "rowcount", 0) or 0)

        return self._tx_runner.run_in_tx(fn=_op, org_scope=PLATFORM_SCOPE)
