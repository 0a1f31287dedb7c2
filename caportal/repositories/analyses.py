from __future__ import annotations

import copy
import json
import re
from datetime import UTC, datetime
from typing import Any

from caportal.db.postgres import PLATFORM_SCOPE, PostgresTxRunner, scope_setting
from caportal.models import OrgScope


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _parse_ts(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def _copy(row: dict[str, Any]) -> dict[str, Any]:
    # jsonb columns are nested trees; callers never share them with the stored row
    return copy.deepcopy(row)


class InMemoryAnalysesRepository:
    def __init__(self, analyses: dict[str, dict[str, Any]]) -> None:
        self._analyses = analyses

    def upsert(self, *, analysis: dict[str, Any]) -> dict[str, Any]:
        item = _copy(analysis)
        self._analyses[str(item["analysis_id"])] = item
        return _copy(item)

    def get(self, *, analysis_id: str) -> dict[str, Any] | None:
        row = self._analyses.get(analysis_id)
        if row is None:
            return None
        return _copy(row)

    def list(
        self,
        *,
        scope: OrgScope,
        org_id: str | None = None,
        analysis_ids: list[str] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        status: str | None = None,
        newest_first: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        wanted = set(analysis_ids) if analysis_ids is not None else None
        start_ts = _parse_ts(start)
        end_ts = _parse_ts(end)
        rows: list[dict[str, Any]] = []
        for row in self._analyses.values():
            row_org = row.get("organization_id")
            if org_id is not None and row_org != org_id:
                continue
            if not scope.matches(row_org):
                continue
            if wanted is not None and row.get("analysis_id") not in wanted:
                continue
            if status is not None and row.get("status") != status:
                continue
            created = _parse_ts(row.get("created_at"))
            if start_ts is not None and (created is None or created < start_ts):
                continue
            if end_ts is not None and (created is None or created > end_ts):
                continue
            rows.append(_copy(row))
        rows.sort(
            key=lambda x: (_parse_ts(x.get("created_at")) or datetime.min.replace(tzinfo=UTC), str(x["analysis_id"])),
            reverse=newest_first,
        )
        if limit is not None:
            rows = rows[: max(0, int(limit))]
        return rows


class PostgresAnalysesRepository:
    """Analysis records keyed by the producer-supplied analysis_id.

    Only the ingestion pipeline writes, and key lookups precede the access
    check, so both run platform-wide. Lists run in the caller's scope.
    """

    _COLUMNS = (
        "analysis_id, organization_id, uploaded_by, job_id, documents, document_count, "
        "total_pages_processed, consolidated_payload, health_analysis, status, error, created_at, updated_at"
    )

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "analyses") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    @staticmethod
    def _row_to_dict(row: Any) -> dict[str, Any]:
        return {
            "analysis_id": row[0],
            "organization_id": row[1],
            "uploaded_by": row[2],
            "job_id": row[3],
            "documents": row[4] if isinstance(row[4], list) else [],
            "document_count": int(row[5] or 0),
            "total_pages_processed": int(row[6] or 0),
            "consolidated_payload": row[7] if isinstance(row[7], dict) else {},
            "health_analysis": row[8] if isinstance(row[8], dict) else {},
            "status": row[9],
            "error": row[10],
            "created_at": row[11],
            "updated_at": row[12],
        }

    def upsert(self, *, analysis: dict[str, Any]) -> dict[str, Any]:
        item = _copy(analysis)
        # created_at is only written on insert
        sql = f"""
            INSERT INTO {self._table_name} ({self._COLUMNS})
            VALUES (%s, %s, %s, %s, %s::jsonb, %s, %s, %s::jsonb, %s::jsonb, %s, %s, %s, %s)
            ON CONFLICT(analysis_id) DO UPDATE
            SET organization_id = EXCLUDED.organization_id,
                uploaded_by = EXCLUDED.uploaded_by,
                job_id = EXCLUDED.job_id,
                documents = EXCLUDED.documents,
                document_count = EXCLUDED.document_count,
                total_pages_processed = EXCLUDED.total_pages_processed,
                consolidated_payload = EXCLUDED.consolidated_payload,
                health_analysis = EXCLUDED.health_analysis,
                status = EXCLUDED.status,
                error = EXCLUDED.error,
                updated_at = EXCLUDED.updated_at
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["analysis_id"],
                        item.get("organization_id"),
                        item.get("uploaded_by"),
                        item.get("job_id"),
                        json.dumps(item["documents"], ensure_ascii=True, sort_keys=True),
                        int(item.get("document_count") or 0),
                        int(item.get("total_pages_processed") or 0),
                        json.dumps(item.get("consolidated_payload") or {}, ensure_ascii=True, sort_keys=True),
                        json.dumps(item.get("health_analysis") or {}, ensure_ascii=True, sort_keys=True),
                        item.get("status", "PROCESSING"),
                        item.get("error"),
                        item.get("created_at", ""),
                        item.get("updated_at", ""),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op, org_scope=PLATFORM_SCOPE)

    def get(self, *, analysis_id: str) -> dict[str, Any] | None:
        sql = f"SELECT {self._COLUMNS} FROM {self._table_name} WHERE analysis_id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (analysis_id,))
                row = cur.fetchone()
            if row is None:
                return None
            return self._row_to_dict(row)

        return self._tx_runner.run_in_tx(fn=_op, org_scope=PLATFORM_SCOPE)

    def list(
        self,
        *,
        scope: OrgScope,
        org_id: str | None = None,
        analysis_ids: list[str] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        status: str | None = None,
        newest_first: bool = False,
        limit: int | None = None,
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
        if analysis_ids is not None:
            clauses.append("analysis_id = ANY(%s)")
            params.append(list(analysis_ids))
        if status is not None:
            clauses.append("status = %s")
            params.append(status)
        # created_at is stored as a UTC ISO-8601 string, which sorts chronologically
        if start is not None:
            clauses.append("created_at >= %s")
            params.append(start.astimezone(UTC).isoformat())
        if end is not None:
            clauses.append("created_at <= %s")
            params.append(end.astimezone(UTC).isoformat())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        direction = "DESC" if newest_first else "ASC"
        limit_sql = ""
        if limit is not None:
            limit_sql = "LIMIT %s"
            params.append(max(0, int(limit)))
        sql = f"""
            SELECT {self._COLUMNS} FROM {self._table_name}
            {where}
            ORDER BY created_at {direction}, analysis_id {direction}
            {limit_sql}
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall() or []
            return [self._row_to_dict(row) for row in rows]

        org_scope = org_id if org_id is not None else scope_setting(scope)
        return self._tx_runner.run_in_tx(fn=_op, org_scope=org_scope)
