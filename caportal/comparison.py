from __future__ import annotations

import math
import uuid
from datetime import UTC, datetime
from typing import Any

from caportal.errors import InsufficientDataError, NotFoundError, ValidationError
from caportal.models import AnalysisRecord, AnalysisStatus, OrgScope

CHANGE_EPSILON = 1e-4
CHANGE_THRESHOLD_PCT = 5.0
MIN_RECORDS = 2

HEALTH_SCALE = {"excellent": 4, "good": 3, "fair": 2, "poor": 1}
HEALTH_SCALE_DEFAULT = 2

# payload sections echoed per analysis in the comparison report
REPORT_SECTIONS = (
    "company_information",
    "extracted_fields",
    "standardized_fields",
    "calculated_metrics",
    "balance_sheet_data",
    "income_statement_data",
    "cash_flow_data",
    "comprehensive_financial_metrics",
)

# history key metric -> (comprehensive_financial_metrics group, metric name)
KEY_METRICS = {
    "current_ratio": ("liquidity_ratios", "current_ratio"),
    "net_margin": ("profitability_ratios", "net_margin"),
    "debt_to_equity": ("leverage_ratios", "debt_to_equity"),
    "roe": ("profitability_ratios", "return_on_equity_roe"),
}


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def metric_value(entry: Any) -> float | None:
    """Numeric value of one metric entry, or None when it is unavailable.

    An entry is a bare number, or a mapping carrying ``value`` or
    ``current_year.value``. ``available: false`` always wins.
    """
    if not isinstance(entry, dict):
        return _as_number(entry)
    if entry.get("available") is False:
        return None
    value = entry.get("value")
    if value is None:
        value = _as_dict(entry.get("current_year")).get("value")
    return _as_number(value)


def extract_metrics(payload: Any) -> dict[str, dict[str, Any]]:
    """Flatten the metric sections of one consolidated payload.

    ``calculated_metrics`` is read first and wins on name collisions with the
    grouped ``comprehensive_financial_metrics`` section.
    """
    payload = _as_dict(payload)
    found: dict[str, dict[str, Any]] = {}
    for name, entry in _as_dict(payload.get("calculated_metrics")).items():
        value = metric_value(entry)
        if value is None:
            continue
        meta = _as_dict(entry)
        found[str(name)] = {
            "value": value,
            "unit": str(meta.get("unit") or ""),
            "category": str(meta.get("category") or "other"),
        }
    for group, metrics in _as_dict(payload.get("comprehensive_financial_metrics")).items():
        for name, entry in _as_dict(metrics).items():
            if str(name) in found:
                continue
            value = metric_value(entry)
            if value is None:
                continue
            meta = _as_dict(entry)
            found[str(name)] = {
                "value": value,
                "unit": str(meta.get("unit") or ""),
                "category": str(meta.get("category") or group),
            }
    return found


def _created_key(record: AnalysisRecord) -> tuple[datetime, str]:
    try:
        created = datetime.fromisoformat(record.created_at)
    except (TypeError, ValueError):
        created = datetime.min
    if created.tzinfo is None:
        created = created.replace(tzinfo=UTC)
    return created, record.analysis_id


def health_status(record: AnalysisRecord) -> str:
    status = _as_dict(record.health_analysis.get("liquidity_assessment")).get("status")
    return str(status) if status else "N/A"


def health_rank(status: str) -> int:
    return HEALTH_SCALE.get(str(status).lower(), HEALTH_SCALE_DEFAULT)


def _direction(newer: int | float, older: int | float) -> str:
    if newer > older:
        return "improving"
    if newer < older:
        return "declining"
    return "stable"


def health_trend(oldest_status: str, newest_status: str) -> str:
    return _direction(health_rank(newest_status), health_rank(oldest_status))


def compare_analyses(records: list[AnalysisRecord]) -> dict[str, Any]:
    """Build the trend report for two or more analyses of one organization."""
    ordered = sorted(records, key=_created_key)
    if len(ordered) < MIN_RECORDS:
        raise InsufficientDataError(found=len(ordered), required=MIN_RECORDS)

    analyses: list[dict[str, Any]] = []
    progression: list[dict[str, Any]] = []
    series: dict[str, list[dict[str, Any]]] = {}
    for record in ordered:
        payload = record.consolidated_payload
        item: dict[str, Any] = {"analysis_id": record.analysis_id, "created_at": record.created_at}
        for section in REPORT_SECTIONS:
            item[section] = _as_dict(payload.get(section))
        item["health_analysis"] = record.health_analysis
        analyses.append(item)
        progression.append(
            {
                "date": record.created_at,
                "analysis_id": record.analysis_id,
                "health_status": health_status(record),
                "confidence_score": record.health_analysis.get("confidence_score") or 0,
            }
        )
        for name, point in extract_metrics(payload).items():
            series.setdefault(name, []).append(
                {"date": record.created_at, "analysis_id": record.analysis_id, **point}
            )

    improving: list[dict[str, Any]] = []
    declining: list[dict[str, Any]] = []
    stable: list[dict[str, Any]] = []
    for name, points in series.items():
        if len(points) < 2:
            continue
        first = points[0]["value"]
        last = points[-1]["value"]
        if abs(first) < CHANGE_EPSILON:
            continue
        change = (last - first) / abs(first) * 100
        entry = {
            "metric": name,
            "change": round(change, 2),
            "first_value": first,
            "last_value": last,
            "unit": points[0]["unit"],
            "category": points[0]["category"],
        }
        if change > CHANGE_THRESHOLD_PCT:
            improving.append(entry)
        elif change < -CHANGE_THRESHOLD_PCT:
            declining.append(entry)
        else:
            stable.append(entry)
    improving.sort(key=lambda x: x["change"], reverse=True)
    declining.sort(key=lambda x: x["change"])

    overall = _direction(len(improving), len(declining))
    latest = progression[-1]["health_status"]
    return {
        "analyses": analyses,
        "health_progression": progression,
        "metric_trends": series,
        "improving_metrics": improving,
        "declining_metrics": declining,
        "stable_metrics": stable,
        "overall_trend": overall,
        "health_trend": health_trend(progression[0]["health_status"], latest),
        "summary": (
            f"Overall trend is {overall}. {len(improving)} metrics improving, "
            f"{len(declining)} metrics declining. Latest health status: {latest}."
        ),
    }


def _key_metrics(record: AnalysisRecord) -> dict[str, float | None]:
    groups = _as_dict(record.consolidated_payload.get("comprehensive_financial_metrics"))
    return {
        key: metric_value(_as_dict(groups.get(group)).get(name))
        for key, (group, name) in KEY_METRICS.items()
    }


class ComparisonEngine:
    """Read-only trend views over one organization's completed analyses.

    Callers authorize organization access first; ``scope`` narrows the read
    further to what the caller may list.
    """

    def __init__(self, store: Any) -> None:
        self.store = store

    def _organization_name(self, org_id: str) -> str:
        org = self.store.get_organization(org_id)
        if org is None:
            raise NotFoundError("organization", org_id)
        return org.name

    def compare(
        self,
        org_id: str,
        *,
        analysis_ids: list[str] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        scope: OrgScope | None = None,
    ) -> dict[str, Any]:
        if start is not None and end is not None and start > end:
            raise ValidationError("start_date must not be after end_date")
        org_name = self._organization_name(org_id)
        scope = (scope or OrgScope.everything()).narrow(org_id)
        records = self.store.list_analyses(
            scope=scope,
            org_id=org_id,
            analysis_ids=analysis_ids,
            start=start,
            end=end,
            status=AnalysisStatus.COMPLETED,
        )
        report = compare_analyses(records)
        progression = report["health_progression"]
        return {
            "comparison_id": str(uuid.uuid4()),
            "organization_id": org_id,
            "organization_name": org_name,
            "analyses_count": len(progression),
            "date_range": {"start": progression[0]["date"], "end": progression[-1]["date"]},
            **report,
        }

    def history(self, org_id: str, *, limit: int = 50, scope: OrgScope | None = None) -> dict[str, Any]:
        org_name = self._organization_name(org_id)
        scope = (scope or OrgScope.everything()).narrow(org_id)
        records = self.store.list_analyses(
            scope=scope,
            org_id=org_id,
            status=AnalysisStatus.COMPLETED,
            newest_first=True,
            limit=max(1, int(limit)),
        )
        items = [
            {
                "analysis_id": record.analysis_id,
                "date": record.created_at,
                "health_status": health_status(record),
                "confidence_score": record.health_analysis.get("confidence_score") or 0,
                "document_count": record.document_count,
                "key_metrics": _key_metrics(record),
            }
            for record in records
        ]
        if len(items) < 2:
            grade_trend = "insufficient_data"
        else:
            grade_trend = health_trend(items[-1]["health_status"], items[0]["health_status"])
        return {
            "organization_id": org_id,
            "organization_name": org_name,
            "total_analyses": len(items),
            "first_analysis_date": items[-1]["date"] if items else None,
            "last_analysis_date": items[0]["date"] if items else None,
            "latest_grade": items[0]["health_status"] if items else "N/A",
            "grade_trend": grade_trend,
            "analyses": items,
        }
