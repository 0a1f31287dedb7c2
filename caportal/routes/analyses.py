from __future__ import annotations

from fastapi import APIRouter, Query, Request

from caportal.errors import NotFoundError
from caportal.policy import Capability
from caportal.routes._deps import (
    account_id_from_request,
    comparison_engine,
    parse_csv_param,
    parse_datetime_param,
    policy,
    trace_id_from_request,
)
from caportal.schemas import success_envelope
from caportal.store import store

router = APIRouter(prefix="/api/v1", tags=["analyses"])


@router.get("/organizations/{org_id}/analyses")
def list_analyses(org_id: str, request: Request, limit: int = Query(default=50, ge=1, le=500)):
    actor = account_id_from_request(request)
    policy.require(actor, Capability.ACCESS, org_id)
    scope = policy.list_accessible_predicate(actor).narrow(org_id)
    records = store.list_analyses(scope=scope, org_id=org_id, newest_first=True, limit=limit)
    items = [record.to_row() for record in records]
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.get("/organizations/{org_id}/analyses/history")
def analysis_history(org_id: str, request: Request, limit: int = Query(default=50, ge=1, le=500)):
    actor = account_id_from_request(request)
    policy.require(actor, Capability.ACCESS, org_id)
    data = comparison_engine.history(org_id, limit=limit, scope=policy.list_accessible_predicate(actor))
    return success_envelope(data, trace_id_from_request(request))


@router.get("/organizations/{org_id}/analyses/compare")
def compare_analyses(
    org_id: str,
    request: Request,
    analysis_ids: str | None = Query(default=None),
    start_date: str | None = Query(default=None),
    end_date: str | None = Query(default=None),
):
    actor = account_id_from_request(request)
    policy.require(actor, Capability.ACCESS, org_id)
    data = comparison_engine.compare(
        org_id,
        analysis_ids=parse_csv_param(analysis_ids),
        start=parse_datetime_param("start_date", start_date),
        end=parse_datetime_param("end_date", end_date),
        scope=policy.list_accessible_predicate(actor),
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/analyses/{analysis_id}")
def get_analysis(analysis_id: str, request: Request):
    actor = account_id_from_request(request)
    record = store.get_analysis(analysis_id)
    if record is None:
        raise NotFoundError("analysis", analysis_id)
    if record.organization_id is None:
        policy.require_platform_admin(actor)
    else:
        policy.require(actor, Capability.ACCESS, record.organization_id)
    return success_envelope(record.to_row(), trace_id_from_request(request))
