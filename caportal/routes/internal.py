from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Header, Request
from fastapi.responses import JSONResponse

from caportal.errors import ApiError
from caportal.ingestion import AnalysisIngestionPipeline
from caportal.routes._deps import trace_id_from_request
from caportal.schemas import AccountCreateRequest, DocumentRegisterRequest, success_envelope
from caportal.store import store

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])

pipeline = AnalysisIngestionPipeline(store=store)


def _require_internal_debug(x_internal_debug: str | None) -> None:
    if x_internal_debug != "true":
        raise ApiError(
            code="AUTH_FORBIDDEN",
            message="internal endpoint forbidden",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


@router.post("/analysis-events")
def ingest_analysis_event(
    request: Request,
    payload: Any = Body(...),
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    _require_internal_debug(x_internal_debug)
    outcome = pipeline.handle(payload)
    return JSONResponse(
        status_code=202,
        content=success_envelope(outcome.as_dict(), trace_id_from_request(request)),
    )


@router.post("/accounts")
def create_account(
    payload: AccountCreateRequest,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    _require_internal_debug(x_internal_debug)
    account = store.create_account(payload.model_dump(mode="json"))
    return JSONResponse(
        status_code=201,
        content=success_envelope(account.to_row(), trace_id_from_request(request)),
    )


@router.post("/documents")
def register_document(
    payload: DocumentRegisterRequest,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    _require_internal_debug(x_internal_debug)
    doc = store.register_document(payload.model_dump(mode="json"))
    return JSONResponse(
        status_code=201,
        content=success_envelope(doc.to_row(), trace_id_from_request(request)),
    )
