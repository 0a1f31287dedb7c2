from __future__ import annotations

import uuid
from datetime import UTC, datetime

from fastapi import Request
from fastapi.responses import JSONResponse

from caportal.comparison import ComparisonEngine
from caportal.errors import ApiError, ValidationError
from caportal.policy import AccessPolicy
from caportal.schemas import error_envelope
from caportal.store import store

policy = AccessPolicy(store)
comparison_engine = ComparisonEngine(store)


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def account_id_from_request(request: Request) -> str:
    account_id = getattr(request.state, "account_id", None)
    if account_id:
        return account_id
    raise ApiError(
        code="AUTH_UNAUTHORIZED",
        message="authenticated account required",
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )


def parse_datetime_param(name: str, raw: str | None) -> datetime | None:
    if raw is None or not raw.strip():
        return None
    try:
        value = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 date or datetime") from None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def parse_csv_param(raw: str | None) -> list[str] | None:
    if raw is None:
        return None
    items = [x.strip() for x in raw.split(",") if x.strip()]
    return items or None
