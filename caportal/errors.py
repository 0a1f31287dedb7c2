from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class DeniedError(ApiError):
    """Policy said no. Expected and user-facing."""

    def __init__(self, message: str = "access denied") -> None:
        super().__init__(
            code="AUTH_FORBIDDEN",
            message=message,
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


class IntegrityError(ApiError):
    """Two authoritative access sources disagree; callers must fail closed."""

    def __init__(self, message: str, *, account_id: str = "", org_id: str = "") -> None:
        super().__init__(
            code="ACCESS_INTEGRITY_VIOLATION",
            message=message,
            error_class="integrity",
            retryable=False,
            http_status=403,
        )
        self.account_id = account_id
        self.org_id = org_id


class ValidationError(ApiError):
    def __init__(self, message: str) -> None:
        super().__init__(
            code="REQ_VALIDATION_FAILED",
            message=message,
            error_class="validation",
            retryable=False,
            http_status=400,
        )


class InsufficientDataError(ApiError):
    def __init__(self, *, found: int, required: int = 2) -> None:
        super().__init__(
            code="COMPARISON_INSUFFICIENT_DATA",
            message=f"found only {found} analysis; at least {required} required for comparison",
            error_class="business_rule",
            retryable=False,
            http_status=400,
        )
        self.found = found
        self.required = required


class NotFoundError(ApiError):
    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(
            code=f"{resource.upper()}_NOT_FOUND",
            message=f"{resource} not found",
            error_class="validation",
            retryable=False,
            http_status=404,
        )
        self.resource = resource
        self.resource_id = resource_id
