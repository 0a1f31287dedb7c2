from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class OrganizationCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    representative: str = Field(min_length=1)
    admins: list[str] = Field(default_factory=list)
    org_id: str | None = None


class InvitePractitionerRequest(BaseModel):
    practitioner_id: str = Field(min_length=1)


class OrgAdminRequest(BaseModel):
    account_id: str = Field(min_length=1)


class AccountCreateRequest(BaseModel):
    account_id: str | None = None
    email: str = Field(min_length=3)
    name: str = ""
    role: Literal["PLATFORM_ADMIN", "PRACTITIONER", "ORG_ADMIN", "ORG_MEMBER"]
    primary_org: str | None = None


class DocumentRegisterRequest(BaseModel):
    document_id: str | None = None
    organization_id: str = Field(min_length=1)
    filename: str = Field(min_length=1)
    original_name: str = ""
    file_type: str = "other"
    uploaded_by: str | None = None


class NoteAttachment(BaseModel):
    filename: str = Field(min_length=1)
    url: str = ""
    mime_type: str = ""


class NoteCreateRequest(BaseModel):
    content: str = Field(min_length=1)
    title: str = ""
    note_type: Literal["general", "concern", "recommendation", "highlight"] = "general"
    is_private: bool = False
    attachments: list[NoteAttachment] = Field(default_factory=list)


class NoteUpdateRequest(BaseModel):
    content: str | None = Field(default=None, min_length=1)
    title: str | None = None
    note_type: Literal["general", "concern", "recommendation", "highlight"] | None = None
    is_private: bool | None = None
    attachments: list[NoteAttachment] | None = None


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
