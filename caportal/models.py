from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from caportal.errors import ValidationError


class Role(str, Enum):
    PLATFORM_ADMIN = "PLATFORM_ADMIN"
    PRACTITIONER = "PRACTITIONER"
    ORG_ADMIN = "ORG_ADMIN"
    ORG_MEMBER = "ORG_MEMBER"

    @property
    def org_scoped(self) -> bool:
        return self in ORG_SCOPED_ROLES


ORG_SCOPED_ROLES = frozenset({Role.ORG_ADMIN, Role.ORG_MEMBER})


class AnalysisStatus(str, Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class DocumentStatus(str, Enum):
    UPLOADED = "UPLOADED"
    PROCESSING = "PROCESSING"
    ANALYZED = "ANALYZED"
    FAILED = "FAILED"


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple, set, frozenset)):
        return []
    return [str(x) for x in value if str(x)]


@dataclass
class Account:
    account_id: str
    email: str
    name: str
    role: Role
    primary_org: str | None = None
    invited_orgs: list[str] = field(default_factory=list)
    is_active: bool = True
    created_at: str = ""
    updated_at: str = ""

    def __post_init__(self) -> None:
        self.role = Role(self.role)
        self.validate()

    def validate(self) -> None:
        if self.role.org_scoped and not self.primary_org:
            # a detached account (org deleted) is allowed only while inactive
            if self.is_active:
                raise ValidationError(f"primary_org is required for role {self.role.value}")
        if not self.role.org_scoped and self.primary_org:
            raise ValidationError(f"primary_org must not be set for role {self.role.value}")
        if self.role is not Role.PRACTITIONER and self.invited_orgs:
            raise ValidationError("invited_orgs is only valid for practitioners")

    def to_row(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "email": self.email,
            "name": self.name,
            "role": self.role.value,
            "primary_org": self.primary_org,
            "invited_orgs": list(self.invited_orgs),
            "is_active": self.is_active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Account":
        return cls(
            account_id=str(row["account_id"]),
            email=str(row.get("email") or ""),
            name=str(row.get("name") or ""),
            role=Role(str(row["role"])),
            primary_org=row.get("primary_org") or None,
            invited_orgs=_str_list(row.get("invited_orgs")),
            is_active=bool(row.get("is_active", True)),
            created_at=str(row.get("created_at") or ""),
            updated_at=str(row.get("updated_at") or ""),
        )


@dataclass
class Invitation:
    practitioner: str
    invited_at: str
    invited_by: str | None = None

    def to_row(self) -> dict[str, Any]:
        return {
            "practitioner": self.practitioner,
            "invited_at": self.invited_at,
            "invited_by": self.invited_by,
        }


@dataclass
class Organization:
    org_id: str
    name: str
    representative: str
    admins: list[str] = field(default_factory=list)
    invitations: list[Invitation] = field(default_factory=list)
    is_active: bool = True
    created_by: str | None = None
    created_at: str = ""
    updated_at: str = ""

    def __post_init__(self) -> None:
        if not self.representative:
            raise ValidationError("organization representative is required")

    def all_admins(self) -> set[str]:
        return {self.representative, *self.admins}

    def is_admin(self, account_id: str) -> bool:
        return account_id in self.all_admins()

    def invited_practitioners(self) -> list[str]:
        return [inv.practitioner for inv in self.invitations]

    def has_invited(self, account_id: str) -> bool:
        return any(inv.practitioner == account_id for inv in self.invitations)

    def to_row(self) -> dict[str, Any]:
        return {
            "org_id": self.org_id,
            "name": self.name,
            "representative": self.representative,
            "admins": list(self.admins),
            "invitations": [inv.to_row() for inv in self.invitations],
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Organization":
        invitations: list[Invitation] = []
        for item in row.get("invitations") or []:
            if not isinstance(item, dict) or not item.get("practitioner"):
                continue
            invitations.append(
                Invitation(
                    practitioner=str(item["practitioner"]),
                    invited_at=str(item.get("invited_at") or ""),
                    invited_by=item.get("invited_by"),
                )
            )
        return cls(
            org_id=str(row["org_id"]),
            name=str(row.get("name") or ""),
            representative=str(row.get("representative") or ""),
            admins=_str_list(row.get("admins")),
            invitations=invitations,
            is_active=bool(row.get("is_active", True)),
            created_by=row.get("created_by"),
            created_at=str(row.get("created_at") or ""),
            updated_at=str(row.get("updated_at") or ""),
        )


@dataclass
class DocumentRecord:
    document_id: str
    organization_id: str
    filename: str
    file_type: str = "other"
    original_name: str = ""
    uploaded_by: str | None = None
    status: DocumentStatus = DocumentStatus.UPLOADED
    analysis_id: str | None = None
    created_at: str = ""
    updated_at: str = ""

    def __post_init__(self) -> None:
        self.status = DocumentStatus(self.status)

    def snapshot(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "filename": self.original_name or self.filename,
            "file_type": self.file_type,
        }

    def to_row(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "organization_id": self.organization_id,
            "filename": self.filename,
            "file_type": self.file_type,
            "original_name": self.original_name,
            "uploaded_by": self.uploaded_by,
            "status": self.status.value,
            "analysis_id": self.analysis_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "DocumentRecord":
        return cls(
            document_id=str(row["document_id"]),
            organization_id=str(row.get("organization_id") or ""),
            filename=str(row.get("filename") or ""),
            file_type=str(row.get("file_type") or "other"),
            original_name=str(row.get("original_name") or ""),
            uploaded_by=row.get("uploaded_by"),
            status=DocumentStatus(str(row.get("status") or DocumentStatus.UPLOADED.value)),
            analysis_id=row.get("analysis_id"),
            created_at=str(row.get("created_at") or ""),
            updated_at=str(row.get("updated_at") or ""),
        )


@dataclass
class AnalysisRecord:
    analysis_id: str
    organization_id: str | None
    consolidated_payload: dict[str, Any]
    uploaded_by: str | None = None
    job_id: str | None = None
    documents: list[dict[str, Any]] = field(default_factory=list)
    document_count: int = 0
    total_pages_processed: int = 0
    health_analysis: dict[str, Any] = field(default_factory=dict)
    status: AnalysisStatus = AnalysisStatus.PROCESSING
    error: str | None = None
    created_at: str = ""
    updated_at: str = ""

    # fields overwritten on every ingest; created_at and updated_at are not among them
    OWNED_FIELDS = (
        "organization_id",
        "uploaded_by",
        "job_id",
        "documents",
        "document_count",
        "total_pages_processed",
        "consolidated_payload",
        "health_analysis",
        "status",
        "error",
    )

    def __post_init__(self) -> None:
        self.status = AnalysisStatus(self.status)

    def to_row(self) -> dict[str, Any]:
        return {
            "analysis_id": self.analysis_id,
            "organization_id": self.organization_id,
            "uploaded_by": self.uploaded_by,
            "job_id": self.job_id,
            "documents": [dict(x) for x in self.documents],
            "document_count": self.document_count,
            "total_pages_processed": self.total_pages_processed,
            "consolidated_payload": self.consolidated_payload,
            "health_analysis": self.health_analysis,
            "status": self.status.value,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "AnalysisRecord":
        payload = row.get("consolidated_payload")
        health = row.get("health_analysis")
        return cls(
            analysis_id=str(row["analysis_id"]),
            organization_id=row.get("organization_id"),
            uploaded_by=row.get("uploaded_by"),
            job_id=row.get("job_id"),
            documents=[dict(x) for x in row.get("documents") or [] if isinstance(x, dict)],
            document_count=int(row.get("document_count") or 0),
            total_pages_processed=int(row.get("total_pages_processed") or 0),
            consolidated_payload=payload if isinstance(payload, dict) else {},
            health_analysis=health if isinstance(health, dict) else {},
            status=AnalysisStatus(str(row.get("status") or AnalysisStatus.PROCESSING.value)),
            error=row.get("error"),
            created_at=str(row.get("created_at") or ""),
            updated_at=str(row.get("updated_at") or ""),
        )


@dataclass(frozen=True)
class OrgScope:
    """Narrowing predicate over organization ids for list-style reads."""

    unrestricted: bool = False
    org_ids: frozenset[str] = frozenset()

    @classmethod
    def everything(cls) -> "OrgScope":
        return cls(unrestricted=True)

    @classmethod
    def only(cls, org_ids: Any) -> "OrgScope":
        return cls(unrestricted=False, org_ids=frozenset(_str_list(org_ids)))

    def matches(self, org_id: str | None) -> bool:
        if self.unrestricted:
            return True
        return bool(org_id) and org_id in self.org_ids

    def __call__(self, org_id: str | None) -> bool:
        return self.matches(org_id)

    def narrow(self, org_id: str) -> "OrgScope":
        if self.matches(org_id):
            return OrgScope.only([org_id])
        return OrgScope.only([])


class NoteType(str, Enum):
    GENERAL = "general"
    CONCERN = "concern"
    RECOMMENDATION = "recommendation"
    HIGHLIGHT = "highlight"


def _attachments(value: Any) -> list[dict[str, str]]:
    items: list[dict[str, str]] = []
    for item in value if isinstance(value, list) else []:
        if not isinstance(item, dict):
            continue
        items.append(
            {
                "filename": str(item.get("filename") or ""),
                "url": str(item.get("url") or ""),
                "mime_type": str(item.get("mime_type") or ""),
            }
        )
    return items


@dataclass
class AnalysisNote:
    """Practitioner commentary on one analysis. Private notes stay with practitioners."""

    note_id: str
    analysis_id: str
    organization_id: str
    created_by: str
    content: str
    title: str = ""
    note_type: NoteType = NoteType.GENERAL
    is_private: bool = False
    attachments: list[dict[str, str]] = field(default_factory=list)
    edited_at: str | None = None
    created_at: str = ""
    updated_at: str = ""

    def __post_init__(self) -> None:
        try:
            self.note_type = NoteType(self.note_type)
        except ValueError:
            raise ValidationError(f"invalid note_type: {self.note_type!r}") from None
        self.content = str(self.content or "").strip()
        self.title = str(self.title or "").strip()
        self.attachments = _attachments(self.attachments)
        if not self.content:
            raise ValidationError("note content is required")
        if not self.organization_id:
            raise ValidationError("a note must belong to an organization")

    def to_row(self) -> dict[str, Any]:
        return {
            "note_id": self.note_id,
            "analysis_id": self.analysis_id,
            "organization_id": self.organization_id,
            "created_by": self.created_by,
            "note_type": self.note_type.value,
            "title": self.title,
            "content": self.content,
            "is_private": self.is_private,
            "attachments": [dict(x) for x in self.attachments],
            "edited_at": self.edited_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "AnalysisNote":
        return cls(
            note_id=str(row["note_id"]),
            analysis_id=str(row.get("analysis_id") or ""),
            organization_id=str(row.get("organization_id") or ""),
            created_by=str(row.get("created_by") or ""),
            content=str(row.get("content") or ""),
            title=str(row.get("title") or ""),
            note_type=str(row.get("note_type") or NoteType.GENERAL.value),
            is_private=bool(row.get("is_private", False)),
            attachments=_attachments(row.get("attachments")),
            edited_at=row.get("edited_at"),
            created_at=str(row.get("created_at") or ""),
            updated_at=str(row.get("updated_at") or ""),
        )
