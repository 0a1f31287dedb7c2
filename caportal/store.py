from __future__ import annotations

import logging
import os
import threading
import uuid
from collections.abc import Mapping
from dataclasses import replace
from datetime import datetime
from typing import Any

from caportal.db.postgres import PostgresTxRunner, _import_psycopg
from caportal.db.rls import PostgresRlsManager
from caportal.errors import NotFoundError, ValidationError
from caportal.models import (
    Account,
    AnalysisNote,
    AnalysisRecord,
    AnalysisStatus,
    DocumentRecord,
    Invitation,
    Organization,
    OrgScope,
    Role,
    utcnow_iso,
)
from caportal.repositories import (
    InMemoryAccountsRepository,
    InMemoryAnalysesRepository,
    InMemoryDocumentsRepository,
    InMemoryNotesRepository,
    InMemoryOrganizationsRepository,
    PostgresAccountsRepository,
    PostgresAnalysesRepository,
    PostgresDocumentsRepository,
    PostgresNotesRepository,
    PostgresOrganizationsRepository,
)
from caportal.runtime_profile import env_flag, true_stack_required

logger = logging.getLogger(__name__)


class InMemoryStore:
    """Entity store for accounts, organizations, documents, analyses and notes.

    The invitation pair (organization list plus the practitioner's
    ``invited_orgs`` mirror) and the analysis upsert are serialised on one
    re-entrant lock. The organization side is always written first and is the
    authoritative copy; the mirror is healed by :meth:`sync_practitioner_mirror`
    when a reader finds it stale.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.accounts: dict[str, dict[str, Any]] = {}
        self.organizations: dict[str, dict[str, Any]] = {}
        self.documents: dict[str, dict[str, Any]] = {}
        self.analyses: dict[str, dict[str, Any]] = {}
        self.notes: dict[str, dict[str, Any]] = {}
        self._bind_repositories()

    def _bind_repositories(self) -> None:
        self.accounts_repository = InMemoryAccountsRepository(self.accounts)
        self.organizations_repository = InMemoryOrganizationsRepository(self.organizations)
        self.documents_repository = InMemoryDocumentsRepository(self.documents)
        self.analyses_repository = InMemoryAnalysesRepository(self.analyses)
        self.notes_repository = InMemoryNotesRepository(self.notes)

    def reset(self) -> None:
        with self._lock:
            self.accounts.clear()
            self.organizations.clear()
            self.documents.clear()
            self.analyses.clear()
            self.notes.clear()

    @staticmethod
    def _utcnow_iso() -> str:
        return utcnow_iso()

    @staticmethod
    def _new_id(prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex[:12]}"

    # accounts

    def create_account(self, payload: dict[str, Any]) -> Account:
        now = self._utcnow_iso()
        try:
            account = Account(
                account_id=str(payload.get("account_id") or self._new_id("acc")),
                email=str(payload.get("email") or "").strip().lower(),
                name=str(payload.get("name") or "").strip(),
                role=Role(str(payload.get("role") or "")),
                primary_org=payload.get("primary_org") or None,
                invited_orgs=list(payload.get("invited_orgs") or []),
                is_active=bool(payload.get("is_active", True)),
                created_at=now,
                updated_at=now,
            )
        except ValueError:
            raise ValidationError(f"invalid role: {payload.get('role')!r}") from None
        with self._lock:
            if self.accounts_repository.get(account_id=account.account_id) is not None:
                raise ValidationError(f"account already exists: {account.account_id}")
            self.accounts_repository.upsert(account=account.to_row())
        return account

    def get_account(self, account_id: str) -> Account | None:
        row = self.accounts_repository.get(account_id=account_id)
        if row is None:
            return None
        return Account.from_row(row)

    def require_account(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if account is None:
            raise NotFoundError("account", account_id)
        return account

    def _save_account(self, account: Account) -> Account:
        account.validate()
        account.updated_at = self._utcnow_iso()
        self.accounts_repository.upsert(account=account.to_row())
        return account

    # organizations

    def create_organization(self, payload: dict[str, Any]) -> Organization:
        name = str(payload.get("name") or "").strip()
        if not name:
            raise ValidationError("organization name is required")
        now = self._utcnow_iso()
        org = Organization(
            org_id=str(payload.get("org_id") or self._new_id("org")),
            name=name,
            representative=str(payload.get("representative") or ""),
            admins=[],
            created_by=payload.get("created_by"),
            created_at=now,
            updated_at=now,
        )
        for account_id in dict.fromkeys(str(x) for x in payload.get("admins") or []):
            if account_id and account_id != org.representative:
                org.admins.append(account_id)
        with self._lock:
            if self.organizations_repository.get(org_id=org.org_id) is not None:
                raise ValidationError(f"organization already exists: {org.org_id}")
            rep = self._representative_candidate(org)
            admins = [self._admin_candidate(org, account_id) for account_id in org.admins]
            self.organizations_repository.upsert(organization=org.to_row())
            for account in ([rep] if rep is not None else []) + admins:
                self._bind_org_admin(account, org.org_id)
        logger.info(
            "organization_created org_id=%s representative=%s admins=%d",
            org.org_id,
            org.representative,
            len(org.admins),
        )
        return org

    def _administered_elsewhere(self, account: Account, org_id: str) -> str | None:
        if not account.primary_org or account.primary_org == org_id:
            return None
        other = self.get_organization(account.primary_org)
        if other is not None and other.is_admin(account.account_id):
            return other.org_id
        return None

    def _representative_candidate(self, org: Organization) -> Account | None:
        # a representative may be provisioned after the organization exists
        rep = self.get_account(org.representative)
        if rep is None:
            return None
        if not rep.role.org_scoped:
            raise ValidationError(f"representative must be an organization account, not {rep.role.value}")
        other = self._administered_elsewhere(rep, org.org_id)
        if other is not None:
            raise ValidationError(f"representative still administers organization {other}")
        return rep

    def _admin_candidate(self, org: Organization, account_id: str) -> Account:
        account = self.require_account(account_id)
        if account.role is not Role.ORG_ADMIN:
            raise ValidationError(f"admin {account_id} must have ORG_ADMIN role")
        if account.primary_org and account.primary_org != org.org_id:
            raise ValidationError(f"admin {account_id} is already assigned to another organization")
        return account

    def _bind_org_admin(self, account: Account, org_id: str) -> None:
        if account.primary_org == org_id and account.is_active and account.role is Role.ORG_ADMIN:
            return
        if account.role is not Role.ORG_ADMIN:
            logger.info("org_admin_promoted account_id=%s org_id=%s", account.account_id, org_id)
        account.role = Role.ORG_ADMIN
        account.primary_org = org_id
        account.is_active = True
        self._save_account(account)

    def get_organization(self, org_id: str) -> Organization | None:
        row = self.organizations_repository.get(org_id=org_id)
        if row is None:
            return None
        return Organization.from_row(row)

    def require_organization(self, org_id: str) -> Organization:
        org = self.get_organization(org_id)
        if org is None:
            raise NotFoundError("organization", org_id)
        return org

    def list_organizations(self, *, scope: OrgScope) -> list[Organization]:
        return [Organization.from_row(row) for row in self.organizations_repository.list(scope=scope)]

    def _save_organization(self, org: Organization) -> Organization:
        org.updated_at = self._utcnow_iso()
        self.organizations_repository.upsert(organization=org.to_row())
        return org

    def delete_organization(self, org_id: str) -> dict[str, Any]:
        with self._lock:
            self.require_organization(org_id)
            detached: list[str] = []
            for row in self.accounts_repository.list_by_primary_org(org_id=org_id):
                account = Account.from_row(row)
                account.primary_org = None
                account.is_active = False
                self._save_account(account)
                detached.append(account.account_id)
            unlinked: list[str] = []
            for row in self.accounts_repository.list_by_invited_org(org_id=org_id):
                account = Account.from_row(row)
                account.invited_orgs = [x for x in account.invited_orgs if x != org_id]
                self._save_account(account)
                unlinked.append(account.account_id)
            self.organizations_repository.delete(org_id=org_id)
        logger.info(
            "organization_deleted org_id=%s detached=%d practitioners_unlinked=%d",
            org_id,
            len(detached),
            len(unlinked),
        )
        return {
            "org_id": org_id,
            "deleted": True,
            "detached_accounts": detached,
            "unlinked_practitioners": unlinked,
        }

    def add_org_admin(self, *, org_id: str, account_id: str) -> Organization:
        with self._lock:
            org = self.require_organization(org_id)
            account = self.require_account(account_id)
            if account.role is not Role.ORG_ADMIN:
                raise ValidationError("account must have ORG_ADMIN role")
            if account.primary_org and account.primary_org != org_id:
                raise ValidationError("account is already assigned to another organization")
            if account_id in org.admins:
                raise ValidationError("account is already an organization admin")
            org.admins.append(account_id)
            self._save_organization(org)
            self._bind_org_admin(account, org_id)
        return org

    def remove_org_admin(self, *, org_id: str, account_id: str) -> Organization:
        with self._lock:
            org = self.require_organization(org_id)
            if account_id == org.representative:
                raise ValidationError("the representative cannot be removed from the organization admins")
            org.admins = [x for x in org.admins if x != account_id]
            self._save_organization(org)
            # the role fast path must keep agreeing with the admin list
            account = self.get_account(account_id)
            if account is not None and account.role is Role.ORG_ADMIN and account.primary_org == org_id:
                account.role = Role.ORG_MEMBER
                self._save_account(account)
        return org

    # invitations

    def invite_practitioner(self, *, org_id: str, practitioner_id: str, invited_by: str | None) -> Organization:
        with self._lock:
            org = self.require_organization(org_id)
            practitioner = self.require_account(practitioner_id)
            if practitioner.role is not Role.PRACTITIONER:
                raise ValidationError("account is not a practitioner")
            if org.has_invited(practitioner_id):
                raise ValidationError("practitioner is already invited to this organization")
            org.invitations.append(
                Invitation(practitioner=practitioner_id, invited_at=self._utcnow_iso(), invited_by=invited_by)
            )
            self._save_organization(org)
            self._write_mirror(account=practitioner, org_id=org_id, invited=True)
        logger.info("practitioner_invited org_id=%s practitioner_id=%s", org_id, practitioner_id)
        return org

    def revoke_practitioner(self, *, org_id: str, practitioner_id: str) -> Organization:
        with self._lock:
            org = self.require_organization(org_id)
            practitioner = self.require_account(practitioner_id)
            org.invitations = [x for x in org.invitations if x.practitioner != practitioner_id]
            self._save_organization(org)
            self._write_mirror(account=practitioner, org_id=org_id, invited=False)
        logger.info("practitioner_revoked org_id=%s practitioner_id=%s", org_id, practitioner_id)
        return org

    def _write_mirror(self, *, account: Account, org_id: str, invited: bool) -> None:
        try:
            self._apply_mirror(account=account, org_id=org_id, invited=invited)
        except Exception:
            # the organization write already committed; the next access check repairs the mirror
            logger.exception(
                "invitation_mirror_write_failed account_id=%s org_id=%s invited=%s",
                account.account_id,
                org_id,
                invited,
            )

    def _apply_mirror(self, *, account: Account, org_id: str, invited: bool) -> Account:
        current = [x for x in account.invited_orgs if x != org_id]
        if invited:
            current.append(org_id)
        if current == account.invited_orgs:
            return account
        account.invited_orgs = current
        return self._save_account(account)

    def sync_practitioner_mirror(self, *, account_id: str, org_id: str, invited: bool) -> Account | None:
        """Heal an account's ``invited_orgs`` toward the organization's invitation list."""
        with self._lock:
            account = self.get_account(account_id)
            if account is None or account.role is not Role.PRACTITIONER:
                return account
            logger.warning(
                "invitation_mirror_repaired account_id=%s org_id=%s invited=%s",
                account_id,
                org_id,
                invited,
            )
            return self._apply_mirror(account=account, org_id=org_id, invited=invited)

    # documents

    def register_document(self, payload: dict[str, Any]) -> DocumentRecord:
        organization_id = str(payload.get("organization_id") or "").strip()
        filename = str(payload.get("filename") or "").strip()
        if not organization_id or not filename:
            raise ValidationError("organization_id and filename are required")
        now = self._utcnow_iso()
        doc = DocumentRecord(
            document_id=str(payload.get("document_id") or self._new_id("doc")),
            organization_id=organization_id,
            filename=filename,
            file_type=str(payload.get("file_type") or "other"),
            original_name=str(payload.get("original_name") or filename),
            uploaded_by=payload.get("uploaded_by"),
            created_at=now,
            updated_at=now,
        )
        self.documents_repository.upsert(document=doc.to_row())
        return doc

    def get_document(self, document_id: str) -> DocumentRecord | None:
        row = self.documents_repository.get(document_id=document_id)
        if row is None:
            return None
        return DocumentRecord.from_row(row)

    def resolve_documents(self, document_ids: list[str]) -> list[DocumentRecord]:
        return [DocumentRecord.from_row(row) for row in self.documents_repository.get_many(document_ids=document_ids)]

    def list_documents(self, *, scope: OrgScope, org_id: str | None = None) -> list[DocumentRecord]:
        rows = self.documents_repository.list(scope=scope, org_id=org_id)
        return [DocumentRecord.from_row(row) for row in rows]

    def mark_documents_analyzed(self, *, document_ids: list[str], analysis_id: str) -> int:
        if not document_ids:
            return 0
        return self.documents_repository.mark_analyzed(
            document_ids=document_ids,
            analysis_id=analysis_id,
            updated_at=self._utcnow_iso(),
        )

    # analyses

    def get_analysis(self, analysis_id: str) -> AnalysisRecord | None:
        row = self.analyses_repository.get(analysis_id=analysis_id)
        if row is None:
            return None
        return AnalysisRecord.from_row(row)

    def upsert_analysis(self, record: AnalysisRecord) -> tuple[AnalysisRecord, bool]:
        """Insert or fully replace an analysis keyed by ``analysis_id``.

        Returns the stored record and whether anything was written. Replaying
        identical content is a no-op, so the stored row, timestamps included,
        stays byte-identical.
        """
        with self._lock:
            existing = self.get_analysis(record.analysis_id)
            now = self._utcnow_iso()
            if existing is None:
                stored = replace(record, created_at=now, updated_at=now)
            else:
                old_row = existing.to_row()
                new_row = record.to_row()
                if all(old_row[name] == new_row[name] for name in AnalysisRecord.OWNED_FIELDS):
                    return existing, False
                stored = replace(record, created_at=existing.created_at, updated_at=now)
            self.analyses_repository.upsert(analysis=stored.to_row())
        return stored, True

    def list_analyses(
        self,
        *,
        scope: OrgScope,
        org_id: str | None = None,
        analysis_ids: list[str] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        status: AnalysisStatus | None = None,
        newest_first: bool = False,
        limit: int | None = None,
    ) -> list[AnalysisRecord]:
        rows = self.analyses_repository.list(
            scope=scope,
            org_id=org_id,
            analysis_ids=analysis_ids,
            start=start,
            end=end,
            status=status.value if status is not None else None,
            newest_first=newest_first,
            limit=limit,
        )
        return [AnalysisRecord.from_row(row) for row in rows]

    # notes

    NOTE_EDITABLE_FIELDS = ("title", "content", "note_type", "is_private", "attachments")

    def create_note(self, *, analysis: AnalysisRecord, created_by: str, payload: dict[str, Any]) -> AnalysisNote:
        if not analysis.organization_id:
            raise ValidationError("analysis is not attributed to an organization")
        now = self._utcnow_iso()
        note = AnalysisNote(
            note_id=self._new_id("note"),
            analysis_id=analysis.analysis_id,
            organization_id=analysis.organization_id,
            created_by=created_by,
            content=payload.get("content") or "",
            title=payload.get("title") or "",
            note_type=payload.get("note_type") or "general",
            is_private=bool(payload.get("is_private", False)),
            attachments=payload.get("attachments") or [],
            created_at=now,
            updated_at=now,
        )
        self.notes_repository.upsert(note=note.to_row())
        logger.info(
            "note_created note_id=%s analysis_id=%s org_id=%s private=%s",
            note.note_id,
            note.analysis_id,
            note.organization_id,
            note.is_private,
        )
        return note

    def get_note(self, note_id: str) -> AnalysisNote | None:
        row = self.notes_repository.get(note_id=note_id)
        if row is None:
            return None
        return AnalysisNote.from_row(row)

    def require_note(self, note_id: str) -> AnalysisNote:
        note = self.get_note(note_id)
        if note is None:
            raise NotFoundError("note", note_id)
        return note

    def update_note(self, note_id: str, changes: dict[str, Any]) -> AnalysisNote:
        with self._lock:
            note = self.require_note(note_id)
            row = note.to_row()
            for name in self.NOTE_EDITABLE_FIELDS:
                if name in changes and changes[name] is not None:
                    row[name] = changes[name]
            now = self._utcnow_iso()
            row["edited_at"] = now
            row["updated_at"] = now
            updated = AnalysisNote.from_row(row)
            self.notes_repository.upsert(note=updated.to_row())
        return updated

    def delete_note(self, note: AnalysisNote) -> bool:
        return self.notes_repository.delete(note_id=note.note_id, org_id=note.organization_id)

    def list_notes(
        self,
        *,
        scope: OrgScope,
        org_id: str | None = None,
        analysis_id: str | None = None,
        include_private: bool = False,
    ) -> list[AnalysisNote]:
        rows = self.notes_repository.list(
            scope=scope,
            org_id=org_id,
            analysis_id=analysis_id,
            include_private=include_private,
        )
        return [AnalysisNote.from_row(row) for row in rows]


class PostgresBackedStore(InMemoryStore):
    """Entity store persisted in PostgreSQL tables, one transaction per repository call."""

    SCHEMA_SQL: tuple[str, ...] = (
        """
        CREATE TABLE IF NOT EXISTS accounts (
          account_id TEXT PRIMARY KEY,
          email TEXT NOT NULL,
          name TEXT NOT NULL,
          role TEXT NOT NULL,
          primary_org TEXT NULL,
          invited_orgs JSONB NOT NULL DEFAULT '[]'::jsonb,
          is_active BOOLEAN NOT NULL DEFAULT TRUE,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_accounts_primary_org ON accounts(primary_org)",
        """
        CREATE TABLE IF NOT EXISTS organizations (
          org_id TEXT PRIMARY KEY,
          name TEXT NOT NULL,
          representative TEXT NOT NULL,
          admins JSONB NOT NULL DEFAULT '[]'::jsonb,
          invitations JSONB NOT NULL DEFAULT '[]'::jsonb,
          is_active BOOLEAN NOT NULL DEFAULT TRUE,
          created_by TEXT NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS documents (
          document_id TEXT PRIMARY KEY,
          organization_id TEXT NOT NULL,
          filename TEXT NOT NULL,
          file_type TEXT NOT NULL,
          original_name TEXT NOT NULL DEFAULT '',
          uploaded_by TEXT NULL,
          status TEXT NOT NULL,
          analysis_id TEXT NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_documents_org_created ON documents(organization_id, created_at)",
        """
        CREATE TABLE IF NOT EXISTS analyses (
          analysis_id TEXT PRIMARY KEY,
          organization_id TEXT NULL,
          uploaded_by TEXT NULL,
          job_id TEXT NULL,
          documents JSONB NOT NULL DEFAULT '[]'::jsonb,
          document_count INTEGER NOT NULL DEFAULT 0,
          total_pages_processed INTEGER NOT NULL DEFAULT 0,
          consolidated_payload JSONB NOT NULL DEFAULT '{}'::jsonb,
          health_analysis JSONB NOT NULL DEFAULT '{}'::jsonb,
          status TEXT NOT NULL,
          error TEXT NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_analyses_org_created ON analyses(organization_id, created_at)",
        """
        CREATE TABLE IF NOT EXISTS analysis_notes (
          note_id TEXT PRIMARY KEY,
          analysis_id TEXT NOT NULL,
          organization_id TEXT NOT NULL,
          created_by TEXT NOT NULL,
          note_type TEXT NOT NULL,
          title TEXT NOT NULL DEFAULT '',
          content TEXT NOT NULL,
          is_private BOOLEAN NOT NULL DEFAULT FALSE,
          attachments JSONB NOT NULL DEFAULT '[]'::jsonb,
          edited_at TEXT NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_analysis_notes_analysis_created ON analysis_notes(analysis_id, created_at)",
    )

    def __init__(self, *, dsn: str, apply_rls: bool = False) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must be provided for postgres store backend")
        self._dsn = dsn.strip()
        self._tx_runner = PostgresTxRunner(self._dsn)
        super().__init__()
        self._initialize_database()
        if apply_rls:
            PostgresRlsManager(self._dsn).apply()

    def _bind_repositories(self) -> None:
        self.accounts_repository = PostgresAccountsRepository(tx_runner=self._tx_runner)
        self.organizations_repository = PostgresOrganizationsRepository(tx_runner=self._tx_runner)
        self.documents_repository = PostgresDocumentsRepository(tx_runner=self._tx_runner)
        self.analyses_repository = PostgresAnalysesRepository(tx_runner=self._tx_runner)
        self.notes_repository = PostgresNotesRepository(tx_runner=self._tx_runner)

    def _initialize_database(self) -> None:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                for statement in self.SCHEMA_SQL:
                    cur.execute(statement)
            conn.commit()

    def reset(self) -> None:
        psycopg = _import_psycopg()
        with self._lock:
            with psycopg.connect(self._dsn) as conn:
                with conn.cursor() as cur:
                    cur.execute("TRUNCATE analysis_notes, analyses, documents, organizations, accounts")
                conn.commit()


def create_store_from_env(environ: Mapping[str, str] | None = None) -> InMemoryStore:
    env = os.environ if environ is None else environ
    backend = env.get("CAP_STORE_BACKEND", "memory").strip().lower()
    if true_stack_required(env) and backend != "postgres":
        raise RuntimeError("CAP_STORE_BACKEND must be postgres when CAP_REQUIRE_TRUESTACK=true")
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when CAP_STORE_BACKEND=postgres")
        apply_rls = env_flag(env, "POSTGRES_APPLY_RLS")
        return PostgresBackedStore(dsn=dsn, apply_rls=apply_rls)
    if backend != "memory":
        raise RuntimeError(f"unsupported store backend: {backend}")
    return InMemoryStore()


store = create_store_from_env()
