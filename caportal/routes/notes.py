from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from caportal.errors import DeniedError, NotFoundError
from caportal.policy import Capability
from caportal.routes._deps import account_id_from_request, policy, trace_id_from_request
from caportal.schemas import NoteCreateRequest, NoteUpdateRequest, success_envelope
from caportal.store import store

router = APIRouter(prefix="/api/v1", tags=["notes"])


def _note_items(notes) -> dict:
    items = [note.to_row() for note in notes]
    return {"items": items, "total": len(items)}


@router.post("/analyses/{analysis_id}/notes")
def create_note(analysis_id: str, payload: NoteCreateRequest, request: Request):
    actor = account_id_from_request(request)
    record = store.get_analysis(analysis_id)
    if record is None:
        raise NotFoundError("analysis", analysis_id)
    if record.organization_id is None:
        raise DeniedError()
    policy.require(actor, Capability.ACT_AS_PRACTITIONER, record.organization_id)
    note = store.create_note(analysis=record, created_by=actor, payload=payload.model_dump(mode="json"))
    return JSONResponse(
        status_code=201,
        content=success_envelope(note.to_row(), trace_id_from_request(request)),
    )


@router.get("/analyses/{analysis_id}/notes")
def list_analysis_notes(analysis_id: str, request: Request):
    actor = account_id_from_request(request)
    record = store.get_analysis(analysis_id)
    if record is None:
        raise NotFoundError("analysis", analysis_id)
    if record.organization_id is None:
        policy.require_platform_admin(actor)
        return success_envelope(_note_items([]), trace_id_from_request(request))
    policy.require(actor, Capability.ACCESS, record.organization_id)
    notes = store.list_notes(
        scope=policy.list_accessible_predicate(actor).narrow(record.organization_id),
        analysis_id=analysis_id,
        include_private=policy.sees_private_notes(actor),
    )
    return success_envelope(_note_items(notes), trace_id_from_request(request))


@router.get("/organizations/{org_id}/notes")
def list_organization_notes(org_id: str, request: Request):
    actor = account_id_from_request(request)
    policy.require(actor, Capability.ACCESS, org_id)
    notes = store.list_notes(
        scope=policy.list_accessible_predicate(actor).narrow(org_id),
        org_id=org_id,
        include_private=policy.sees_private_notes(actor),
    )
    return success_envelope(_note_items(notes), trace_id_from_request(request))


@router.put("/notes/{note_id}")
def update_note(note_id: str, payload: NoteUpdateRequest, request: Request):
    actor = account_id_from_request(request)
    note = store.require_note(note_id)
    policy.require_note_author(actor, note)
    updated = store.update_note(note_id, payload.model_dump(mode="json", exclude_unset=True))
    return success_envelope(updated.to_row(), trace_id_from_request(request))


@router.delete("/notes/{note_id}")
def delete_note(note_id: str, request: Request):
    actor = account_id_from_request(request)
    note = store.require_note(note_id)
    policy.require_note_author(actor, note)
    store.delete_note(note)
    return success_envelope({"note_id": note_id, "deleted": True}, trace_id_from_request(request))
