from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from caportal.policy import Capability
from caportal.routes._deps import account_id_from_request, policy, trace_id_from_request
from caportal.schemas import (
    InvitePractitionerRequest,
    OrgAdminRequest,
    OrganizationCreateRequest,
    success_envelope,
)
from caportal.store import store

router = APIRouter(prefix="/api/v1", tags=["organizations"])


@router.get("/organizations")
def list_organizations(request: Request):
    scope = policy.list_accessible_predicate(account_id_from_request(request))
    items = [org.to_row() for org in store.list_organizations(scope=scope)]
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.post("/organizations")
def create_organization(payload: OrganizationCreateRequest, request: Request):
    actor = account_id_from_request(request)
    policy.require_platform_admin(actor)
    org = store.create_organization({**payload.model_dump(mode="json"), "created_by": actor})
    return JSONResponse(
        status_code=201,
        content=success_envelope(org.to_row(), trace_id_from_request(request)),
    )


@router.get("/organizations/{org_id}")
def get_organization(org_id: str, request: Request):
    policy.require(account_id_from_request(request), Capability.ACCESS, org_id)
    org = store.require_organization(org_id)
    return success_envelope(org.to_row(), trace_id_from_request(request))


@router.delete("/organizations/{org_id}")
def delete_organization(org_id: str, request: Request):
    policy.require_platform_admin(account_id_from_request(request))
    data = store.delete_organization(org_id)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/organizations/{org_id}/practitioners")
def invite_practitioner(org_id: str, payload: InvitePractitionerRequest, request: Request):
    actor = account_id_from_request(request)
    policy.require(actor, Capability.ADMINISTER, org_id)
    org = store.invite_practitioner(org_id=org_id, practitioner_id=payload.practitioner_id, invited_by=actor)
    return success_envelope(org.to_row(), trace_id_from_request(request))


@router.delete("/organizations/{org_id}/practitioners/{account_id}")
def revoke_practitioner(org_id: str, account_id: str, request: Request):
    policy.require(account_id_from_request(request), Capability.ADMINISTER, org_id)
    org = store.revoke_practitioner(org_id=org_id, practitioner_id=account_id)
    return success_envelope(org.to_row(), trace_id_from_request(request))


@router.post("/organizations/{org_id}/admins")
def add_org_admin(org_id: str, payload: OrgAdminRequest, request: Request):
    policy.require(account_id_from_request(request), Capability.ADMINISTER, org_id)
    org = store.add_org_admin(org_id=org_id, account_id=payload.account_id)
    return success_envelope(org.to_row(), trace_id_from_request(request))


@router.delete("/organizations/{org_id}/admins/{account_id}")
def remove_org_admin(org_id: str, account_id: str, request: Request):
    policy.require(account_id_from_request(request), Capability.ADMINISTER, org_id)
    org = store.remove_org_admin(org_id=org_id, account_id=account_id)
    return success_envelope(org.to_row(), trace_id_from_request(request))


@router.get("/organizations/{org_id}/documents")
def list_documents(org_id: str, request: Request):
    actor = account_id_from_request(request)
    policy.require(actor, Capability.ACCESS, org_id)
    scope = policy.list_accessible_predicate(actor).narrow(org_id)
    items = [doc.to_row() for doc in store.list_documents(scope=scope, org_id=org_id)]
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))
