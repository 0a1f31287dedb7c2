from __future__ import annotations

import pytest

from caportal.models import AnalysisRecord, AnalysisStatus
from caportal.store import store
from conftest import INTERNAL_HEADERS, analysis_message


def _ingest(client, message: dict) -> None:
    resp = client.post("/api/v1/internal/analysis-events", json=message, headers=INTERNAL_HEADERS)
    assert resp.status_code == 202


def _note(client, analysis_id: str = "an_1", *, as_account: str = "acc_ca", **body):
    payload = {"content": "Current ratio below peers", **body}
    return client.post(f"/api/v1/analyses/{analysis_id}/notes", json=payload, as_account=as_account)


@pytest.fixture
def analysis(client, portal):
    _ingest(client, analysis_message("an_1"))
    return "an_1"


def test_invited_practitioner_creates_note(client, portal, analysis):
    resp = _note(client, title="Liquidity", note_type="concern", attachments=[{"filename": "ratios.xlsx"}])
    assert resp.status_code == 201
    data = resp.json()["data"]
    assert data["analysis_id"] == analysis
    assert data["organization_id"] == portal.acme
    assert data["created_by"] == portal.ca
    assert data["note_type"] == "concern"
    assert data["attachments"] == [{"filename": "ratios.xlsx", "url": "", "mime_type": ""}]
    assert data["edited_at"] is None


@pytest.mark.parametrize("account", ["acc_rep", "acc_admin", "acc_member", "acc_platform", "acc_ca_other"])
def test_only_invited_practitioners_write_notes(client, portal, analysis, account):
    resp = _note(client, as_account=account)
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "AUTH_FORBIDDEN"


def test_revoked_practitioner_loses_write_access(client, portal, analysis):
    note_id = _note(client).json()["data"]["note_id"]
    store.revoke_practitioner(org_id=portal.acme, practitioner_id=portal.ca)

    assert _note(client).status_code == 403
    assert client.put(f"/api/v1/notes/{note_id}", json={"content": "x"}, as_account=portal.ca).status_code == 403
    assert client.delete(f"/api/v1/notes/{note_id}", as_account=portal.ca).status_code == 403


def test_private_notes_are_hidden_from_organization_accounts(client, portal, analysis):
    _note(client, content="shared observation")
    _note(client, content="working draft", is_private=True)

    for account in (portal.rep, portal.member):
        resp = client.get(f"/api/v1/analyses/{analysis}/notes", as_account=account)
        assert resp.status_code == 200
        assert [x["content"] for x in resp.json()["data"]["items"]] == ["shared observation"]

    for account in (portal.ca, portal.platform):
        resp = client.get(f"/api/v1/organizations/{portal.acme}/notes", as_account=account)
        assert resp.json()["data"]["total"] == 2


def test_note_reads_require_organization_access(client, portal, analysis):
    _note(client)
    assert client.get(f"/api/v1/analyses/{analysis}/notes", as_account=portal.beta_rep).status_code == 403
    assert client.get(f"/api/v1/organizations/{portal.acme}/notes", as_account=portal.ca_other).status_code == 403


def test_only_the_author_edits_or_deletes_a_note(client, portal, analysis):
    store.invite_practitioner(org_id=portal.acme, practitioner_id=portal.ca_other, invited_by=portal.rep)
    note_id = _note(client).json()["data"]["note_id"]

    assert client.put(f"/api/v1/notes/{note_id}", json={"content": "x"}, as_account=portal.ca_other).status_code == 403
    assert client.delete(f"/api/v1/notes/{note_id}", as_account=portal.rep).status_code == 403

    resp = client.put(f"/api/v1/notes/{note_id}", json={"content": "Revised", "is_private": True}, as_account=portal.ca)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["content"] == "Revised"
    assert data["is_private"] is True
    assert data["note_type"] == "general"
    assert data["edited_at"] is not None

    resp = client.delete(f"/api/v1/notes/{note_id}", as_account=portal.ca)
    assert resp.json()["data"] == {"note_id": note_id, "deleted": True}
    assert client.delete(f"/api/v1/notes/{note_id}", as_account=portal.ca).json()["error"]["code"] == "NOTE_NOT_FOUND"


def test_note_validation_and_missing_analysis(client, portal, analysis):
    invalid = _note(client, note_type="rumour")
    assert invalid.status_code == 400
    assert invalid.json()["error"]["code"] == "REQ_VALIDATION_FAILED"
    assert _note(client, content="").status_code == 400

    missing = _note(client, "an_missing")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "ANALYSIS_NOT_FOUND"


def test_unattributed_analysis_takes_no_notes(client, portal):
    store.upsert_analysis(
        AnalysisRecord(
            analysis_id="an_orphan", organization_id=None, consolidated_payload={}, status=AnalysisStatus.COMPLETED
        )
    )
    assert _note(client, "an_orphan").status_code == 403
    assert client.get("/api/v1/analyses/an_orphan/notes").json()["data"]["items"] == []
