from __future__ import annotations

from caportal.models import DocumentStatus
from caportal.store import store
from conftest import INTERNAL_HEADERS, analysis_message


def test_internal_endpoints_require_debug_header(client, portal):
    resp = client.post("/api/v1/internal/analysis-events", json=analysis_message("an_1"))
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "AUTH_FORBIDDEN"
    assert store.get_analysis("an_1") is None

    resp = client.post(
        "/api/v1/internal/accounts",
        json={"email": "x@y.test", "role": "PRACTITIONER"},
        headers={"x-internal-debug": "false"},
    )
    assert resp.status_code == 403


def test_analysis_event_reports_pipeline_outcome(client, portal):
    doc = client.post(
        "/api/v1/internal/documents",
        json={"document_id": "doc_1", "organization_id": portal.acme, "filename": "bs.pdf", "uploaded_by": portal.member},
        headers=INTERNAL_HEADERS,
    )
    assert doc.status_code == 201
    assert doc.json()["data"]["status"] == "UPLOADED"

    first = client.post(
        "/api/v1/internal/analysis-events",
        json=analysis_message("an_1", document_ids=["doc_1"]),
        headers=INTERNAL_HEADERS,
    )
    assert first.status_code == 202
    assert first.json()["data"] == {
        "analysis_id": "an_1",
        "stage": "DOCUMENT_STATUS_SYNCED",
        "ok": True,
        "written": True,
        "documents_resolved": 1,
        "documents_marked": 1,
        "error": None,
    }
    assert store.get_document("doc_1").status is DocumentStatus.ANALYZED

    replay = client.post(
        "/api/v1/internal/analysis-events",
        json=analysis_message("an_1", document_ids=["doc_1"]),
        headers=INTERNAL_HEADERS,
    )
    assert replay.json()["data"]["written"] is False


def test_malformed_event_is_accepted_but_dropped(client, portal):
    resp = client.post("/api/v1/internal/analysis-events", json={"analysis_id": 42}, headers=INTERNAL_HEADERS)
    assert resp.status_code == 202
    data = resp.json()["data"]
    assert data["ok"] is False
    assert data["stage"] == "RECEIVED"


def test_internal_account_creation_validates_role(client):
    created = client.post(
        "/api/v1/internal/accounts",
        json={"account_id": "acc_new", "email": "New@Firm.test", "role": "PRACTITIONER"},
        headers=INTERNAL_HEADERS,
    )
    assert created.status_code == 201
    assert created.json()["data"]["email"] == "new@firm.test"

    bad_role = client.post(
        "/api/v1/internal/accounts",
        json={"email": "a@b.test", "role": "AUDITOR"},
        headers=INTERNAL_HEADERS,
    )
    assert bad_role.status_code == 400

    missing_org = client.post(
        "/api/v1/internal/accounts",
        json={"email": "a@b.test", "role": "ORG_MEMBER"},
        headers=INTERNAL_HEADERS,
    )
    assert missing_org.status_code == 400
    assert "primary_org" in missing_org.json()["error"]["message"]
