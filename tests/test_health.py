def test_api_health_endpoint_needs_no_token(client):
    resp = client.get("/api/v1/health", headers={"x-trace-id": "trace_health"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"] == {"status": "ok"}
    assert body["meta"]["trace_id"] == "trace_health"
    assert resp.headers["x-trace-id"] == "trace_health"
    assert resp.headers["x-request-id"].startswith("req_")


def test_unknown_route_uses_error_envelope(client):
    resp = client.get("/api/v1/does-not-exist")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "REQ_NOT_FOUND"


def test_cors_preflight_is_answered_without_a_token(client):
    resp = client.options(
        "/api/v1/organizations",
        headers={"Origin": "http://localhost:5173", "Access-Control-Request-Method": "GET"},
    )
    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == "http://localhost:5173"
