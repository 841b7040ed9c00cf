from conftest import ADDRESS


def test_validation_errors_use_envelope(client):
    resp = client.post("/api/auth/register", json={"email": "not-an-email", "password": "x"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["message"] == "Validation failed"
    fields = {tuple(err["loc"]) for err in body["errors"]}
    assert ("body", "email") in fields
    assert ("body", "password") in fields


def test_unknown_route_uses_envelope(client):
    resp = client.get("/api/nowhere")
    assert resp.status_code == 404
    assert resp.json() == {"success": False, "message": "Not Found"}


def test_missing_token_sets_bearer_challenge(client):
    resp = client.post("/api/orders", json={"shipping_address": ADDRESS, "payment_method": "card"})
    assert resp.status_code == 401
    assert resp.headers["www-authenticate"] == "Bearer"
    assert resp.json()["success"] is False


def test_health_endpoints(client):
    assert client.get("/api/health").json()["status"] == "OK"
    assert client.get("/").status_code == 200
    assert client.get("/test").json()["connection_status"] == "Connected"
