from conftest import db, login
from seed import seed_admin


def test_seed_admin_is_idempotent(client):
    assert seed_admin("Admin@Marketplace.com", "adminpass") is True
    assert seed_admin("admin@marketplace.com", "other") is False
    assert db["user"].count_documents({"role": "admin"}) == 1

    resp = login(client, "admin@marketplace.com", "adminpass")
    assert resp.status_code == 200
    assert resp.json()["data"]["user"]["role"] == "admin"
