from datetime import datetime, timedelta, timezone

import pytest

from conftest import sign_headers
from app import app, issue_token
from db.models import get_order


@pytest.fixture
def client(manual_lifecycle):
    app.config["ORDER_LIFECYCLE"] = manual_lifecycle
    yield app.test_client()
    app.config["ORDER_LIFECYCLE"] = None


def _auth(user_id):
    return {"Authorization": f"Bearer {issue_token(user_id)}"}


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["status"] == "ok"


def test_orders_require_token(client):
    r = client.post("/orders", json={"product_key": "personal_package"})
    assert r.status_code == 401
    assert r.json.get("ok") is False


def test_forged_token_is_rejected(client):
    r = client.get("/orders", headers={"Authorization": "Bearer client-1.deadbeef"})
    assert r.status_code == 401


def test_pricing_resolve(client, global_price, client_profile):
    r = client.get("/pricing/resolve?product_key=personal_package", headers=_auth(client_profile))
    assert r.status_code == 200
    assert r.json["price"]["price_cents"] == 9990


def test_pricing_resolve_without_rule(client, client_profile):
    r = client.get("/pricing/resolve?product_key=personal_package", headers=_auth(client_profile))
    assert r.status_code == 400
    assert r.json["code"] == "no_pricing_rule"


def test_create_manual_order_and_read_it(client, global_price, client_profile):
    r = client.post("/orders", json={"product_key": "personal_package"}, headers=_auth(client_profile))
    assert r.status_code == 200
    assert r.json["status"] == "manual_review"
    assert r.json["pix_copy_paste"] == "00020126manualcopypaste"
    order_id = r.json["order_id"]

    r = client.get(f"/orders/{order_id}", headers=_auth(client_profile))
    assert r.status_code == 200
    assert r.json["order"]["status"] == "manual_review"
    assert "effects_applied_at" not in r.json["order"]

    r = client.get(f"/orders/{order_id}", headers=_auth("someone-else"))
    assert r.status_code == 403

    r = client.get("/orders", headers=_auth(client_profile))
    assert [o["id"] for o in r.json["orders"]] == [order_id]


def test_create_order_rejects_non_object_body(client, client_profile):
    r = client.post("/orders", json=["personal_package"], headers=_auth(client_profile))
    assert r.status_code == 400


def test_manual_proof_review_flow(client, effects, global_price, client_profile, admin_profile):
    order_id = client.post(
        "/orders", json={"product_key": "personal_package"}, headers=_auth(client_profile)
    ).json["order_id"]

    r = client.post(f"/orders/{order_id}/proofs", json={"file_path": "proofs/pix.jpg"}, headers=_auth(client_profile))
    assert r.status_code == 201
    proof_id = r.json["proof"]["id"]

    r = client.post(
        "/admin/manual-proofs/review",
        json={"proof_id": proof_id, "action": "approve"},
        headers=_auth(client_profile),
    )
    assert r.status_code == 403
    assert r.json["error"] == "Admin access required"

    r = client.post(
        "/admin/manual-proofs/review",
        json={"proof_id": proof_id, "action": "approve"},
        headers=_auth(admin_profile),
    )
    assert r.status_code == 200
    assert r.json["order_status"] == "paid"
    assert get_order(order_id).status == "paid"
    assert effects.calls == [order_id]


def test_provider_settings_roundtrip(client, admin_profile):
    r = client.put(
        "/admin/provider-settings",
        json={"active_provider": "manual", "manual_pix_copy_paste": "000201studio"},
        headers=_auth(admin_profile),
    )
    assert r.status_code == 200
    assert r.json["settings"]["manual_pix_copy_paste"] == "000201studio"

    r = client.get("/admin/provider-settings", headers=_auth(admin_profile))
    assert r.json["settings"]["active_provider"] == "manual"


def test_provider_settings_rejects_unknown_provider(client, admin_profile):
    r = client.put("/admin/provider-settings", json={"active_provider": "paypal"}, headers=_auth(admin_profile))
    assert r.status_code == 400


def test_pricing_rule_upsert_by_professional(client):
    r = client.put(
        "/pricing/rules",
        json={"scope": "professional", "product_key": "personal_package", "price_cents": 12000},
        headers=_auth("pro-1"),
    )
    assert r.status_code == 200
    assert r.json["rule"]["owner_id"] == "pro-1"

    r = client.put(
        "/pricing/rules",
        json={"scope": "global", "product_key": "personal_package", "price_cents": 12000},
        headers=_auth("pro-1"),
    )
    assert r.status_code == 403


def test_webhook_endpoint_marks_paid(gateway, effects, lifecycle, global_price, client_profile):
    app.config["ORDER_LIFECYCLE"] = lifecycle
    try:
        client = app.test_client()
        order_id = lifecycle.create(client_profile, "personal_package")["order_id"]
        gateway.set_status("1001", "approved")

        r = client.post(
            "/webhooks/pix?provider=mercadopago",
            json={"type": "payment", "data": {"id": "1001"}},
            headers=sign_headers("1001"),
        )
        assert r.status_code == 200
        assert r.json["status"] == "paid"

        r = client.post(
            "/webhooks/pix?provider=mercadopago",
            json={"type": "payment", "data": {"id": "1001"}},
            headers={"x-signature": "ts=1,v1=bad", "x-request-id": "req-1"},
        )
        assert r.status_code == 401
        assert get_order(order_id).status == "paid"
        assert effects.calls == [order_id]
    finally:
        app.config["ORDER_LIFECYCLE"] = None


def test_expire_orders_command(lifecycle, global_price):
    lifecycle.create("client-1", "personal_package")
    lifecycle.clock = lambda: datetime.now(timezone.utc) + timedelta(hours=1)
    app.config["ORDER_LIFECYCLE"] = lifecycle
    try:
        result = app.test_cli_runner().invoke(args=["expire-orders"])
    finally:
        app.config["ORDER_LIFECYCLE"] = None
    assert result.exit_code == 0
    assert "1 pedido(s) expirado(s)." in result.output


@pytest.mark.parametrize("active", ["false", 0, None])
def test_pricing_rule_rejects_non_boolean_active(client, active):
    r = client.put(
        "/pricing/rules",
        json={"scope": "professional", "product_key": "personal_package", "price_cents": 12000, "active": active},
        headers=_auth("pro-1"),
    )
    assert r.status_code == 400
    assert r.json["code"] == "validation_error"


def test_pricing_rule_can_be_deactivated(client):
    r = client.put(
        "/pricing/rules",
        json={"scope": "professional", "product_key": "personal_package", "price_cents": 12000, "active": False},
        headers=_auth("pro-1"),
    )
    assert r.status_code == 200
    assert r.json["rule"]["active"] is False
