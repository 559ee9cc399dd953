import pytest
from fastapi.testclient import TestClient
from jose import jwt

from conftest import rate_transport
from kaspa_gateway.auth import verify_token
from kaspa_gateway.config import Settings
from kaspa_gateway.derivation import KaspaAddressDeriver
from kaspa_gateway.main import app as fastapi_app
from kaspa_gateway.routes import get_service
from kaspa_gateway.service import build_service

RATE_HOSTS = ("api.coingecko.com", "min-api.cryptocompare.com")


def make_service(session_factory, kpub, fake_api, rates=None):
    settings = Settings(jwt_secret="test-secret", watch_only_key=kpub, sweep_enabled=False)
    return build_service(
        settings,
        session_factory,
        api_transport=fake_api.transport,
        rate_transport=rates or rate_transport(usd=2.0),
    )


@pytest.fixture
def service(session_factory, kpub, fake_api):
    return make_service(session_factory, kpub, fake_api)


@pytest.fixture
def client(service):
    fastapi_app.dependency_overrides[verify_token] = lambda: "admin-7"
    fastapi_app.dependency_overrides[get_service] = lambda: service
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


def test_create_payment_assigns_address(client, service):
    response = client.post("/payments", json={"order_id": "100", "fiat_total": "10.00"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "awaiting_payment"
    assert body["expected_amount"] == "5.00000000"
    assert body["payment_address"].startswith("kaspa:")
    assert body["pending_address"] is False
    assert body["meta"]["_kaspa_address_index"] == 0
    assert service.allocator.peek("default") == 1


def test_create_payment_twice_keeps_first_quote(client, service):
    first = client.post("/payments", json={"order_id": "100", "fiat_total": "10.00"}).json()
    second = client.post("/payments", json={"order_id": "100", "fiat_total": "99.00"}).json()

    assert second["payment_address"] == first["payment_address"]
    assert second["expected_amount"] == "5.00000000"
    assert service.allocator.peek("default") == 1


def test_create_payment_rejects_non_positive_total(client):
    response = client.post("/payments", json={"order_id": "100", "fiat_total": "0"})

    assert response.status_code == 422


def test_create_payment_without_rate(session_factory, kpub, fake_api):
    service = make_service(session_factory, kpub, fake_api, rates=rate_transport(failing=RATE_HOSTS))
    fastapi_app.dependency_overrides[verify_token] = lambda: "admin-7"
    fastapi_app.dependency_overrides[get_service] = lambda: service
    try:
        with TestClient(fastapi_app) as c:
            response = c.post("/payments", json={"order_id": "100", "fiat_total": "10.00"})
    finally:
        fastapi_app.dependency_overrides.clear()

    assert response.status_code == 503
    assert "exchange rate" in response.json()["detail"]
    assert service.state.find("100") is None


def test_get_unknown_payment(client):
    response = client.get("/payments/nope")

    assert response.status_code == 404


def test_save_externally_derived_address(client, service, kpub):
    service.state.create("200", "default", 100, "1.00", "0.01")
    address = KaspaAddressDeriver().derive_one(kpub, 3)
    response = client.post("/payments/200/address", json={"address": address.upper().split(":")[1], "index": 3})

    assert response.status_code == 200
    assert response.json()["payment_address"] == address
    assert service.allocator.peek("default") == 4


def test_save_invalid_address(client, service):
    service.state.create("200", "default", 100, "1.00", "0.01")

    response = client.post("/payments/200/address", json={"address": "kaspa:notanaddress"})

    assert response.status_code == 400


def test_manual_confirmation_records_admin(client, fake_api):
    client.post("/payments", json={"order_id": "300", "fiat_total": "10.00"})

    response = client.post("/payments/300/confirm", json={})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "manually_confirmed"
    assert body["meta"]["_kaspa_verified_by"] == "admin-7"
    assert body["meta"]["_kaspa_txid"].startswith("manually-verified-")

    check = client.post("/payments/300/check").json()
    assert check["status"] == "completed"
    assert fake_api.requests == []


def test_manual_confirmation_before_address_is_rejected(client, service):
    service.state.create("400", "default", 100, "1.00", "0.01")

    response = client.post("/payments/400/confirm", json={"tx_id": "abc"})

    assert response.status_code == 409


def test_check_reports_api_outage_as_pending(client, fake_api):
    client.post("/payments", json={"order_id": "500", "fiat_total": "10.00"})
    fake_api.failing = True

    response = client.post("/payments/500/check")

    assert response.status_code == 200
    assert response.json()["status"] == "pending"


def test_rate_endpoint(client):
    response = client.get("/rate")

    assert response.status_code == 200
    assert response.json() == {"rate": "2.0", "currency": "usd"}


def test_admin_balance_and_stats(client, fake_api):
    first = client.post("/payments", json={"order_id": "600", "fiat_total": "10.00"}).json()
    second = client.post("/payments", json={"order_id": "601", "fiat_total": "4.00"}).json()
    fake_api.balances[first["payment_address"]] = 500_000_000
    fake_api.balances[second["payment_address"]] = 150_000_000
    client.post("/payments/601/confirm", json={"tx_id": "manual-601"})

    balance = client.get("/admin/balance").json()
    stats = client.get("/admin/stats").json()

    assert balance["total_balance"] == "6.50000000"
    assert balance["total_fiat_value"] == "13.00"
    assert balance["address_count"] == 2
    assert stats["total_orders"] == 1
    assert stats["total_attempts"] == 2
    assert stats["awaiting_payment"] == 1
    assert stats["success_rate"] == 50.0
    assert stats["next_address_index"] == 2


def test_real_token_is_accepted(service):
    fastapi_app.dependency_overrides[get_service] = lambda: service
    token = jwt.encode({"sub": "ops-1"}, "test-secret", algorithm="HS256")
    try:
        with TestClient(fastapi_app) as c:
            ok = c.get("/payments/unknown", headers={"Authorization": f"Bearer {token}"})
            bad = c.get("/payments/unknown", headers={"Authorization": "Bearer not-a-jwt"})
    finally:
        fastapi_app.dependency_overrides.clear()

    assert ok.status_code == 404
    assert bad.status_code == 401


def test_check_survives_api_timeouts(client, service, fake_api):
    client.post("/payments", json={"order_id": "510", "fiat_total": "10.00"})
    fake_api.timing_out = True

    response = client.post("/payments/510/check")

    assert response.json()["status"] == "pending"
    record = service.get_payment("510")
    assert record.status.value == "awaiting_payment"
    assert record.check_failures == 1


def test_repeated_timeouts_ask_customer_to_contact_support(client, service, fake_api):
    client.post("/payments", json={"order_id": "520", "fiat_total": "10.00"})
    fake_api.timing_out = True

    for _ in range(service.settings.max_check_failures):
        client.post("/payments/520/check")
    response = client.post("/payments/520/check").json()

    assert response["status"] == "error"
    assert "contact support" in response["message"]

    fake_api.timing_out = False
    assert client.post("/payments/520/check").json()["status"] == "pending"


@pytest.fixture
def keyless_client(session_factory, fake_api):
    service = make_service(session_factory, None, fake_api)
    fastapi_app.dependency_overrides[verify_token] = lambda: "admin-7"
    fastapi_app.dependency_overrides[get_service] = lambda: service
    with TestClient(fastapi_app) as c:
        yield c, service
    fastapi_app.dependency_overrides.clear()


def test_checkout_derivation_gets_a_reserved_index(keyless_client):
    client, service = keyless_client

    first = client.post("/payments", json={"order_id": "700", "fiat_total": "10.00"}).json()
    second = client.post("/payments", json={"order_id": "701", "fiat_total": "10.00"}).json()
    repeat = client.post("/payments", json={"order_id": "700", "fiat_total": "10.00"}).json()

    assert first["status"] == "awaiting_address"
    assert first["pending_address"] is True
    assert first["derivation_index"] == 0
    assert second["derivation_index"] == 1
    assert repeat["derivation_index"] == 0
    assert service.allocator.peek("default") == 2


def test_checkout_address_must_use_reserved_index(keyless_client, kpub):
    client, service = keyless_client
    client.post("/payments", json={"order_id": "710", "fiat_total": "10.00"})
    deriver = KaspaAddressDeriver()

    wrong = client.post("/payments/710/address", json={"address": deriver.derive_one(kpub, 5), "index": 5})
    right = client.post("/payments/710/address", json={"address": deriver.derive_one(kpub, 0), "index": 0})

    assert wrong.status_code == 400
    assert right.status_code == 200
    assert right.json()["status"] == "awaiting_payment"
    assert right.json()["derivation_index"] == 0
    assert service.allocator.peek("default") == 1


def test_checkout_address_without_index_uses_reserved_one(keyless_client, kpub):
    client, service = keyless_client
    client.post("/payments", json={"order_id": "720", "fiat_total": "10.00"})
    address = KaspaAddressDeriver().derive_one(kpub, 0)

    response = client.post("/payments/720/address", json={"address": address})

    assert response.status_code == 200
    assert response.json()["meta"]["_kaspa_address_index"] == 0
