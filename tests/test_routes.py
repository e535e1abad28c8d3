from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from app import app
from db.config import get_mysql_session
from metering.archive import get_run_archive
from providers.digitalocean import get_compute_client
from providers.paypal import get_payment_client


class FakeRunArchive:
    def __init__(self, runs):
        self.runs = runs

    def recent(self, limit=24):
        return self.runs[:limit]


@pytest.fixture
def client(session_factory, provider, payment):
    def override_session():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    runs = [{
        "hour_slot": datetime(2024, 3, 15, 12),
        "skipped": False,
        "charged": [1, 2],
        "reclaimed": [],
        "failed": [],
        "overage_settled": [],
        "started_at": datetime(2024, 3, 15, 12, 0, 1),
        "finished_at": datetime(2024, 3, 15, 12, 0, 4)
    }]

    app.dependency_overrides[get_mysql_session] = override_session
    app.dependency_overrides[get_compute_client] = lambda: provider
    app.dependency_overrides[get_payment_client] = lambda: payment
    app.dependency_overrides[get_run_archive] = lambda: FakeRunArchive(runs)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def create_account(client, username="alice"):
    response = client.post("/api/v1/accounts/", json={"username": username})
    assert response.status_code == 201
    return response.json()["id"]


def fund(client, account_id, payment, amount_cents):
    payment.amount_cents = amount_cents
    response = client.post(f"/api/v1/billing/{account_id}/capture/ORDER-{account_id}-{amount_cents}")
    assert response.status_code == 200
    return response.json()


def provision(client, account_id, **overrides):
    body = {
        "account_id": account_id,
        "kind": "compute",
        "name": "web-1",
        "external_id": "droplet-1",
        "region": "fra1",
        "size": "s-1vcpu-1gb",
    }
    body.update(overrides)
    return client.post("/api/v1/resources/", json=body)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_account_lifecycle(client):
    account_id = create_account(client)

    assert client.get(f"/api/v1/accounts/{account_id}").json()["username"] == "alice"
    assert client.get(f"/api/v1/accounts/{account_id}/balance").json() == {
        "account_id": account_id,
        "balance": 0,
        "currency": "USD"
    }
    assert client.post("/api/v1/accounts/", json={"username": "alice"}).status_code == 409


def test_unknown_account_is_404(client):
    response = client.get("/api/v1/accounts/999/balance")

    assert response.status_code == 404
    assert response.json()["detail"] == "Account 999 not found"


def test_deposit_flow(client, payment):
    account_id = create_account(client)

    handle = client.post(f"/api/v1/billing/{account_id}/deposit", json={"amount_cents": 1500})
    assert handle.status_code == 200
    assert handle.json()["order_id"] == "ORDER-1"

    too_small = client.post(f"/api/v1/billing/{account_id}/deposit", json={"amount_cents": 100})
    assert too_small.status_code == 400

    captured = fund(client, account_id, payment, 1500)
    assert captured["success"] is True
    assert captured["transaction"]["amount"] == 1500
    assert captured["transaction"]["kind"] == "deposit"
    assert client.get(f"/api/v1/accounts/{account_id}/balance").json()["balance"] == 1500


def test_payment_failure_is_400(client, payment):
    account_id = create_account(client)
    payment.fail = True

    response = client.post(f"/api/v1/billing/{account_id}/capture/ORDER-1")

    assert response.status_code == 400
    assert response.json()["detail"] == "Payment failed: card declined"


def test_transactions_are_paginated(client, payment):
    account_id = create_account(client)
    for amount in range(600, 600 + 12):
        fund(client, account_id, payment, amount)

    page = client.get(f"/api/v1/billing/{account_id}/transactions", params={"page": 2, "page_size": 5}).json()

    assert page["total"] == 12
    assert page["total_pages"] == 3
    assert len(page["items"]) == 5
    assert page["has_next_page"] is True
    assert page["has_prev_page"] is True

    assert client.get(
        f"/api/v1/billing/{account_id}/transactions", params={"page_size": 500}
    ).status_code == 422


def test_provision_requires_balance(client, payment):
    account_id = create_account(client)

    refused = provision(client, account_id)
    assert refused.status_code == 402
    assert refused.json()["detail"] == "Insufficient balance. Required: $1.00"

    fund(client, account_id, payment, 1000)
    created = provision(client, account_id)
    assert created.status_code == 201
    assert created.json()["status"] == "active"

    listed = client.get(f"/api/v1/resources/account/{account_id}").json()
    assert [r["external_id"] for r in listed] == ["droplet-1"]
    assert client.get(f"/api/v1/accounts/{account_id}/reconciliation").json()["consistent"] is True


def test_resize_and_delete(client, payment, provider):
    account_id = create_account(client)
    fund(client, account_id, payment, 1000)
    volume = provision(client, account_id, kind="volume", size=None, size_gb=100, external_id="vol-1").json()

    resized = client.patch(
        f"/api/v1/resources/{volume['id']}/volume",
        json={"account_id": account_id, "size_gb": 50}
    )
    assert resized.status_code == 400

    resized = client.patch(
        f"/api/v1/resources/{volume['id']}/volume",
        json={"account_id": account_id, "size_gb": 200}
    )
    assert resized.status_code == 200
    assert resized.json()["size_gb"] == 200

    deleted = client.delete(f"/api/v1/resources/{volume['id']}", params={"account_id": account_id})
    assert deleted.status_code == 204
    assert provider.destroyed == [("volume", "vol-1")]
    assert client.get(f"/api/v1/resources/{volume['id']}").status_code == 404


def test_provider_failure_on_delete_is_502(client, payment, provider):
    account_id = create_account(client)
    fund(client, account_id, payment, 1000)
    droplet = provision(client, account_id, external_id="droplet-broken").json()
    provider.fail_on.add("droplet-broken")

    response = client.delete(f"/api/v1/resources/{droplet['id']}", params={"account_id": account_id})

    assert response.status_code == 502
    assert client.get(f"/api/v1/resources/{droplet['id']}").status_code == 200


def test_metrics_and_bandwidth(client, payment, provider):
    account_id = create_account(client)
    fund(client, account_id, payment, 1000)
    droplet = provision(client, account_id).json()

    latest = client.get(f"/api/v1/resources/{droplet['id']}/metrics/latest")
    assert latest.status_code == 200
    assert latest.json()["cpu_usage"] == 12

    client.post(f"/api/v1/resources/{droplet['id']}/metrics/refresh")
    history = client.get(f"/api/v1/resources/{droplet['id']}/metrics/history", params={"limit": 24}).json()
    assert len(history) == 2

    bandwidth = client.get(f"/api/v1/resources/{droplet['id']}/bandwidth").json()
    assert bandwidth["limit"] == 1000
    assert bandwidth["overageRate"] == 0.005
    assert set(bandwidth) == {"current", "limit", "periodStart", "periodEnd", "lastUpdated", "overageRate"}


def test_metric_fetch_failure_is_502(client, payment, provider):
    account_id = create_account(client)
    fund(client, account_id, payment, 1000)
    droplet = provision(client, account_id).json()
    provider.metric_error = True

    assert client.get(f"/api/v1/resources/{droplet['id']}/metrics/latest").status_code == 502


def test_volume_metrics_are_400(client, payment):
    account_id = create_account(client)
    fund(client, account_id, payment, 1000)
    volume = provision(client, account_id, kind="volume", size=None, size_gb=10).json()

    assert client.get(f"/api/v1/resources/{volume['id']}/metrics/latest").status_code == 400


def test_metering_runs(client):
    runs = client.get("/api/v1/metering/runs", params={"limit": 5}).json()

    assert len(runs) == 1
    assert runs[0]["charged"] == [1, 2]
