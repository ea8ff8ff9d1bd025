from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from prime_claims.database import StoreUnavailable
from prime_claims.main import app
from prime_claims.routers.claims import get_claim_service


@pytest.fixture
def client(service):
    app.dependency_overrides[get_claim_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def _pay(client, method: str, email: str, **extra) -> dict:
    response = client.post(f"/api/create-payment/{method}", json={"email": email, **extra})
    assert response.status_code == 200, response.text
    return response.json()


def test_root(client) -> None:
    assert client.get("/").json() == {"status": "Prime claims running"}


def test_health_reports_database(client) -> None:
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["database"] == "ok"
    assert "payment_methods" in response.json()


def test_check_price_for_new_payer(client) -> None:
    response = client.post("/api/check-price", json={"email": " New@X.com "})

    assert response.status_code == 200
    body = response.json()
    assert body["prime"] == 2
    assert Decimal(body["price"]) == Decimal(2)
    assert body["already_claimed"] is False
    assert {quote["currency"] for quote in body["quotes"]} == {"BTC", "DOGE"}


def test_check_price_rejects_bad_email(client) -> None:
    assert client.post("/api/check-price", json={"email": "not-an-email"}).status_code == 422


def test_reserve_specific_prime(client) -> None:
    response = client.post("/api/reservations", json={"email": "a@x.com", "prime": 7})

    assert response.status_code == 201
    assert response.json()["prime"] == 7
    assert response.json()["expires_at"] is not None


def test_reserve_composite_is_bad_request(client) -> None:
    response = client.post("/api/reservations", json={"email": "a@x.com", "prime": 9})

    assert response.status_code == 400
    assert response.json()["detail"]["reason"] == "not_prime"


def test_reserve_held_prime_is_conflict(client) -> None:
    client.post("/api/reservations", json={"email": "a@x.com", "prime": 7})

    response = client.post("/api/reservations", json={"email": "b@x.com", "prime": 7})

    assert response.status_code == 409
    assert response.json()["detail"] == {
        "reason": "already_reserved",
        "message": "Prime 7 is reserved by another payer",
        "prime": 7,
    }


def test_payment_flow(client, notifier) -> None:
    payment = _pay(client, "bitcoin", "a@x.com")
    assert payment["prime"] == 2
    assert payment["address"] == "bitcoin-address-2"

    status = client.get("/api/payment-status/a@x.com").json()
    assert status["status"] == "pending"

    confirmed = client.post(
        "/api/payments/confirm",
        json={"reference": payment["reference"], "amount_paid": "2", "tx_reference": "tx-1"},
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["status"] == "paid"
    assert confirmed.json()["prime_index"] == 1
    assert notifier.sent == [("a@x.com", 2)]

    status = client.get("/api/payment-status/A@X.com").json()
    assert status["status"] == "paid"
    assert status["claim"]["prime"] == 2

    again = client.post("/api/create-payment/dogecoin", json={"email": "a@x.com"})
    assert again.status_code == 409
    assert again.json()["detail"]["reason"] == "already_claimed"


def test_create_payment_unknown_method(client) -> None:
    response = client.post("/api/create-payment/stripe", json={"email": "a@x.com"})

    assert response.status_code == 404


def test_create_payment_provider_failure(client, initiators) -> None:
    initiators["dogecoin"].fail = True

    response = client.post("/api/create-payment/dogecoin", json={"email": "a@x.com"})

    assert response.status_code == 502
    assert client.get("/api/payment-status/a@x.com").json()["status"] == "not_found"


def test_confirm_unknown_reference(client) -> None:
    response = client.post("/api/payments/confirm", json={"reference": "nope", "amount_paid": "1"})

    assert response.status_code == 404


def test_payment_status_validates_email(client) -> None:
    assert client.get("/api/payment-status/nobody").status_code == 422
    assert client.get("/api/payment-status/nobody@x.com").json() == {
        "status": "not_found",
        "claim": None,
    }


def test_stats(client) -> None:
    payment = _pay(client, "bitcoin", "a@x.com")
    client.post(
        "/api/payments/confirm", json={"reference": payment["reference"], "amount_paid": "2"}
    )
    _pay(client, "dogecoin", "b@x.com")

    body = client.get("/api/stats").json()

    assert body["claimed"] == 2
    assert body["paid"] == 1
    assert body["pending"] == 1
    assert body["next_prime"] == 5
    assert body["paid_by_method"] == {"bitcoin": 1}
    assert [recent["prime"] for recent in body["recent_claims"]] == [2]


def test_prime_info(client) -> None:
    assert client.get("/api/primes/7919").json() == {
        "number": 7919,
        "is_prime": True,
        "index": 1000,
        "price": "7919",
    }
    assert client.get("/api/primes/15").json()["is_prime"] is False
    assert client.get("/api/primes/-1").status_code == 422


def test_store_outage_maps_to_503(client, service, monkeypatch) -> None:
    def _unavailable(*args, **kwargs):
        raise StoreUnavailable("Claim store is unavailable")

    monkeypatch.setattr(service, "stats", _unavailable)

    assert client.get("/api/stats").status_code == 503


def test_primes_beyond_storage_are_rejected(client) -> None:
    too_large = 2**64 + 13

    reservation = client.post("/api/reservations", json={"email": "a@x.com", "prime": too_large})
    payment = client.post(
        "/api/create-payment/bitcoin", json={"email": "a@x.com", "prime": too_large}
    )

    assert reservation.status_code == 422
    assert payment.status_code == 422
    assert client.get("/api/payment-status/a@x.com").json()["status"] == "not_found"


def test_payment_status_by_reference(client) -> None:
    payment = _pay(client, "dogecoin", "a@x.com")
    path = f"/api/payment-status/dogecoin/{payment['reference']}"

    pending = client.get(path)
    assert pending.status_code == 200
    assert pending.json()["status"] == "pending"
    assert pending.json()["claim"]["payment_method"] == "dogecoin"

    client.post(
        "/api/payments/confirm", json={"reference": payment["reference"], "amount_paid": "2"}
    )
    assert client.get(path).json()["status"] == "paid"

    assert client.get(f"/api/payment-status/bitcoin/{payment['reference']}").status_code == 404
    assert client.get("/api/payment-status/dogecoin/unknown").status_code == 404


def test_usd_price_endpoints(client, oracle) -> None:
    btc = client.get("/api/btc-price")
    assert btc.status_code == 200
    assert btc.json()["currency"] == "BTC"
    assert Decimal(btc.json()["price"]) == Decimal("50000")
    assert btc.json()["source"] == "fake"

    del oracle.rates["DOGE"]
    assert client.get("/api/doge-price").status_code == 503


def test_large_paid_prime_has_no_index(client) -> None:
    payment = _pay(client, "bitcoin", "a@x.com", prime=1_000_003)

    confirmed = client.post(
        "/api/payments/confirm",
        json={"reference": payment["reference"], "amount_paid": "1000003"},
    )

    assert confirmed.status_code == 200
    assert confirmed.json()["prime_index"] is None
    assert client.get("/api/primes/1000003").json()["index"] is None
