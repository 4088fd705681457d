import bcrypt
from jose import jwt

from musicstore import config
from musicstore.auth import verify_token
from musicstore.errors import ChargeDeclined, OrderPersistFailure
from musicstore.main import app as fastapi_app
from musicstore.models import Customer
from musicstore.repository import SqlIntentStore
from musicstore.schemas import CheckoutRequest


def charge_body(**overrides):
    body = {
        "customer_id": 1,
        "product_id": 7,
        "price": 1999,
        "currency": "usd",
        "rememberCard": False,
        "useExisting": False,
        "token": "tok_valid",
    }
    body.update(overrides)
    return body


def test_charge_success(client, gateway, customer):
    response = client.post("/users/charge", json=charge_body())

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "completed"
    assert data["charge_id"] == "ch_1"
    assert data["price"] == 1999
    assert data["currency"] == "usd"
    assert gateway.charge_calls[0]["reference"] == "cus_abc"


def test_charge_order_write_fails_reports_processing(client, gateway, customer, mocker):
    mocker.patch("musicstore.repository.SqlOrderStore.add",
                 side_effect=OrderPersistFailure("db down"))

    response = client.post("/users/charge", json=charge_body(),
                           headers={"Idempotency-Key": "order-1"})

    assert response.status_code == 202
    assert response.json() == {
        "status": "processing",
        "idempotency_key": "order-1",
        "charge_id": "ch_1",
    }


def test_charge_use_existing_without_card(client, gateway, customer):
    response = client.post("/users/charge", json=charge_body(useExisting=True, token=""))

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "no_stored_payment_method"
    assert gateway.charge_calls == []
    assert gateway.customer_calls == []


def test_charge_invalid_amount(client, gateway, customer):
    response = client.post("/users/charge", json=charge_body(price=0))

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "invalid_amount"
    assert gateway.customer_calls == []


def test_charge_declined(client, gateway, customer):
    gateway.charge_error = ChargeDeclined("Your card was declined.", reason="card_declined")

    response = client.post("/users/charge", json=charge_body())

    assert response.status_code == 402
    assert response.json()["detail"] == {
        "code": "charge_declined",
        "message": "Your card was declined.",
        "reason": "card_declined",
    }


def test_charge_retry_with_same_key(client, gateway, customer):
    first = client.post("/users/charge", json=charge_body(),
                        headers={"Idempotency-Key": "order-2"})
    second = client.post("/users/charge", json=charge_body(),
                         headers={"Idempotency-Key": "order-2"})

    assert first.status_code == second.status_code == 200
    assert first.json()["id"] == second.json()["id"]
    assert len(gateway.charge_calls) == 1


def test_charge_key_reused_for_other_request(client, gateway, customer):
    client.post("/users/charge", json=charge_body(idempotencyKey="order-3"))

    response = client.post("/users/charge", json=charge_body(idempotencyKey="order-3", price=10))

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "idempotency_key_conflict"


def test_charge_while_same_key_in_flight(client, gateway, db, customer):
    # an earlier request for order-4 has claimed the intent and not finished
    SqlIntentStore(db).begin("order-4", CheckoutRequest(**charge_body()))

    response = client.post("/users/charge", json=charge_body(),
                           headers={"Idempotency-Key": "order-4"})

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "idempotency_in_progress"
    assert gateway.customer_calls == []
    assert gateway.charge_calls == []


def test_charge_idempotency_header_too_long(client, gateway, customer):
    response = client.post("/users/charge", json=charge_body(),
                           headers={"Idempotency-Key": "k" * 300})

    assert response.status_code == 422
    assert gateway.charge_calls == []


def test_sign_up_hashes_password(client, db):
    response = client.post("/users", json={
        "name": "Ana", "email": "Ana@Example.com", "password": "correct horse",
    })

    assert response.status_code == 200
    data = response.json()
    assert data["email"] == "ana@example.com"
    assert "password" not in data and "password_hash" not in data

    stored = db.get(Customer, data["id"])
    assert stored.password_hash != "correct horse"
    assert bcrypt.checkpw(b"correct horse", stored.password_hash.encode("utf-8"))


def test_sign_up_duplicate_email(client):
    body = {"name": "Ana", "email": "ana@example.com", "password": "correct horse"}
    client.post("/users", json=body)

    response = client.post("/users", json=body)

    assert response.status_code == 409


def test_order_history(client, customer):
    client.post("/users/charge", json=charge_body(product_id=1))
    client.post("/users/charge", json=charge_body(product_id=2))

    response = client.get("/users/1/orders")

    assert response.status_code == 200
    assert sorted(o["product_id"] for o in response.json()) == [1, 2]
    assert client.get("/users/2/orders").json() == []


def test_orders_require_bearer_token(client, customer):
    fastapi_app.dependency_overrides.pop(verify_token)

    response = client.get("/users/1/orders", headers={"Authorization": "Basic abc"})
    assert response.status_code == 401

    token = jwt.encode({"sub": "1"}, config.JWT_SECRET, algorithm="HS256")
    response = client.get("/users/1/orders", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
