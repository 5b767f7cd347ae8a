from datetime import date, datetime, timedelta

import pytest

from models.payment import Payment, PAYMENT_REFUNDED, PAYMENT_SUCCEEDED
from models.scheduling import STATUS_PENDING
from app.config import Config
from app.web_app import create_app, limiter
from tests.helpers import (
    DEFAULT_PASSWORD,
    add_availability,
    make_admin,
    make_appointment,
    make_client,
    make_service,
    make_trainer,
)


@pytest.fixture
def app(session_factory, dispatcher):
    app = create_app(session_factory=session_factory, dispatcher=dispatcher)
    app.config["TESTING"] = True
    # Rate-limit counters are process-wide
    limiter.reset()
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def gym(session):
    trainer = make_trainer(session)
    member = make_client(session)
    add_availability(session, trainer)
    service = make_service(session, trainer, name="Strength", price=120.0)
    return trainer, member, service


def _token(client, email):
    response = client.post("/api/auth/login", json={"email": email, "password": DEFAULT_PASSWORD})
    assert response.status_code == 200, response.get_json()
    return response.get_json()["access_token"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _future_day(days=3) -> date:
    return date.today() + timedelta(days=days)


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.get_json() == {"status": "ok", "database": "ok"}


def test_register_sends_welcome_and_rejects_admin(client, channels):
    response = client.post(
        "/api/auth/register",
        json={"email": "new@example.com", "password": "secret123", "name": "New Client"},
    )

    assert response.status_code == 201
    body = response.get_json()["user"]
    assert body["role"] == "CLIENT" and "client_id" in body
    assert channels["email"].names() == ["send_welcome"]

    admin = client.post(
        "/api/auth/register",
        json={"email": "boss@example.com", "password": "secret123", "name": "Boss", "role": "admin"},
    )
    assert admin.status_code == 403

    duplicate = client.post(
        "/api/auth/register",
        json={"email": "new@example.com", "password": "secret123", "name": "Again"},
    )
    assert duplicate.status_code == 409


def test_login_sets_cookies_and_cookie_auth_works(client, gym):
    response = client.post("/api/auth/login", json={"email": "alice@example.com", "password": DEFAULT_PASSWORD})

    assert response.status_code == 200
    cookies = " ".join(response.headers.getlist("Set-Cookie"))
    assert "access-token=" in cookies and "refresh-token=" in cookies

    # The test client replays the access cookie
    profile = client.get("/api/users/profile")
    assert profile.status_code == 200
    assert profile.get_json()["user"]["email"] == "alice@example.com"


def test_auth_errors(client, gym):
    assert client.get("/api/appointments").status_code == 401

    wrong = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "nope-nope1"})
    assert wrong.status_code == 401
    assert wrong.get_json()["error"] == "Invalid credentials"

    client_token = _token(client, "alice@example.com")
    assert client.get("/api/reports/generate?type=financial", headers=_auth(client_token)).status_code == 403


def test_public_trainer_directory_and_slots(client, gym):
    trainer, _, _ = gym

    listing = client.get("/api/trainers").get_json()["trainers"]
    assert [t["trainer_id"] for t in listing] == [trainer.trainer_id]
    assert listing[0]["services"][0]["name"] == "Strength"

    day = _future_day()
    slots = client.get(f"/api/trainers/{trainer.trainer_id}/availability/slots?date={day.isoformat()}").get_json()
    assert slots["date"] == day.isoformat()
    assert slots["slots"][0]["time"] == "06:00"
    assert all(s["available"] for s in slots["slots"])

    week = client.get(
        f"/api/trainers/{trainer.trainer_id}/availability/slots?start_date={day.isoformat()}&days=3"
    ).get_json()
    assert len(week["days"]) == 3


def test_booking_flow_and_confirmation(client, gym, channels):
    trainer, _, service = gym
    day = _future_day()
    client_token = _token(client, "alice@example.com")

    booked = client.post(
        "/api/bookings/create",
        json={
            "trainer_id": trainer.trainer_id,
            "service_id": service.service_id,
            "date": day.isoformat(),
            "time_slot": "10:00",
        },
        headers=_auth(client_token),
    )
    assert booked.status_code == 201
    appointment = booked.get_json()["appointment"]
    assert appointment["status"] == STATUS_PENDING
    assert appointment["price"] == 120.0

    # The same slot is now taken
    again = client.post(
        "/api/bookings/create",
        json={
            "trainer_id": trainer.trainer_id,
            "service_id": service.service_id,
            "date": day.isoformat(),
            "time_slot": "10:00",
        },
        headers=_auth(client_token),
    )
    assert again.status_code == 409
    assert again.get_json()["conflict_type"] == "APPOINTMENT_OVERLAP"

    # Clients cannot confirm
    forbidden = client.put(
        f"/api/appointments/{appointment['appointment_id']}/status",
        json={"status": "CONFIRMED"},
        headers=_auth(client_token),
    )
    assert forbidden.status_code == 403

    trainer_token = _token(client, "tina@example.com")
    confirmed = client.put(
        f"/api/appointments/{appointment['appointment_id']}/status",
        json={"status": "CONFIRMED"},
        headers=_auth(trainer_token),
    )
    assert confirmed.status_code == 200
    assert confirmed.get_json()["appointment"]["status"] == "CONFIRMED"
    assert "send_appointment_confirmation" in channels["email"].names()

    listed = client.get("/api/appointments", headers=_auth(client_token)).get_json()["appointments"]
    assert [a["appointment_id"] for a in listed] == [appointment["appointment_id"]]


def test_booking_requires_fields(client, gym):
    token = _token(client, "alice@example.com")

    response = client.post("/api/bookings/create", json={"trainer_id": 1}, headers=_auth(token))

    assert response.status_code == 400
    assert "required" in response.get_json()["error"]


def test_conflict_check_endpoint(client, gym):
    trainer, _, _ = gym
    token = _token(client, "alice@example.com")
    start = datetime.combine(_future_day(), datetime.min.time()).replace(hour=9)

    free = client.post(
        "/api/appointments/check",
        json={
            "trainer_id": trainer.trainer_id,
            "start_time": start.isoformat(),
            "end_time": (start + timedelta(hours=1)).isoformat(),
        },
        headers=_auth(token),
    ).get_json()
    assert free["has_conflict"] is False

    past = client.post(
        "/api/appointments/check",
        json={
            "trainer_id": trainer.trainer_id,
            "start_time": "2020-01-06T09:00:00Z",
            "end_time": "2020-01-06T10:00:00Z",
        },
        headers=_auth(token),
    ).get_json()
    assert past["conflict_type"] == "PAST_TIME"


def test_trainer_manages_own_availability_only(client, gym, session):
    trainer, _, _ = gym
    rival = make_trainer(session, name="Riley", email="riley@example.com")
    token = _token(client, "tina@example.com")

    overlap = client.post(
        "/api/availability",
        json={"day_of_week": 0, "start_time": "08:00", "end_time": "10:00"},
        headers=_auth(token),
    )
    assert overlap.status_code == 409

    foreign = client.post(
        f"/api/trainers/{rival.trainer_id}/services",
        json={"name": "Stolen", "duration": 60, "price": 10},
        headers=_auth(token),
    )
    assert foreign.status_code == 403

    created = client.post(
        f"/api/trainers/{trainer.trainer_id}/services",
        json={"name": "Mobility", "duration": 45, "price": 70},
        headers=_auth(token),
    )
    assert created.status_code == 201
    assert created.get_json()["service"]["duration"] == 45


def test_notifications_endpoints(client, gym, session):
    trainer, member, _ = gym
    appointment = make_appointment(session, trainer, member, datetime.utcnow() + timedelta(days=2), status=STATUS_PENDING)
    token = _token(client, "alice@example.com")

    client.put(
        f"/api/appointments/{appointment.appointment_id}/status",
        json={"status": "CANCELLED", "reason": "Travel"},
        headers=_auth(token),
    )

    trainer_token = _token(client, "tina@example.com")
    inbox = client.get("/api/notifications", headers=_auth(trainer_token)).get_json()
    assert inbox["unread_count"] == 1
    assert inbox["notifications"][0]["title"] == "Appointment cancelled"

    read_all = client.post("/api/notifications/read-all", headers=_auth(trainer_token)).get_json()
    assert read_all == {"updated": 1}


def test_trainer_broadcasts_notification(client, gym):
    _, member, _ = gym
    client_token = _token(client, "alice@example.com")
    trainer_token = _token(client, "tina@example.com")
    body = {"user_id": member.user_id, "title": "Gym closed", "message": "Closed on Friday"}

    assert client.post("/api/notifications", json=body, headers=_auth(client_token)).status_code == 403

    created = client.post("/api/notifications", json=body, headers=_auth(trainer_token))
    assert created.status_code == 201

    inbox = client.get("/api/notifications", headers=_auth(client_token)).get_json()
    assert [n["title"] for n in inbox["notifications"]] == ["Gym closed"]


def test_report_downloads(client, gym):
    token = _token(client, "tina@example.com")

    as_json = client.get("/api/reports/generate?type=performance", headers=_auth(token))
    assert as_json.status_code == 200
    assert as_json.get_json()["report"]["type"] == "performance"

    pdf = client.get("/api/reports/generate?type=financial&format=pdf", headers=_auth(token))
    assert pdf.status_code == 200
    assert pdf.mimetype == "application/pdf"
    assert pdf.data.startswith(b"%PDF")
    assert "financial-report-" in pdf.headers["Content-Disposition"]

    bad = client.get("/api/reports/generate?type=financial&format=doc", headers=_auth(token))
    assert bad.status_code == 400


def test_stripe_webhook_signature(client, monkeypatch):
    monkeypatch.setattr(Config, "STRIPE_WEBHOOK_SECRET", None)
    assert client.post("/api/webhooks/stripe", data=b"{}").status_code == 503

    monkeypatch.setattr(Config, "STRIPE_WEBHOOK_SECRET", "whsec_test")
    response = client.post("/api/webhooks/stripe", data=b"{}", headers={"Stripe-Signature": "t=1,v1=bad"})

    assert response.status_code == 400
    assert response.get_json() == {"error": "Invalid signature"}


def test_payments_disabled_without_stripe_key(client, gym, monkeypatch):
    monkeypatch.setattr(Config, "STRIPE_SECRET_KEY", None)
    token = _token(client, "alice@example.com")

    response = client.post("/api/payments/intent", json={"amount": 120}, headers=_auth(token))

    assert response.status_code == 503


def test_login_is_rate_limited_per_ip(client, gym):
    for _ in range(5):
        response = client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "wrong-pass1"})
        assert response.status_code == 401

    blocked = client.post("/api/auth/login", json={"email": "alice@example.com", "password": DEFAULT_PASSWORD})
    assert blocked.status_code == 429


def test_successful_logins_do_not_use_up_the_limit(client, gym):
    for _ in range(6):
        _token(client, "alice@example.com")


def test_subscription_for_plan_not_mirrored_locally(client, gym, fake_stripe):
    token = _token(client, "alice@example.com")

    response = client.post("/api/payments/subscriptions", json={"price_id": "price_unknown"}, headers=_auth(token))

    assert response.status_code == 201
    assert response.get_json() == {"subscription_id": "sub_1", "status": "trialing", "subscription": None}
    listed = client.get("/api/payments/subscriptions", headers=_auth(token)).get_json()
    assert listed == {"subscriptions": []}


def test_update_routes_ignore_echoed_ids(client, gym):
    trainer, member, service = gym
    trainer_token = _token(client, "tina@example.com")
    client_token = _token(client, "alice@example.com")

    updated = client.put(
        f"/api/trainers/{trainer.trainer_id}/services/{service.service_id}",
        json={"trainer_id": trainer.trainer_id, "service_id": service.service_id, "price": 80},
        headers=_auth(trainer_token),
    )
    assert updated.status_code == 200
    assert updated.get_json()["service"]["price"] == 80

    profile = client.put(
        "/api/users/trainer-profile",
        json={"trainer_id": 999, "bio": "Strength coach"},
        headers=_auth(trainer_token),
    )
    assert profile.status_code == 200
    assert profile.get_json()["trainer"]["bio"] == "Strength coach"

    me = client.put(
        "/api/users/profile",
        json={"user_id": 999, "role": "ADMIN", "name": "Alice B", "goals": "Run a 10k"},
        headers=_auth(client_token),
    ).get_json()["user"]
    assert me["user_id"] == member.user_id
    assert me["name"] == "Alice B" and me["role"] == "CLIENT"
    assert me["client_profile"]["goals"] == "Run a 10k"

    prefs = client.put(
        "/api/users/preferences",
        json={"user_id": 999, "sms_notifications": False},
        headers=_auth(client_token),
    ).get_json()["preferences"]
    assert prefs["sms_notifications"] is False


def test_service_is_active_must_be_boolean(client, gym):
    trainer, _, service = gym
    token = _token(client, "tina@example.com")

    created = client.post(
        f"/api/trainers/{trainer.trainer_id}/services",
        json={"name": "Yoga", "duration": 60, "price": 50, "is_active": "false"},
        headers=_auth(token),
    )
    assert created.status_code == 400
    assert "true or false" in created.get_json()["error"]

    paused = client.put(
        f"/api/trainers/{trainer.trainer_id}/services/{service.service_id}",
        json={"is_active": False},
        headers=_auth(token),
    )
    assert paused.get_json()["service"]["is_active"] is False


def test_refunds_are_admin_only(client, gym, session, fake_stripe):
    _, member, _ = gym
    make_admin(session)
    payment = Payment(
        user_id=member.user_id,
        stripe_payment_intent_id="pi_paid",
        amount=120.0,
        method="card",
        status=PAYMENT_SUCCEEDED,
        trainer_amount=96.0,
        platform_amount=24.0,
    )
    session.add(payment)
    session.commit()
    body = {"payment_intent_id": "pi_paid", "amount": 20}

    client_token = _token(client, "alice@example.com")
    assert client.post("/api/payments/refunds", json=body, headers=_auth(client_token)).status_code == 403

    admin_token = _token(client, "admin@example.com")
    response = client.post("/api/payments/refunds", json=body, headers=_auth(admin_token))

    assert response.status_code == 201
    assert response.get_json()["refund"]["amount"] == 20.0
    assert fake_stripe["refunds"][0]["amount"] == 2000
    session.refresh(payment)
    assert payment.status == PAYMENT_REFUNDED


def test_payment_methods_routes(client, gym, fake_stripe):
    token = _token(client, "alice@example.com")

    assert client.get("/api/payments/methods", headers=_auth(token)).get_json() == {"payment_methods": []}

    setup = client.post("/api/payments/methods", headers=_auth(token))
    assert setup.status_code == 201
    assert setup.get_json()["client_secret"] == "seti_1_secret"

    missing = client.delete("/api/payments/methods/pm_unknown", headers=_auth(token))
    assert missing.status_code == 404
