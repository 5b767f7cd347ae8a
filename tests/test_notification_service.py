import pytest

from models.notification import LOG_FAILED, LOG_SENT
from app.errors import NotFoundError
from app.notification_service import (
    DeliveryResult,
    create_notification,
    list_notifications,
    unread_count,
    mark_read,
    mark_all_read,
    get_preferences,
    update_preferences,
    log_delivery,
)
from tests.helpers import make_user


def test_create_and_read_notifications(session):
    user = make_user(session, name="Alice", email="alice@example.com")
    first = create_notification(session, user.user_id, "Welcome", "Glad you are here")
    create_notification(session, user.user_id, "Booked", "See you Tuesday", type="appointment", metadata={"appointment_id": 3})

    assert unread_count(session, user.user_id) == 2
    inbox = list_notifications(session, user.user_id)
    assert [n.title for n in inbox] == ["Booked", "Welcome"]
    assert inbox[0].to_dict()["metadata"] == {"appointment_id": 3}

    mark_read(session, user_id=user.user_id, notification_id=first.notification_id)
    assert unread_count(session, user.user_id) == 1
    assert [n.title for n in list_notifications(session, user.user_id, unread_only=True)] == ["Booked"]

    assert mark_all_read(session, user_id=user.user_id) == 1
    assert unread_count(session, user.user_id) == 0


def test_notification_validation(session):
    user = make_user(session, name="Alice", email="alice@example.com")

    with pytest.raises(ValueError, match="type"):
        create_notification(session, user.user_id, "Hi", "there", type="carrier-pigeon")
    with pytest.raises(ValueError, match="required"):
        create_notification(session, user.user_id, " ", "there")
    with pytest.raises(NotFoundError):
        create_notification(session, 999, "Hi", "there")


def test_mark_read_only_for_owner(session):
    alice = make_user(session, name="Alice", email="alice@example.com")
    bob = make_user(session, name="Bob", email="bob@example.com")
    note = create_notification(session, alice.user_id, "Hi", "Alice only")

    with pytest.raises(NotFoundError):
        mark_read(session, user_id=bob.user_id, notification_id=note.notification_id)


def test_preferences(session):
    user = make_user(session, name="Alice", email="alice@example.com")

    prefs = get_preferences(session, user.user_id)
    assert set(prefs) == {"email_notifications", "sms_notifications", "whatsapp_notifications", "push_notifications"}

    updated = update_preferences(session, user.user_id, sms_notifications=False, role="ADMIN")
    assert updated["sms_notifications"] is False
    session.refresh(user)
    assert user.role == "CLIENT"

    with pytest.raises(ValueError, match="true or false"):
        update_preferences(session, user.user_id, push_notifications="yes")


def test_log_delivery_records_status(session):
    ok = log_delivery(
        session,
        channel="sms",
        recipient="+5511999990000",
        message="Reminder",
        result=DeliveryResult(True, external_id="SM123"),
    )
    failed = log_delivery(
        session,
        channel="email",
        recipient="alice@example.com",
        subject="Reminder",
        message="<p>Reminder</p>",
        result=DeliveryResult(False, error="bounced"),
    )

    assert ok.status == LOG_SENT and ok.external_id == "SM123"
    assert failed.status == LOG_FAILED and failed.error_message == "bounced"
    assert failed.retry_count == 0
