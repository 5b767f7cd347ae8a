from datetime import datetime, timedelta, time

import pytest

from models.scheduling import STATUS_CANCELLED, STATUS_COMPLETED, STATUS_CONFIRMED, STATUS_PENDING
from app.errors import ConflictError, NotFoundError, PermissionDeniedError
from app.booking_service import (
    check_conflict,
    create_appointment,
    book_appointment,
    list_appointments,
    get_appointment_for_user,
    update_status,
    delete_appointment,
    appointment_stats,
    CONFLICT_APPOINTMENT_OVERLAP,
    CONFLICT_BLOCKED_DATE,
    CONFLICT_NO_AVAILABILITY,
    CONFLICT_OUTSIDE_AVAILABILITY,
    CONFLICT_PAST_TIME,
    CONFLICT_TRAINER_INACTIVE,
)
from app.notification_service import list_notifications
from app.trainer_service import block_date
from tests.helpers import (
    NOW,
    make_trainer,
    make_client,
    make_admin,
    make_appointment,
    add_availability,
    make_service,
)

TUESDAY_10 = datetime.combine(NOW.date() + timedelta(days=1), time(10, 0))


@pytest.fixture
def setup(session):
    trainer = make_trainer(session)
    client = make_client(session)
    # Mon-Fri 09:00-17:00
    add_availability(session, trainer, windows=[(d, time(9, 0), time(17, 0)) for d in range(5)])
    return trainer, client


def _check(session, trainer, start, minutes=60):
    return check_conflict(
        session,
        trainer_id=trainer.trainer_id,
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
        now=NOW,
    )


def test_free_slot_has_no_conflict(session, setup):
    trainer, _ = setup
    check = _check(session, trainer, TUESDAY_10)
    assert check.has_conflict is False
    assert check.to_dict()["conflict_type"] is None


def test_conflict_types(session, setup):
    trainer, client = setup

    assert _check(session, trainer, NOW - timedelta(hours=1)).conflict_type == CONFLICT_PAST_TIME

    # Saturday has no window at all
    saturday = datetime.combine(NOW.date() + timedelta(days=5), time(10, 0))
    assert _check(session, trainer, saturday).conflict_type == CONFLICT_NO_AVAILABILITY

    late = _check(session, trainer, TUESDAY_10.replace(hour=16, minute=30))
    assert late.conflict_type == CONFLICT_OUTSIDE_AVAILABILITY
    assert late.details["windows"] == [{"start_time": "09:00", "end_time": "17:00"}]

    existing = make_appointment(session, trainer, client, TUESDAY_10)
    overlap = _check(session, trainer, TUESDAY_10 + timedelta(minutes=30))
    assert overlap.conflict_type == CONFLICT_APPOINTMENT_OVERLAP
    assert overlap.details["appointment_id"] == existing.appointment_id

    # Back-to-back is fine
    assert _check(session, trainer, TUESDAY_10 + timedelta(hours=1)).has_conflict is False

    block_date(session, trainer_id=trainer.trainer_id, day=TUESDAY_10.date())
    assert _check(session, trainer, TUESDAY_10 + timedelta(hours=2)).conflict_type == CONFLICT_BLOCKED_DATE

    trainer.user.is_active = False
    session.commit()
    assert _check(session, trainer, TUESDAY_10).conflict_type == CONFLICT_TRAINER_INACTIVE


def test_cancelled_appointment_frees_the_slot(session, setup):
    trainer, client = setup
    make_appointment(session, trainer, client, TUESDAY_10, status=STATUS_CANCELLED)

    assert _check(session, trainer, TUESDAY_10).has_conflict is False


def test_create_appointment_is_pending_and_notifies_trainer(session, setup):
    trainer, client = setup
    service = make_service(session, trainer, price=150.0)

    appointment = create_appointment(
        session,
        trainer_id=trainer.trainer_id,
        client_id=client.client_id,
        service_id=service.service_id,
        start_time=TUESDAY_10,
        end_time=TUESDAY_10 + timedelta(hours=1),
        now=NOW,
    )

    assert appointment.status == STATUS_PENDING
    assert appointment.price == 150.0
    assert appointment.is_paid is False
    inbox = list_notifications(session, trainer.user_id)
    assert len(inbox) == 1
    assert "Alice Client" in inbox[0].message


def test_create_appointment_rejects_conflicts(session, setup):
    trainer, client = setup
    make_appointment(session, trainer, client, TUESDAY_10)

    with pytest.raises(ConflictError) as exc:
        create_appointment(
            session,
            trainer_id=trainer.trainer_id,
            client_id=client.client_id,
            start_time=TUESDAY_10,
            end_time=TUESDAY_10 + timedelta(hours=1),
            now=NOW,
        )
    assert exc.value.conflict_type == CONFLICT_APPOINTMENT_OVERLAP
    assert exc.value.status_code == 409


def test_client_cannot_double_book_across_trainers(session, setup):
    trainer, client = setup
    other = make_trainer(session, name="Riley", email="riley@example.com")
    add_availability(session, other)
    make_appointment(session, trainer, client, TUESDAY_10)

    with pytest.raises(ConflictError, match="already have"):
        create_appointment(
            session,
            trainer_id=other.trainer_id,
            client_id=client.client_id,
            start_time=TUESDAY_10 + timedelta(minutes=30),
            end_time=TUESDAY_10 + timedelta(minutes=90),
            now=NOW,
        )


def test_create_appointment_validates_input(session, setup):
    trainer, client = setup
    other = make_trainer(session, name="Riley", email="riley@example.com")
    foreign_service = make_service(session, other)

    with pytest.raises(ValueError, match="before end"):
        create_appointment(
            session,
            trainer_id=trainer.trainer_id,
            client_id=client.client_id,
            start_time=TUESDAY_10,
            end_time=TUESDAY_10,
            now=NOW,
        )
    with pytest.raises(NotFoundError, match="Service"):
        create_appointment(
            session,
            trainer_id=trainer.trainer_id,
            client_id=client.client_id,
            service_id=foreign_service.service_id,
            start_time=TUESDAY_10,
            end_time=TUESDAY_10 + timedelta(hours=1),
            now=NOW,
        )
    with pytest.raises(ValueError, match="negative"):
        create_appointment(
            session,
            trainer_id=trainer.trainer_id,
            client_id=client.client_id,
            start_time=TUESDAY_10,
            end_time=TUESDAY_10 + timedelta(hours=1),
            price=-10,
            now=NOW,
        )


def test_book_appointment_uses_service_duration_and_price(session, setup):
    trainer, client = setup
    service = make_service(session, trainer, name="Assessment", duration=30, price=80.0)

    appointment = book_appointment(
        session,
        client_id=client.client_id,
        trainer_id=trainer.trainer_id,
        service_id=service.service_id,
        day=TUESDAY_10.date(),
        time_slot="14:00",
        now=NOW,
    )

    assert appointment.start_time == TUESDAY_10.replace(hour=14)
    assert appointment.end_time == TUESDAY_10.replace(hour=14, minute=30)
    assert appointment.price == 80.0

    with pytest.raises(ValueError, match="HH:MM"):
        book_appointment(
            session,
            client_id=client.client_id,
            trainer_id=trainer.trainer_id,
            service_id=service.service_id,
            day=TUESDAY_10.date(),
            time_slot="2pm",
            now=NOW,
        )


def test_list_appointments_is_scoped_by_role(session, setup):
    trainer, client = setup
    other_client = make_client(session, name="Bob", email="bob@example.com")
    mine = make_appointment(session, trainer, client, TUESDAY_10)
    make_appointment(session, trainer, other_client, TUESDAY_10 + timedelta(hours=2), status=STATUS_PENDING)
    admin = make_admin(session)

    assert [a.appointment_id for a in list_appointments(session, client.user)] == [mine.appointment_id]
    assert len(list_appointments(session, trainer.user)) == 2
    assert len(list_appointments(session, admin)) == 2
    assert len(list_appointments(session, trainer.user, status="pending")) == 1
    assert len(list_appointments(session, trainer.user, day=TUESDAY_10.date())) == 2
    assert list_appointments(session, trainer.user, day=NOW.date()) == []
    assert len(list_appointments(session, trainer.user, limit=1)) == 1

    with pytest.raises(ValueError):
        list_appointments(session, trainer.user, status="LOST")


def test_get_appointment_for_other_client_is_denied(session, setup):
    trainer, client = setup
    stranger = make_client(session, name="Bob", email="bob@example.com")
    appointment = make_appointment(session, trainer, client, TUESDAY_10)

    with pytest.raises(PermissionDeniedError):
        get_appointment_for_user(session, stranger.user, appointment.appointment_id)
    with pytest.raises(NotFoundError):
        get_appointment_for_user(session, client.user, 999)


def test_trainer_moves_appointment_through_statuses(session, setup):
    trainer, client = setup
    appointment = make_appointment(session, trainer, client, TUESDAY_10, status=STATUS_PENDING)

    confirmed = update_status(session, trainer.user, appointment_id=appointment.appointment_id, status="confirmed")
    assert confirmed.status == STATUS_CONFIRMED

    completed = update_status(
        session,
        trainer.user,
        appointment_id=appointment.appointment_id,
        status=STATUS_COMPLETED,
        reason="Great session",
    )
    assert completed.status == STATUS_COMPLETED
    assert "[Status Update]: Great session" in completed.notes

    # Terminal statuses stay put
    with pytest.raises(ValueError, match="already completed"):
        update_status(session, trainer.user, appointment_id=appointment.appointment_id, status=STATUS_CANCELLED)


def test_client_can_only_cancel(session, setup):
    trainer, client = setup
    appointment = make_appointment(session, trainer, client, TUESDAY_10, status=STATUS_PENDING)

    with pytest.raises(PermissionDeniedError):
        update_status(session, client.user, appointment_id=appointment.appointment_id, status=STATUS_CONFIRMED)

    cancelled = update_status(
        session,
        client.user,
        appointment_id=appointment.appointment_id,
        status=STATUS_CANCELLED,
        reason="Sick",
    )
    assert cancelled.status == STATUS_CANCELLED

    # The trainer hears about it
    inbox = list_notifications(session, trainer.user_id)
    assert inbox[0].title == "Appointment cancelled"
    assert "Reason: Sick" in inbox[0].message


def test_delete_requires_trainer_or_admin(session, setup):
    trainer, client = setup
    appointment = make_appointment(session, trainer, client, TUESDAY_10)

    with pytest.raises(PermissionDeniedError):
        delete_appointment(session, client.user, appointment_id=appointment.appointment_id)

    delete_appointment(session, trainer.user, appointment_id=appointment.appointment_id)
    assert list_appointments(session, trainer.user) == []


def test_appointment_stats(session, setup):
    trainer, client = setup
    make_appointment(session, trainer, client, TUESDAY_10)
    make_appointment(session, trainer, client, TUESDAY_10 + timedelta(hours=2), status=STATUS_PENDING)
    make_appointment(session, trainer, client, NOW - timedelta(days=2), status=STATUS_COMPLETED)
    make_appointment(session, trainer, client, NOW - timedelta(days=3), status=STATUS_CANCELLED)

    stats = appointment_stats(session, trainer.user, now=NOW)

    assert stats == {"total": 4, "upcoming": 2, "completed": 1, "cancelled": 1}
