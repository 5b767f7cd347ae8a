from datetime import date, datetime, timedelta, time

import pytest

from models.scheduling import STATUS_CANCELLED, STATUS_PENDING
from app.errors import ConflictError, NotFoundError
from app.trainer_service import (
    set_availability,
    update_availability,
    delete_availability,
    list_availability,
    block_date,
    unblock_date,
    list_blocked_dates,
    is_date_blocked,
    create_service,
    update_service,
    deactivate_service,
    list_services,
    list_trainers,
    get_trainer_details,
    update_trainer_profile,
    get_day_slots,
    get_slots_range,
)
from tests.helpers import NOW, make_trainer, make_client, make_appointment, add_availability, make_service

MONDAY = NOW.date()


def test_set_availability_no_overlap(session):
    trainer = make_trainer(session)

    # First availability
    a1 = set_availability(session, trainer_id=trainer.trainer_id, day_of_week=0, start=time(9, 0), end=time(11, 0))
    assert a1.availability_id is not None

    # Non-overlapping second availability
    a2 = set_availability(session, trainer_id=trainer.trainer_id, day_of_week=0, start=time(11, 0), end=time(13, 0))
    assert a2.availability_id is not None
    assert [a.hours for a in list_availability(session, trainer.trainer_id)] == [2, 2]


def test_set_availability_overlap_fails(session):
    trainer = make_trainer(session)

    set_availability(session, trainer_id=trainer.trainer_id, day_of_week=1, start=time(9, 0), end=time(11, 0))

    with pytest.raises(ConflictError, match="overlaps"):
        set_availability(session, trainer_id=trainer.trainer_id, day_of_week=1, start=time(10, 0), end=time(12, 0))


def test_set_availability_validates_window(session):
    trainer = make_trainer(session)

    with pytest.raises(ValueError, match="on the hour"):
        set_availability(session, trainer_id=trainer.trainer_id, day_of_week=2, start=time(9, 30), end=time(11, 0))
    with pytest.raises(ValueError, match="before end"):
        set_availability(session, trainer_id=trainer.trainer_id, day_of_week=2, start=time(12, 0), end=time(11, 0))
    with pytest.raises(ValueError, match="day_of_week"):
        set_availability(session, trainer_id=trainer.trainer_id, day_of_week=7, start=time(9, 0), end=time(11, 0))


def test_update_and_delete_availability(session):
    trainer = make_trainer(session)
    other = make_trainer(session, name="Riley", email="riley@example.com")
    morning = set_availability(session, trainer_id=trainer.trainer_id, day_of_week=0, start=time(8, 0), end=time(10, 0))
    set_availability(session, trainer_id=trainer.trainer_id, day_of_week=0, start=time(14, 0), end=time(16, 0))

    with pytest.raises(ConflictError):
        update_availability(session, availability_id=morning.availability_id, end=time(15, 0))

    updated = update_availability(session, availability_id=morning.availability_id, end=time(12, 0))
    assert updated.end_time == time(12, 0)

    # Windows can only be managed by their owner
    with pytest.raises(NotFoundError):
        delete_availability(session, availability_id=morning.availability_id, trainer_id=other.trainer_id)

    delete_availability(session, availability_id=morning.availability_id, trainer_id=trainer.trainer_id)
    assert len(list_availability(session, trainer.trainer_id)) == 1


def test_blocked_dates(session):
    trainer = make_trainer(session)
    holiday = MONDAY + timedelta(days=3)

    blocked = block_date(session, trainer_id=trainer.trainer_id, day=holiday, reason="Holiday")
    assert is_date_blocked(session, trainer.trainer_id, holiday)

    with pytest.raises(ConflictError):
        block_date(session, trainer_id=trainer.trainer_id, day=holiday)

    assert [b.date for b in list_blocked_dates(session, trainer.trainer_id, from_date=MONDAY)] == [holiday]
    unblock_date(session, trainer_id=trainer.trainer_id, blocked_date_id=blocked.blocked_date_id)
    assert not is_date_blocked(session, trainer.trainer_id, holiday)


def test_service_catalog(session):
    trainer = make_trainer(session)

    premium = create_service(session, trainer_id=trainer.trainer_id, name="Premium", duration=90, price=200)
    create_service(session, trainer_id=trainer.trainer_id, name=" Assessment ", duration=30, price=80)

    assert [s.name for s in list_services(session, trainer.trainer_id)] == ["Assessment", "Premium"]

    with pytest.raises(ValueError, match="Duration"):
        create_service(session, trainer_id=trainer.trainer_id, name="Too short", duration=5, price=10)
    with pytest.raises(ValueError, match="negative"):
        update_service(session, service_id=premium.service_id, price=-1)

    update_service(session, service_id=premium.service_id, price=180.0)
    deactivate_service(session, service_id=premium.service_id, trainer_id=trainer.trainer_id)
    assert [s.name for s in list_services(session, trainer.trainer_id)] == ["Assessment"]
    assert len(list_services(session, trainer.trainer_id, include_inactive=True)) == 2


def test_list_trainers_and_details(session):
    tina = make_trainer(session)
    riley = make_trainer(session, name="Riley Yoga", email="riley@example.com")
    make_trainer(session, name="No Services", email="none@example.com")
    update_trainer_profile(session, riley.trainer_id, specialties=["Yoga", " Pilates "], bio="Calm")
    make_service(session, tina)
    make_service(session, riley, name="Flow")
    add_availability(session, riley, windows=[(0, time(9, 0), time(12, 0))])

    assert [t.user.name for t in list_trainers(session)] == ["Riley Yoga", "Tina Trainer"]
    assert [t.trainer_id for t in list_trainers(session, search="pilates")] == [riley.trainer_id]

    details = get_trainer_details(session, riley.trainer_id)
    assert details["trainer"].specialty_list == ["Yoga", "Pilates"]
    assert [s.name for s in details["services"]] == ["Flow"]
    assert len(details["availability"]) == 1


def test_update_trainer_profile_validation(session):
    trainer = make_trainer(session)

    with pytest.raises(ValueError):
        update_trainer_profile(session, trainer.trainer_id, hourly_rate=-5)
    with pytest.raises(NotFoundError):
        update_trainer_profile(session, 999, bio="ghost")


def test_day_slots_mark_booked_and_past(session):
    trainer = make_trainer(session)
    client = make_client(session)
    add_availability(session, trainer, windows=[(0, time(7, 0), time(11, 0))])
    make_appointment(session, trainer, client, datetime.combine(MONDAY, time(9, 0)), status=STATUS_PENDING)
    make_appointment(session, trainer, client, datetime.combine(MONDAY, time(10, 0)), status=STATUS_CANCELLED)

    slots = get_day_slots(session, trainer_id=trainer.trainer_id, day=MONDAY, now=NOW)

    assert [s["time"] for s in slots] == ["07:00", "08:00", "09:00", "10:00"]
    by_time = {s["time"]: s for s in slots}
    assert by_time["07:00"]["is_past"] and not by_time["07:00"]["available"]
    assert by_time["08:00"]["is_past"]  # starts exactly now
    assert by_time["09:00"]["is_booked"] and not by_time["09:00"]["available"]
    assert by_time["10:00"]["available"]  # cancelled appointments free the slot


def test_day_slots_empty_when_blocked_or_no_window(session):
    trainer = make_trainer(session)
    add_availability(session, trainer, windows=[(0, time(9, 0), time(12, 0))])

    assert get_day_slots(session, trainer_id=trainer.trainer_id, day=MONDAY + timedelta(days=1), now=NOW) == []
    block_date(session, trainer_id=trainer.trainer_id, day=MONDAY)
    assert get_day_slots(session, trainer_id=trainer.trainer_id, day=MONDAY, now=NOW) == []


def test_slots_range_covers_each_day(session):
    trainer = make_trainer(session)
    client = make_client(session)
    add_availability(session, trainer, windows=[(0, time(9, 0), time(11, 0)), (2, time(14, 0), time(15, 0))])
    block_date(session, trainer_id=trainer.trainer_id, day=MONDAY + timedelta(days=2))
    make_appointment(session, trainer, client, datetime.combine(MONDAY, time(10, 0)))

    days = get_slots_range(session, trainer_id=trainer.trainer_id, start_date=MONDAY, days=7, now=NOW)

    assert [d["date"] for d in days] == [MONDAY + timedelta(days=i) for i in range(7)]
    monday = days[0]
    assert [(s["time"], s["available"]) for s in monday["slots"]] == [("09:00", True), ("10:00", False)]
    wednesday = days[2]
    assert wednesday["blocked"] is True and wednesday["slots"] == []
    assert all(d["slots"] == [] for d in days[3:])

    with pytest.raises(ValueError):
        get_slots_range(session, trainer_id=trainer.trainer_id, start_date=MONDAY, days=40, now=NOW)


def test_inactive_trainer_is_hidden(session):
    trainer = make_trainer(session)
    make_service(session, trainer)
    trainer.user.is_active = False
    session.commit()

    assert list_trainers(session) == []
    with pytest.raises(NotFoundError):
        get_day_slots(session, trainer_id=trainer.trainer_id, day=date(2030, 1, 7), now=NOW)
