from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Optional

from sqlalchemy import select, and_, or_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from models.scheduling import (
    Availability,
    BlockedDate,
    Service,
    Appointment,
    STATUS_PENDING,
    STATUS_CONFIRMED,
    STATUS_CANCELLED,
)
from models.user import User, TrainerProfile
from app.errors import NotFoundError, ConflictError

SERVICE_NAME_MAX = 100
SERVICE_MIN_DURATION = 15
SERVICE_MAX_DURATION = 480
DEFAULT_SLOT_MINUTES = 60


def get_active_trainer(session: Session, trainer_id: int) -> TrainerProfile:
    trainer = session.get(TrainerProfile, trainer_id)
    if not trainer or not trainer.user or not trainer.user.is_active:
        raise NotFoundError("Trainer not found")
    return trainer


def _validate_window(day_of_week: int, start: time, end: time) -> None:
    if day_of_week not in range(7):
        raise ValueError("day_of_week must be between 0 (Monday) and 6 (Sunday)")
    if start >= end:
        raise ValueError("Availability start time must be before end time")
    if start.minute != 0 or start.second != 0 or end.minute != 0 or end.second != 0:
        raise ValueError("Availability times must start/end on the hour (e.g., 09:00)")


def _overlapping_window(
    session: Session,
    *,
    trainer_id: int,
    day_of_week: int,
    start: time,
    end: time,
    exclude_id: Optional[int] = None,
) -> Optional[Availability]:
    stmt = select(Availability).where(
        Availability.trainer_id == trainer_id,
        Availability.day_of_week == day_of_week,
        Availability.is_active.is_(True),
        and_(Availability.start_time < end, Availability.end_time > start),
    )
    if exclude_id is not None:
        stmt = stmt.where(Availability.availability_id != exclude_id)
    return session.scalars(stmt).first()


# ---------------------------
# 1. Availability
# ---------------------------

def set_availability(
    session: Session,
    *,
    trainer_id: int,
    day_of_week: int,
    start: time,
    end: time,
) -> Availability:
    """
    Define a new weekly availability window for a trainer.
    Prevents overlapping active windows for the same trainer + day_of_week.
    """
    _validate_window(day_of_week, start, end)
    get_active_trainer(session, trainer_id)

    if _overlapping_window(session, trainer_id=trainer_id, day_of_week=day_of_week, start=start, end=end):
        raise ConflictError("Availability window overlaps with an existing one")

    avail = Availability(
        trainer_id=trainer_id,
        day_of_week=day_of_week,
        start_time=start,
        end_time=end,
    )
    session.add(avail)
    session.commit()
    session.refresh(avail)
    return avail


def update_availability(
    session: Session,
    *,
    availability_id: int,
    trainer_id: Optional[int] = None,
    start: Optional[time] = None,
    end: Optional[time] = None,
    is_active: Optional[bool] = None,
) -> Availability:
    """
    Update an existing window while keeping trainer/day fixed.
    When trainer_id is given the window must belong to that trainer.
    """
    availability = session.get(Availability, availability_id)
    if not availability or (trainer_id is not None and availability.trainer_id != trainer_id):
        raise NotFoundError("Availability window not found")

    new_start = start or availability.start_time
    new_end = end or availability.end_time
    _validate_window(availability.day_of_week, new_start, new_end)

    activating = availability.is_active if is_active is None else is_active
    if activating and _overlapping_window(
        session,
        trainer_id=availability.trainer_id,
        day_of_week=availability.day_of_week,
        start=new_start,
        end=new_end,
        exclude_id=availability.availability_id,
    ):
        raise ConflictError("Updated window overlaps with an existing one")

    availability.start_time = new_start
    availability.end_time = new_end
    if is_active is not None:
        availability.is_active = is_active
    session.commit()
    session.refresh(availability)
    return availability


def delete_availability(session: Session, *, availability_id: int, trainer_id: Optional[int] = None) -> None:
    availability = session.get(Availability, availability_id)
    if not availability or (trainer_id is not None and availability.trainer_id != trainer_id):
        raise NotFoundError("Availability window not found")
    session.delete(availability)
    session.commit()


def list_availability(session: Session, trainer_id: int, *, active_only: bool = False) -> list[Availability]:
    stmt = (
        select(Availability)
        .where(Availability.trainer_id == trainer_id)
        .order_by(Availability.day_of_week, Availability.start_time)
    )
    if active_only:
        stmt = stmt.where(Availability.is_active.is_(True))
    return list(session.scalars(stmt))


# ---------------------------
# 2. Blocked dates
# ---------------------------

def block_date(session: Session, *, trainer_id: int, day: date, reason: Optional[str] = None) -> BlockedDate:
    get_active_trainer(session, trainer_id)
    blocked = BlockedDate(trainer_id=trainer_id, date=day, reason=reason)
    session.add(blocked)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ConflictError("Date is already blocked")
    session.refresh(blocked)
    return blocked


def unblock_date(session: Session, *, trainer_id: int, blocked_date_id: int) -> None:
    blocked = session.get(BlockedDate, blocked_date_id)
    if not blocked or blocked.trainer_id != trainer_id:
        raise NotFoundError("Blocked date not found")
    session.delete(blocked)
    session.commit()


def list_blocked_dates(session: Session, trainer_id: int, *, from_date: Optional[date] = None) -> list[BlockedDate]:
    stmt = select(BlockedDate).where(BlockedDate.trainer_id == trainer_id).order_by(BlockedDate.date)
    if from_date is not None:
        stmt = stmt.where(BlockedDate.date >= from_date)
    return list(session.scalars(stmt))


def is_date_blocked(session: Session, trainer_id: int, day: date) -> bool:
    stmt = select(BlockedDate.blocked_date_id).where(
        BlockedDate.trainer_id == trainer_id,
        BlockedDate.date == day,
    )
    return session.scalar(stmt) is not None


# ---------------------------
# 3. Service catalog
# ---------------------------

def _validate_service_fields(name: Optional[str], duration: Optional[int], price: Optional[float]) -> None:
    if name is not None:
        if not name.strip() or len(name.strip()) > SERVICE_NAME_MAX:
            raise ValueError(f"Service name must be between 1 and {SERVICE_NAME_MAX} characters")
    if duration is not None:
        if not SERVICE_MIN_DURATION <= int(duration) <= SERVICE_MAX_DURATION:
            raise ValueError(
                f"Duration must be between {SERVICE_MIN_DURATION} and {SERVICE_MAX_DURATION} minutes"
            )
    if price is not None and float(price) < 0:
        raise ValueError("Price cannot be negative")


def create_service(
    session: Session,
    *,
    trainer_id: int,
    name: str,
    duration: int,
    price: float,
    description: Optional[str] = None,
    is_active: bool = True,
) -> Service:
    _validate_service_fields(name, duration, price)
    get_active_trainer(session, trainer_id)

    service = Service(
        trainer_id=trainer_id,
        name=name.strip(),
        description=description,
        duration=int(duration),
        price=float(price),
        is_active=is_active,
    )
    session.add(service)
    session.commit()
    session.refresh(service)
    return service


def update_service(session: Session, *, service_id: int, trainer_id: Optional[int] = None, **changes) -> Service:
    service = session.get(Service, service_id)
    if not service or (trainer_id is not None and service.trainer_id != trainer_id):
        raise NotFoundError("Service not found")

    _validate_service_fields(changes.get("name"), changes.get("duration"), changes.get("price"))
    for key in ("name", "description", "duration", "price", "is_active"):
        if key in changes and changes[key] is not None:
            value = changes[key]
            if key == "name":
                value = value.strip()
            setattr(service, key, value)
    session.commit()
    session.refresh(service)
    return service


def deactivate_service(session: Session, *, service_id: int, trainer_id: Optional[int] = None) -> Service:
    return update_service(session, service_id=service_id, trainer_id=trainer_id, is_active=False)


def list_services(session: Session, trainer_id: int, *, include_inactive: bool = False) -> list[Service]:
    get_active_trainer(session, trainer_id)
    stmt = select(Service).where(Service.trainer_id == trainer_id).order_by(Service.price)
    if not include_inactive:
        stmt = stmt.where(Service.is_active.is_(True))
    return list(session.scalars(stmt))


# ---------------------------
# 4. Trainer directory
# ---------------------------

def list_trainers(session: Session, *, search: Optional[str] = None) -> list[TrainerProfile]:
    """Active trainers offering at least one active service, optionally filtered by name/specialty."""
    stmt = (
        select(TrainerProfile)
        .join(User, TrainerProfile.user_id == User.user_id)
        .options(joinedload(TrainerProfile.user), joinedload(TrainerProfile.services))
        .where(
            User.is_active.is_(True),
            TrainerProfile.services.any(Service.is_active.is_(True)),
        )
        .order_by(User.name)
    )
    if search:
        q = f"%{search.strip().lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(User.name).like(q),
                func.lower(TrainerProfile.specialties).like(q),
            )
        )
    return list(session.execute(stmt).unique().scalars())


def get_trainer_details(session: Session, trainer_id: int) -> dict:
    trainer = get_active_trainer(session, trainer_id)
    return {
        "trainer": trainer,
        "services": [s for s in trainer.services if s.is_active],
        "availability": [a for a in trainer.availabilities if a.is_active],
    }


def update_trainer_profile(session: Session, trainer_id: int, **changes) -> TrainerProfile:
    trainer = session.get(TrainerProfile, trainer_id)
    if not trainer:
        raise NotFoundError("Trainer not found")
    if "specialties" in changes and isinstance(changes["specialties"], (list, tuple)):
        changes["specialties"] = ", ".join(s.strip() for s in changes["specialties"] if s.strip())
    if changes.get("hourly_rate") is not None and float(changes["hourly_rate"]) < 0:
        raise ValueError("Hourly rate cannot be negative")
    if changes.get("experience_years") is not None and int(changes["experience_years"]) < 0:
        raise ValueError("Experience cannot be negative")
    for key in ("bio", "specialties", "experience_years", "hourly_rate"):
        if key in changes:
            setattr(trainer, key, changes[key])
    session.commit()
    session.refresh(trainer)
    return trainer


# ---------------------------
# 5. Slots
# ---------------------------

def _booked_ranges(
    session: Session,
    trainer_id: int,
    start: datetime,
    end: datetime,
    statuses: tuple[str, ...] | None,
) -> list[tuple[datetime, datetime]]:
    stmt = select(Appointment.start_time, Appointment.end_time).where(
        Appointment.trainer_id == trainer_id,
        Appointment.start_time < end,
        Appointment.end_time > start,
    )
    if statuses is None:
        stmt = stmt.where(Appointment.status != STATUS_CANCELLED)
    else:
        stmt = stmt.where(Appointment.status.in_(statuses))
    return [(row.start_time, row.end_time) for row in session.execute(stmt)]


def get_day_slots(
    session: Session,
    *,
    trainer_id: int,
    day: date,
    now: Optional[datetime] = None,
    slot_minutes: int = DEFAULT_SLOT_MINUTES,
) -> list[dict]:
    """
    Consecutive slots inside each active window for the weekday of `day`.
    A blocked date yields no slots; a slot is booked when it overlaps a
    pending/confirmed appointment.
    """
    if now is None:
        now = datetime.utcnow()
    get_active_trainer(session, trainer_id)
    if is_date_blocked(session, trainer_id, day):
        return []

    windows = [
        av for av in list_availability(session, trainer_id, active_only=True)
        if av.day_of_week == day.weekday()
    ]
    if not windows:
        return []

    day_start = datetime.combine(day, time.min)
    booked = _booked_ranges(
        session,
        trainer_id,
        day_start,
        day_start + timedelta(days=1),
        (STATUS_PENDING, STATUS_CONFIRMED),
    )

    step = timedelta(minutes=slot_minutes)
    slots: list[dict] = []
    for av in windows:
        slot_start = datetime.combine(day, av.start_time)
        window_end = datetime.combine(day, av.end_time)
        while slot_start + step <= window_end:
            slot_end = slot_start + step
            is_booked = any(b_start < slot_end and b_end > slot_start for b_start, b_end in booked)
            is_past = slot_start <= now
            slots.append(
                {
                    "id": f"{trainer_id}-{slot_start.isoformat(timespec='minutes')}",
                    "time": slot_start.strftime("%H:%M"),
                    "start": slot_start,
                    "end": slot_end,
                    "is_booked": is_booked,
                    "is_past": is_past,
                    "available": not is_booked and not is_past,
                }
            )
            slot_start = slot_end
    return sorted(slots, key=lambda s: s["start"])


def get_slots_range(
    session: Session,
    *,
    trainer_id: int,
    start_date: date,
    days: int = 7,
    now: Optional[datetime] = None,
) -> list[dict]:
    """Hourly slots for `days` consecutive days; any non-cancelled appointment blocks a slot."""
    if now is None:
        now = datetime.utcnow()
    if days < 1 or days > 31:
        raise ValueError("days must be between 1 and 31")
    get_active_trainer(session, trainer_id)

    range_start = datetime.combine(start_date, time.min)
    range_end = range_start + timedelta(days=days)
    windows = list_availability(session, trainer_id, active_only=True)
    blocked_days = {b.date for b in list_blocked_dates(session, trainer_id, from_date=start_date)}
    booked = _booked_ranges(session, trainer_id, range_start, range_end, None)

    result: list[dict] = []
    for offset in range(days):
        day = start_date + timedelta(days=offset)
        day_slots: list[dict] = []
        if day not in blocked_days:
            for av in windows:
                if av.day_of_week != day.weekday():
                    continue
                for hour in range(av.start_time.hour, av.end_time.hour):
                    slot_start = datetime.combine(day, time(hour, 0))
                    slot_end = slot_start + timedelta(hours=1)
                    is_booked = any(b_start < slot_end and b_end > slot_start for b_start, b_end in booked)
                    day_slots.append(
                        {
                            "time": slot_start.strftime("%H:%M"),
                            "start": slot_start,
                            "end": slot_end,
                            "is_booked": is_booked,
                            "is_past": slot_start <= now,
                            "available": not is_booked and slot_start > now,
                        }
                    )
        result.append(
            {
                "date": day,
                "blocked": day in blocked_days,
                "slots": sorted(day_slots, key=lambda s: s["start"]),
            }
        )
    return result
