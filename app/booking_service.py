from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from models.scheduling import (
    Appointment,
    Availability,
    Service,
    APPOINTMENT_STATUSES,
    TERMINAL_STATUSES,
    STATUS_PENDING,
    STATUS_CONFIRMED,
    STATUS_COMPLETED,
    STATUS_CANCELLED,
)
from models.user import User, TrainerProfile, ClientProfile, ROLE_ADMIN, ROLE_TRAINER, ROLE_CLIENT
from app.errors import NotFoundError, ConflictError, PermissionDeniedError
from app.notification_service import add_notification
from app.trainer_service import is_date_blocked
from app.calendar_window import day_bounds

logger = logging.getLogger(__name__)

DEFAULT_DURATION_MINUTES = 60
DEFAULT_LIST_LIMIT = 10

CONFLICT_TRAINER_INACTIVE = "TRAINER_INACTIVE"
CONFLICT_PAST_TIME = "PAST_TIME"
CONFLICT_BLOCKED_DATE = "BLOCKED_DATE"
CONFLICT_APPOINTMENT_OVERLAP = "APPOINTMENT_OVERLAP"
CONFLICT_NO_AVAILABILITY = "NO_AVAILABILITY"
CONFLICT_OUTSIDE_AVAILABILITY = "OUTSIDE_AVAILABILITY"

ALLOWED_TRANSITIONS = {
    STATUS_PENDING: {STATUS_CONFIRMED, STATUS_CANCELLED, STATUS_COMPLETED},
    STATUS_CONFIRMED: {STATUS_COMPLETED, STATUS_CANCELLED},
}


@dataclass
class ConflictCheck:
    has_conflict: bool
    conflict_type: Optional[str] = None
    message: Optional[str] = None
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "has_conflict": self.has_conflict,
            "conflict_type": self.conflict_type,
            "message": self.message,
            "details": self.details,
        }


def _fmt(dt: datetime) -> str:
    return dt.strftime("%d/%m/%Y %H:%M")


def _overlapping_appointment(
    session: Session,
    *,
    start_time: datetime,
    end_time: datetime,
    trainer_id: Optional[int] = None,
    client_id: Optional[int] = None,
    exclude_appointment_id: Optional[int] = None,
) -> Optional[Appointment]:
    # [start, end) intersects [existing.start, existing.end)
    stmt = select(Appointment).where(
        Appointment.status != STATUS_CANCELLED,
        Appointment.start_time < end_time,
        Appointment.end_time > start_time,
    )
    if trainer_id is not None:
        stmt = stmt.where(Appointment.trainer_id == trainer_id)
    if client_id is not None:
        stmt = stmt.where(Appointment.client_id == client_id)
    if exclude_appointment_id is not None:
        stmt = stmt.where(Appointment.appointment_id != exclude_appointment_id)
    return session.scalars(stmt.order_by(Appointment.start_time)).first()


# ---------------------------
# 1. Conflict check
# ---------------------------

def check_conflict(
    session: Session,
    *,
    trainer_id: int,
    start_time: datetime,
    end_time: datetime,
    now: Optional[datetime] = None,
    exclude_appointment_id: Optional[int] = None,
) -> ConflictCheck:
    """
    Decide whether a trainer can take the window [start_time, end_time).

    Checks run in a fixed order and the first failing one is reported:
    inactive trainer, past time, blocked date, overlapping appointment,
    no availability on that weekday, window outside availability.
    """
    if now is None:
        now = datetime.utcnow()
    if start_time >= end_time:
        raise ValueError("Start time must be before end time")

    trainer = session.get(TrainerProfile, trainer_id)
    if not trainer or not trainer.user:
        raise NotFoundError("Trainer not found")
    if not trainer.user.is_active:
        return ConflictCheck(True, CONFLICT_TRAINER_INACTIVE, "Trainer is not accepting bookings")

    if start_time <= now:
        return ConflictCheck(True, CONFLICT_PAST_TIME, "Cannot book a time in the past")

    if is_date_blocked(session, trainer_id, start_time.date()):
        return ConflictCheck(True, CONFLICT_BLOCKED_DATE, "Trainer is unavailable on this date")

    existing = _overlapping_appointment(
        session,
        trainer_id=trainer_id,
        start_time=start_time,
        end_time=end_time,
        exclude_appointment_id=exclude_appointment_id,
    )
    if existing:
        return ConflictCheck(
            True,
            CONFLICT_APPOINTMENT_OVERLAP,
            "Time slot is already booked",
            {
                "appointment_id": existing.appointment_id,
                "start_time": existing.start_time.isoformat(),
                "end_time": existing.end_time.isoformat(),
                "status": existing.status,
            },
        )

    windows = list(
        session.scalars(
            select(Availability).where(
                Availability.trainer_id == trainer_id,
                Availability.day_of_week == start_time.weekday(),
                Availability.is_active.is_(True),
            )
        )
    )
    if not windows:
        return ConflictCheck(True, CONFLICT_NO_AVAILABILITY, "Trainer has no availability on this day")

    # Appointments never span midnight
    within_window = start_time.date() == end_time.date() and any(
        start_time.time() >= av.start_time and end_time.time() <= av.end_time
        for av in windows
    )
    if not within_window:
        return ConflictCheck(
            True,
            CONFLICT_OUTSIDE_AVAILABILITY,
            "Requested time is outside the trainer's available hours",
            {
                "windows": [
                    {"start_time": av.start_time.strftime("%H:%M"), "end_time": av.end_time.strftime("%H:%M")}
                    for av in windows
                ]
            },
        )

    return ConflictCheck(False)


# ---------------------------
# 2. Create / book
# ---------------------------

def create_appointment(
    session: Session,
    *,
    trainer_id: int,
    client_id: int,
    start_time: datetime,
    end_time: datetime,
    service_id: Optional[int] = None,
    price: Optional[float] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Appointment:
    """
    Book a trainer for a client. The new appointment starts as PENDING.

    Enforces:
      - start_time < end_time, price >= 0
      - trainer, client and (optional) service exist; service belongs to trainer
      - trainer is free and available (see check_conflict)
      - client has no overlapping appointment
    """
    if start_time >= end_time:
        raise ValueError("Start time must be before end time")

    client = session.get(ClientProfile, client_id)
    if not client:
        raise NotFoundError("Client not found")

    service: Optional[Service] = None
    if service_id is not None:
        service = session.get(Service, service_id)
        if not service or service.trainer_id != trainer_id:
            raise NotFoundError("Service not found")
        if not service.is_active:
            raise ValueError("Service is not available")
    if price is None:
        price = service.price if service else 0
    if float(price) < 0:
        raise ValueError("Price cannot be negative")

    check = check_conflict(
        session,
        trainer_id=trainer_id,
        start_time=start_time,
        end_time=end_time,
        now=now,
    )
    if check.has_conflict:
        raise ConflictError(check.message, check.conflict_type, check.details)

    if _overlapping_appointment(session, client_id=client_id, start_time=start_time, end_time=end_time):
        raise ConflictError("You already have an appointment at this time", CONFLICT_APPOINTMENT_OVERLAP)

    appointment = Appointment(
        trainer_id=trainer_id,
        client_id=client_id,
        service_id=service_id,
        start_time=start_time,
        end_time=end_time,
        price=float(price),
        notes=notes,
        status=STATUS_PENDING,
        is_paid=False,
    )
    session.add(appointment)
    session.flush()

    trainer = session.get(TrainerProfile, trainer_id)
    add_notification(
        session,
        trainer.user_id,
        "New booking",
        f"{client.user.name} booked {service.name if service else 'a session'} for {_fmt(start_time)}",
        type="appointment",
        metadata={"appointment_id": appointment.appointment_id},
    )
    session.commit()
    session.refresh(appointment)
    logger.info(
        "Appointment %s created for trainer %s / client %s at %s",
        appointment.appointment_id,
        trainer_id,
        client_id,
        start_time.isoformat(),
    )
    return appointment


def book_appointment(
    session: Session,
    *,
    client_id: int,
    trainer_id: int,
    service_id: int,
    day: date,
    time_slot: str,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Appointment:
    """Slot booking: the service decides the duration and the price."""
    try:
        slot = datetime.strptime(time_slot, "%H:%M").time()
    except (TypeError, ValueError):
        raise ValueError("time_slot must use the HH:MM format")

    service = session.get(Service, service_id)
    if not service or service.trainer_id != trainer_id:
        raise NotFoundError("Service not found")

    start_time = datetime.combine(day, slot)
    end_time = start_time + timedelta(minutes=service.duration or DEFAULT_DURATION_MINUTES)
    return create_appointment(
        session,
        trainer_id=trainer_id,
        client_id=client_id,
        service_id=service_id,
        start_time=start_time,
        end_time=end_time,
        price=service.price,
        notes=notes,
        now=now,
    )


# ---------------------------
# 3. Listing / access
# ---------------------------

def _scope_to_user(stmt, user: User):
    if user.role == ROLE_ADMIN:
        return stmt
    if user.role == ROLE_TRAINER and user.trainer_profile:
        return stmt.where(Appointment.trainer_id == user.trainer_profile.trainer_id)
    if user.role == ROLE_CLIENT and user.client_profile:
        return stmt.where(Appointment.client_id == user.client_profile.client_id)
    raise PermissionDeniedError("Profile not found for this user")


def list_appointments(
    session: Session,
    user: User,
    *,
    status: Optional[str] = None,
    day: Optional[date] = None,
    limit: int = DEFAULT_LIST_LIMIT,
    upcoming_only: bool = False,
    now: Optional[datetime] = None,
) -> list[Appointment]:
    stmt = select(Appointment).options(
        joinedload(Appointment.trainer).joinedload(TrainerProfile.user),
        joinedload(Appointment.client).joinedload(ClientProfile.user),
        joinedload(Appointment.service),
    )
    stmt = _scope_to_user(stmt, user)
    if status:
        status = status.upper()
        if status not in APPOINTMENT_STATUSES:
            raise ValueError(f"Unknown status {status}")
        stmt = stmt.where(Appointment.status == status)
    if day:
        day_start, day_end = day_bounds(day)
        stmt = stmt.where(Appointment.start_time >= day_start, Appointment.start_time < day_end)
    if upcoming_only:
        stmt = stmt.where(Appointment.start_time >= (now or datetime.utcnow()))
    stmt = stmt.order_by(Appointment.start_time).limit(limit)
    return list(session.execute(stmt).unique().scalars())


def get_appointment_for_user(session: Session, user: User, appointment_id: int) -> Appointment:
    appointment = session.get(Appointment, appointment_id)
    if not appointment:
        raise NotFoundError("Appointment not found")
    if user.role == ROLE_ADMIN:
        return appointment
    if user.trainer_profile and appointment.trainer_id == user.trainer_profile.trainer_id:
        return appointment
    if user.client_profile and appointment.client_id == user.client_profile.client_id:
        return appointment
    raise PermissionDeniedError("You do not have access to this appointment")


# ---------------------------
# 4. Status changes
# ---------------------------

def update_status(
    session: Session,
    user: User,
    *,
    appointment_id: int,
    status: str,
    reason: Optional[str] = None,
) -> Appointment:
    """
    Move an appointment along PENDING -> CONFIRMED -> COMPLETED/CANCELLED.

    The owning trainer (or an admin) may apply any allowed transition; a
    client may only cancel its own appointment.
    """
    status = (status or "").upper()
    if status not in APPOINTMENT_STATUSES:
        raise ValueError(f"Unknown status {status}")

    appointment = get_appointment_for_user(session, user, appointment_id)
    is_client = user.role == ROLE_CLIENT
    if is_client and status != STATUS_CANCELLED:
        raise PermissionDeniedError("Clients can only cancel appointments")

    if appointment.status == status:
        return appointment
    if appointment.status in TERMINAL_STATUSES:
        raise ValueError(f"Appointment is already {appointment.status.lower()}")
    if status not in ALLOWED_TRANSITIONS.get(appointment.status, set()):
        raise ValueError(f"Cannot change status from {appointment.status} to {status}")

    appointment.status = status
    if reason:
        appointment.notes = f"{appointment.notes or ''}\n\n[Status Update]: {reason}".lstrip()

    if status == STATUS_CANCELLED:
        # Tell the other party
        recipient = appointment.trainer.user if is_client else appointment.client.user
        add_notification(
            session,
            recipient.user_id,
            "Appointment cancelled",
            f"The appointment on {_fmt(appointment.start_time)} was cancelled."
            + (f" Reason: {reason}" if reason else ""),
            type="appointment",
            metadata={"appointment_id": appointment.appointment_id},
        )
    session.commit()
    session.refresh(appointment)
    logger.info("Appointment %s moved to %s by user %s", appointment_id, status, user.user_id)
    return appointment


def delete_appointment(session: Session, user: User, *, appointment_id: int) -> None:
    if user.role not in (ROLE_TRAINER, ROLE_ADMIN):
        raise PermissionDeniedError("Only trainers can delete appointments")
    appointment = get_appointment_for_user(session, user, appointment_id)
    session.delete(appointment)
    session.commit()


# ---------------------------
# 5. Stats
# ---------------------------

def appointment_stats(session: Session, user: User, *, now: Optional[datetime] = None) -> dict[str, int]:
    if now is None:
        now = datetime.utcnow()
    stmt = _scope_to_user(select(Appointment.status, Appointment.start_time), user)
    stats = {"total": 0, "upcoming": 0, "completed": 0, "cancelled": 0}
    for status, start_time in session.execute(stmt):
        stats["total"] += 1
        if status in (STATUS_PENDING, STATUS_CONFIRMED) and start_time >= now:
            stats["upcoming"] += 1
        elif status == STATUS_COMPLETED:
            stats["completed"] += 1
        elif status == STATUS_CANCELLED:
            stats["cancelled"] += 1
    return stats
