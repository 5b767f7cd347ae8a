from __future__ import annotations

from datetime import datetime, time, timedelta
from typing import Iterable, Tuple

from models.notification import NotificationLog
from models.scheduling import Appointment, Availability, Service, STATUS_CONFIRMED
from models.user import User, TrainerProfile, ClientProfile, ROLE_ADMIN, ROLE_CLIENT, ROLE_TRAINER
from app.notification_service import DeliveryResult
from app.security import hash_password

DEFAULT_PASSWORD = "secret123"

# A Monday at 08:00, far enough ahead that "now" never catches up
NOW = datetime(2030, 1, 7, 8, 0)

AvailabilityWindow = Tuple[int, time, time]


def make_user(session, *, name: str, email: str, role: str = ROLE_CLIENT, password: str = DEFAULT_PASSWORD, **fields) -> User:
    user = User(email=email, password_hash=hash_password(password), name=name, role=role, **fields)
    if role == ROLE_TRAINER:
        user.trainer_profile = TrainerProfile(hourly_rate=100.0)
    elif role == ROLE_CLIENT:
        user.client_profile = ClientProfile()
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def make_trainer(session, name: str = "Tina Trainer", email: str = "tina@example.com", **fields) -> TrainerProfile:
    return make_user(session, name=name, email=email, role=ROLE_TRAINER, **fields).trainer_profile


def make_client(session, name: str = "Alice Client", email: str = "alice@example.com", **fields) -> ClientProfile:
    return make_user(session, name=name, email=email, role=ROLE_CLIENT, **fields).client_profile


def make_admin(session, name: str = "Ada Admin", email: str = "admin@example.com") -> User:
    return make_user(session, name=name, email=email, role=ROLE_ADMIN)


def add_availability(
    session,
    trainer: TrainerProfile,
    *,
    windows: Iterable[AvailabilityWindow] | None = None,
    start_hour: int = 6,
    end_hour: int = 21,
) -> list[Availability]:
    """
    Persist availability windows for a trainer.

    By default every day of the week gets a wide-open window so tests can book
    without thinking about scheduling; pass windows to model specific hours.
    """
    if trainer.trainer_id is None:
        raise ValueError("Trainer must be persisted before adding availability")

    if windows is None:
        windows = [(day, time(start_hour, 0), time(end_hour, 0)) for day in range(7)]

    availabilities = [
        Availability(trainer_id=trainer.trainer_id, day_of_week=day, start_time=start, end_time=end)
        for day, start, end in windows
    ]
    session.add_all(availabilities)
    session.commit()
    return availabilities


def make_service(session, trainer: TrainerProfile, *, name: str = "Personal Training", duration: int = 60, price: float = 100.0) -> Service:
    service = Service(trainer_id=trainer.trainer_id, name=name, duration=duration, price=price)
    session.add(service)
    session.commit()
    session.refresh(service)
    return service


def make_appointment(
    session,
    trainer: TrainerProfile,
    client: ClientProfile,
    start: datetime,
    *,
    minutes: int = 60,
    status: str = STATUS_CONFIRMED,
    service: Service | None = None,
    price: float = 100.0,
    is_paid: bool = False,
) -> Appointment:
    appointment = Appointment(
        trainer_id=trainer.trainer_id,
        client_id=client.client_id,
        service_id=service.service_id if service else None,
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
        status=status,
        price=price,
        is_paid=is_paid,
    )
    session.add(appointment)
    session.commit()
    session.refresh(appointment)
    return appointment


def failed_log(session, *, channel: str, recipient: str, message: str = "hello", created_at: datetime | None = None, retry_count: int = 0) -> NotificationLog:
    log = NotificationLog(
        channel=channel,
        recipient=recipient,
        message=message,
        status="failed",
        error_message="boom",
        retry_count=retry_count,
    )
    if created_at is not None:
        log.created_at = created_at
    session.add(log)
    session.commit()
    return log


class FakeChannel:
    """Stands in for an email/SMS/WhatsApp/push service and records every call."""

    def __init__(self, channel: str, succeed: bool = True, raise_on_send: bool = False):
        self.channel = channel
        self.succeed = succeed
        self.raise_on_send = raise_on_send
        self.calls: list[tuple] = []

    def _result(self) -> DeliveryResult:
        if self.succeed:
            return DeliveryResult(True, external_id=f"{self.channel}-ok")
        return DeliveryResult(False, error=f"{self.channel} down")

    def retry(self, session, log):
        self.calls.append(("retry", log.log_id))
        return self._result()

    def __getattr__(self, name):
        if not name.startswith("send_"):
            raise AttributeError(name)

        def record(session, *args):
            self.calls.append((name,) + args)
            if self.raise_on_send:
                raise RuntimeError(f"{self.channel} exploded")
            return self._result()

        return record

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]
