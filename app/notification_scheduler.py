"""
Outbound notification dispatch and the periodic jobs that drive it.

Three polling jobs run on an APScheduler BackgroundScheduler:
  - every minute: retry failed channel deliveries from the last 24h
  - every 5 minutes: 24h / 1h appointment reminders
  - every hour: in-app summary for tomorrow's appointments
"""
from __future__ import annotations

import logging
import math
from datetime import date, datetime, time, timedelta
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from models.base import session_scope
from models.notification import NotificationLog, LOG_FAILED, LOG_SENT
from models.scheduling import Appointment, STATUS_CONFIRMED
from models.user import User, TrainerProfile, ClientProfile
from app.config import Config
from app.email_service import EmailService
from app.errors import NotFoundError
from app.notification_service import add_notification
from app.push_service import PushService
from app.sms_service import SmsService, WhatsAppService

logger = logging.getLogger(__name__)

REMINDER_HOURS = (24, 1)
RETRY_BATCH_SIZE = 10
MAX_RETRIES = 3
RETRY_LOOKBACK = timedelta(hours=24)


def hours_until(start_time: datetime, now: datetime) -> int:
    """Whole hours until start, rounding halves up."""
    return math.floor((start_time - now).total_seconds() / 3600 + 0.5)


def _fmt(dt: datetime) -> str:
    return dt.strftime("%d/%m/%Y %H:%M")


def _load_appointment(session: Session, appointment_id: int) -> Appointment:
    stmt = (
        select(Appointment)
        .options(
            joinedload(Appointment.trainer).joinedload(TrainerProfile.user),
            joinedload(Appointment.client).joinedload(ClientProfile.user),
            joinedload(Appointment.service),
        )
        .where(Appointment.appointment_id == appointment_id)
    )
    appointment = session.scalars(stmt).first()
    if not appointment:
        raise NotFoundError("Appointment not found")
    return appointment


class NotificationDispatcher:
    """Fans an event out to every channel the user opted into."""

    def __init__(
        self,
        email: Optional[EmailService] = None,
        sms: Optional[SmsService] = None,
        whatsapp: Optional[WhatsAppService] = None,
        push: Optional[PushService] = None,
    ):
        self.email = email or EmailService()
        self.sms = sms or SmsService()
        self.whatsapp = whatsapp or WhatsAppService()
        self.push = push or PushService()

    @property
    def channels(self) -> dict:
        return {
            self.email.channel: self.email,
            self.sms.channel: self.sms,
            self.whatsapp.channel: self.whatsapp,
            self.push.channel: self.push,
        }

    def _attempt(self, session: Session, label: str, func, *args) -> bool:
        # One failing channel must not stop the others
        try:
            func(session, *args)
            return True
        except Exception:
            session.rollback()
            logger.exception("%s failed", label)
            return False

    # ---------------------------
    # Event sends
    # ---------------------------

    def send_appointment_confirmation(self, session: Session, appointment_id: int) -> None:
        appointment = _load_appointment(session, appointment_id)
        client = appointment.client.user

        if client.email_notifications:
            self._attempt(session, "confirmation email", self.email.send_appointment_confirmation, appointment)
        if client.whatsapp_notifications and client.whatsapp:
            self._attempt(session, "confirmation whatsapp", self.whatsapp.send_appointment_confirmation, appointment)
        if client.push_notifications:
            self._attempt(session, "confirmation push", self.push.send_appointment_confirmation, appointment)

        add_notification(
            session,
            client.user_id,
            "Appointment confirmed",
            f"Your session with {appointment.trainer.user.name} on {_fmt(appointment.start_time)} is confirmed.",
            type="appointment",
            metadata={"appointment_id": appointment.appointment_id},
        )
        session.commit()

    def send_welcome_notifications(self, session: Session, user_id: int) -> None:
        user = session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")

        if user.email_notifications:
            self._attempt(session, "welcome email", self.email.send_welcome, user)
        if user.sms_notifications and user.phone:
            self._attempt(session, "welcome sms", self.sms.send_welcome, user)
        if user.whatsapp_notifications and user.whatsapp:
            self._attempt(session, "welcome whatsapp", self.whatsapp.send_welcome, user)

        add_notification(
            session,
            user.user_id,
            f"Welcome to {Config.APP_NAME}!",
            "Your account was created successfully.",
            type="system",
        )
        session.commit()

    def send_payment_confirmation(self, session: Session, appointment_id: int) -> None:
        appointment = _load_appointment(session, appointment_id)
        client = appointment.client.user

        if client.email_notifications:
            self._attempt(session, "payment email", self.email.send_payment_confirmation, appointment)

        add_notification(
            session,
            client.user_id,
            "Payment confirmed",
            f"Payment of R$ {appointment.price:.2f} received for {_fmt(appointment.start_time)}.",
            type="payment",
            metadata={"appointment_id": appointment.appointment_id},
        )
        add_notification(
            session,
            appointment.trainer.user_id,
            "Payment received",
            f"{client.name} paid for the session on {_fmt(appointment.start_time)}.",
            type="payment",
            metadata={"appointment_id": appointment.appointment_id},
        )
        session.commit()

    def send_appointment_reminder(self, session: Session, appointment: Appointment, hours: int) -> None:
        client = appointment.client.user

        if client.email_notifications:
            self._attempt(session, "reminder email", self.email.send_appointment_reminder, appointment, hours)
        if client.whatsapp_notifications and client.whatsapp:
            self._attempt(session, "reminder whatsapp", self.whatsapp.send_reminder, appointment, hours)
        if client.push_notifications:
            self._attempt(session, "reminder push", self.push.send_reminder, appointment, hours)
        # SMS is reserved for the last-minute reminder
        if hours == 1 and client.sms_notifications and client.phone:
            self._attempt(session, "reminder sms", self.sms.send_urgent_reminder, appointment)

    # ---------------------------
    # Polling jobs
    # ---------------------------

    def process_appointment_reminders(self, session: Session, *, now: Optional[datetime] = None) -> int:
        if now is None:
            now = datetime.utcnow()
        stmt = (
            select(Appointment)
            .options(
                joinedload(Appointment.trainer).joinedload(TrainerProfile.user),
                joinedload(Appointment.client).joinedload(ClientProfile.user),
                joinedload(Appointment.service),
            )
            .where(
                Appointment.status == STATUS_CONFIRMED,
                Appointment.start_time >= now,
                Appointment.start_time <= now + timedelta(hours=24),
            )
            .order_by(Appointment.start_time)
        )
        sent = 0
        for appointment in session.execute(stmt).unique().scalars():
            hours = hours_until(appointment.start_time, now)
            if hours not in REMINDER_HOURS:
                continue
            flag = "reminder_24h_sent" if hours == 24 else "reminder_1h_sent"
            if getattr(appointment, flag):
                continue
            self.send_appointment_reminder(session, appointment, hours)
            setattr(appointment, flag, True)
            session.commit()
            sent += 1
        if sent:
            logger.info("Sent %s appointment reminders", sent)
        return sent

    def process_daily_summaries(self, session: Session, *, now: Optional[datetime] = None) -> int:
        if now is None:
            now = datetime.utcnow()
        tomorrow: date = now.date() + timedelta(days=1)
        day_start = datetime.combine(tomorrow, time.min)
        stmt = (
            select(Appointment)
            .options(
                joinedload(Appointment.trainer).joinedload(TrainerProfile.user),
                joinedload(Appointment.client).joinedload(ClientProfile.user),
            )
            .where(
                Appointment.status == STATUS_CONFIRMED,
                Appointment.daily_summary_sent.is_(False),
                Appointment.start_time >= day_start,
                Appointment.start_time < day_start + timedelta(days=1),
            )
        )
        count = 0
        for appointment in session.execute(stmt).unique().scalars():
            add_notification(
                session,
                appointment.client.user_id,
                "Training tomorrow",
                f"Don't forget: session with {appointment.trainer.user.name} tomorrow at "
                f"{appointment.start_time.strftime('%H:%M')}.",
                type="reminder",
                metadata={"appointment_id": appointment.appointment_id},
            )
            appointment.daily_summary_sent = True
            count += 1
        session.commit()
        return count

    def retry_failed_notifications(self, session: Session, *, now: Optional[datetime] = None) -> int:
        if now is None:
            now = datetime.utcnow()
        stmt = (
            select(NotificationLog)
            .where(
                NotificationLog.status == LOG_FAILED,
                NotificationLog.retry_count < MAX_RETRIES,
                NotificationLog.created_at >= now - RETRY_LOOKBACK,
            )
            .order_by(NotificationLog.created_at)
            .limit(RETRY_BATCH_SIZE)
        )
        recovered = 0
        for log in list(session.scalars(stmt)):
            channel = self.channels.get(log.channel)
            if channel is None:
                log.retry_count = MAX_RETRIES
                continue
            try:
                result = channel.retry(session, log)
            except Exception as exc:
                logger.exception("Retry of notification log %s failed", log.log_id)
                log.retry_count += 1
                log.error_message = str(exc)
                continue
            if result.success:
                log.status = LOG_SENT
                log.external_id = result.external_id
                log.error_message = None
                recovered += 1
            else:
                log.retry_count += 1
                log.error_message = result.error
        session.commit()
        return recovered


# ---------------------------
# Scheduler wiring
# ---------------------------

def _job(session_factory, method_name: str, dispatcher: NotificationDispatcher):
    def run() -> None:
        with session_scope(session_factory) as db:
            getattr(dispatcher, method_name)(db)
    run.__name__ = method_name
    return run


def setup_scheduler(
    dispatcher: Optional[NotificationDispatcher] = None,
    *,
    session_factory=None,
    scheduler: Optional[BaseScheduler] = None,
) -> BaseScheduler:
    """Register the notification jobs; the caller starts the scheduler."""
    dispatcher = dispatcher or NotificationDispatcher()
    scheduler = scheduler or BackgroundScheduler(timezone="UTC")
    job_defaults = {"max_instances": 1, "coalesce": True, "replace_existing": True}

    scheduler.add_job(
        _job(session_factory, "retry_failed_notifications", dispatcher),
        "interval",
        minutes=1,
        id="retry_failed_notifications",
        **job_defaults,
    )
    scheduler.add_job(
        _job(session_factory, "process_appointment_reminders", dispatcher),
        "interval",
        minutes=5,
        id="appointment_reminders",
        **job_defaults,
    )
    scheduler.add_job(
        _job(session_factory, "process_daily_summaries", dispatcher),
        "cron",
        minute=0,
        id="daily_summaries",
        **job_defaults,
    )
    logger.info("Notification scheduler configured with %s jobs", len(scheduler.get_jobs()))
    return scheduler
