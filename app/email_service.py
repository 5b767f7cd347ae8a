from __future__ import annotations

import logging
from datetime import datetime
from html import escape
from typing import Optional

import resend
from sqlalchemy.orm import Session

from models.notification import NotificationLog
from models.scheduling import Appointment
from models.user import User
from app.config import Config
from app.notification_service import DeliveryResult, log_delivery

logger = logging.getLogger(__name__)

CHANNEL = "email"


def _fmt(dt: datetime) -> str:
    return dt.strftime("%d/%m/%Y %H:%M")


def _layout(title: str, body: str) -> str:
    return (
        "<div style=\"font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;\">"
        f"<h2 style=\"color: #1f2937;\">{escape(title)}</h2>"
        f"{body}"
        f"<p style=\"color: #6b7280; font-size: 12px;\">{escape(Config.APP_NAME)}</p>"
        "</div>"
    )


def _appointment_block(appointment: Appointment) -> str:
    service_name = appointment.service.name if appointment.service else "Training session"
    return (
        "<ul>"
        f"<li><strong>Service:</strong> {escape(service_name)}</li>"
        f"<li><strong>Trainer:</strong> {escape(appointment.trainer.user.name)}</li>"
        f"<li><strong>Date:</strong> {_fmt(appointment.start_time)}</li>"
        f"<li><strong>Duration:</strong> {appointment.duration_minutes} min</li>"
        f"<li><strong>Location:</strong> {escape(Config.APP_NAME)}</li>"
        "</ul>"
    )


class EmailService:
    """Transactional email through Resend. Without an API key, sends are logged and reported as delivered."""

    channel = CHANNEL

    def __init__(self, api_key: Optional[str] = None, from_email: Optional[str] = None):
        self.api_key = api_key if api_key is not None else Config.RESEND_API_KEY
        self.from_email = from_email or Config.FROM_EMAIL

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def deliver(self, to: str, subject: str, html: str, text: Optional[str] = None) -> DeliveryResult:
        if not self.configured:
            logger.info("RESEND_API_KEY missing; email to %s would be sent: %s", to, subject)
            return DeliveryResult(True, external_id=f"mock-{int(datetime.utcnow().timestamp())}")

        resend.api_key = self.api_key
        params = {
            "from": self.from_email,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if text:
            params["text"] = text
        try:
            response = resend.Emails.send(params)
        except Exception as exc:
            logger.error("Email send error to %s: %s", to, exc)
            return DeliveryResult(False, error=str(exc))
        return DeliveryResult(True, external_id=response.get("id") if response else None)

    def send_email(
        self,
        session: Session,
        *,
        to: str,
        subject: str,
        html: str,
        text: Optional[str] = None,
    ) -> DeliveryResult:
        result = self.deliver(to, subject, html, text)
        log_delivery(session, channel=CHANNEL, recipient=to, subject=subject, message=html, result=result)
        if result.success:
            logger.info("Email sent to %s (%s)", to, subject)
        return result

    def retry(self, session: Session, log: NotificationLog) -> DeliveryResult:
        return self.deliver(log.recipient, log.subject or Config.APP_NAME, log.message)

    # --- templates ---

    def send_welcome(self, session: Session, user: User) -> DeliveryResult:
        role_line = (
            "Set up your services and weekly availability to start receiving bookings."
            if user.role == "TRAINER"
            else "Browse our trainers and book your first session."
        )
        html = _layout(
            f"Welcome to {Config.APP_NAME}, {user.name}!",
            f"<p>Your account is ready.</p><p>{role_line}</p>",
        )
        return self.send_email(session, to=user.email, subject=f"Welcome to {Config.APP_NAME}", html=html)

    def send_appointment_confirmation(self, session: Session, appointment: Appointment) -> DeliveryResult:
        client = appointment.client.user
        html = _layout(
            "Appointment confirmed",
            f"<p>Hi {escape(client.name)}, your appointment is confirmed.</p>"
            + _appointment_block(appointment),
        )
        return self.send_email(
            session,
            to=client.email,
            subject=f"Appointment confirmed - {_fmt(appointment.start_time)}",
            html=html,
        )

    def send_appointment_reminder(self, session: Session, appointment: Appointment, hours_until: int) -> DeliveryResult:
        client = appointment.client.user
        when = "tomorrow" if hours_until >= 24 else "in 1 hour"
        html = _layout(
            f"Your session is {when}",
            f"<p>Hi {escape(client.name)}, this is a reminder of your upcoming appointment.</p>"
            + _appointment_block(appointment),
        )
        return self.send_email(
            session,
            to=client.email,
            subject=f"Reminder: your session is {when}",
            html=html,
        )

    def send_payment_confirmation(self, session: Session, appointment: Appointment) -> DeliveryResult:
        client = appointment.client.user
        html = _layout(
            "Payment received",
            f"<p>Hi {escape(client.name)}, we received R$ {appointment.price:.2f} for your appointment.</p>"
            + _appointment_block(appointment),
        )
        return self.send_email(session, to=client.email, subject="Payment confirmed", html=html)

    def send_password_reset(self, session: Session, user: User, token: str) -> DeliveryResult:
        html = _layout(
            "Reset your password",
            f"<p>Hi {escape(user.name)}, use the code below to choose a new password. "
            f"It expires in {Config.PASSWORD_RESET_MINUTES} minutes.</p>"
            f"<p><code>{escape(token)}</code></p>"
            "<p>If you did not ask for this, you can ignore this email.</p>",
        )
        return self.send_email(session, to=user.email, subject="Password reset", html=html)
