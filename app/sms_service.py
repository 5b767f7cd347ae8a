"""SMS and WhatsApp delivery through Twilio."""
from __future__ import annotations

import logging
import re
from typing import Optional

from sqlalchemy.orm import Session
from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from models.notification import NotificationLog
from models.scheduling import Appointment
from models.user import User
from app.config import Config
from app.notification_service import DeliveryResult, log_delivery

logger = logging.getLogger(__name__)

WHATSAPP_TEMPLATES = {
    "appointment_confirmation": (
        "Hi {{client_name}}! Your appointment with {{trainer_name}} is confirmed for "
        "{{date}}. Service: {{service_name}}. See you at {{location}}!"
    ),
    "reminder_24h": (
        "Hi {{client_name}}! Reminder: you have a session with {{trainer_name}} "
        "tomorrow at {{time}} ({{service_name}})."
    ),
    "reminder_1h": (
        "Hi {{client_name}}! Your session with {{trainer_name}} starts in 1 hour, at {{time}}. "
        "Get ready!"
    ),
    "welcome": "Welcome to {{app_name}}, {{name}}! You will receive your appointment updates here.",
}


def format_phone_number(phone: str) -> str:
    """Normalise to E.164, defaulting to Brazil (+55) and the 11 area code for 10-digit numbers."""
    cleaned = re.sub(r"\D", "", phone or "")
    if len(cleaned) == 11 and cleaned.startswith("11"):
        return f"+55{cleaned}"
    if len(cleaned) == 10:
        return f"+5511{cleaned}"
    if cleaned.startswith("55"):
        return f"+{cleaned}"
    return f"+55{cleaned}"


def render_template(template: str, variables: dict) -> str:
    return re.sub(
        r"\{\{(\w+)\}\}",
        lambda m: str(variables.get(m.group(1), m.group(0))),
        template,
    )


def _appointment_variables(appointment: Appointment) -> dict:
    return {
        "client_name": appointment.client.user.name,
        "trainer_name": appointment.trainer.user.name,
        "service_name": appointment.service.name if appointment.service else "Training session",
        "date": appointment.start_time.strftime("%d/%m/%Y %H:%M"),
        "time": appointment.start_time.strftime("%H:%M"),
        "location": Config.APP_NAME,
    }


class _TwilioChannel:
    channel = ""

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        client=None,
    ):
        self.account_sid = account_sid if account_sid is not None else Config.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token if auth_token is not None else Config.TWILIO_AUTH_TOKEN
        self.from_number = from_number
        self._client = client

    @property
    def client(self):
        if self._client is None and self.account_sid and self.auth_token:
            self._client = Client(self.account_sid, self.auth_token)
        return self._client

    @property
    def configured(self) -> bool:
        return self.client is not None and bool(self.from_number)

    def _address(self, phone: str) -> str:
        return format_phone_number(phone)

    def deliver(self, to: str, message: str) -> DeliveryResult:
        if not self.configured:
            return DeliveryResult(False, error=f"{self.channel} service not configured")
        try:
            response = self.client.messages.create(body=message, from_=self.from_number, to=to)
        except TwilioException as exc:
            logger.error("%s send error to %s: %s", self.channel, to, exc)
            return DeliveryResult(False, error=str(exc))
        except Exception as exc:
            # Transport failures (timeouts, refused connections) are logged for retry too
            logger.exception("%s transport error to %s", self.channel, to)
            return DeliveryResult(False, error=str(exc) or exc.__class__.__name__)
        return DeliveryResult(True, external_id=response.sid)

    def send(self, session: Session, *, to: str, message: str) -> DeliveryResult:
        recipient = self._address(to)
        result = self.deliver(recipient, message)
        log_delivery(session, channel=self.channel, recipient=recipient, message=message, result=result)
        if result.success:
            logger.info("%s sent to %s", self.channel, recipient)
        return result

    def retry(self, session: Session, log: NotificationLog) -> DeliveryResult:
        return self.deliver(log.recipient, log.message)


class SmsService(_TwilioChannel):
    channel = "sms"

    def __init__(self, *args, from_number: Optional[str] = None, **kwargs):
        super().__init__(*args, from_number=from_number or Config.TWILIO_PHONE_NUMBER, **kwargs)

    def send_welcome(self, session: Session, user: User) -> DeliveryResult:
        return self.send(
            session,
            to=user.phone,
            message=f"{Config.APP_NAME}: welcome, {user.name}! Your account is ready.",
        )

    def send_urgent_reminder(self, session: Session, appointment: Appointment) -> DeliveryResult:
        variables = _appointment_variables(appointment)
        message = (
            f"{Config.APP_NAME}: your session with {variables['trainer_name']} "
            f"starts in 1 hour ({variables['time']})."
        )
        return self.send(session, to=appointment.client.user.phone, message=message)


class WhatsAppService(_TwilioChannel):
    channel = "whatsapp"

    def __init__(self, *args, from_number: Optional[str] = None, **kwargs):
        number = from_number or Config.TWILIO_WHATSAPP_NUMBER
        if number and not number.startswith("whatsapp:"):
            number = f"whatsapp:{number}"
        super().__init__(*args, from_number=number, **kwargs)

    def _address(self, phone: str) -> str:
        return f"whatsapp:{format_phone_number(phone)}"

    def send_template(self, session: Session, *, to: str, template: str, variables: dict) -> DeliveryResult:
        if template not in WHATSAPP_TEMPLATES:
            raise ValueError(f"Unknown WhatsApp template {template}")
        return self.send(session, to=to, message=render_template(WHATSAPP_TEMPLATES[template], variables))

    def send_appointment_confirmation(self, session: Session, appointment: Appointment) -> DeliveryResult:
        return self.send_template(
            session,
            to=appointment.client.user.whatsapp,
            template="appointment_confirmation",
            variables=_appointment_variables(appointment),
        )

    def send_reminder(self, session: Session, appointment: Appointment, hours_until: int) -> DeliveryResult:
        template = "reminder_24h" if hours_until >= 24 else "reminder_1h"
        return self.send_template(
            session,
            to=appointment.client.user.whatsapp,
            template=template,
            variables=_appointment_variables(appointment),
        )

    def send_welcome(self, session: Session, user: User) -> DeliveryResult:
        return self.send_template(
            session,
            to=user.whatsapp,
            template="welcome",
            variables={"name": user.name, "app_name": Config.APP_NAME},
        )
