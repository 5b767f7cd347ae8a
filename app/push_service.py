from __future__ import annotations

import json
import logging
from typing import Callable, Optional

from pywebpush import webpush, WebPushException
from sqlalchemy import select
from sqlalchemy.orm import Session

from models.notification import NotificationLog, PushSubscription
from models.scheduling import Appointment
from models.user import User
from app.config import Config
from app.errors import NotFoundError
from app.notification_service import DeliveryResult, log_delivery

logger = logging.getLogger(__name__)

CHANNEL = "push"
GONE_STATUS_CODES = (404, 410)


# ---------------------------
# Subscriptions
# ---------------------------

def subscribe(
    session: Session,
    *,
    user_id: int,
    endpoint: str,
    p256dh: str,
    auth: str,
    user_agent: Optional[str] = None,
) -> PushSubscription:
    if not endpoint or not p256dh or not auth:
        raise ValueError("endpoint, keys.p256dh and keys.auth are required")
    if not session.get(User, user_id):
        raise NotFoundError("User not found")

    sub = session.scalar(select(PushSubscription).where(PushSubscription.endpoint == endpoint))
    if sub:
        # Browsers reuse endpoints; the latest login owns it
        sub.user_id = user_id
        sub.p256dh = p256dh
        sub.auth = auth
        sub.user_agent = user_agent
        sub.is_active = True
    else:
        sub = PushSubscription(
            user_id=user_id,
            endpoint=endpoint,
            p256dh=p256dh,
            auth=auth,
            user_agent=user_agent,
        )
        session.add(sub)
    session.commit()
    session.refresh(sub)
    return sub


def unsubscribe(session: Session, *, user_id: int, endpoint: str) -> bool:
    sub = session.scalar(
        select(PushSubscription).where(
            PushSubscription.endpoint == endpoint,
            PushSubscription.user_id == user_id,
        )
    )
    if not sub:
        return False
    sub.is_active = False
    session.commit()
    return True


def active_subscriptions(session: Session, user_id: int) -> list[PushSubscription]:
    stmt = select(PushSubscription).where(
        PushSubscription.user_id == user_id,
        PushSubscription.is_active.is_(True),
    )
    return list(session.scalars(stmt))


# ---------------------------
# Delivery
# ---------------------------

class PushService:
    channel = CHANNEL

    def __init__(
        self,
        private_key: Optional[str] = None,
        email: Optional[str] = None,
        sender: Callable = webpush,
    ):
        self.private_key = private_key if private_key is not None else Config.VAPID_PRIVATE_KEY
        self.email = email or Config.VAPID_EMAIL
        self._sender = sender

    @property
    def configured(self) -> bool:
        return bool(self.private_key)

    def _deliver(self, sub: PushSubscription, payload: str) -> DeliveryResult:
        if not self.configured:
            return DeliveryResult(False, error="push service not configured")
        try:
            self._sender(
                subscription_info=sub.subscription_info(),
                data=payload,
                vapid_private_key=self.private_key,
                vapid_claims={"sub": f"mailto:{self.email}"},
            )
        except WebPushException as exc:
            status = getattr(exc.response, "status_code", None)
            if status in GONE_STATUS_CODES:
                logger.info("Push subscription %s expired (%s); deactivating", sub.push_subscription_id, status)
                sub.is_active = False
            else:
                logger.error("Push send error for subscription %s: %s", sub.push_subscription_id, exc)
            return DeliveryResult(False, error=str(exc))
        return DeliveryResult(True)

    def send_to_user(
        self,
        session: Session,
        *,
        user_id: int,
        title: str,
        body: str,
        url: str = "/",
        data: Optional[dict] = None,
    ) -> list[DeliveryResult]:
        payload = json.dumps(
            {"title": title, "body": body, "icon": "/icon-192x192.png", "url": url, "data": data or {}}
        )
        results = []
        for sub in active_subscriptions(session, user_id):
            result = self._deliver(sub, payload)
            log_delivery(
                session,
                channel=CHANNEL,
                recipient=sub.endpoint,
                subject=title,
                message=payload,
                result=result,
            )
            results.append(result)
        return results

    def retry(self, session: Session, log: NotificationLog) -> DeliveryResult:
        sub = session.scalar(
            select(PushSubscription).where(
                PushSubscription.endpoint == log.recipient,
                PushSubscription.is_active.is_(True),
            )
        )
        if not sub:
            return DeliveryResult(False, error="subscription no longer active")
        return self._deliver(sub, log.message)

    # --- templates ---

    def send_appointment_confirmation(self, session: Session, appointment: Appointment) -> list[DeliveryResult]:
        return self.send_to_user(
            session,
            user_id=appointment.client.user_id,
            title="Appointment confirmed",
            body=f"{appointment.trainer.user.name} - {appointment.start_time.strftime('%d/%m/%Y %H:%M')}",
            url="/appointments",
            data={"appointment_id": appointment.appointment_id},
        )

    def send_reminder(self, session: Session, appointment: Appointment, hours_until: int) -> list[DeliveryResult]:
        when = "tomorrow" if hours_until >= 24 else "in 1 hour"
        return self.send_to_user(
            session,
            user_id=appointment.client.user_id,
            title=f"Session {when}",
            body=f"{appointment.trainer.user.name} at {appointment.start_time.strftime('%H:%M')}",
            url="/appointments",
            data={"appointment_id": appointment.appointment_id},
        )
