from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.orm import Session

from models.notification import (
    Notification,
    NotificationLog,
    NOTIFICATION_TYPES,
    LOG_SENT,
    LOG_FAILED,
)
from models.user import User
from app.errors import NotFoundError

PREFERENCE_FIELDS = (
    "email_notifications",
    "sms_notifications",
    "whatsapp_notifications",
    "push_notifications",
)


def add_notification(
    session: Session,
    user_id: int,
    title: str,
    message: str,
    *,
    type: str = "system",
    metadata: Optional[dict] = None,
) -> Notification:
    """Queue an in-app notification on the session; the caller commits."""
    if type not in NOTIFICATION_TYPES:
        raise ValueError(f"Notification type must be one of {', '.join(NOTIFICATION_TYPES)}")
    note = Notification(user_id=user_id, title=title, message=message, type=type, extra=metadata)
    session.add(note)
    return note


def create_notification(
    session: Session,
    user_id: int,
    title: str,
    message: str,
    *,
    type: str = "system",
    metadata: Optional[dict] = None,
) -> Notification:
    if not session.get(User, user_id):
        raise NotFoundError("User not found")
    if not (title or "").strip() or not (message or "").strip():
        raise ValueError("Title and message are required")
    note = add_notification(session, user_id, title.strip(), message.strip(), type=type, metadata=metadata)
    session.commit()
    session.refresh(note)
    return note


def list_notifications(session: Session, user_id: int, *, limit: int = 50, unread_only: bool = False) -> list[Notification]:
    stmt = (
        select(Notification)
        .where(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc(), Notification.notification_id.desc())
        .limit(limit)
    )
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    return list(session.scalars(stmt))


def unread_count(session: Session, user_id: int) -> int:
    stmt = select(func.count(Notification.notification_id)).where(
        Notification.user_id == user_id,
        Notification.is_read.is_(False),
    )
    return session.scalar(stmt) or 0


def mark_read(session: Session, *, user_id: int, notification_id: int) -> Notification:
    note = session.get(Notification, notification_id)
    if not note or note.user_id != user_id:
        raise NotFoundError("Notification not found")
    note.is_read = True
    session.commit()
    return note


def mark_all_read(session: Session, *, user_id: int) -> int:
    result = session.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        .values(is_read=True)
    )
    session.commit()
    return result.rowcount or 0


def get_preferences(session: Session, user_id: int) -> dict[str, bool]:
    user = session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return {field: getattr(user, field) for field in PREFERENCE_FIELDS}


def update_preferences(session: Session, user_id: int, **changes) -> dict[str, bool]:
    user = session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    for key, value in changes.items():
        if key not in PREFERENCE_FIELDS:
            continue
        if not isinstance(value, bool):
            raise ValueError(f"{key} must be true or false")
        setattr(user, key, value)
    session.commit()
    return {field: getattr(user, field) for field in PREFERENCE_FIELDS}


# ---------------------------
# Delivery log (external channels)
# ---------------------------

@dataclass
class DeliveryResult:
    success: bool
    external_id: Optional[str] = None
    error: Optional[str] = None


def log_delivery(
    session: Session,
    *,
    channel: str,
    recipient: str,
    message: str,
    result: DeliveryResult,
    subject: Optional[str] = None,
) -> NotificationLog:
    entry = NotificationLog(
        channel=channel,
        recipient=recipient,
        subject=subject,
        message=message,
        status=LOG_SENT if result.success else LOG_FAILED,
        external_id=result.external_id,
        error_message=result.error,
    )
    session.add(entry)
    session.commit()
    return entry
