from __future__ import annotations

from datetime import date, datetime, time
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    Integer,
    String,
    Text,
    Date,
    DateTime,
    Time,
    ForeignKey,
    Boolean,
    Numeric,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

if TYPE_CHECKING:
    from .user import TrainerProfile, ClientProfile


STATUS_PENDING = "PENDING"
STATUS_CONFIRMED = "CONFIRMED"
STATUS_COMPLETED = "COMPLETED"
STATUS_CANCELLED = "CANCELLED"
APPOINTMENT_STATUSES = (STATUS_PENDING, STATUS_CONFIRMED, STATUS_COMPLETED, STATUS_CANCELLED)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_CANCELLED)

DAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


class Service(Base):
    __tablename__ = "service"

    service_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trainer_id: Mapped[int] = mapped_column(ForeignKey("trainer.trainer_id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration: Mapped[int] = mapped_column(Integer, nullable=False, default=60)  # minutes
    price: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    trainer: Mapped["TrainerProfile"] = relationship(back_populates="services")
    appointments: Mapped[list["Appointment"]] = relationship(back_populates="service")

    def to_dict(self) -> dict:
        return {
            "service_id": self.service_id,
            "trainer_id": self.trainer_id,
            "name": self.name,
            "description": self.description,
            "duration": self.duration,
            "price": self.price,
            "is_active": self.is_active,
        }


class Availability(Base):
    """
    Weekly availability window for a trainer.
    day_of_week: 0 = Monday ... 6 = Sunday
    """
    __tablename__ = "availability"

    availability_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trainer_id: Mapped[int] = mapped_column(ForeignKey("trainer.trainer_id"), nullable=False)

    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)  # 0–6
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    trainer: Mapped["TrainerProfile"] = relationship(back_populates="availabilities")

    @property
    def hours(self) -> int:
        return self.end_time.hour - self.start_time.hour

    def to_dict(self) -> dict:
        return {
            "availability_id": self.availability_id,
            "trainer_id": self.trainer_id,
            "day_of_week": self.day_of_week,
            "day_name": DAY_NAMES[self.day_of_week],
            "start_time": self.start_time.strftime("%H:%M"),
            "end_time": self.end_time.strftime("%H:%M"),
            "is_active": self.is_active,
        }


class BlockedDate(Base):
    __tablename__ = "blocked_date"
    __table_args__ = (UniqueConstraint("trainer_id", "date", name="uq_blocked_date_trainer_date"),)

    blocked_date_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trainer_id: Mapped[int] = mapped_column(ForeignKey("trainer.trainer_id"), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    trainer: Mapped["TrainerProfile"] = relationship(back_populates="blocked_dates")

    def to_dict(self) -> dict:
        return {
            "blocked_date_id": self.blocked_date_id,
            "trainer_id": self.trainer_id,
            "date": self.date.isoformat(),
            "reason": self.reason,
        }


class Appointment(Base):
    __tablename__ = "appointment"
    __table_args__ = (
        Index("ix_appointment_trainer_start", "trainer_id", "start_time"),
        Index("ix_appointment_status_start", "status", "start_time"),
    )

    appointment_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trainer_id: Mapped[int] = mapped_column(ForeignKey("trainer.trainer_id"), nullable=False)
    client_id: Mapped[int] = mapped_column(ForeignKey("client.client_id"), nullable=False)
    service_id: Mapped[int | None] = mapped_column(ForeignKey("service.service_id"), nullable=True)

    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=STATUS_PENDING)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=False, default=0)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Set once the matching reminder went out, so polling windows never resend
    reminder_24h_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reminder_1h_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    daily_summary_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    trainer: Mapped["TrainerProfile"] = relationship(back_populates="appointments")
    client: Mapped["ClientProfile"] = relationship(back_populates="appointments")
    service: Mapped[Optional["Service"]] = relationship(back_populates="appointments")

    @property
    def duration_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)

    def to_dict(self) -> dict:
        return {
            "appointment_id": self.appointment_id,
            "trainer_id": self.trainer_id,
            "client_id": self.client_id,
            "service_id": self.service_id,
            "trainer_name": self.trainer.user.name if self.trainer and self.trainer.user else None,
            "client_name": self.client.user.name if self.client and self.client.user else None,
            "service_name": self.service.name if self.service else None,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration": self.duration_minutes,
            "status": self.status,
            "notes": self.notes,
            "price": self.price,
            "is_paid": self.is_paid,
        }
