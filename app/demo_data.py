from __future__ import annotations

from datetime import datetime, timedelta, time
from typing import Optional

from sqlalchemy.orm import Session

from models.base import Base, engine, get_session
from models.payment import Payment, SubscriptionPlan, PAYMENT_SUCCEEDED
from models.scheduling import (
    Appointment,
    Availability,
    BlockedDate,
    Service,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_CONFIRMED,
    STATUS_PENDING,
)
from models.user import User, TrainerProfile, ClientProfile, ROLE_CLIENT, ROLE_TRAINER

from app import init_db
from app.payment_service import calculate_split
from app.security import hash_password

DEMO_TRAINER_PASSWORD = "trainer123"
DEMO_CLIENT_PASSWORD = "client123"


def clear_all_data() -> None:
    """Drop and recreate all tables, including triggers/indexes."""
    Base.metadata.drop_all(bind=engine)
    init_db.init_db()


def populate(session: Session, *, now: Optional[datetime] = None) -> dict:
    """Insert the demo data set into an empty schema and return the created users by role."""
    now = (now or datetime.utcnow()).replace(minute=0, second=0, microsecond=0)

    # Trainers
    trainer_specs = [
        ("Tina Ray", "tina.ray@example.com", "Strength, Mobility", 8, 120.0),
        ("Riley Cole", "riley.cole@example.com", "Yoga, Pilates", 5, 100.0),
        ("Morgan Lee", "morgan.lee@example.com", "HIIT, Nutrition", 3, 90.0),
    ]
    trainer_hash = hash_password(DEMO_TRAINER_PASSWORD)
    trainers: list[TrainerProfile] = []
    for name, email, specialties, years, rate in trainer_specs:
        user = User(email=email, password_hash=trainer_hash, name=name, role=ROLE_TRAINER, phone="11987654321")
        user.trainer_profile = TrainerProfile(
            bio=f"{name} has {years} years of coaching experience.",
            specialties=specialties,
            experience_years=years,
            hourly_rate=rate,
        )
        session.add(user)
        trainers.append(user.trainer_profile)
    session.flush()

    # Services: a full session at the hourly rate plus a short assessment
    services: dict[int, list[Service]] = {}
    for trainer in trainers:
        services[trainer.trainer_id] = [
            Service(trainer_id=trainer.trainer_id, name="Personal Training", duration=60, price=trainer.hourly_rate),
            Service(trainer_id=trainer.trainer_id, name="Fitness Assessment", duration=30, price=80.0),
        ]
        session.add_all(services[trainer.trainer_id])

    # Availability (Mon-Fri 9-17, plus Saturday mornings for the first trainer)
    for trainer in trainers:
        for day in range(5):
            session.add(
                Availability(
                    trainer_id=trainer.trainer_id,
                    day_of_week=day,
                    start_time=time(9, 0),
                    end_time=time(17, 0),
                )
            )
    session.add(Availability(trainer_id=trainers[0].trainer_id, day_of_week=5, start_time=time(8, 0), end_time=time(12, 0)))

    # One blocked day two weeks out
    session.add(
        BlockedDate(
            trainer_id=trainers[1].trainer_id,
            date=(now + timedelta(days=14)).date(),
            reason="Workshop",
        )
    )

    # Clients
    client_specs = [
        ("Avery Stone", "avery@example.com", "Lean muscle focus", "beginner"),
        ("Blake Summers", "blake@example.com", "Prep for race", "advanced"),
        ("Casey Rivera", "casey@example.com", "Improve endurance", "intermediate"),
        ("Dakota Reed", "dakota@example.com", "Lose 5kg", "beginner"),
        ("Emery Shaw", "emery@example.com", "Maintain weight", "intermediate"),
    ]
    client_hash = hash_password(DEMO_CLIENT_PASSWORD)
    clients: list[ClientProfile] = []
    for name, email, goals, level in client_specs:
        user = User(email=email, password_hash=client_hash, name=name, role=ROLE_CLIENT)
        user.client_profile = ClientProfile(goals=goals, fitness_level=level)
        session.add(user)
        clients.append(user.client_profile)
    session.flush()

    # Past sessions over the last three weeks (completed + paid, one cancellation per trainer)
    this_monday = (now - timedelta(days=now.weekday())).replace(hour=0)
    appointments: list[Appointment] = []
    for trainer_index, trainer in enumerate(trainers):
        full_session = services[trainer.trainer_id][0]
        for week in range(1, 4):
            for idx in range(2):
                client = clients[(trainer_index + week + idx) % len(clients)]
                start = this_monday - timedelta(weeks=week) + timedelta(days=idx * 2, hours=9 + trainer_index + idx)
                status = STATUS_CANCELLED if (week, idx) == (2, 1) else STATUS_COMPLETED
                appointment = Appointment(
                    trainer_id=trainer.trainer_id,
                    client_id=client.client_id,
                    service_id=full_session.service_id,
                    start_time=start,
                    end_time=start + timedelta(minutes=full_session.duration),
                    price=full_session.price,
                    status=status,
                    is_paid=status == STATUS_COMPLETED,
                    created_at=start - timedelta(days=3),
                )
                session.add(appointment)
                appointments.append(appointment)
    session.flush()

    for idx, appointment in enumerate(a for a in appointments if a.is_paid):
        split = calculate_split(int(round(appointment.price * 100)))
        session.add(
            Payment(
                user_id=appointment.client.user_id,
                appointment_id=appointment.appointment_id,
                stripe_payment_intent_id=f"pi_demo_{appointment.appointment_id}",
                amount=appointment.price,
                method="pix" if idx % 3 == 0 else "card",
                status=PAYMENT_SUCCEEDED,
                description="Personal Training Session",
                trainer_amount=split["trainer_amount"] / 100,
                platform_amount=split["platform_fee"] / 100,
                created_at=appointment.start_time - timedelta(hours=2),
            )
        )

    # Upcoming sessions next week
    next_monday = this_monday + timedelta(weeks=1)
    for trainer_index, trainer in enumerate(trainers):
        for idx in range(2):
            client = clients[(trainer_index * 2 + idx) % len(clients)]
            service = services[trainer.trainer_id][idx]
            start = next_monday + timedelta(days=trainer_index + idx, hours=10 + idx)
            session.add(
                Appointment(
                    trainer_id=trainer.trainer_id,
                    client_id=client.client_id,
                    service_id=service.service_id,
                    start_time=start,
                    end_time=start + timedelta(minutes=service.duration),
                    price=service.price,
                    status=STATUS_CONFIRMED if idx == 0 else STATUS_PENDING,
                )
            )

    session.add_all(
        [
            SubscriptionPlan(name="Basic", stripe_price_id="price_demo_basic", price=149.0, features="4 sessions / month"),
            SubscriptionPlan(name="Premium", stripe_price_id="price_demo_premium", price=399.0, features="12 sessions / month"),
        ]
    )
    session.commit()
    return {
        "trainers": [t.user.email for t in trainers],
        "clients": [c.user.email for c in clients],
    }


def seed_demo_data() -> dict:
    """Reset the database and seed it with a consistent demo data set."""
    clear_all_data()
    with get_session() as session:
        return populate(session)
