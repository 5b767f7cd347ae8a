from sqlalchemy import func, select

from models.payment import Payment, SubscriptionPlan
from models.scheduling import Appointment, STATUS_COMPLETED
from app.auth_service import authenticate_user
from app.demo_data import DEMO_CLIENT_PASSWORD, DEMO_TRAINER_PASSWORD, populate
from app.reporting import generate_report
from tests.helpers import NOW


def test_populate_seeds_consistent_demo_data(session):
    created = populate(session, now=NOW)

    assert len(created["trainers"]) == 3
    assert len(created["clients"]) == 5
    assert session.scalar(select(func.count(SubscriptionPlan.plan_id))) == 2

    completed = session.scalar(
        select(func.count(Appointment.appointment_id)).where(Appointment.status == STATUS_COMPLETED)
    )
    assert session.scalar(select(func.count(Payment.payment_id))) == completed

    # Every paid session carries the platform split
    for payment in session.scalars(select(Payment)):
        assert round(payment.trainer_amount + payment.platform_amount, 2) == payment.amount


def test_demo_accounts_can_log_in_and_report(session):
    created = populate(session, now=NOW)

    authenticate_user(session, email=created["clients"][0], password=DEMO_CLIENT_PASSWORD)
    trainer = authenticate_user(session, email=created["trainers"][0], password=DEMO_TRAINER_PASSWORD).user

    report = generate_report(session, trainer, report_type="financial", period="30d", now=NOW)
    assert report["summary"]["transactions"] > 0
