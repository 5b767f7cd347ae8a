from __future__ import annotations

import json
import logging
import math
from datetime import datetime, timedelta
from typing import Optional

import stripe
from sqlalchemy import select
from sqlalchemy.orm import Session

from models.payment import (
    Payment,
    Refund,
    Subscription,
    SubscriptionPlan,
    PaymentMethod,
    PAYMENT_PENDING,
    PAYMENT_SUCCEEDED,
    PAYMENT_FAILED,
    PAYMENT_REFUNDED,
)
from models.scheduling import Appointment
from models.user import User, ROLE_ADMIN
from app.config import Config
from app.errors import NotFoundError, PaymentError, PaymentsDisabledError, PermissionDeniedError

logger = logging.getLogger(__name__)

PAYMENT_METHOD_TYPES = ["card", "pix"]
MIN_AMOUNT_CENTS = 100
MAX_AMOUNT_CENTS = 10_000_000
DEFAULT_TRIAL_DAYS = 7


def format_amount_for_stripe(amount: float) -> int:
    """Currency units -> integer cents, rounding halves up."""
    return int(math.floor(float(amount) * 100 + 0.5))


def calculate_split(amount_cents: int, fee_percentage: Optional[int] = None) -> dict[str, int]:
    pct = Config.PLATFORM_FEE_PERCENTAGE if fee_percentage is None else fee_percentage
    platform_fee = int(math.floor(amount_cents * pct / 100 + 0.5))
    return {
        "total": amount_cents,
        "trainer_amount": amount_cents - platform_fee,
        "platform_fee": platform_fee,
    }


def _from_timestamp(value) -> Optional[datetime]:
    return datetime.utcfromtimestamp(value) if value else None


def _require_stripe() -> None:
    if not Config.STRIPE_SECRET_KEY:
        raise PaymentsDisabledError()
    stripe.api_key = Config.STRIPE_SECRET_KEY


def _get_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


# ---------------------------
# 1. Customers
# ---------------------------

def get_or_create_customer(session: Session, user_id: int) -> str:
    user = _get_user(session, user_id)
    if user.stripe_customer_id:
        return user.stripe_customer_id

    _require_stripe()
    try:
        customer = stripe.Customer.create(
            email=user.email,
            name=user.name,
            metadata={"user_id": str(user.user_id)},
        )
    except stripe.StripeError as exc:
        logger.exception("Stripe error while creating customer for user %s", user_id)
        raise PaymentError("Failed to create customer") from exc

    user.stripe_customer_id = customer.id
    session.commit()
    return customer.id


# ---------------------------
# 2. Payment intents
# ---------------------------

def create_payment_intent(
    session: Session,
    *,
    user_id: int,
    amount: float,
    appointment_id: Optional[int] = None,
    trainer_id: Optional[int] = None,
    description: str = "Personal Training Session",
) -> dict:
    """
    Create a Stripe PaymentIntent and a matching pending Payment row.
    Returns the client secret the frontend confirms the payment with.
    """
    stripe_amount = format_amount_for_stripe(amount)
    if stripe_amount < MIN_AMOUNT_CENTS:
        raise ValueError("Amount is below the minimum allowed")
    if stripe_amount > MAX_AMOUNT_CENTS:
        raise ValueError("Amount exceeds the maximum allowed")

    if appointment_id is not None:
        appointment = session.get(Appointment, appointment_id)
        if not appointment:
            raise NotFoundError("Appointment not found")
        payer = session.get(User, user_id)
        if appointment.client.user_id != user_id and (not payer or payer.role != ROLE_ADMIN):
            raise PermissionDeniedError("You can only pay for your own appointments")
        if appointment.is_paid:
            raise ValueError("Appointment is already paid")
        trainer_id = trainer_id or appointment.trainer_id

    _require_stripe()
    customer_id = get_or_create_customer(session, user_id)
    split = calculate_split(stripe_amount)

    metadata = {
        "user_id": str(user_id),
        "trainer_amount": str(split["trainer_amount"]),
        "platform_fee": str(split["platform_fee"]),
    }
    if appointment_id is not None:
        metadata["appointment_id"] = str(appointment_id)
    if trainer_id is not None:
        metadata["trainer_id"] = str(trainer_id)

    try:
        intent = stripe.PaymentIntent.create(
            amount=stripe_amount,
            currency=Config.STRIPE_CURRENCY,
            customer=customer_id,
            payment_method_types=PAYMENT_METHOD_TYPES,
            description=description,
            metadata=metadata,
            setup_future_usage="off_session",
        )
    except stripe.StripeError as exc:
        logger.exception("Stripe API error while creating payment intent")
        raise PaymentError("Failed to create payment intent") from exc

    payment = Payment(
        user_id=user_id,
        appointment_id=appointment_id,
        stripe_payment_intent_id=intent.id,
        stripe_customer_id=customer_id,
        amount=float(amount),
        currency=Config.STRIPE_CURRENCY,
        method="card",
        status=PAYMENT_PENDING,
        description=description,
        trainer_amount=split["trainer_amount"] / 100,
        platform_amount=split["platform_fee"] / 100,
    )
    session.add(payment)
    session.commit()
    session.refresh(payment)
    logger.info("PaymentIntent %s created for user %s (%s cents)", intent.id, user_id, stripe_amount)
    return {
        "client_secret": intent.client_secret,
        "payment_intent_id": intent.id,
        "payment": payment,
    }


def list_payments(session: Session, *, user_id: Optional[int] = None, limit: int = 50) -> list[Payment]:
    stmt = select(Payment).order_by(Payment.created_at.desc()).limit(limit)
    if user_id is not None:
        stmt = stmt.where(Payment.user_id == user_id)
    return list(session.scalars(stmt))


# ---------------------------
# 3. Subscriptions
# ---------------------------

def create_subscription(
    session: Session,
    *,
    user_id: int,
    price_id: str,
    trial_days: int = DEFAULT_TRIAL_DAYS,
    now: Optional[datetime] = None,
) -> dict:
    now = now or datetime.utcnow()
    _require_stripe()
    customer_id = get_or_create_customer(session, user_id)
    try:
        subscription = stripe.Subscription.create(
            customer=customer_id,
            items=[{"price": price_id}],
            trial_period_days=trial_days,
            payment_behavior="default_incomplete",
            payment_settings={"save_default_payment_method": "on_subscription"},
            metadata={"user_id": str(user_id)},
        )
    except stripe.StripeError as exc:
        logger.exception("Stripe API error while creating subscription")
        raise PaymentError("Failed to create subscription") from exc

    local = None
    plan = session.scalar(select(SubscriptionPlan).where(SubscriptionPlan.stripe_price_id == price_id))
    if plan:
        trial_end = now + timedelta(days=trial_days)
        local = Subscription(
            user_id=user_id,
            plan_id=plan.plan_id,
            stripe_subscription_id=subscription.id,
            stripe_customer_id=customer_id,
            status="trialing",
            current_period_start=now,
            current_period_end=trial_end,
            trial_start=now,
            trial_end=trial_end,
        )
        session.add(local)
        session.commit()
        session.refresh(local)
    else:
        logger.warning("No local plan for Stripe price %s; subscription %s not mirrored", price_id, subscription.id)

    return {"subscription_id": subscription.id, "status": subscription.status, "subscription": local}


def cancel_subscription(session: Session, *, stripe_subscription_id: str, user_id: Optional[int] = None) -> Optional[Subscription]:
    local = session.scalar(
        select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
    )
    if user_id is not None and (not local or local.user_id != user_id):
        raise NotFoundError("Subscription not found")

    _require_stripe()
    try:
        stripe.Subscription.cancel(stripe_subscription_id)
    except stripe.StripeError as exc:
        logger.exception("Stripe API error while cancelling subscription %s", stripe_subscription_id)
        raise PaymentError("Failed to cancel subscription") from exc

    if local:
        now = datetime.utcnow()
        local.status = "canceled"
        local.canceled_at = now
        local.ended_at = local.current_period_end or now
        session.commit()
    return local


def list_subscriptions(session: Session, user_id: int) -> list[Subscription]:
    stmt = select(Subscription).where(Subscription.user_id == user_id).order_by(Subscription.created_at.desc())
    return list(session.scalars(stmt))


# ---------------------------
# 4. Payment methods
# ---------------------------

def create_setup_intent(session: Session, user_id: int) -> dict:
    _require_stripe()
    customer_id = get_or_create_customer(session, user_id)
    try:
        intent = stripe.SetupIntent.create(
            customer=customer_id,
            payment_method_types=["card"],
            usage="off_session",
        )
    except stripe.StripeError as exc:
        logger.exception("Stripe API error while creating setup intent")
        raise PaymentError("Failed to create setup intent") from exc
    return {"client_secret": intent.client_secret, "setup_intent_id": intent.id}


def list_payment_methods(session: Session, user_id: int) -> list[PaymentMethod]:
    stmt = (
        select(PaymentMethod)
        .where(PaymentMethod.user_id == user_id)
        .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc())
    )
    return list(session.scalars(stmt))


def detach_payment_method(session: Session, *, user_id: int, stripe_payment_method_id: str) -> None:
    method = session.scalar(
        select(PaymentMethod).where(
            PaymentMethod.stripe_payment_method_id == stripe_payment_method_id,
            PaymentMethod.user_id == user_id,
        )
    )
    if not method:
        raise NotFoundError("Payment method not found")
    _require_stripe()
    try:
        stripe.PaymentMethod.detach(stripe_payment_method_id)
    except stripe.StripeError as exc:
        logger.exception("Stripe API error while detaching payment method")
        raise PaymentError("Failed to detach payment method") from exc
    session.delete(method)
    session.commit()


# ---------------------------
# 5. Refunds
# ---------------------------

def create_refund(
    session: Session,
    *,
    payment_intent_id: str,
    amount: Optional[float] = None,
    reason: str = "requested_by_customer",
) -> Refund:
    payment = session.scalar(select(Payment).where(Payment.stripe_payment_intent_id == payment_intent_id))
    if not payment:
        raise NotFoundError("Payment not found")
    if payment.status != PAYMENT_SUCCEEDED:
        raise ValueError("Only succeeded payments can be refunded")
    if amount is not None and (amount <= 0 or amount > payment.amount):
        raise ValueError("Refund amount must be positive and not exceed the payment amount")

    _require_stripe()
    params = {"payment_intent": payment_intent_id, "reason": reason}
    if amount is not None:
        params["amount"] = format_amount_for_stripe(amount)
    try:
        refund = stripe.Refund.create(**params)
    except stripe.StripeError as exc:
        logger.exception("Stripe API error while refunding %s", payment_intent_id)
        raise PaymentError("Failed to create refund") from exc

    record = Refund(
        payment_id=payment.payment_id,
        stripe_refund_id=refund.id,
        amount=(refund.amount or 0) / 100,
        currency=(refund.currency or Config.STRIPE_CURRENCY).lower(),
        reason=reason,
        status=refund.status or PAYMENT_PENDING,
    )
    session.add(record)
    payment.status = PAYMENT_REFUNDED
    session.commit()
    session.refresh(record)
    logger.info("Refund %s created for payment %s", refund.id, payment.payment_id)
    return record


# ---------------------------
# 6. Webhooks
# ---------------------------

def construct_event(payload: bytes, signature: Optional[str]) -> dict:
    """Verify the Stripe signature and return the event as a plain dict."""
    if not Config.STRIPE_WEBHOOK_SECRET:
        raise PaymentsDisabledError("Stripe webhook secret not configured")
    # Raises ValueError (bad payload) or stripe.SignatureVerificationError
    stripe.Webhook.construct_event(payload, signature, Config.STRIPE_WEBHOOK_SECRET)
    return json.loads(payload)


def _handle_payment_succeeded(session: Session, data: dict) -> Optional[Payment]:
    payment = session.scalar(select(Payment).where(Payment.stripe_payment_intent_id == data.get("id")))
    if not payment:
        logger.warning("payment_intent.succeeded for unknown intent %s", data.get("id"))
        return None
    payment.status = PAYMENT_SUCCEEDED
    method_types = data.get("payment_method_types") or []
    if len(method_types) == 1:
        payment.method = method_types[0]
    charges = (data.get("charges") or {}).get("data") or []
    if charges and charges[0].get("receipt_url"):
        payment.receipt_url = charges[0]["receipt_url"]
    if payment.appointment_id:
        appointment = session.get(Appointment, payment.appointment_id)
        if appointment:
            appointment.is_paid = True
    session.commit()
    return payment


def _handle_payment_failed(session: Session, data: dict) -> Optional[Payment]:
    payment = session.scalar(select(Payment).where(Payment.stripe_payment_intent_id == data.get("id")))
    if not payment:
        return None
    error = data.get("last_payment_error") or {}
    payment.status = PAYMENT_FAILED
    payment.failure_reason = error.get("message") or "Payment failed"
    session.commit()
    return payment


def _sync_subscription(session: Session, data: dict, *, deleted: bool = False) -> Optional[Subscription]:
    local = session.scalar(select(Subscription).where(Subscription.stripe_subscription_id == data.get("id")))
    if not local:
        logger.info("Subscription %s not mirrored locally; ignoring", data.get("id"))
        return None
    if deleted:
        local.status = "canceled"
        local.canceled_at = local.canceled_at or datetime.utcnow()
        local.ended_at = _from_timestamp(data.get("ended_at")) or datetime.utcnow()
    else:
        local.status = data.get("status") or local.status
        local.current_period_start = _from_timestamp(data.get("current_period_start")) or local.current_period_start
        local.current_period_end = _from_timestamp(data.get("current_period_end")) or local.current_period_end
        local.trial_end = _from_timestamp(data.get("trial_end")) or local.trial_end
        local.cancel_at = _from_timestamp(data.get("cancel_at"))
        local.canceled_at = _from_timestamp(data.get("canceled_at"))
    session.commit()
    return local


def _handle_setup_succeeded(session: Session, data: dict) -> Optional[PaymentMethod]:
    pm_id = data.get("payment_method")
    user = session.scalar(select(User).where(User.stripe_customer_id == data.get("customer")))
    if not pm_id or not user:
        return None
    if session.scalar(select(PaymentMethod).where(PaymentMethod.stripe_payment_method_id == pm_id)):
        return None

    _require_stripe()
    pm = stripe.PaymentMethod.retrieve(pm_id)
    card = pm.card if pm.type == "card" else None
    has_default = session.scalar(
        select(PaymentMethod.payment_method_id).where(
            PaymentMethod.user_id == user.user_id,
            PaymentMethod.is_default.is_(True),
        )
    )
    method = PaymentMethod(
        user_id=user.user_id,
        stripe_payment_method_id=pm_id,
        type=pm.type,
        card_brand=card.brand if card else None,
        card_last4=card.last4 if card else None,
        card_exp_month=card.exp_month if card else None,
        card_exp_year=card.exp_year if card else None,
        is_default=has_default is None,
    )
    session.add(method)
    session.commit()
    return method


def handle_webhook_event(session: Session, event: dict, *, dispatcher=None) -> bool:
    """Apply a verified Stripe event. Returns False for event types we ignore."""
    event_type = event.get("type", "")
    data = (event.get("data") or {}).get("object") or {}
    logger.info("Stripe webhook %s (%s)", event_type, event.get("id"))

    if event_type == "payment_intent.succeeded":
        payment = _handle_payment_succeeded(session, data)
        if payment and payment.appointment_id and dispatcher is not None:
            try:
                dispatcher.send_payment_confirmation(session, payment.appointment_id)
            except Exception:
                session.rollback()
                logger.exception("Payment confirmation for appointment %s failed", payment.appointment_id)
        return True
    if event_type == "payment_intent.payment_failed":
        _handle_payment_failed(session, data)
        return True
    if event_type in ("customer.subscription.created", "customer.subscription.updated"):
        _sync_subscription(session, data)
        return True
    if event_type == "customer.subscription.deleted":
        _sync_subscription(session, data, deleted=True)
        return True
    if event_type == "setup_intent.succeeded":
        _handle_setup_succeeded(session, data)
        return True

    logger.info("Unhandled Stripe event type %s", event_type)
    return False
