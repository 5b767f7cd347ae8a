"""
Report and analytics aggregation.

Every builder returns a plain dict with a "summary" mapping and a list of
"sections" (title / columns / rows) so the same data can be serialised to
JSON or rendered by app.report_export.
"""
from __future__ import annotations

from collections import Counter, defaultdict
from datetime import datetime
from typing import Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from models.payment import Payment, PAYMENT_SUCCEEDED
from models.scheduling import (
    Appointment,
    Availability,
    DAY_NAMES,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_CONFIRMED,
    STATUS_PENDING,
)
from models.user import User, TrainerProfile, ClientProfile, ROLE_ADMIN, ROLE_TRAINER
from app.calendar_window import (
    get_period_window,
    get_analytics_window,
    month_starts,
    days_in_window,
)
from app.errors import PermissionDeniedError

REPORT_TYPES = ("financial", "clients", "occupancy", "performance")
COMPARISONS = ("previous_period", "year_over_year")


def _pct(part: float, whole: float) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


def _money(value: Optional[float]) -> float:
    return round(float(value or 0), 2)


def resolve_trainer_scope(session: Session, user: User, trainer_id: Optional[int] = None) -> Optional[int]:
    """Trainers only ever see their own data; admins may narrow to one trainer or see everything."""
    if user.role == ROLE_TRAINER:
        if not user.trainer_profile:
            raise PermissionDeniedError("Trainer profile not found")
        return user.trainer_profile.trainer_id
    if user.role == ROLE_ADMIN:
        return trainer_id
    raise PermissionDeniedError("Reports are available to trainers and admins only")


def _appointments(
    session: Session,
    trainer_id: Optional[int],
    start: datetime,
    end: datetime,
) -> list[Appointment]:
    stmt = (
        select(Appointment)
        .options(
            joinedload(Appointment.client).joinedload(ClientProfile.user),
            joinedload(Appointment.trainer).joinedload(TrainerProfile.user),
            joinedload(Appointment.service),
        )
        .where(Appointment.start_time >= start, Appointment.start_time <= end)
        .order_by(Appointment.start_time)
    )
    if trainer_id is not None:
        stmt = stmt.where(Appointment.trainer_id == trainer_id)
    return list(session.execute(stmt).unique().scalars())


def _succeeded_payments(
    session: Session,
    trainer_id: Optional[int],
    start: datetime,
    end: datetime,
) -> list[Payment]:
    stmt = (
        select(Payment)
        .options(
            joinedload(Payment.user),
            joinedload(Payment.appointment).joinedload(Appointment.service),
        )
        .where(
            Payment.status == PAYMENT_SUCCEEDED,
            Payment.created_at >= start,
            Payment.created_at <= end,
        )
        .order_by(Payment.created_at)
    )
    if trainer_id is not None:
        stmt = stmt.join(Appointment, Payment.appointment_id == Appointment.appointment_id).where(
            Appointment.trainer_id == trainer_id
        )
    return list(session.execute(stmt).unique().scalars())


def _base(report_type: str, title: str, period: str, start: datetime, end: datetime, now: datetime) -> dict:
    return {
        "type": report_type,
        "title": title,
        "period": period,
        "start": start.isoformat(),
        "end": end.isoformat(),
        "generated_at": now.isoformat(),
    }


# ---------------------------
# 1. Financial
# ---------------------------

def build_financial_report(
    session: Session,
    *,
    trainer_id: Optional[int],
    period: str,
    now: datetime,
) -> dict:
    start, end = get_period_window(period, now=now)
    payments = _succeeded_payments(session, trainer_id, start, end)

    total = sum(p.amount for p in payments)
    by_method: dict[str, dict] = defaultdict(lambda: {"count": 0, "total": 0.0})
    by_service: dict[str, dict] = defaultdict(lambda: {"count": 0, "total": 0.0})
    rows = []
    for p in payments:
        service_name = p.appointment.service.name if p.appointment and p.appointment.service else "Other"
        by_method[p.method]["count"] += 1
        by_method[p.method]["total"] += p.amount
        by_service[service_name]["count"] += 1
        by_service[service_name]["total"] += p.amount
        rows.append(
            [
                p.created_at.strftime("%d/%m/%Y"),
                p.user.name if p.user else "",
                service_name,
                p.method,
                _money(p.amount),
            ]
        )

    summary = {
        "total_revenue": _money(total),
        "trainer_revenue": _money(sum(p.trainer_amount or 0 for p in payments)),
        "platform_revenue": _money(sum(p.platform_amount or 0 for p in payments)),
        "transactions": len(payments),
        "average_ticket": _money(total / len(payments)) if payments else 0.0,
    }
    report = _base("financial", "Financial report", period, start, end, now)
    report.update(
        {
            "summary": summary,
            "by_method": {k: {"count": v["count"], "total": _money(v["total"])} for k, v in by_method.items()},
            "by_service": {k: {"count": v["count"], "total": _money(v["total"])} for k, v in by_service.items()},
            "sections": [
                {
                    "title": "Revenue by payment method",
                    "columns": ["Method", "Transactions", "Total"],
                    "rows": [[k, v["count"], _money(v["total"])] for k, v in sorted(by_method.items())],
                },
                {
                    "title": "Revenue by service",
                    "columns": ["Service", "Transactions", "Total"],
                    "rows": [
                        [k, v["count"], _money(v["total"])]
                        for k, v in sorted(by_service.items(), key=lambda item: -item[1]["total"])
                    ],
                },
                {
                    "title": "Transactions",
                    "columns": ["Date", "Client", "Service", "Method", "Amount"],
                    "rows": rows,
                },
            ],
        }
    )
    return report


# ---------------------------
# 2. Clients
# ---------------------------

def build_clients_report(
    session: Session,
    *,
    trainer_id: Optional[int],
    period: str,
    now: datetime,
) -> dict:
    start, end = get_period_window(period, now=now)
    appointments = _appointments(session, trainer_id, start, end)

    clients: dict[int, dict] = {}
    for a in appointments:
        info = clients.setdefault(
            a.client_id,
            {
                "client_id": a.client_id,
                "name": a.client.user.name,
                "email": a.client.user.email,
                "appointments": 0,
                "completed": 0,
                "cancelled": 0,
                "total_spent": 0.0,
                "last_appointment": None,
            },
        )
        info["appointments"] += 1
        if a.status == STATUS_COMPLETED:
            info["completed"] += 1
        elif a.status == STATUS_CANCELLED:
            info["cancelled"] += 1
        if a.is_paid:
            info["total_spent"] += a.price
        if a.status != STATUS_CANCELLED:
            info["last_appointment"] = a.start_time

    # First-ever appointment per client decides whether the client is new in this window
    first_stmt = select(Appointment.client_id, Appointment.start_time)
    if trainer_id is not None:
        first_stmt = first_stmt.where(Appointment.trainer_id == trainer_id)
    first_seen: dict[int, datetime] = {}
    for client_id, start_time in session.execute(first_stmt):
        if client_id not in first_seen or start_time < first_seen[client_id]:
            first_seen[client_id] = start_time

    ordered = sorted(clients.values(), key=lambda c: (-c["appointments"], c["name"]))
    active = [c for c in ordered if c["appointments"] > c["cancelled"]]
    summary = {
        "total_clients": len(ordered),
        "active_clients": len(active),
        "new_clients": sum(1 for cid in clients if first_seen.get(cid) and first_seen[cid] >= start),
        "average_appointments_per_client": round(len(appointments) / len(ordered), 1) if ordered else 0.0,
    }
    report = _base("clients", "Clients report", period, start, end, now)
    report.update(
        {
            "summary": summary,
            "clients": [
                dict(c, total_spent=_money(c["total_spent"]),
                     last_appointment=c["last_appointment"].isoformat() if c["last_appointment"] else None)
                for c in ordered
            ],
            "sections": [
                {
                    "title": "Clients",
                    "columns": ["Client", "Email", "Appointments", "Completed", "Cancelled", "Total spent", "Last visit"],
                    "rows": [
                        [
                            c["name"],
                            c["email"],
                            c["appointments"],
                            c["completed"],
                            c["cancelled"],
                            _money(c["total_spent"]),
                            c["last_appointment"].strftime("%d/%m/%Y") if c["last_appointment"] else "-",
                        ]
                        for c in ordered
                    ],
                }
            ],
        }
    )
    return report


# ---------------------------
# 3. Occupancy
# ---------------------------

def _weekday_hours(session: Session, trainer_id: Optional[int]) -> dict[int, int]:
    stmt = select(Availability).where(Availability.is_active.is_(True))
    if trainer_id is not None:
        stmt = stmt.where(Availability.trainer_id == trainer_id)
    hours: dict[int, int] = defaultdict(int)
    for av in session.scalars(stmt):
        hours[av.day_of_week] += av.hours
    return hours


def build_occupancy_report(
    session: Session,
    *,
    trainer_id: Optional[int],
    period: str,
    now: datetime,
) -> dict:
    start, end = get_period_window(period, now=now)
    weekday_hours = _weekday_hours(session, trainer_id)
    total_slots = sum(weekday_hours.get(day.weekday(), 0) for day in days_in_window(start, end))

    appointments = _appointments(session, trainer_id, start, end)
    booked = [a for a in appointments if a.status != STATUS_CANCELLED]
    cancelled = len(appointments) - len(booked)

    by_weekday = Counter(a.start_time.weekday() for a in booked)
    by_hour = Counter(a.start_time.hour for a in booked)

    summary = {
        "total_slots": total_slots,
        "booked_slots": len(booked),
        "available_slots": max(total_slots - len(booked), 0),
        "occupancy_rate": _pct(len(booked), total_slots),
        "cancelled": cancelled,
        "cancellation_rate": _pct(cancelled, len(appointments)),
    }
    busiest_hour = by_hour.most_common(1)[0][0] if by_hour else None
    report = _base("occupancy", "Occupancy report", period, start, end, now)
    report.update(
        {
            "summary": summary,
            "by_weekday": {DAY_NAMES[d]: by_weekday.get(d, 0) for d in range(7)},
            "by_hour": {f"{h:02d}:00": by_hour[h] for h in sorted(by_hour)},
            "busiest_hour": f"{busiest_hour:02d}:00" if busiest_hour is not None else None,
            "sections": [
                {
                    "title": "Bookings by weekday",
                    "columns": ["Weekday", "Available hours", "Bookings"],
                    "rows": [[DAY_NAMES[d], weekday_hours.get(d, 0), by_weekday.get(d, 0)] for d in range(7)],
                },
                {
                    "title": "Bookings by hour",
                    "columns": ["Hour", "Bookings"],
                    "rows": [[f"{h:02d}:00", by_hour[h]] for h in sorted(by_hour)],
                },
            ],
        }
    )
    return report


# ---------------------------
# 4. Performance
# ---------------------------

def build_performance_report(
    session: Session,
    *,
    trainer_id: Optional[int],
    period: str,
    now: datetime,
) -> dict:
    start, end = get_period_window(period, now=now)
    appointments = _appointments(session, trainer_id, start, end)
    payments = _succeeded_payments(session, trainer_id, start, end)

    statuses = Counter(a.status for a in appointments)
    total = len(appointments)
    completed = statuses.get(STATUS_COMPLETED, 0)
    revenue = sum(p.amount for p in payments)

    services: dict[str, dict] = defaultdict(lambda: {"appointments": 0, "completed": 0, "revenue": 0.0})
    for a in appointments:
        name = a.service.name if a.service else "Custom session"
        services[name]["appointments"] += 1
        if a.status == STATUS_COMPLETED:
            services[name]["completed"] += 1
        if a.is_paid:
            services[name]["revenue"] += a.price
    top_services = sorted(services.items(), key=lambda item: (-item[1]["appointments"], item[0]))[:5]

    summary = {
        "total_appointments": total,
        "completed": completed,
        "cancelled": statuses.get(STATUS_CANCELLED, 0),
        "pending": statuses.get(STATUS_PENDING, 0),
        "confirmed": statuses.get(STATUS_CONFIRMED, 0),
        "completion_rate": _pct(completed, total),
        "cancellation_rate": _pct(statuses.get(STATUS_CANCELLED, 0), total),
        "unique_clients": len({a.client_id for a in appointments}),
        "revenue": _money(revenue),
        "revenue_per_completed": _money(revenue / completed) if completed else 0.0,
    }
    report = _base("performance", "Performance report", period, start, end, now)
    report.update(
        {
            "summary": summary,
            "top_services": [
                {"name": name, **dict(data, revenue=_money(data["revenue"]))} for name, data in top_services
            ],
            "sections": [
                {
                    "title": "Top services",
                    "columns": ["Service", "Appointments", "Completed", "Revenue"],
                    "rows": [
                        [name, data["appointments"], data["completed"], _money(data["revenue"])]
                        for name, data in top_services
                    ],
                }
            ],
        }
    )
    return report


_BUILDERS = {
    "financial": build_financial_report,
    "clients": build_clients_report,
    "occupancy": build_occupancy_report,
    "performance": build_performance_report,
}


def generate_report(
    session: Session,
    user: User,
    *,
    report_type: str,
    period: Optional[str] = None,
    trainer_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict:
    if report_type not in REPORT_TYPES:
        raise ValueError(f"Report type must be one of {', '.join(REPORT_TYPES)}")
    now = now or datetime.utcnow()
    scope = resolve_trainer_scope(session, user, trainer_id)
    period = period or "30d"
    return _BUILDERS[report_type](session, trainer_id=scope, period=period, now=now)


# ---------------------------
# 5. Analytics
# ---------------------------

def _monthly_revenue(payments: list[Payment], months: list[datetime]) -> list[dict]:
    buckets = {m.strftime("%Y-%m"): {"revenue": 0.0, "transactions": 0} for m in months}
    for p in payments:
        key = p.created_at.strftime("%Y-%m")
        if key in buckets:
            buckets[key]["revenue"] += p.amount
            buckets[key]["transactions"] += 1
    return [
        {"month": key, "revenue": _money(v["revenue"]), "transactions": v["transactions"]}
        for key, v in buckets.items()
    ]


def revenue_analytics(
    session: Session,
    user: User,
    *,
    period: Optional[str] = None,
    compare: Optional[str] = None,
    trainer_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Monthly revenue over the window, optionally compared with the previous window or last year."""
    now = now or datetime.utcnow()
    scope = resolve_trainer_scope(session, user, trainer_id)
    start, end = get_analytics_window(period, now=now)
    months = month_starts(start, end)
    payments = _succeeded_payments(session, scope, start, end)
    total = sum(p.amount for p in payments)

    result = {
        "period": period or "6m",
        "start": start.isoformat(),
        "end": end.isoformat(),
        "monthly": _monthly_revenue(payments, months),
        "total_revenue": _money(total),
        "transactions": len(payments),
    }

    if compare:
        if compare not in COMPARISONS:
            raise ValueError(f"Comparison must be one of {', '.join(COMPARISONS)}")
        if compare == "previous_period":
            shift = relativedelta(months=len(months))
        else:
            shift = relativedelta(years=1)
        prev_start, prev_end = start - shift, end - shift
        prev_payments = _succeeded_payments(session, scope, prev_start, prev_end)
        prev_total = sum(p.amount for p in prev_payments)
        result["comparison"] = {
            "type": compare,
            "start": prev_start.isoformat(),
            "end": prev_end.isoformat(),
            "monthly": _monthly_revenue(prev_payments, month_starts(prev_start, prev_end)),
            "total_revenue": _money(prev_total),
            "growth_rate": _pct(total - prev_total, prev_total) if prev_total else None,
        }
    return result


def occupancy_analytics(
    session: Session,
    user: User,
    *,
    period: Optional[str] = None,
    trainer_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict:
    report = generate_report(session, user, report_type="occupancy", period=period, trainer_id=trainer_id, now=now)
    return {key: report[key] for key in ("period", "start", "end", "summary", "by_weekday", "by_hour", "busiest_hour")}


def dashboard_metrics(
    session: Session,
    user: User,
    *,
    trainer_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict:
    now = now or datetime.utcnow()
    scope = resolve_trainer_scope(session, user, trainer_id)
    start, end = get_period_window("30d", now=now)
    appointments = _appointments(session, scope, start, end)
    payments = _succeeded_payments(session, scope, start, end)

    upcoming_stmt = select(Appointment.appointment_id).where(
        Appointment.start_time >= now,
        Appointment.status.in_((STATUS_PENDING, STATUS_CONFIRMED)),
    )
    if scope is not None:
        upcoming_stmt = upcoming_stmt.where(Appointment.trainer_id == scope)
    completed = sum(1 for a in appointments if a.status == STATUS_COMPLETED)

    return {
        "period": "30d",
        "appointments": len(appointments),
        "completed": completed,
        "completion_rate": _pct(completed, len(appointments)),
        "upcoming": len(list(session.scalars(upcoming_stmt))),
        "revenue": _money(sum(p.amount for p in payments)),
        "active_clients": len({a.client_id for a in appointments if a.status != STATUS_CANCELLED}),
    }
