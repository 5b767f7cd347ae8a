from __future__ import annotations

import io
import logging
from datetime import date, datetime, time, timezone

import stripe
from flask import Blueprint, Flask, current_app, g, jsonify, request, send_file
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError
from werkzeug.exceptions import HTTPException

from models.base import SessionLocal, Base, engine
from models.scheduling import STATUS_CONFIRMED
from models.user import User, ROLE_ADMIN, ROLE_CLIENT, ROLE_TRAINER

from app import (
    auth_service,
    booking_service,
    notification_service,
    payment_service,
    push_service,
    reporting,
    trainer_service,
    two_factor,
)
from app.config import Config, configure_logging
from app.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    PermissionDeniedError,
)
from app.notification_scheduler import NotificationDispatcher, setup_scheduler
from app.report_export import export_report

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__, url_prefix="/api")

ACCESS_COOKIE = "access-token"
LEGACY_ACCESS_COOKIE = "auth-token"
REFRESH_COOKIE = "refresh-token"

limiter = Limiter(get_remote_address, storage_uri=Config.RATELIMIT_STORAGE_URI)


def _failed_response(response) -> bool:
    return response.status_code >= 400


def create_app(session_factory=None, dispatcher: NotificationDispatcher | None = None) -> Flask:
    configure_logging()
    app = Flask(__name__)
    app.config["SECRET_KEY"] = Config.SECRET_KEY
    app.config["SESSION_FACTORY"] = session_factory or SessionLocal
    app.extensions["dispatcher"] = dispatcher or NotificationDispatcher()

    if session_factory is None:
        # Ensure all ORM tables exist on the configured database
        Base.metadata.create_all(bind=engine)

    limiter.init_app(app)
    app.register_blueprint(api)
    _register_error_handlers(app)

    if Config.SCHEDULER_ENABLED:
        scheduler = setup_scheduler(app.extensions["dispatcher"], session_factory=app.config["SESSION_FACTORY"])
        scheduler.start()
        app.extensions["scheduler"] = scheduler
        logger.info("Notification scheduler started")
    return app


# -------------------------------------------------
# Helpers
# -------------------------------------------------

def _db():
    return current_app.config["SESSION_FACTORY"]()


def _dispatcher() -> NotificationDispatcher:
    return current_app.extensions["dispatcher"]


def _body() -> dict:
    return request.get_json(silent=True) or {}


def _pick(data: dict, *fields: str) -> dict:
    return {key: data[key] for key in fields if key in data}


def _bool_field(data: dict, field: str, default: bool) -> bool:
    value = data.get(field, default)
    if not isinstance(value, bool):
        raise ValueError(f"{field} must be true or false")
    return value


def _client_meta() -> dict:
    return {"ip_address": request.remote_addr, "user_agent": request.headers.get("User-Agent")}


def _parse_date(value, field: str = "date") -> date:
    try:
        return date.fromisoformat(str(value))
    except (TypeError, ValueError):
        raise ValueError(f"{field} must use the YYYY-MM-DD format")


def _parse_time(value, field: str) -> time:
    try:
        return datetime.strptime(str(value), "%H:%M").time()
    except (TypeError, ValueError):
        raise ValueError(f"{field} must use the HH:MM format")


def _parse_datetime(value, field: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be an ISO 8601 datetime")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _int_arg(name: str, default: int | None = None) -> int | None:
    value = request.args.get(name)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer")


def _token_from_request() -> str | None:
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):].strip()
    return request.cookies.get(ACCESS_COOKIE) or request.cookies.get(LEGACY_ACCESS_COOKIE)


def require_role(db, *roles: str) -> User:
    """Resolve the caller from its access token; 401 without one, 403 unless its role is allowed."""
    token = _token_from_request()
    if not token:
        raise AuthenticationError("Authentication required")
    user = auth_service.get_user_from_access_token(db, token)
    if roles and user.role not in roles:
        raise PermissionDeniedError("You do not have permission to perform this action")
    g.current_user = user
    return user


def ensure_trainer_self(user: User, trainer_id: int) -> None:
    """Trainers may only manage their own data; admins may manage anyone's."""
    if user.role == ROLE_TRAINER:
        if not user.trainer_profile or user.trainer_profile.trainer_id != trainer_id:
            raise PermissionDeniedError("You can only manage your own schedule")


def _own_trainer_id(user: User, requested: int | None = None) -> int:
    if user.role == ROLE_TRAINER:
        if not user.trainer_profile:
            raise PermissionDeniedError("Trainer profile not found")
        if requested is not None and int(requested) != user.trainer_profile.trainer_id:
            raise PermissionDeniedError("You can only manage your own schedule")
        return user.trainer_profile.trainer_id
    if requested is None:
        raise ValueError("trainer_id is required")
    return int(requested)


def _slot_json(slot: dict) -> dict:
    return dict(slot, start=slot["start"].isoformat(), end=slot["end"].isoformat())


def _set_auth_cookies(response, access_token: str, refresh_token: str | None = None, refresh_expires=None):
    secure = request.is_secure
    response.set_cookie(
        ACCESS_COOKIE,
        access_token,
        max_age=Config.JWT_EXPIRES_MINUTES * 60,
        httponly=True,
        secure=secure,
        samesite="Lax",
    )
    if refresh_token:
        response.set_cookie(
            REFRESH_COOKIE,
            refresh_token,
            expires=refresh_expires,
            httponly=True,
            secure=secure,
            samesite="Lax",
            path="/api/auth",
        )
    return response


def _notify_safely(label: str, func, *args) -> None:
    # External notification failures never fail the request
    try:
        with _db() as db:
            func(db, *args)
    except Exception:
        logger.exception("%s dispatch failed", label)


# -------------------------------------------------
# Errors
# -------------------------------------------------

def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ValueError)
    def handle_value_error(exc: ValueError):
        status = getattr(exc, "status_code", 400)
        payload = {"error": str(exc)}
        if isinstance(exc, ConflictError) and exc.conflict_type:
            payload["conflict_type"] = exc.conflict_type
            payload["details"] = exc.details
        if isinstance(exc, AuthenticationError) and exc.requires_two_factor:
            payload["requires_two_factor"] = True
        if isinstance(exc, AccountLockedError):
            payload["minutes_remaining"] = exc.minutes_remaining
        return jsonify(payload), status

    @app.errorhandler(IntegrityError)
    def handle_integrity_error(exc: IntegrityError):
        logger.warning("Integrity error: %s", exc.orig)
        return jsonify({"error": "Conflicting data"}), 409

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        return jsonify({"error": exc.description}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "Internal server error"}), 500


# -------------------------------------------------
# Auth
# -------------------------------------------------

@api.post("/auth/register")
@limiter.limit(Config.REGISTER_RATE_LIMIT)
def register():
    data = _body()
    role = (data.get("role") or ROLE_CLIENT).upper()
    if role == ROLE_ADMIN:
        raise PermissionDeniedError("Admin accounts cannot be self-registered")

    with _db() as db:
        user = auth_service.register_user(
            db,
            email=data.get("email"),
            password=data.get("password"),
            name=data.get("name"),
            role=role,
            phone=data.get("phone"),
            **_client_meta(),
        )
        payload = user.to_dict()

    _notify_safely("welcome", _dispatcher().send_welcome_notifications, payload["user_id"])
    return jsonify({"user": payload}), 201


@api.post("/auth/login")
@limiter.limit(Config.LOGIN_RATE_LIMIT, deduct_when=_failed_response)
def login():
    data = _body()
    with _db() as db:
        result = auth_service.authenticate_user(
            db,
            email=data.get("email"),
            password=data.get("password"),
            remember_me=bool(data.get("remember_me")),
            totp_code=data.get("totp_code"),
            **_client_meta(),
        )
        payload = {
            "user": result.user.to_dict(),
            "access_token": result.access_token,
            "refresh_token": result.refresh_token,
            "refresh_expires_at": result.refresh_expires_at.isoformat(),
        }

    response = jsonify(payload)
    return _set_auth_cookies(response, result.access_token, result.refresh_token, result.refresh_expires_at)


@api.post("/auth/logout")
def logout():
    token = _body().get("refresh_token") or request.cookies.get(REFRESH_COOKIE)
    if token:
        with _db() as db:
            auth_service.revoke_refresh_token(db, token)

    response = jsonify({"message": "Logged out"})
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(LEGACY_ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE, path="/api/auth")
    return response


@api.post("/auth/refresh")
def refresh():
    token = _body().get("refresh_token") or request.cookies.get(REFRESH_COOKIE)
    if not token:
        raise AuthenticationError("Refresh token required")
    with _db() as db:
        access_token = auth_service.refresh_access_token(db, token)
    return _set_auth_cookies(jsonify({"access_token": access_token}), access_token)


@api.post("/auth/password-reset/request")
@limiter.limit(Config.PASSWORD_RESET_RATE_LIMIT)
def password_reset_request():
    email = _body().get("email")
    with _db() as db:
        token = auth_service.generate_password_reset_token(db, email)
        if token:
            user = db.scalar(select(User).where(User.email == email.strip().lower()))
            try:
                _dispatcher().email.send_password_reset(db, user, token)
            except Exception:
                db.rollback()
                logger.exception("Password reset email to user %s failed", user.user_id)
    # Same answer whether or not the email exists
    return jsonify({"message": "If the email is registered, a reset link has been sent"})


@api.post("/auth/password-reset/confirm")
def password_reset_confirm():
    data = _body()
    with _db() as db:
        auth_service.reset_password(db, token=data.get("token"), new_password=data.get("password"))
    return jsonify({"message": "Password updated"})


@api.post("/auth/2fa/setup")
def two_factor_setup():
    with _db() as db:
        user = require_role(db)
        setup = two_factor.setup_two_factor(db, user_id=user.user_id)
    return jsonify(
        {
            "secret": setup.secret,
            "provisioning_uri": setup.provisioning_uri,
            "qr_code": setup.qr_code,
            "backup_codes": setup.backup_codes,
        }
    )


@api.post("/auth/2fa/verify")
@limiter.limit(Config.TWO_FACTOR_RATE_LIMIT, scope="two-factor")
def two_factor_verify():
    code = _body().get("code")
    with _db() as db:
        user = require_role(db)
        if not two_factor.verify_and_enable(db, user_id=user.user_id, code=code):
            raise ValueError("Invalid verification code")
    return jsonify({"enabled": True})


@api.post("/auth/2fa/disable")
@limiter.limit(Config.TWO_FACTOR_RATE_LIMIT, scope="two-factor")
def two_factor_disable():
    data = _body()
    with _db() as db:
        user = require_role(db)
        two_factor.disable_two_factor(db, user_id=user.user_id, password=data.get("password"), code=data.get("code"))
    return jsonify({"enabled": False})


@api.route("/auth/2fa/backup-codes", methods=["GET", "POST"])
@limiter.limit(Config.TWO_FACTOR_RATE_LIMIT, scope="two-factor", methods=["POST"])
def two_factor_backup_codes():
    with _db() as db:
        user = require_role(db)
        if request.method == "GET":
            return jsonify({"remaining": two_factor.backup_codes_count(db, user_id=user.user_id)})
        codes = two_factor.regenerate_backup_codes(db, user_id=user.user_id, code=_body().get("code"))
    return jsonify({"backup_codes": codes})


# -------------------------------------------------
# Users
# -------------------------------------------------

@api.route("/users/profile", methods=["GET", "PUT"])
def user_profile():
    with _db() as db:
        user = require_role(db)
        if request.method == "PUT":
            data = _body()
            user = auth_service.update_user_profile(db, user.user_id, **_pick(data, "name", "phone", "whatsapp"))
            if user.role == ROLE_CLIENT:
                auth_service.update_client_profile(
                    db, user.user_id, **_pick(data, "goals", "fitness_level", "emergency_contact")
                )
        payload = user.to_dict()
        if user.client_profile:
            payload["client_profile"] = user.client_profile.to_dict()
        if user.trainer_profile:
            payload["trainer_profile"] = user.trainer_profile.to_dict()
    return jsonify({"user": payload})


@api.route("/users/preferences", methods=["GET", "PUT"])
def user_preferences():
    with _db() as db:
        user = require_role(db)
        if request.method == "PUT":
            prefs = notification_service.update_preferences(
                db, user.user_id, **_pick(_body(), *notification_service.PREFERENCE_FIELDS)
            )
        else:
            prefs = notification_service.get_preferences(db, user.user_id)
    return jsonify({"preferences": prefs})


@api.route("/users/trainer-profile", methods=["GET", "PUT"])
def trainer_profile():
    with _db() as db:
        user = require_role(db, ROLE_TRAINER)
        trainer_id = _own_trainer_id(user)
        if request.method == "PUT":
            trainer = trainer_service.update_trainer_profile(
                db, trainer_id, **_pick(_body(), "bio", "specialties", "experience_years", "hourly_rate")
            )
        else:
            trainer = user.trainer_profile
        payload = trainer.to_dict()
    return jsonify({"trainer": payload})


# -------------------------------------------------
# Trainers (public directory + management)
# -------------------------------------------------

@api.get("/trainers")
def trainers_list():
    with _db() as db:
        trainers = trainer_service.list_trainers(db, search=request.args.get("search"))
        payload = [
            dict(t.to_dict(), services=[s.to_dict() for s in t.services if s.is_active])
            for t in trainers
        ]
    return jsonify({"trainers": payload})


@api.get("/trainers/<int:trainer_id>")
def trainer_detail(trainer_id: int):
    with _db() as db:
        details = trainer_service.get_trainer_details(db, trainer_id)
        payload = details["trainer"].to_dict()
        payload["services"] = [s.to_dict() for s in details["services"]]
        payload["availability"] = [a.to_dict() for a in details["availability"]]
    return jsonify({"trainer": payload})


@api.route("/trainers/<int:trainer_id>/services", methods=["GET", "POST"])
def trainer_services(trainer_id: int):
    with _db() as db:
        if request.method == "GET":
            services = trainer_service.list_services(db, trainer_id)
            return jsonify({"services": [s.to_dict() for s in services]})

        user = require_role(db, ROLE_TRAINER, ROLE_ADMIN)
        ensure_trainer_self(user, trainer_id)
        data = _body()
        service = trainer_service.create_service(
            db,
            trainer_id=trainer_id,
            name=data.get("name") or "",
            duration=data.get("duration", 60),
            price=data.get("price", 0),
            description=data.get("description"),
            is_active=_bool_field(data, "is_active", True),
        )
        payload = service.to_dict()
    return jsonify({"service": payload}), 201


@api.route("/trainers/<int:trainer_id>/services/<int:service_id>", methods=["PUT", "DELETE"])
def trainer_service_detail(trainer_id: int, service_id: int):
    with _db() as db:
        user = require_role(db, ROLE_TRAINER, ROLE_ADMIN)
        ensure_trainer_self(user, trainer_id)
        if request.method == "DELETE":
            service = trainer_service.deactivate_service(db, service_id=service_id, trainer_id=trainer_id)
        else:
            data = _body()
            changes = _pick(data, "name", "description", "duration", "price")
            if "is_active" in data:
                changes["is_active"] = _bool_field(data, "is_active", True)
            service = trainer_service.update_service(db, service_id=service_id, trainer_id=trainer_id, **changes)
        payload = service.to_dict()
    return jsonify({"service": payload})


@api.get("/trainers/<int:trainer_id>/availability")
def trainer_availability(trainer_id: int):
    with _db() as db:
        trainer_service.get_active_trainer(db, trainer_id)
        windows = trainer_service.list_availability(db, trainer_id, active_only=True)
        payload = [a.to_dict() for a in windows]
    return jsonify({"availability": payload})


@api.get("/trainers/<int:trainer_id>/availability/slots")
def trainer_slots(trainer_id: int):
    with _db() as db:
        if request.args.get("date"):
            day = _parse_date(request.args["date"])
            slots = trainer_service.get_day_slots(db, trainer_id=trainer_id, day=day)
            return jsonify({"date": day.isoformat(), "slots": [_slot_json(s) for s in slots]})

        start_date = _parse_date(request.args.get("start_date") or date.today().isoformat(), "start_date")
        days = trainer_service.get_slots_range(
            db,
            trainer_id=trainer_id,
            start_date=start_date,
            days=_int_arg("days", 7),
        )
    return jsonify(
        {
            "days": [
                {"date": d["date"].isoformat(), "blocked": d["blocked"], "slots": [_slot_json(s) for s in d["slots"]]}
                for d in days
            ]
        }
    )


@api.route("/trainers/<int:trainer_id>/blocked-dates", methods=["GET", "POST"])
def trainer_blocked_dates(trainer_id: int):
    with _db() as db:
        if request.method == "GET":
            blocked = trainer_service.list_blocked_dates(db, trainer_id, from_date=date.today())
            return jsonify({"blocked_dates": [b.to_dict() for b in blocked]})

        user = require_role(db, ROLE_TRAINER, ROLE_ADMIN)
        ensure_trainer_self(user, trainer_id)
        data = _body()
        blocked = trainer_service.block_date(
            db,
            trainer_id=trainer_id,
            day=_parse_date(data.get("date")),
            reason=data.get("reason"),
        )
        payload = blocked.to_dict()
    return jsonify({"blocked_date": payload}), 201


@api.delete("/trainers/<int:trainer_id>/blocked-dates/<int:blocked_date_id>")
def trainer_unblock_date(trainer_id: int, blocked_date_id: int):
    with _db() as db:
        user = require_role(db, ROLE_TRAINER, ROLE_ADMIN)
        ensure_trainer_self(user, trainer_id)
        trainer_service.unblock_date(db, trainer_id=trainer_id, blocked_date_id=blocked_date_id)
    return jsonify({"message": "Date unblocked"})


@api.route("/availability", methods=["GET", "POST"])
def availability():
    with _db() as db:
        user = require_role(db, ROLE_TRAINER, ROLE_ADMIN)
        if request.method == "GET":
            trainer_id = _own_trainer_id(user, _int_arg("trainer_id"))
            windows = trainer_service.list_availability(db, trainer_id)
            return jsonify({"availability": [a.to_dict() for a in windows]})

        data = _body()
        trainer_id = _own_trainer_id(user, data.get("trainer_id"))
        try:
            day_of_week = int(data.get("day_of_week"))
        except (TypeError, ValueError):
            raise ValueError("day_of_week must be an integer between 0 and 6")
        window = trainer_service.set_availability(
            db,
            trainer_id=trainer_id,
            day_of_week=day_of_week,
            start=_parse_time(data.get("start_time"), "start_time"),
            end=_parse_time(data.get("end_time"), "end_time"),
        )
        payload = window.to_dict()
    return jsonify({"availability": payload}), 201


@api.route("/availability/<int:availability_id>", methods=["PUT", "DELETE"])
def availability_detail(availability_id: int):
    with _db() as db:
        user = require_role(db, ROLE_TRAINER, ROLE_ADMIN)
        owner = _own_trainer_id(user) if user.role == ROLE_TRAINER else None
        if request.method == "DELETE":
            trainer_service.delete_availability(db, availability_id=availability_id, trainer_id=owner)
            return jsonify({"message": "Availability removed"})

        data = _body()
        window = trainer_service.update_availability(
            db,
            availability_id=availability_id,
            trainer_id=owner,
            start=_parse_time(data["start_time"], "start_time") if data.get("start_time") else None,
            end=_parse_time(data["end_time"], "end_time") if data.get("end_time") else None,
            is_active=data.get("is_active"),
        )
        payload = window.to_dict()
    return jsonify({"availability": payload})


# -------------------------------------------------
# Appointments
# -------------------------------------------------

@api.route("/appointments", methods=["GET", "POST"])
def appointments():
    with _db() as db:
        user = require_role(db)
        if request.method == "GET":
            items = booking_service.list_appointments(
                db,
                user,
                status=request.args.get("status"),
                day=_parse_date(request.args["date"]) if request.args.get("date") else None,
                limit=_int_arg("limit", booking_service.DEFAULT_LIST_LIMIT),
                upcoming_only=request.args.get("upcoming") in ("1", "true"),
            )
            return jsonify({"appointments": [a.to_dict() for a in items]})

        data = _body()
        if user.role == ROLE_CLIENT:
            if not user.client_profile:
                raise PermissionDeniedError("Client profile not found")
            client_id = user.client_profile.client_id
            trainer_id = data.get("trainer_id")
            if trainer_id is None:
                raise ValueError("trainer_id is required")
        else:
            client_id = data.get("client_id")
            if client_id is None:
                raise ValueError("client_id is required")
            trainer_id = _own_trainer_id(user, data.get("trainer_id"))

        appointment = booking_service.create_appointment(
            db,
            trainer_id=int(trainer_id),
            client_id=int(client_id),
            service_id=data.get("service_id"),
            start_time=_parse_datetime(data.get("start_time"), "start_time"),
            end_time=_parse_datetime(data.get("end_time"), "end_time"),
            price=data.get("price"),
            notes=data.get("notes"),
        )
        payload = appointment.to_dict()
    return jsonify({"appointment": payload}), 201


@api.post("/appointments/check")
def appointments_check():
    data = _body()
    with _db() as db:
        require_role(db)
        if data.get("trainer_id") is None:
            raise ValueError("trainer_id is required")
        check = booking_service.check_conflict(
            db,
            trainer_id=int(data["trainer_id"]),
            start_time=_parse_datetime(data.get("start_time"), "start_time"),
            end_time=_parse_datetime(data.get("end_time"), "end_time"),
            exclude_appointment_id=data.get("exclude_appointment_id"),
        )
    return jsonify(check.to_dict())


@api.get("/appointments/stats")
def appointments_stats():
    with _db() as db:
        user = require_role(db)
        stats = booking_service.appointment_stats(db, user)
    return jsonify({"stats": stats})


@api.route("/appointments/<int:appointment_id>/status", methods=["PUT", "PATCH"])
def appointment_status(appointment_id: int):
    data = _body()
    with _db() as db:
        user = require_role(db)
        appointment = booking_service.update_status(
            db,
            user,
            appointment_id=appointment_id,
            status=data.get("status"),
            reason=data.get("reason"),
        )
        payload = appointment.to_dict()

    if payload["status"] == STATUS_CONFIRMED:
        _notify_safely("confirmation", _dispatcher().send_appointment_confirmation, appointment_id)
    return jsonify({"appointment": payload})


@api.route("/appointments/<int:appointment_id>", methods=["GET", "DELETE"])
def appointment_detail(appointment_id: int):
    with _db() as db:
        user = require_role(db)
        if request.method == "DELETE":
            booking_service.delete_appointment(db, user, appointment_id=appointment_id)
            return jsonify({"message": "Appointment deleted"})
        appointment = booking_service.get_appointment_for_user(db, user, appointment_id)
        payload = appointment.to_dict()
    return jsonify({"appointment": payload})


@api.post("/bookings/create")
def bookings_create():
    data = _body()
    with _db() as db:
        user = require_role(db, ROLE_CLIENT)
        if not user.client_profile:
            raise PermissionDeniedError("Client profile not found")
        for field in ("trainer_id", "service_id", "date", "time_slot"):
            if data.get(field) in (None, ""):
                raise ValueError(f"{field} is required")
        appointment = booking_service.book_appointment(
            db,
            client_id=user.client_profile.client_id,
            trainer_id=int(data["trainer_id"]),
            service_id=int(data["service_id"]),
            day=_parse_date(data["date"]),
            time_slot=data["time_slot"],
            notes=data.get("notes"),
        )
        payload = appointment.to_dict()
    return jsonify({"appointment": payload}), 201


# -------------------------------------------------
# Notifications
# -------------------------------------------------

@api.get("/notifications")
def notifications():
    with _db() as db:
        user = require_role(db)
        items = notification_service.list_notifications(
            db,
            user.user_id,
            limit=_int_arg("limit", 50),
            unread_only=request.args.get("unread_only") in ("1", "true"),
        )
        payload = {
            "notifications": [n.to_dict() for n in items],
            "unread_count": notification_service.unread_count(db, user.user_id),
        }
    return jsonify(payload)


@api.post("/notifications")
def notification_create():
    data = _body()
    if data.get("user_id") is None:
        raise ValueError("user_id is required")
    with _db() as db:
        require_role(db, ROLE_TRAINER, ROLE_ADMIN)
        note = notification_service.create_notification(
            db,
            int(data["user_id"]),
            data.get("title"),
            data.get("message"),
            type=data.get("type") or "system",
            metadata=data.get("metadata"),
        )
        payload = note.to_dict()
    return jsonify({"notification": payload}), 201


@api.route("/notifications/<int:notification_id>/read", methods=["POST", "PATCH"])
def notification_read(notification_id: int):
    with _db() as db:
        user = require_role(db)
        note = notification_service.mark_read(db, user_id=user.user_id, notification_id=notification_id)
        payload = note.to_dict()
    return jsonify({"notification": payload})


@api.post("/notifications/read-all")
def notifications_read_all():
    with _db() as db:
        user = require_role(db)
        count = notification_service.mark_all_read(db, user_id=user.user_id)
    return jsonify({"updated": count})


@api.route("/push/subscribe", methods=["GET", "POST", "DELETE"])
def push_subscribe():
    if request.method == "GET":
        return jsonify({"public_key": Config.VAPID_PUBLIC_KEY})

    data = _body()
    with _db() as db:
        user = require_role(db)
        if request.method == "DELETE":
            removed = push_service.unsubscribe(db, user_id=user.user_id, endpoint=data.get("endpoint"))
            return jsonify({"unsubscribed": removed})
        keys = data.get("keys") or {}
        sub = push_service.subscribe(
            db,
            user_id=user.user_id,
            endpoint=data.get("endpoint"),
            p256dh=keys.get("p256dh"),
            auth=keys.get("auth"),
            user_agent=request.headers.get("User-Agent"),
        )
        sub_id = sub.push_subscription_id
    return jsonify({"subscription_id": sub_id}), 201


# -------------------------------------------------
# Payments
# -------------------------------------------------

@api.get("/payments")
def payments_list():
    with _db() as db:
        user = require_role(db)
        scope = None if user.role == ROLE_ADMIN else user.user_id
        items = payment_service.list_payments(db, user_id=scope, limit=_int_arg("limit", 50))
        payload = [p.to_dict() for p in items]
    return jsonify({"payments": payload})


@api.post("/payments/intent")
def payments_intent():
    data = _body()
    if data.get("amount") is None:
        raise ValueError("amount is required")
    with _db() as db:
        user = require_role(db)
        result = payment_service.create_payment_intent(
            db,
            user_id=user.user_id,
            amount=float(data["amount"]),
            appointment_id=data.get("appointment_id"),
            trainer_id=data.get("trainer_id"),
            description=data.get("description") or "Personal Training Session",
        )
        payload = {
            "client_secret": result["client_secret"],
            "payment_intent_id": result["payment_intent_id"],
            "payment": result["payment"].to_dict(),
        }
    return jsonify(payload), 201


@api.route("/payments/subscriptions", methods=["GET", "POST"])
def payments_subscriptions():
    with _db() as db:
        user = require_role(db)
        if request.method == "GET":
            subs = payment_service.list_subscriptions(db, user.user_id)
            return jsonify({"subscriptions": [s.to_dict() for s in subs]})

        data = _body()
        if not data.get("price_id"):
            raise ValueError("price_id is required")
        result = payment_service.create_subscription(
            db,
            user_id=user.user_id,
            price_id=data["price_id"],
            trial_days=int(data.get("trial_days", payment_service.DEFAULT_TRIAL_DAYS)),
        )
        payload = {
            "subscription_id": result["subscription_id"],
            "status": result["status"],
            "subscription": result["subscription"].to_dict() if result["subscription"] else None,
        }
    return jsonify(payload), 201


@api.delete("/payments/subscriptions/<stripe_subscription_id>")
def payments_subscription_cancel(stripe_subscription_id: str):
    with _db() as db:
        user = require_role(db)
        scope = None if user.role == ROLE_ADMIN else user.user_id
        sub = payment_service.cancel_subscription(db, stripe_subscription_id=stripe_subscription_id, user_id=scope)
        payload = sub.to_dict() if sub else None
    return jsonify({"subscription": payload})


@api.post("/payments/refunds")
def payments_refunds():
    data = _body()
    with _db() as db:
        require_role(db, ROLE_ADMIN)
        if not data.get("payment_intent_id"):
            raise ValueError("payment_intent_id is required")
        refund = payment_service.create_refund(
            db,
            payment_intent_id=data["payment_intent_id"],
            amount=float(data["amount"]) if data.get("amount") is not None else None,
            reason=data.get("reason") or "requested_by_customer",
        )
        payload = refund.to_dict()
    return jsonify({"refund": payload}), 201


@api.route("/payments/methods", methods=["GET", "POST"])
def payments_methods():
    with _db() as db:
        user = require_role(db)
        if request.method == "GET":
            methods = payment_service.list_payment_methods(db, user.user_id)
            return jsonify({"payment_methods": [m.to_dict() for m in methods]})
        setup = payment_service.create_setup_intent(db, user.user_id)
    return jsonify(setup), 201


@api.delete("/payments/methods/<stripe_payment_method_id>")
def payments_method_detach(stripe_payment_method_id: str):
    with _db() as db:
        user = require_role(db)
        payment_service.detach_payment_method(
            db, user_id=user.user_id, stripe_payment_method_id=stripe_payment_method_id
        )
    return jsonify({"message": "Payment method removed"})


@api.post("/webhooks/stripe")
def stripe_webhook():
    payload = request.get_data()
    signature = request.headers.get("Stripe-Signature")
    try:
        event = payment_service.construct_event(payload, signature)
    except stripe.SignatureVerificationError:
        logger.warning("Stripe webhook signature verification failed")
        return jsonify({"error": "Invalid signature"}), 400

    with _db() as db:
        handled = payment_service.handle_webhook_event(db, event, dispatcher=_dispatcher())
    return jsonify({"received": True, "handled": handled})


# -------------------------------------------------
# Reports & analytics
# -------------------------------------------------

@api.route("/reports/generate", methods=["GET", "POST"])
def reports_generate():
    data = _body() if request.method == "POST" else request.args.to_dict()
    trainer_id = data.get("trainer_id")
    with _db() as db:
        user = require_role(db, ROLE_TRAINER, ROLE_ADMIN)
        report = reporting.generate_report(
            db,
            user,
            report_type=data.get("type") or data.get("report_type"),
            period=data.get("period"),
            trainer_id=int(trainer_id) if trainer_id not in (None, "") else None,
        )

    fmt = (data.get("format") or "json").lower()
    if fmt == "json":
        return jsonify({"report": report})
    content, mimetype, filename = export_report(report, fmt)
    return send_file(io.BytesIO(content), mimetype=mimetype, as_attachment=True, download_name=filename)


@api.get("/analytics/revenue")
def analytics_revenue():
    with _db() as db:
        user = require_role(db, ROLE_TRAINER, ROLE_ADMIN)
        result = reporting.revenue_analytics(
            db,
            user,
            period=request.args.get("period"),
            compare=request.args.get("compare"),
            trainer_id=_int_arg("trainer_id"),
        )
    return jsonify(result)


@api.get("/analytics/occupancy")
def analytics_occupancy():
    with _db() as db:
        user = require_role(db, ROLE_TRAINER, ROLE_ADMIN)
        result = reporting.occupancy_analytics(
            db, user, period=request.args.get("period"), trainer_id=_int_arg("trainer_id")
        )
    return jsonify(result)


@api.get("/analytics/metrics")
def analytics_metrics():
    with _db() as db:
        user = require_role(db, ROLE_TRAINER, ROLE_ADMIN)
        result = reporting.dashboard_metrics(db, user, trainer_id=_int_arg("trainer_id"))
    return jsonify(result)


@api.get("/health")
def health():
    with _db() as db:
        try:
            db.execute(text("SELECT 1"))
            database = "ok"
        except Exception:
            logger.exception("Health check database query failed")
            database = "error"
    status = 200 if database == "ok" else 503
    return jsonify({"status": "ok" if status == 200 else "degraded", "database": database}), status


if __name__ == "__main__":
    create_app().run(debug=True)
