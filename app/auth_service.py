from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.user import (
    User,
    TrainerProfile,
    ClientProfile,
    AuthToken,
    AuditLog,
    ROLES,
    ROLE_CLIENT,
    ROLE_TRAINER,
)
from app.config import Config
from app.errors import (
    AuthenticationError,
    AccountLockedError,
    ConflictError,
    NotFoundError,
)
from app import security

logger = logging.getLogger(__name__)


@dataclass
class LoginResult:
    user: User
    access_token: str
    refresh_token: str
    refresh_expires_at: datetime


def log_audit_event(
    session: Session,
    *,
    action: str,
    user_id: Optional[int] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    success: bool = True,
    error_message: Optional[str] = None,
) -> None:
    """Record an audit entry. Never lets an audit failure break the caller."""
    try:
        session.add(
            AuditLog(
                user_id=user_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                ip_address=ip_address,
                user_agent=(user_agent or "")[:255] or None,
                success=success,
                error_message=error_message,
            )
        )
        session.commit()
    except Exception:
        session.rollback()
        logger.exception("Failed to write audit log entry for action %s", action)


# ---------------------------
# Registration
# ---------------------------

def register_user(
    session: Session,
    *,
    email: str,
    password: str,
    name: str,
    role: str = ROLE_CLIENT,
    phone: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> User:
    email = (email or "").strip().lower()
    name = (name or "").strip()
    role = (role or ROLE_CLIENT).upper()
    if not email or "@" not in email:
        raise ValueError("A valid email is required")
    if not name:
        raise ValueError("Name is required")
    if role not in ROLES:
        raise ValueError(f"Role must be one of {', '.join(ROLES)}")
    security.validate_password_strength(password)

    if session.scalar(select(User).where(User.email == email)):
        raise ConflictError("Email already registered")

    user = User(
        email=email,
        password_hash=security.hash_password(password),
        name=name,
        role=role,
        phone=phone,
    )
    if role == ROLE_TRAINER:
        user.trainer_profile = TrainerProfile()
    elif role == ROLE_CLIENT:
        user.client_profile = ClientProfile()

    session.add(user)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ConflictError("Email already registered")
    session.refresh(user)

    log_audit_event(
        session,
        action="REGISTER",
        user_id=user.user_id,
        entity_type="user",
        entity_id=str(user.user_id),
        ip_address=ip_address,
        user_agent=user_agent,
    )
    logger.info("Registered %s user %s", role, user.user_id)
    return user


# ---------------------------
# Login / lockout
# ---------------------------

def _register_failed_attempt(session: Session, user: User, now: datetime) -> None:
    user.login_attempts = (user.login_attempts or 0) + 1
    if user.login_attempts >= Config.MAX_LOGIN_ATTEMPTS:
        user.lockout_until = now + timedelta(minutes=Config.LOCKOUT_TIME_MINUTES)
        logger.warning("User %s locked out after %s failed attempts", user.user_id, user.login_attempts)
    session.commit()


def _issue_tokens(
    session: Session,
    user: User,
    *,
    remember_me: bool,
    ip_address: Optional[str],
    user_agent: Optional[str],
    now: datetime,
) -> LoginResult:
    dev_id = security.device_id(user_agent, ip_address)
    payload = {
        "user_id": user.user_id,
        "email": user.email,
        "role": user.role,
        "device_id": dev_id,
    }
    access_token = security.create_access_token(payload, now=now)
    refresh_token, expires_at = security.create_refresh_token(
        {"user_id": user.user_id, "device_id": dev_id},
        remember_me=remember_me,
        now=now,
    )
    session.add(
        AuthToken(
            user_id=user.user_id,
            token_hash=security.hash_token(refresh_token),
            token_type=security.TOKEN_TYPE_REFRESH,
            expires_at=expires_at,
            device_info=(user_agent or "")[:255] or None,
        )
    )
    session.commit()
    return LoginResult(
        user=user,
        access_token=access_token,
        refresh_token=refresh_token,
        refresh_expires_at=expires_at,
    )


def authenticate_user(
    session: Session,
    *,
    email: str,
    password: str,
    remember_me: bool = False,
    totp_code: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> LoginResult:
    """
    Check credentials and issue an access/refresh token pair.

    Failed passwords and two-factor codes count towards the lockout; a locked account is rejected
    before the password is checked. Users with two-factor enabled must send a
    TOTP or backup code with the same request.
    """
    now = now or datetime.utcnow()
    email = (email or "").strip().lower()
    user = session.scalar(select(User).where(User.email == email))

    if not user:
        log_audit_event(
            session,
            action="LOGIN_FAILED",
            ip_address=ip_address,
            user_agent=user_agent,
            success=False,
            error_message="Unknown email",
        )
        raise AuthenticationError("Invalid credentials")

    if user.lockout_until and user.lockout_until > now:
        minutes = math.ceil((user.lockout_until - now).total_seconds() / 60)
        log_audit_event(
            session,
            action="LOGIN_LOCKED",
            user_id=user.user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            success=False,
            error_message="Account locked",
        )
        raise AccountLockedError(
            f"Account locked. Try again in {minutes} minutes",
            minutes_remaining=minutes,
        )

    if not user.is_active:
        log_audit_event(
            session,
            action="LOGIN_FAILED",
            user_id=user.user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            success=False,
            error_message="Account disabled",
        )
        raise AuthenticationError("Account is disabled")

    if not security.verify_password(password or "", user.password_hash):
        _register_failed_attempt(session, user, now)
        log_audit_event(
            session,
            action="LOGIN_FAILED",
            user_id=user.user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            success=False,
            error_message="Invalid password",
        )
        raise AuthenticationError("Invalid credentials")

    if user.two_factor_enabled:
        # imported here: two_factor imports this module for audit logging
        from app.two_factor import verify_two_factor_code

        if not totp_code:
            raise AuthenticationError("Two-factor code required", requires_two_factor=True)
        if not verify_two_factor_code(session, user_id=user.user_id, code=totp_code):
            _register_failed_attempt(session, user, now)
            log_audit_event(
                session,
                action="2FA_FAILED",
                user_id=user.user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
            )
            raise AuthenticationError("Invalid two-factor code", requires_two_factor=True)

    user.login_attempts = 0
    user.lockout_until = None
    user.last_login_at = now
    result = _issue_tokens(
        session,
        user,
        remember_me=remember_me,
        ip_address=ip_address,
        user_agent=user_agent,
        now=now,
    )
    log_audit_event(
        session,
        action="LOGIN",
        user_id=user.user_id,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return result


def get_user_from_access_token(session: Session, token: str) -> User:
    claims = security.decode_token(token, token_type=security.TOKEN_TYPE_ACCESS)
    user = session.get(User, claims.get("user_id"))
    if not user or not user.is_active:
        raise AuthenticationError("User not found or inactive")
    return user


# ---------------------------
# Refresh tokens
# ---------------------------

def refresh_access_token(session: Session, refresh_token: str, *, now: Optional[datetime] = None) -> str:
    now = now or datetime.utcnow()
    claims = security.decode_token(refresh_token, token_type=security.TOKEN_TYPE_REFRESH)
    stored = session.scalar(
        select(AuthToken).where(AuthToken.token_hash == security.hash_token(refresh_token))
    )
    if not stored or stored.is_revoked:
        raise AuthenticationError("Refresh token revoked")
    if stored.expires_at <= now:
        raise AuthenticationError("Refresh token expired")

    user = session.get(User, claims.get("user_id"))
    if not user or not user.is_active:
        raise AuthenticationError("User not found or inactive")

    return security.create_access_token(
        {
            "user_id": user.user_id,
            "email": user.email,
            "role": user.role,
            "device_id": claims.get("device_id"),
        },
        now=now,
    )


def revoke_refresh_token(session: Session, refresh_token: str) -> bool:
    stored = session.scalar(
        select(AuthToken).where(AuthToken.token_hash == security.hash_token(refresh_token))
    )
    if not stored:
        return False
    stored.is_revoked = True
    session.commit()
    log_audit_event(session, action="LOGOUT", user_id=stored.user_id)
    return True


def revoke_all_user_tokens(session: Session, user_id: int) -> int:
    result = session.execute(
        update(AuthToken)
        .where(AuthToken.user_id == user_id, AuthToken.is_revoked.is_(False))
        .values(is_revoked=True)
    )
    session.commit()
    return result.rowcount or 0


# ---------------------------
# Password reset
# ---------------------------

def generate_password_reset_token(
    session: Session,
    email: str,
    *,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Return a one-time reset token, or None for unknown emails (callers must not leak which)."""
    now = now or datetime.utcnow()
    user = session.scalar(select(User).where(User.email == (email or "").strip().lower()))
    if not user:
        return None
    token = security.generate_secure_token()
    user.password_reset_token = security.hash_token(token)
    user.password_reset_expires = now + timedelta(minutes=Config.PASSWORD_RESET_MINUTES)
    session.commit()
    log_audit_event(session, action="PASSWORD_RESET_REQUESTED", user_id=user.user_id)
    return token


def reset_password(
    session: Session,
    *,
    token: str,
    new_password: str,
    now: Optional[datetime] = None,
) -> User:
    now = now or datetime.utcnow()
    security.validate_password_strength(new_password)
    user = session.scalar(
        select(User).where(User.password_reset_token == security.hash_token(token or ""))
    )
    if not user or not user.password_reset_expires or user.password_reset_expires <= now:
        raise AuthenticationError("Invalid or expired reset token")

    user.password_hash = security.hash_password(new_password)
    user.password_reset_token = None
    user.password_reset_expires = None
    user.login_attempts = 0
    user.lockout_until = None
    session.commit()
    revoke_all_user_tokens(session, user.user_id)
    log_audit_event(session, action="PASSWORD_RESET", user_id=user.user_id)
    return user


# ---------------------------
# Profile
# ---------------------------

def update_user_profile(session: Session, user_id: int, **changes) -> User:
    user = session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")

    allowed_fields = {"name", "phone", "whatsapp"}
    for key, value in changes.items():
        if key not in allowed_fields:
            continue
        if key == "name" and not (value or "").strip():
            raise ValueError("Name is required")
        setattr(user, key, value)

    session.commit()
    session.refresh(user)
    return user


def update_client_profile(session: Session, user_id: int, **changes) -> ClientProfile:
    profile = session.scalar(select(ClientProfile).where(ClientProfile.user_id == user_id))
    if not profile:
        raise NotFoundError("Client profile not found")
    for key in ("goals", "fitness_level", "emergency_contact"):
        if key in changes:
            setattr(profile, key, changes[key])
    session.commit()
    session.refresh(profile)
    return profile
