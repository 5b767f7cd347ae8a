"""TOTP two-factor authentication with encrypted secrets and one-time backup codes."""
from __future__ import annotations

import base64
import io
import json
import logging
import secrets
import string
from dataclasses import dataclass

import pyotp
import qrcode
from sqlalchemy.orm import Session

from models.user import User
from app.config import Config
from app.errors import AuthenticationError, ConflictError, NotFoundError
from app.auth_service import log_audit_event
from app import security

logger = logging.getLogger(__name__)

BACKUP_CODE_COUNT = 8
BACKUP_CODE_LENGTH = 6
TOTP_VALID_WINDOW = 2
_BACKUP_ALPHABET = string.ascii_uppercase + string.digits


@dataclass
class TwoFactorSetup:
    secret: str
    provisioning_uri: str
    qr_code: str
    backup_codes: list[str]


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> list[str]:
    return [
        "".join(secrets.choice(_BACKUP_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
        for _ in range(count)
    ]


def _qr_data_url(data: str) -> str:
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


def _get_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


def _load_backup_codes(user: User) -> list[str]:
    if not user.backup_codes:
        return []
    return json.loads(security.decrypt(user.backup_codes))


def _store_backup_codes(user: User, codes: list[str]) -> None:
    user.backup_codes = security.encrypt(json.dumps(codes))


def _verify_totp(user: User, code: str) -> bool:
    if not user.two_factor_secret:
        return False
    secret = security.decrypt(user.two_factor_secret)
    return pyotp.TOTP(secret).verify(str(code).strip(), valid_window=TOTP_VALID_WINDOW)


def setup_two_factor(session: Session, *, user_id: int) -> TwoFactorSetup:
    """Generate a secret + backup codes. 2FA stays disabled until a code is verified."""
    user = _get_user(session, user_id)
    if user.two_factor_enabled:
        raise ConflictError("Two-factor authentication is already enabled")

    secret = pyotp.random_base32()
    uri = pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=Config.APP_NAME)
    codes = generate_backup_codes()

    user.two_factor_secret = security.encrypt(secret)
    _store_backup_codes(user, codes)
    session.commit()

    return TwoFactorSetup(
        secret=secret,
        provisioning_uri=uri,
        qr_code=_qr_data_url(uri),
        backup_codes=codes,
    )


def verify_and_enable(session: Session, *, user_id: int, code: str) -> bool:
    user = _get_user(session, user_id)
    if not user.two_factor_secret:
        raise ValueError("Two-factor setup not initialized")
    if not _verify_totp(user, code):
        log_audit_event(session, action="2FA_ENABLE_FAILED", user_id=user_id, success=False)
        return False
    user.two_factor_enabled = True
    session.commit()
    log_audit_event(session, action="2FA_ENABLED", user_id=user_id)
    return True


def verify_two_factor_code(session: Session, *, user_id: int, code: str) -> bool:
    """Accept a current TOTP or an unused backup code (consumed on use)."""
    user = _get_user(session, user_id)
    if not user.two_factor_enabled or not code:
        return False

    normalized = str(code).strip().upper()
    codes = _load_backup_codes(user)
    if normalized in codes:
        codes.remove(normalized)
        _store_backup_codes(user, codes)
        session.commit()
        logger.info("Backup code used by user %s (%s left)", user_id, len(codes))
        return True

    return _verify_totp(user, normalized)


def disable_two_factor(session: Session, *, user_id: int, password: str, code: str) -> None:
    user = _get_user(session, user_id)
    if not user.two_factor_enabled:
        raise ValueError("Two-factor authentication is not enabled")
    if not security.verify_password(password or "", user.password_hash):
        raise AuthenticationError("Invalid password")
    if not verify_two_factor_code(session, user_id=user_id, code=code):
        raise AuthenticationError("Invalid two-factor code")

    user.two_factor_enabled = False
    user.two_factor_secret = None
    user.backup_codes = None
    session.commit()
    log_audit_event(session, action="2FA_DISABLED", user_id=user_id)


def backup_codes_count(session: Session, *, user_id: int) -> int:
    return len(_load_backup_codes(_get_user(session, user_id)))


def regenerate_backup_codes(session: Session, *, user_id: int, code: str) -> list[str]:
    user = _get_user(session, user_id)
    if not user.two_factor_enabled:
        raise ValueError("Two-factor authentication is not enabled")
    if not _verify_totp(user, code):
        raise AuthenticationError("Invalid two-factor code")
    codes = generate_backup_codes()
    _store_backup_codes(user, codes)
    session.commit()
    log_audit_event(session, action="2FA_BACKUP_CODES_REGENERATED", user_id=user_id)
    return codes
