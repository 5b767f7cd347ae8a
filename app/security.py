from __future__ import annotations

import base64
import hashlib
import secrets
from datetime import datetime, timedelta

import bcrypt
from cryptography.fernet import Fernet, InvalidToken
from jose import jwt, JWTError

from app.config import Config
from app.errors import AuthenticationError

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"


# ---------------------------
# Passwords
# ---------------------------

def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=Config.BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def validate_password_strength(password: str) -> None:
    if not password or len(password) < 8:
        raise ValueError("Password must be at least 8 characters long")
    if not any(c.isdigit() for c in password) or not any(c.isalpha() for c in password):
        raise ValueError("Password must contain letters and numbers")


# ---------------------------
# JWT
# ---------------------------

def create_access_token(payload: dict, *, now: datetime | None = None) -> str:
    now = now or datetime.utcnow()
    claims = dict(payload)
    claims.update(
        {
            "token_type": TOKEN_TYPE_ACCESS,
            "iat": now,
            "exp": now + timedelta(minutes=Config.JWT_EXPIRES_MINUTES),
        }
    )
    return jwt.encode(claims, Config.JWT_SECRET, algorithm=Config.JWT_ALGORITHM)


def create_refresh_token(payload: dict, *, remember_me: bool = False, now: datetime | None = None) -> tuple[str, datetime]:
    now = now or datetime.utcnow()
    days = Config.REFRESH_TOKEN_REMEMBER_DAYS if remember_me else Config.REFRESH_TOKEN_DAYS
    expires_at = now + timedelta(days=days)
    claims = dict(payload)
    claims.update(
        {
            "token_type": TOKEN_TYPE_REFRESH,
            # jti keeps two refresh tokens issued in the same second distinct
            "jti": secrets.token_hex(8),
            "iat": now,
            "exp": expires_at,
        }
    )
    token = jwt.encode(claims, Config.JWT_REFRESH_SECRET, algorithm=Config.JWT_ALGORITHM)
    return token, expires_at


def decode_token(token: str, *, token_type: str = TOKEN_TYPE_ACCESS) -> dict:
    secret = Config.JWT_SECRET if token_type == TOKEN_TYPE_ACCESS else Config.JWT_REFRESH_SECRET
    try:
        claims = jwt.decode(token, secret, algorithms=[Config.JWT_ALGORITHM])
    except JWTError as exc:
        raise AuthenticationError("Invalid or expired token") from exc
    if claims.get("token_type") != token_type:
        raise AuthenticationError("Invalid token type")
    return claims


# ---------------------------
# Opaque tokens / fingerprints
# ---------------------------

def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_secure_token(nbytes: int = 32) -> str:
    return secrets.token_hex(nbytes)


def device_id(user_agent: str | None, ip_address: str | None) -> str:
    fingerprint = f"{user_agent or ''}{ip_address or ''}"
    return hashlib.sha256(fingerprint.encode("utf-8")).hexdigest()[:16]


# ---------------------------
# Encryption at rest
# ---------------------------

def _fernet() -> Fernet:
    key = Config.ENCRYPTION_KEY
    if not key:
        digest = hashlib.sha256(Config.SECRET_KEY.encode("utf-8")).digest()
        key = base64.urlsafe_b64encode(digest).decode("utf-8")
    return Fernet(key)


def encrypt(value: str) -> str:
    return _fernet().encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt(value: str) -> str:
    try:
        return _fernet().decrypt(value.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise ValueError("Unable to decrypt stored secret") from exc
