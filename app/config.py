import logging
import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    """Runtime settings read from the environment (or a local .env file)."""

    APP_NAME = os.getenv("APP_NAME", "Academia Fitness Scheduler")
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")  # fine for local/demo use only
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Auth
    JWT_SECRET = os.getenv("JWT_SECRET", "dev-jwt-secret")
    JWT_REFRESH_SECRET = os.getenv("JWT_REFRESH_SECRET", "dev-jwt-refresh-secret")
    JWT_ALGORITHM = "HS256"
    JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))
    REFRESH_TOKEN_DAYS = 7
    REFRESH_TOKEN_REMEMBER_DAYS = 30
    BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))
    MAX_LOGIN_ATTEMPTS = int(os.getenv("MAX_LOGIN_ATTEMPTS", "5"))
    LOCKOUT_TIME_MINUTES = int(os.getenv("LOCKOUT_TIME_MINUTES", "15"))
    PASSWORD_RESET_MINUTES = 60

    # Per-IP rate limits (Flask-Limiter)
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")
    LOGIN_RATE_LIMIT = os.getenv("LOGIN_RATE_LIMIT", "5 per 15 minutes")
    REGISTER_RATE_LIMIT = os.getenv("REGISTER_RATE_LIMIT", "3 per hour")
    PASSWORD_RESET_RATE_LIMIT = os.getenv("PASSWORD_RESET_RATE_LIMIT", "3 per hour")
    TWO_FACTOR_RATE_LIMIT = os.getenv("TWO_FACTOR_RATE_LIMIT", "10 per 5 minutes")
    # Fernet key (urlsafe base64, 32 bytes); derived from SECRET_KEY when unset
    ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY")

    # Email (Resend)
    RESEND_API_KEY = os.getenv("RESEND_API_KEY")
    FROM_EMAIL = os.getenv("FROM_EMAIL", "Academia Fitness <noreply@academiafitness.com>")

    # SMS / WhatsApp (Twilio)
    TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
    TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
    TWILIO_PHONE_NUMBER = os.getenv("TWILIO_PHONE_NUMBER")
    TWILIO_WHATSAPP_NUMBER = os.getenv("TWILIO_WHATSAPP_NUMBER")

    # Web push
    VAPID_PUBLIC_KEY = os.getenv("VAPID_PUBLIC_KEY")
    VAPID_PRIVATE_KEY = os.getenv("VAPID_PRIVATE_KEY")
    VAPID_EMAIL = os.getenv("VAPID_EMAIL", "admin@academiafitness.com")

    # Payments (Stripe)
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_CURRENCY = os.getenv("STRIPE_CURRENCY", "brl")
    PLATFORM_FEE_PERCENTAGE = int(os.getenv("PLATFORM_FEE_PERCENTAGE", "20"))

    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", False)


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or Config.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
