"""
Application configuration and settings
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _as_bool(value: str) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Database Configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./rallio.db")

# Redis Configuration (empty = advisory locks live in the database)
REDIS_URL = os.getenv("REDIS_URL", "")
LOCK_BACKEND = os.getenv("LOCK_BACKEND", "redis" if REDIS_URL else "database")
LOCK_PREFIX = os.getenv("LOCK_PREFIX", "rallio")

# PayMongo Configuration
PAYMONGO_API_URL = os.getenv("PAYMONGO_API_URL", "https://api.paymongo.com/v1")
PAYMONGO_SECRET_KEY = os.getenv("PAYMONGO_SECRET_KEY", "")
PAYMONGO_WEBHOOK_SECRET = os.getenv("PAYMONGO_WEBHOOK_SECRET", "")
PAYMONGO_TIMEOUT_SECONDS = float(os.getenv("PAYMONGO_TIMEOUT_SECONDS", "15"))
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "PHP")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://127.0.0.1:8000")

# Booking / queue rules
PAYMENT_PROCESSING_TTL_SECONDS = int(os.getenv("PAYMENT_PROCESSING_TTL_SECONDS", "300"))
CANCELLATION_LEAD_HOURS = int(os.getenv("CANCELLATION_LEAD_HOURS", "24"))
GAME_DURATION_MINUTES = int(os.getenv("GAME_DURATION_MINUTES", "15"))
QUEUE_DRAFT_BLOCKS_COURT = _as_bool(os.getenv("QUEUE_DRAFT_BLOCKS_COURT", "true"))
DEFAULT_VENUE_TIMEZONE = os.getenv("DEFAULT_VENUE_TIMEZONE", "Asia/Manila")

# Auth
SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkey")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")


class Settings:
    PROJECT_NAME: str = "Rallio Reservations API"
    VERSION: str = "1.0.0"
    ENVIRONMENT = ENVIRONMENT
    LOG_LEVEL = LOG_LEVEL
    DATABASE_URL = DATABASE_URL
    REDIS_URL = REDIS_URL
    LOCK_BACKEND = LOCK_BACKEND
    LOCK_PREFIX = LOCK_PREFIX
    PAYMONGO_API_URL = PAYMONGO_API_URL
    PAYMONGO_SECRET_KEY = PAYMONGO_SECRET_KEY
    PAYMONGO_WEBHOOK_SECRET = PAYMONGO_WEBHOOK_SECRET
    PAYMONGO_TIMEOUT_SECONDS = PAYMONGO_TIMEOUT_SECONDS
    PAYMENT_CURRENCY = PAYMENT_CURRENCY
    PUBLIC_BASE_URL = PUBLIC_BASE_URL
    PAYMENT_PROCESSING_TTL_SECONDS = PAYMENT_PROCESSING_TTL_SECONDS
    CANCELLATION_LEAD_HOURS = CANCELLATION_LEAD_HOURS
    GAME_DURATION_MINUTES = GAME_DURATION_MINUTES
    QUEUE_DRAFT_BLOCKS_COURT = QUEUE_DRAFT_BLOCKS_COURT
    DEFAULT_VENUE_TIMEZONE = DEFAULT_VENUE_TIMEZONE
    SECRET_KEY = SECRET_KEY
    ACCESS_TOKEN_EXPIRE_MINUTES = ACCESS_TOKEN_EXPIRE_MINUTES

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def cors_origins_list(self):
        if CORS_ORIGINS.strip() == "*":
            return ["*"]
        return [o.strip() for o in CORS_ORIGINS.split(",") if o.strip()]

    def validate_for_startup(self) -> None:
        """Refuse to boot a production deployment that cannot verify webhooks."""
        if self.is_production and not self.PAYMONGO_WEBHOOK_SECRET:
            raise RuntimeError("PAYMONGO_WEBHOOK_SECRET is required in production environment")


settings = Settings()
