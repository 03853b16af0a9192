"""
Runtime configuration.
Values come from the environment (and a local .env file when present) and are
read once at startup into a frozen Settings object that is passed to every
component through the application context.
"""
import os
from dataclasses import dataclass, field
from typing import Tuple

from dotenv import load_dotenv


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_csv_tuple(value: str | None) -> Tuple[str, ...]:
    if value is None:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


def normalize_database_url(url: str) -> str:
    # Normalize postgres:// -> postgresql:// for SQLAlchemy
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


@dataclass(frozen=True)
class Settings:
    app_name: str = "LoveTextForHer"
    database_url: str = "sqlite:///./lovetext.db"

    jwt_secret: str = "your-secret-key-here-change-in-production"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_price_trial: str = ""
    stripe_price_basic: str = ""
    stripe_price_plus: str = ""

    frontend_url: str = "http://localhost:3000"
    base_url: str = "http://localhost:8000"

    resend_api_key: str = ""
    from_email: str = "LoveTextForHer <love@lovetextforher.com>"

    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""

    send_timeout_seconds: float = 10.0
    dispatch_interval_seconds: int = 60
    dispatch_concurrency: int = 5
    expiry_sweep_interval_seconds: int = 3600
    scheduler_enabled: bool = True
    run_migrations: bool = True

    trial_days: int = 3
    flowers_per_day: int = 3

    admin_api_key: str = ""
    cors_origins: Tuple[str, ...] = field(default_factory=lambda: ("http://localhost:3000",))
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        defaults = cls()
        return cls(
            app_name=os.getenv("APP_NAME", defaults.app_name),
            database_url=normalize_database_url(os.getenv("DATABASE_URL", defaults.database_url)),
            jwt_secret=os.getenv("JWT_SECRET", defaults.jwt_secret),
            jwt_algorithm=os.getenv("JWT_ALGORITHM", defaults.jwt_algorithm),
            access_token_expire_minutes=_as_int(
                os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES"), defaults.access_token_expire_minutes
            ),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", "").strip(),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", "").strip(),
            stripe_price_trial=os.getenv("STRIPE_PRICE_TRIAL", "").strip(),
            stripe_price_basic=os.getenv("STRIPE_PRICE_BASIC", "").strip(),
            stripe_price_plus=os.getenv("STRIPE_PRICE_PLUS", "").strip(),
            frontend_url=os.getenv("FRONTEND_URL", defaults.frontend_url).rstrip("/"),
            base_url=os.getenv("BASE_URL", defaults.base_url).rstrip("/"),
            resend_api_key=os.getenv("RESEND_API_KEY", "").strip(),
            from_email=os.getenv("FROM_EMAIL", defaults.from_email),
            twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", "").strip(),
            twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", "").strip(),
            twilio_from_number=os.getenv("TWILIO_FROM_NUMBER", "").strip(),
            send_timeout_seconds=_as_float(os.getenv("SEND_TIMEOUT_SECONDS"), defaults.send_timeout_seconds),
            dispatch_interval_seconds=_as_int(
                os.getenv("DISPATCH_INTERVAL_SECONDS"), defaults.dispatch_interval_seconds
            ),
            dispatch_concurrency=max(1, _as_int(os.getenv("DISPATCH_CONCURRENCY"), defaults.dispatch_concurrency)),
            expiry_sweep_interval_seconds=_as_int(
                os.getenv("EXPIRY_SWEEP_INTERVAL_SECONDS"), defaults.expiry_sweep_interval_seconds
            ),
            scheduler_enabled=_as_bool(os.getenv("SCHEDULER_ENABLED"), defaults.scheduler_enabled),
            run_migrations=_as_bool(os.getenv("RUN_MIGRATIONS"), defaults.run_migrations),
            trial_days=_as_int(os.getenv("TRIAL_DAYS"), defaults.trial_days),
            flowers_per_day=_as_int(os.getenv("FLOWERS_PER_DAY"), defaults.flowers_per_day),
            admin_api_key=os.getenv("ADMIN_API_KEY", "").strip(),
            cors_origins=_as_csv_tuple(os.getenv("CORS_ORIGINS")) or defaults.cors_origins,
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
        )

    @property
    def price_ids(self) -> dict:
        """Product id -> Stripe price id, for the products that are configured."""
        pairs = {
            "free-trial": self.stripe_price_trial,
            "love-basic": self.stripe_price_basic,
            "love-plus": self.stripe_price_plus,
        }
        return {product: price for product, price in pairs.items() if price}
