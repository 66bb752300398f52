from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


def find_env_file() -> str:
    env_file = ".env" if Path("/.dockerenv").exists() else ".env.local"

    current_path = Path.cwd()

    for path in [current_path] + list(current_path.parents):
        env_path = path / env_file
        if env_path.exists():
            return str(env_path)

    return env_file


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=find_env_file(),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database: devices, stations, users, rentals
    database_url: str = "postgresql+psycopg2://app:app@db:5432/rental"

    # Redis: QR sessions
    redis_url: str = "redis://redis:6379/0"
    qr_session_ttl_sec: int = 300  # 5 minutes
    qr_session_cache_size: int = 4096  # used when redis_url is empty

    # Tariff (TZS)
    first_hour_rate: Decimal = Decimal("600")
    additional_hour_rate: Decimal = Decimal("400")
    daily_cap: Decimal = Decimal("3000")
    tax_rate: Decimal = Decimal("0.18")
    deposit_amount: Decimal = Decimal("5000")
    late_fee_per_hour: Decimal = Decimal("200")
    billing_increment_hours: Decimal = Decimal("0.5")

    # Rental lifecycle
    default_window_hours: int = 4
    cancel_grace_min: int = 5
    maintenance_health_threshold: int = 70

    # Notification service
    notification_base: str = "http://notification-service:3630"
    http_timeout_sec: float = 1.5
    cb_notify_fail_max: int = 5
    cb_notify_reset_timeout: int = 30

    # Observability
    log_level: str = "INFO"
    log_json: bool = False
    metrics_port: int = 8001


@lru_cache()
def get_settings() -> Settings:
    return Settings()
