from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = Field("fulfillment-core", alias="APP_NAME")
    database_url: str = Field("", alias="FULFILLMENT_DATABASE_URL")
    db_echo: bool = Field(False, alias="FULFILLMENT_DB_ECHO")
    log_level: str = Field("INFO", alias="FULFILLMENT_LOG_LEVEL")
    variant_seed_path: str = Field("", alias="FULFILLMENT_VARIANT_SEED_PATH")

    reservation_timeout_minutes: int = Field(15, alias="FULFILLMENT_RESERVATION_TIMEOUT_MINUTES", gt=0)
    reservation_cleanup_interval_minutes: int = Field(5, alias="FULFILLMENT_RESERVATION_CLEANUP_INTERVAL_MINUTES", gt=0)
    stale_reservation_threshold_minutes: int = Field(120, alias="FULFILLMENT_STALE_RESERVATION_THRESHOLD_MINUTES", gt=0)
    return_window_days: int = Field(30, alias="FULFILLMENT_RETURN_WINDOW_DAYS", gt=0)

    payment_sandbox: bool = Field(True, alias="FULFILLMENT_PAYMENT_SANDBOX")
    gateway_webhook_secret: str = Field("sandbox-webhook-secret", alias="FULFILLMENT_GATEWAY_WEBHOOK_SECRET")
    gateway_timeout_seconds: float = Field(10.0, alias="FULFILLMENT_GATEWAY_TIMEOUT_SECONDS", gt=0)

    media_prefix: str = Field("returns", alias="FULFILLMENT_MEDIA_PREFIX")
    media_max_bytes: int = Field(5 * 1024 * 1024, alias="FULFILLMENT_MEDIA_MAX_BYTES", gt=0)

    scheduler_enabled: bool = Field(False, alias="FULFILLMENT_SCHEDULER_ENABLED")
    outbox_batch_size: int = Field(50, alias="FULFILLMENT_OUTBOX_BATCH_SIZE", gt=0)

    otel_enabled: bool = Field(False, alias="OTEL_ENABLED")
    otel_service_name: str = Field("fulfillment-core", alias="OTEL_SERVICE_NAME")
    otel_exporter_otlp_endpoint: str = Field("", alias="OTEL_EXPORTER_OTLP_ENDPOINT")

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)


def resolve_env_file() -> Optional[Path]:
    explicit = os.getenv("FULFILLMENT_ENV_FILE")
    if explicit:
        return Path(explicit)
    default = Path.cwd() / "config" / "fulfillment.env"
    if default.exists():
        return default
    return None


def load_settings() -> Settings:
    env_file = resolve_env_file()
    if env_file:
        return Settings(_env_file=str(env_file))
    return Settings()
