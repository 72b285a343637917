from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    db_path: Path = Field(default=Path("data/roadpulse.db"), validation_alias="DB_PATH")
    feeds_dir: Path = Field(default=Path("feeds"), validation_alias="FEEDS_DIR")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    user_agent: str = Field(
        default="roadpulse/0.1 (ops@roadpulse.example)", validation_alias="USER_AGENT"
    )

    nws_alerts_url: str = Field(
        default="https://api.weather.gov/alerts/active",
        validation_alias="NWS_ALERTS_URL",
    )
    nws_zone_concurrency: int = Field(default=5, validation_alias="NWS_ZONE_CONCURRENCY")
    zone_cache_ttl_seconds: int = Field(
        default=86_400, validation_alias="ZONE_CACHE_TTL_SECONDS"
    )

    tpims_static_url: str | None = Field(default=None, validation_alias="TPIMS_STATIC_URL")
    tpims_dynamic_url: str | None = Field(
        default=None, validation_alias="TPIMS_DYNAMIC_URL"
    )

    ors_api_key: str | None = Field(
        default=None, validation_alias="OPENROUTESERVICE_API_KEY"
    )
    ors_base_url: str = Field(
        default="https://api.openrouteservice.org", validation_alias="ORS_BASE_URL"
    )
    nominatim_base_url: str = Field(
        default="https://nominatim.openstreetmap.org",
        validation_alias="NOMINATIM_BASE_URL",
    )
    route_cache_ttl_seconds: int = Field(
        default=300, validation_alias="ROUTE_CACHE_TTL_SECONDS"
    )
    geocode_cache_ttl_seconds: int = Field(
        default=3600, validation_alias="GEOCODE_CACHE_TTL_SECONDS"
    )

    cron_secret: str | None = Field(default=None, validation_alias="CRON_SECRET")

    feed_default_interval_minutes: int = Field(
        default=5, validation_alias="FEED_DEFAULT_INTERVAL_MINUTES"
    )
    feed_stale_after_minutes: int = Field(
        default=30, validation_alias="FEED_STALE_AFTER_MINUTES"
    )
    scheduler_autostart: bool = Field(default=True, validation_alias="SCHEDULER_AUTOSTART")
