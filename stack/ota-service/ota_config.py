"""
Service configuration and logging setup.

Environment variables:
    PGHOST, PGPORT, PGUSER, PGPASSWORD, PGDATABASE
    FIRMWARE_STORAGE_PATH (default: /firmware)
    API_KEY (optional: for admin endpoints)
    HOST, PORT (default: 0.0.0.0:8080)
    STATS_TIMEZONE (default: UTC) - IANA zone deciding daily stats boundaries
    STRICT_STATUS_CODES (default: true) - reject status codes missing from
        the device configuration instead of guessing from the status text
    STORAGE_RETRY_ATTEMPTS, STORAGE_RETRY_BASE_DELAY
    MQTT_HOST, MQTT_PORT, MQTT_TOPIC_PATTERN
    LOG_LEVEL (default: INFO)
"""

import logging
import sys
from datetime import tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Database
    pghost: str = "postgres"
    pgport: int = 5432
    pguser: str
    pgpassword: str
    pgdatabase: str

    # Storage
    firmware_storage_path: str = "/firmware"

    # API Security
    api_key: Optional[str] = None

    # Server
    port: int = 8080
    host: str = "0.0.0.0"
    log_level: str = "INFO"

    # Aggregation
    stats_timezone: str = "UTC"
    strict_status_codes: bool = True
    storage_retry_attempts: int = Field(5, ge=1, le=20)
    storage_retry_base_delay: float = Field(0.05, ge=0)

    # MQTT ingest
    mqtt_host: str = "mosquitto"
    mqtt_port: int = 1883
    mqtt_topic_pattern: str = "+/ota/+/report"

    @field_validator("stats_timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {value}")
        return value

    @property
    def tz(self) -> tzinfo:
        return ZoneInfo(self.stats_timezone)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stdout,
    )
