from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, ValidationError, field_validator

MODULE_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_DB_PATH = MODULE_ROOT / "data" / "swiss_job_alert.sqlite"
SQLITE_URL_PREFIX = "sqlite:///"

RUN_REQUIRED_ENVS = (
    "TELEGRAM_BOT_TOKEN",
    "SERPAPI_API_KEY",
)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class Settings(BaseModel):
    telegram_bot_token: str = ""
    serpapi_api_key: str = ""
    apify_api_token: str = ""
    database_path: Path = Field(default=DEFAULT_DB_PATH)
    scheduler_enabled: bool = True
    scheduler_cron: str = "0 */2 * * *"
    cleanup_cron: str = "0 2 * * *"
    tz: str = "Europe/Zurich"
    port: int = Field(default=3000, ge=1, le=65535)
    admin_api_token: str = ""
    request_timeout_seconds: float = Field(default=20.0, gt=0.0)
    message_delay_seconds: float = Field(default=0.5, ge=0.0)
    user_delay_seconds: float = Field(default=1.0, ge=0.0)
    run_timeout_seconds: float = Field(default=1800.0, gt=0.0)
    retention_days: int = Field(default=90, ge=0)
    record_on_dispatch_failure: bool = True
    log_level: str = "INFO"

    @field_validator("scheduler_cron", "cleanup_cron")
    @classmethod
    def _validate_cron(cls, value: str) -> str:
        fields = value.split()
        if len(fields) != 5:
            raise ValueError(f"cron expression must have 5 fields: {value!r}")
        return " ".join(fields)

    @field_validator("tz")
    @classmethod
    def _validate_tz(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone: {value!r}") from exc
        return value

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return value.upper()


def _env_value(environ: Mapping[str, str], key: str) -> str:
    return environ.get(key, "").strip()


def parse_bool(value: str, default: bool) -> bool:
    lowered = value.strip().casefold()
    if not lowered:
        return default
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"invalid boolean value: {value!r}")


def parse_database_url(value: str) -> Path:
    if not value:
        return DEFAULT_DB_PATH
    if value.startswith(SQLITE_URL_PREFIX):
        return Path(value.removeprefix(SQLITE_URL_PREFIX))
    if "://" in value:
        raise ValueError("DATABASE_URL must be a sqlite:/// URL or a file path")
    return Path(value)


def missing_envs(required: Sequence[str], environ: Mapping[str, str] | None = None) -> list[str]:
    source = os.environ if environ is None else environ
    return [key for key in required if not _env_value(source, key)]


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    source = os.environ if environ is None else environ
    try:
        payload = {
            "telegram_bot_token": _env_value(source, "TELEGRAM_BOT_TOKEN"),
            "serpapi_api_key": _env_value(source, "SERPAPI_API_KEY"),
            "apify_api_token": _env_value(source, "APIFY_API_TOKEN"),
            "database_path": parse_database_url(_env_value(source, "DATABASE_URL")),
            "scheduler_enabled": parse_bool(_env_value(source, "SCHEDULER_ENABLED"), True),
            "scheduler_cron": _env_value(source, "SCHEDULER_CRON") or "0 */2 * * *",
            "cleanup_cron": _env_value(source, "CLEANUP_CRON") or "0 2 * * *",
            "tz": _env_value(source, "TZ") or "Europe/Zurich",
            "port": int(_env_value(source, "PORT") or "3000"),
            "admin_api_token": _env_value(source, "ADMIN_API_TOKEN"),
            "request_timeout_seconds": float(_env_value(source, "REQUEST_TIMEOUT_SECONDS") or "20"),
            "message_delay_seconds": float(_env_value(source, "MESSAGE_DELAY_SECONDS") or "0.5"),
            "user_delay_seconds": float(_env_value(source, "USER_DELAY_SECONDS") or "1"),
            "run_timeout_seconds": float(_env_value(source, "RUN_TIMEOUT_SECONDS") or "1800"),
            "retention_days": int(_env_value(source, "RETENTION_DAYS") or "90"),
            "record_on_dispatch_failure": parse_bool(
                _env_value(source, "RECORD_ON_DISPATCH_FAILURE"), True
            ),
            "log_level": _env_value(source, "LOG_LEVEL") or "INFO",
        }
        return Settings(**payload)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc


def assert_required_envs(required: Sequence[str], environ: Mapping[str, str] | None = None) -> None:
    missing = missing_envs(required, environ)
    if missing:
        keys = ", ".join(missing)
        raise ValueError(f"Missing required environment variables: {keys}")


def mask_secret(value: str, visible_prefix: int = 3, visible_suffix: int = 2) -> str:
    if not value:
        return ""
    if len(value) <= visible_prefix + visible_suffix:
        return "*" * len(value)
    hidden = "*" * (len(value) - visible_prefix - visible_suffix)
    return f"{value[:visible_prefix]}{hidden}{value[-visible_suffix:]}"
