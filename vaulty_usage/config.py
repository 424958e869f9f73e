"""Runtime settings read from ``VAULTY_USAGE_*`` environment variables."""

from __future__ import annotations

import datetime as dt
import shlex
from pathlib import Path
from typing import Annotated, Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "vaulty-usage" / "usage.db"

ENV_PREFIX = "VAULTY_USAGE_"


class Settings(BaseSettings):
    """Keyword arguments win over environment variables."""

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX)

    db_path: Path = DEFAULT_DB_PATH
    backend: Literal["sqlite", "memory"] = "sqlite"
    timezone: str | None = None
    raw_retention_days: int = 30
    aggregate_retention_days: int = 90
    tombstone_grace_days: int = 30
    initial_lookback_ms: int = 86_400_000
    include_icons: bool = False
    live_min_session_ms: int = 500
    # A shell-style command line, not JSON
    provider_command: Annotated[list[str] | None, NoDecode] = None
    provider_timeout: int = 60
    aggregation_workers: int = 2

    @field_validator("provider_command", mode="before")
    @classmethod
    def _split_command(cls, value: Any) -> Any:
        if isinstance(value, str):
            return shlex.split(value) or None
        return value

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str | None) -> str | None:
        if value is None or value.upper() == "UTC":
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown time zone {value!r}") from e
        return value

    @property
    def tzinfo(self) -> dt.tzinfo | None:
        """Configured zone, or None for the system zone."""
        if self.timezone is None:
            return None
        if self.timezone.upper() == "UTC":
            return dt.timezone.utc
        return ZoneInfo(self.timezone)
