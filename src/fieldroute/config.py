"""Application configuration and settings management."""

from datetime import time
from pathlib import Path
from typing import Any, Literal, Optional

import json
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables or defaults."""

    model_config = SettingsConfigDict(
        env_prefix="DISPATCH_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    app_name: str = "Technician Dispatch API"
    api_prefix: str = "/api"
    log_level: str = Field(default="INFO", description="Root log level for the service.")
    data_root: Path = Field(default=Path("data"), description="Root directory for archived board snapshots.")
    osrm_base_url: Optional[str] = Field(
        default=None,
        description="Base URL for an OSRM distance-matrix service (e.g., http://localhost:5000).",
    )
    osrm_profile: Literal["driving", "driving-hgv"] = Field(
        default="driving",
        description="OSRM profile to use when computing travel times.",
    )
    osrm_max_retries: int = Field(default=3, ge=0)
    osrm_backoff_seconds: float = Field(default=1.0, ge=0.0)
    osrm_timeout_seconds: float = Field(default=30.0, gt=0.0)
    average_speed_kmh: float = Field(
        default=40.0,
        gt=0.0,
        description="Average travel speed used by the straight-line cost model.",
    )
    detour_factor: float = Field(
        default=1.3,
        ge=1.0,
        description="Multiplier applied to straight-line distance to approximate road distance.",
    )
    shift_start: time = Field(default=time(8, 0), description="Default route start time.")
    shift_length_minutes: int = Field(default=480, ge=1)
    optimize_timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0.0,
        description="Default timeout for optimization calls when the caller gives none.",
    )
    optimize_max_workers: int = Field(default=4, ge=1)
    frontend_allowed_origins: tuple[str, ...] = Field(
        default=(
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ),
        description="Permitted web origins for browser clients (CORS).",
    )

    @field_validator("data_root", mode="before")
    @classmethod
    def _expand_path(cls, value: Any) -> Path:
        path_value = value if isinstance(value, Path) else Path(str(value))
        return path_value.expanduser().resolve()

    @field_validator("shift_start", mode="before")
    @classmethod
    def _parse_shift_start(cls, value: Any) -> Any:
        """Accept ``HH:MM`` strings as well as ``time`` objects."""
        if isinstance(value, str) and value.count(":") == 1:
            hours, minutes = value.split(":")
            return time(int(hours), int(minutes))
        return value

    @field_validator("frontend_allowed_origins", mode="before")
    @classmethod
    def _parse_str_tuple_from_env(cls, value: Any) -> tuple[str, ...]:
        """Parse string tuple from environment variable (comma-separated or JSON array)."""
        if isinstance(value, tuple):
            return value
        if isinstance(value, list):
            return tuple(str(item) for item in value)
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
                if isinstance(parsed, list):
                    return tuple(str(item) for item in parsed)
            except (json.JSONDecodeError, TypeError):
                pass
            if "," in value:
                return tuple(item.strip() for item in value.split(",") if item.strip())
            if value.strip():
                return (value.strip(),)
        return tuple()


settings = Settings()
