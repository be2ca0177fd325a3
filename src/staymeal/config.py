from __future__ import annotations

from datetime import time, timedelta
from pathlib import Path
import tomllib
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

from staymeal.domain.models import MealWindow, MealWindows


class MealWindowConfig(BaseModel):
    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def validate_hhmm(cls, value: str) -> str:
        _parse_hhmm(value)
        return value

    @model_validator(mode="after")
    def validate_order(self) -> "MealWindowConfig":
        if self.start_obj > self.end_obj:
            raise ValueError(f"meal window start is after end: {self.start} > {self.end}")
        return self

    @property
    def start_obj(self) -> time:
        return _parse_hhmm(self.start)

    @property
    def end_obj(self) -> time:
        return _parse_hhmm(self.end)

    def to_window(self) -> MealWindow:
        return MealWindow(start=self.start_obj, end=self.end_obj)


class MealTimesConfig(BaseModel):
    breakfast: MealWindowConfig = Field(default_factory=lambda: MealWindowConfig(start="07:00", end="10:00"))
    lunch: MealWindowConfig = Field(default_factory=lambda: MealWindowConfig(start="12:00", end="14:00"))
    dinner: MealWindowConfig = Field(default_factory=lambda: MealWindowConfig(start="18:00", end="21:00"))


class StorageConfig(BaseModel):
    path: str = "data/stays.json"

    @field_validator("path")
    @classmethod
    def validate_path(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("storage path must not be empty")
        return value


class ArchiveConfig(BaseModel):
    interval_hours: int = 6

    @field_validator("interval_hours")
    @classmethod
    def validate_interval_hours(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("interval_hours must be greater than 0")
        return value

    @property
    def interval_obj(self) -> timedelta:
        return timedelta(hours=self.interval_hours)


class LoggingConfig(BaseModel):
    file_path: str = "logs/staymeal.log"
    max_size_mb: int = 20

    @field_validator("file_path")
    @classmethod
    def validate_file_path(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("log file path must not be empty")
        return value

    @field_validator("max_size_mb")
    @classmethod
    def validate_max_size_mb(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("log file size limit must be greater than 0")
        return value

    @property
    def max_size_bytes(self) -> int:
        return self.max_size_mb * 1024 * 1024


class RuntimeConfig(BaseModel):
    timezone: str = "UTC"
    meal_times: MealTimesConfig = Field(default_factory=MealTimesConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("timezone must not be empty")
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"invalid timezone: {value}") from exc
        return value

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def meal_windows(self) -> MealWindows:
        return MealWindows(
            breakfast=self.meal_times.breakfast.to_window(),
            lunch=self.meal_times.lunch.to_window(),
            dinner=self.meal_times.dinner.to_window(),
        )


class ConfigError(Exception):
    pass


def load_runtime_config(
    shared_path: str | Path = "config.shared.toml",
    local_path: str | Path = "config.local.toml",
) -> RuntimeConfig:
    shared_file = Path(shared_path)
    local_file = Path(local_path)

    if not shared_file.exists():
        raise ConfigError(f"shared config not found: {shared_file}")

    try:
        with shared_file.open("rb") as file:
            shared = tomllib.load(file)
        local: dict[str, Any] = {}
        if local_file.exists():
            with local_file.open("rb") as file:
                local = tomllib.load(file)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"malformed config file: {exc}") from exc

    merged = _deep_merge(shared, local)

    try:
        return RuntimeConfig.model_validate(merged)
    except Exception as exc:  # pydantic validation errors
        raise ConfigError(f"config validation failed: {exc}") from exc


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _parse_hhmm(value: str) -> time:
    parts = value.split(":")
    if len(parts) != 2:
        raise ValueError(f"invalid time format: {value}")

    hour = int(parts[0])
    minute = int(parts[1])
    if hour < 0 or hour > 23 or minute < 0 or minute > 59:
        raise ValueError(f"time out of range: {value}")
    return time(hour=hour, minute=minute)
