from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
import json
import os
from pathlib import Path
import threading
import time as mono_time
from typing import Any

from loguru import logger

from staymeal.domain.models import ALL_MEALS, Meal, MealPlan, parse_meals


class StayStatus(StrEnum):
    CREATED = "created"
    EXTENDED = "extended"
    REDUCED = "reduced"
    CANCELED = "canceled"
    ARCHIVED = "archived"


class StayConflictError(Exception):
    pass


class StayStoreError(Exception):
    pass


@dataclass(slots=True)
class StayRecord:
    stay_id: str
    arrival: datetime
    departure: datetime
    status: StayStatus = StayStatus.CREATED
    meals_included: bool = True
    enabled_meals: set[Meal] = field(default_factory=lambda: set(ALL_MEALS))
    meal_plan: MealPlan = field(default_factory=MealPlan.empty)
    version: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "stay_id": self.stay_id,
            "arrival": self.arrival.isoformat(),
            "departure": self.departure.isoformat(),
            "status": self.status.value,
            "meals_included": self.meals_included,
            "enabled_meals": sorted(meal.value for meal in self.enabled_meals),
            "meal_plan": self.meal_plan.to_dict(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StayRecord:
        return cls(
            stay_id=str(data["stay_id"]),
            arrival=datetime.fromisoformat(str(data["arrival"])),
            departure=datetime.fromisoformat(str(data["departure"])),
            status=_to_status(data.get("status")),
            meals_included=bool(data.get("meals_included", True)),
            enabled_meals=parse_meals(data.get("enabled_meals", [meal.value for meal in ALL_MEALS])),
            meal_plan=MealPlan.from_dict(data.get("meal_plan")),
            version=int(data.get("version") or 0),
        )


class JsonStayRepository:
    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    def get(self, stay_id: str) -> StayRecord | None:
        with self._lock:
            raw = self._load().get(stay_id)
        if raw is None:
            return None
        return StayRecord.from_dict(raw)

    def list_stays(self) -> list[StayRecord]:
        with self._lock:
            documents = self._load()
        return [StayRecord.from_dict(raw) for raw in documents.values()]

    def save(self, record: StayRecord, *, expected_version: int | None) -> StayRecord:
        started_at = mono_time.monotonic()
        with self._lock:
            documents = self._load()
            stored = documents.get(record.stay_id)

            if expected_version is None:
                if stored is not None:
                    raise StayConflictError(f"stay already exists: {record.stay_id}")
            else:
                stored_version = int(stored.get("version") or 0) if stored is not None else None
                if stored_version != expected_version:
                    raise StayConflictError(
                        f"stay {record.stay_id} changed concurrently: expected version {expected_version}, "
                        f"found {stored_version}"
                    )

            saved = replace(record, version=(expected_version or 0) + 1)
            documents[record.stay_id] = saved.to_dict()
            self._dump(documents)

        logger.debug(
            "stay.save: stay={} version={} days={} cost={}ms",
            saved.stay_id,
            saved.version,
            len(saved.meal_plan.days),
            int((mono_time.monotonic() - started_at) * 1000),
        )
        return saved

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self._path.exists():
            return {}
        try:
            with self._path.open("r", encoding="utf-8") as file:
                payload = json.load(file)
        except json.JSONDecodeError as exc:
            raise StayStoreError(f"stay store is not valid JSON: {self._path}: {exc}") from exc
        stays = payload.get("stays") if isinstance(payload, dict) else None
        if not isinstance(stays, dict):
            logger.warning("stay store has no stays mapping, treating as empty: {}", self._path)
            return {}
        return stays

    def _dump(self, documents: dict[str, dict[str, Any]]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._path.with_name(f"{self._path.name}.tmp")
        with temp_path.open("w", encoding="utf-8") as file:
            json.dump({"stays": documents}, file, ensure_ascii=False, indent=2)
        os.replace(temp_path, self._path)


def _to_status(value: object) -> StayStatus:
    if isinstance(value, str):
        try:
            return StayStatus(value)
        except ValueError:
            logger.warning("unknown stay status {}, defaulting to created", value)
    return StayStatus.CREATED
