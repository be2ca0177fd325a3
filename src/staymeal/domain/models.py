from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, tzinfo
from enum import StrEnum
from typing import Any, Iterable

from .errors import InvalidIntervalError, InvalidPlanError, InvalidWindowError


class Meal(StrEnum):
    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"


ALL_MEALS: frozenset[Meal] = frozenset(Meal)


@dataclass(slots=True, frozen=True)
class MealWindow:
    start: time
    end: time

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise InvalidWindowError(
                f"meal window start {self.start.strftime('%H:%M')} is after end {self.end.strftime('%H:%M')}"
            )


@dataclass(slots=True, frozen=True)
class MealWindows:
    breakfast: MealWindow
    lunch: MealWindow
    dinner: MealWindow

    def window_for(self, meal: Meal) -> MealWindow:
        if meal == Meal.BREAKFAST:
            return self.breakfast
        if meal == Meal.LUNCH:
            return self.lunch
        return self.dinner


@dataclass(slots=True, frozen=True)
class StayInterval:
    arrival: datetime
    departure: datetime

    def __post_init__(self) -> None:
        # mixed naive/aware pairs are checked once localized
        if (self.arrival.tzinfo is None) != (self.departure.tzinfo is None):
            return
        if self.departure < self.arrival:
            raise InvalidIntervalError(
                f"departure {self.departure.isoformat()} precedes arrival {self.arrival.isoformat()}"
            )

    def localized(self, tz: tzinfo) -> StayInterval:
        return StayInterval(arrival=to_instant(self.arrival, tz), departure=to_instant(self.departure, tz))


@dataclass(slots=True, frozen=True)
class DayEntitlement:
    day: date
    breakfast: int = 0
    lunch: int = 0
    dinner: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            "breakfast": self.breakfast,
            "lunch": self.lunch,
            "dinner": self.dinner,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DayEntitlement:
        day = date.fromisoformat(str(data["date"]))
        values = {meal.value: int(data.get(meal.value) or 0) for meal in Meal}
        for name, value in values.items():
            if value not in (0, 1):
                raise InvalidPlanError(f"stored {name} for {day.isoformat()} must be 0 or 1, got {value}")
        return cls(day=day, **values)


@dataclass(slots=True, frozen=True)
class MealTotals:
    breakfast: int = 0
    lunch: int = 0
    dinner: int = 0

    @classmethod
    def sum_of(cls, days: Iterable[DayEntitlement]) -> MealTotals:
        breakfast = lunch = dinner = 0
        for entry in days:
            breakfast += entry.breakfast
            lunch += entry.lunch
            dinner += entry.dinner
        return cls(breakfast=breakfast, lunch=lunch, dinner=dinner)


@dataclass(slots=True, frozen=True)
class MealPlan:
    days: tuple[DayEntitlement, ...]
    totals: MealTotals

    @classmethod
    def empty(cls) -> MealPlan:
        return cls(days=(), totals=MealTotals())

    @classmethod
    def from_days(cls, days: Iterable[DayEntitlement]) -> MealPlan:
        ordered = tuple(days)
        return cls(days=ordered, totals=MealTotals.sum_of(ordered))

    def day(self, target: date) -> DayEntitlement | None:
        for entry in self.days:
            if entry.day == target:
                return entry
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "breakfast": self.totals.breakfast,
            "lunch": self.totals.lunch,
            "dinner": self.totals.dinner,
            "daily_meals": [entry.to_dict() for entry in self.days],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> MealPlan:
        if not data:
            return cls.empty()
        days = sorted(
            (DayEntitlement.from_dict(item) for item in data.get("daily_meals") or []),
            key=lambda entry: entry.day,
        )
        for previous, current in zip(days, days[1:]):
            if previous.day == current.day:
                raise InvalidPlanError(f"stored plan lists {current.day.isoformat()} more than once")
        return cls.from_days(days)


def to_instant(value: datetime | int | float, tz: tzinfo) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=tz)
        return value.astimezone(tz)
    return datetime.fromtimestamp(value, tz)


def parse_meal(value: object) -> Meal | None:
    if isinstance(value, Meal):
        return value
    if not isinstance(value, str):
        return None
    try:
        return Meal(value.strip().lower())
    except ValueError:
        return None


def parse_meals(raw_values: object) -> set[Meal]:
    if not isinstance(raw_values, (list, tuple, set, frozenset)):
        return set()

    meals: set[Meal] = set()
    for value in raw_values:
        meal = parse_meal(value)
        if meal is not None:
            meals.add(meal)
    return meals
