from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, timezone, tzinfo

from .calculator import compute_entitlements
from .errors import InvalidAdjustmentError
from .models import DayEntitlement, Meal, MealPlan, MealTotals, MealWindows, StayInterval, to_instant


@dataclass(slots=True, frozen=True)
class DailyMealAdjustment:
    day: date
    breakfast: int | None = None
    lunch: int | None = None
    dinner: int | None = None

    def value_of(self, meal: Meal) -> int | None:
        return getattr(self, meal.value)


def extend_plan(
    existing: MealPlan,
    new_stay: StayInterval,
    windows: MealWindows,
    *,
    tz: tzinfo = timezone.utc,
    enabled: Iterable[Meal] | None = None,
) -> MealPlan:
    recomputed = compute_entitlements(new_stay, windows, tz=tz, enabled=enabled)
    new_departure_day = to_instant(new_stay.departure, tz).date()

    # days already recorded are kept as stored, never recomputed
    retained = [entry for entry in existing.days if entry.day <= new_departure_day]
    known_days = {entry.day for entry in retained}
    for entry in recomputed.days:
        if entry.day not in known_days:
            retained.append(entry)
            known_days.add(entry.day)

    retained.sort(key=lambda entry: entry.day)
    return MealPlan.from_days(retained)


def apply_daily_adjustments(plan: MealPlan, adjustments: Iterable[DailyMealAdjustment]) -> MealPlan:
    pending = list(adjustments)
    for adjustment in pending:
        for meal in Meal:
            value = adjustment.value_of(meal)
            if value is not None and value not in (0, 1):
                raise InvalidAdjustmentError(
                    f"{meal.value} on {adjustment.day.isoformat()} must be 0 or 1, got {value}"
                )

    by_day: dict[date, DayEntitlement] = {entry.day: entry for entry in plan.days}
    for adjustment in pending:
        current = by_day.get(adjustment.day) or DayEntitlement(day=adjustment.day)
        by_day[adjustment.day] = DayEntitlement(
            day=adjustment.day,
            breakfast=_pick(adjustment.breakfast, current.breakfast),
            lunch=_pick(adjustment.lunch, current.lunch),
            dinner=_pick(adjustment.dinner, current.dinner),
        )

    return MealPlan.from_days(sorted(by_day.values(), key=lambda entry: entry.day))


def count_meals(plan: MealPlan, start: date | None = None, end: date | None = None) -> MealTotals:
    return MealTotals.sum_of(
        entry
        for entry in plan.days
        if (start is None or entry.day >= start) and (end is None or entry.day <= end)
    )


def _pick(override: int | None, current: int) -> int:
    return current if override is None else override
