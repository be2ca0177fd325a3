"""Per-day meal entitlements for a stay.

The arrival day grants a meal when the guest arrives no later than the end of
that meal's window; the window start is not checked. Every later day, the
departure day included, grants all enabled meals without looking at the
departure time.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime, timedelta, timezone, tzinfo

from .errors import InvalidWindowError
from .models import ALL_MEALS, DayEntitlement, Meal, MealPlan, MealTotals, MealWindows, StayInterval


class MealEntitlementCalculator:
    def __init__(self, tz: tzinfo = timezone.utc) -> None:
        self._tz = tz

    def compute(
        self,
        stay: StayInterval,
        windows: MealWindows,
        *,
        enabled: Iterable[Meal] | None = None,
    ) -> MealPlan:
        _validate_windows(windows)
        # raises InvalidIntervalError once both instants share the zone
        localized = stay.localized(self._tz)

        enabled_meals = ALL_MEALS if enabled is None else frozenset(enabled)
        arrival_day = localized.arrival.date()
        departure_day = localized.departure.date()

        days: list[DayEntitlement] = []
        breakfast = lunch = dinner = 0
        current_day = arrival_day
        while current_day <= departure_day:
            values = {
                meal.value: self._granted(
                    meal,
                    current_day=current_day,
                    arrival=localized.arrival,
                    arrival_day=arrival_day,
                    windows=windows,
                    enabled=enabled_meals,
                )
                for meal in Meal
            }
            entry = DayEntitlement(day=current_day, **values)
            days.append(entry)
            breakfast += entry.breakfast
            lunch += entry.lunch
            dinner += entry.dinner
            current_day += timedelta(days=1)

        return MealPlan(days=tuple(days), totals=MealTotals(breakfast=breakfast, lunch=lunch, dinner=dinner))

    def _granted(
        self,
        meal: Meal,
        *,
        current_day: date,
        arrival: datetime,
        arrival_day: date,
        windows: MealWindows,
        enabled: frozenset[Meal],
    ) -> int:
        if meal not in enabled:
            return 0
        if current_day != arrival_day:
            return 1
        window_end = datetime.combine(current_day, windows.window_for(meal).end, tzinfo=self._tz)
        return 1 if arrival <= window_end else 0


def compute_entitlements(
    stay: StayInterval,
    windows: MealWindows,
    *,
    tz: tzinfo = timezone.utc,
    enabled: Iterable[Meal] | None = None,
) -> MealPlan:
    return MealEntitlementCalculator(tz).compute(stay, windows, enabled=enabled)


def _validate_windows(windows: MealWindows) -> None:
    for meal in Meal:
        window = windows.window_for(meal)
        if window.start > window.end:
            raise InvalidWindowError(f"{meal.value} window start is after its end")
