from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import date, datetime
import threading
from typing import Callable

from loguru import logger

from staymeal.config import RuntimeConfig
from staymeal.domain.calculator import MealEntitlementCalculator
from staymeal.domain.merger import DailyMealAdjustment, apply_daily_adjustments, count_meals, extend_plan
from staymeal.domain.models import ALL_MEALS, Meal, MealTotals, StayInterval, to_instant
from staymeal.services.repositories import JsonStayRepository, StayRecord, StayStatus


class StayNotFoundError(LookupError):
    pass


class StayStateError(Exception):
    pass


_CLOSED_STATUSES = frozenset({StayStatus.CANCELED, StayStatus.ARCHIVED})


@dataclass(slots=True)
class _StayLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class StayService:
    def __init__(
        self,
        *,
        config: RuntimeConfig,
        repository: JsonStayRepository,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._repository = repository
        self._timezone = config.tzinfo
        self._windows = config.meal_windows()
        self._calculator = MealEntitlementCalculator(self._timezone)
        self._now_provider = now_provider
        self._locks: dict[str, _StayLock] = {}
        self._locks_guard = threading.Lock()

    def create_stay(
        self,
        stay_id: str,
        arrival: datetime,
        departure: datetime,
        *,
        meals_included: bool = True,
        enabled_meals: Iterable[Meal] | None = None,
    ) -> StayRecord:
        enabled = set(ALL_MEALS if enabled_meals is None else enabled_meals)
        stay = StayInterval(arrival=to_instant(arrival, self._timezone), departure=to_instant(departure, self._timezone))

        with self._stay_lock(stay_id):
            plan = self._calculator.compute(stay, self._windows, enabled=enabled if meals_included else ())
            record = StayRecord(
                stay_id=stay_id,
                arrival=stay.arrival,
                departure=stay.departure,
                meals_included=meals_included,
                enabled_meals=enabled,
                meal_plan=plan,
            )
            saved = self._repository.save(record, expected_version=None)

        logger.info(
            "stay created: stay={} arrival={} departure={} totals={}",
            stay_id,
            stay.arrival.isoformat(),
            stay.departure.isoformat(),
            _format_totals(saved.meal_plan.totals),
        )
        return saved

    def extend_stay(self, stay_id: str, new_departure: datetime) -> StayRecord:
        departure = to_instant(new_departure, self._timezone)

        with self._stay_lock(stay_id):
            record = self._load(stay_id)
            if record.status in _CLOSED_STATUSES:
                raise StayStateError(f"stay {stay_id} is {record.status.value}, dates cannot change")

            new_stay = StayInterval(arrival=record.arrival, departure=departure)
            plan = extend_plan(
                record.meal_plan,
                new_stay,
                self._windows,
                tz=self._timezone,
                enabled=self._effective_meals(record),
            )
            status = StayStatus.REDUCED if departure < record.departure else StayStatus.EXTENDED
            saved = self._repository.save(
                replace(record, departure=departure, status=status, meal_plan=plan),
                expected_version=record.version,
            )

        logger.info(
            "stay {}: stay={} departure {} -> {} days={} totals={}",
            status.value,
            stay_id,
            record.departure.isoformat(),
            departure.isoformat(),
            len(plan.days),
            _format_totals(plan.totals),
        )
        return saved

    def adjust_daily_meals(self, stay_id: str, adjustments: Iterable[DailyMealAdjustment]) -> StayRecord:
        pending = list(adjustments)
        with self._stay_lock(stay_id):
            record = self._load(stay_id)
            if record.status in _CLOSED_STATUSES:
                raise StayStateError(f"stay {stay_id} is {record.status.value}, meals cannot change")

            plan = apply_daily_adjustments(record.meal_plan, pending)
            saved = self._repository.save(replace(record, meal_plan=plan), expected_version=record.version)

        logger.info(
            "stay meals adjusted: stay={} dates={} totals={}",
            stay_id,
            ",".join(item.day.isoformat() for item in pending),
            _format_totals(plan.totals),
        )
        return saved

    def cancel_stay(self, stay_id: str) -> StayRecord:
        with self._stay_lock(stay_id):
            record = self._load(stay_id)
            if record.status == StayStatus.CANCELED:
                return record
            if record.status == StayStatus.ARCHIVED:
                raise StayStateError(f"stay {stay_id} is archived and cannot be canceled")
            saved = self._repository.save(
                replace(record, status=StayStatus.CANCELED),
                expected_version=record.version,
            )

        logger.info("stay canceled: stay={}", stay_id)
        return saved

    def archive_departed(self, now: datetime | None = None) -> list[str]:
        current = to_instant(now, self._timezone) if now is not None else self._now()
        archived: list[str] = []
        for candidate in self._repository.list_stays():
            if candidate.status in _CLOSED_STATUSES or candidate.departure >= current:
                continue
            with self._stay_lock(candidate.stay_id):
                record = self._load(candidate.stay_id)
                if record.status in _CLOSED_STATUSES or record.departure >= current:
                    continue
                self._repository.save(replace(record, status=StayStatus.ARCHIVED), expected_version=record.version)
            archived.append(record.stay_id)

        if archived:
            logger.info("stays archived: count={} ids={}", len(archived), ",".join(archived))
        else:
            logger.debug("no departed stays to archive: now={}", current.isoformat())
        return archived

    def get_stay(self, stay_id: str) -> StayRecord:
        return self._load(stay_id)

    def meal_counts(self, stay_id: str, start: date | None = None, end: date | None = None) -> MealTotals:
        record = self._load(stay_id)
        return count_meals(record.meal_plan, start, end)

    def _load(self, stay_id: str) -> StayRecord:
        record = self._repository.get(stay_id)
        if record is None:
            raise StayNotFoundError(f"stay not found: {stay_id}")
        return record

    def _effective_meals(self, record: StayRecord) -> set[Meal]:
        return set(record.enabled_meals) if record.meals_included else set()

    @contextmanager
    def _stay_lock(self, stay_id: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._locks.get(stay_id)
            if entry is None:
                entry = _StayLock()
                self._locks[stay_id] = entry
            entry.users += 1

        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                # nobody holds or waits for it any more
                if entry.users == 0:
                    del self._locks[stay_id]

    def _now(self) -> datetime:
        if self._now_provider is not None:
            return to_instant(self._now_provider(), self._timezone)
        return datetime.now(self._timezone)


def _format_totals(totals: MealTotals) -> str:
    return f"breakfast={totals.breakfast} lunch={totals.lunch} dinner={totals.dinner}"
