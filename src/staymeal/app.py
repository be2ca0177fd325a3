from __future__ import annotations

from datetime import date, datetime
from enum import StrEnum
from pathlib import Path
import sys
import threading
from typing import Callable, TypeVar
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
import typer
from loguru import logger

from staymeal.config import ConfigError, RuntimeConfig, load_runtime_config
from staymeal.domain.calculator import MealEntitlementCalculator
from staymeal.domain.errors import MealPlanError
from staymeal.domain.merger import DailyMealAdjustment
from staymeal.domain.models import Meal, MealPlan, StayInterval, to_instant
from staymeal.services.repositories import JsonStayRepository, StayConflictError, StayRecord, StayStoreError
from staymeal.services.stays import StayNotFoundError, StayService, StayStateError


ARCHIVE_JOB_ID = "archive_departed_stays"

T = TypeVar("T")


class LogLevelOption(StrEnum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class StayMealApplication:
    def __init__(
        self,
        *,
        now_provider: Callable[[], datetime] | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self._config: RuntimeConfig | None = None
        self._stays: StayService | None = None
        self._scheduler: BackgroundScheduler | None = None
        self._now_provider = now_provider
        self._stop_event = stop_event or threading.Event()

    @property
    def stays(self) -> StayService:
        if self._stays is None:
            raise RuntimeError("application is not bootstrapped")
        return self._stays

    def bootstrap(self, runtime_config: RuntimeConfig | None = None) -> None:
        self._config = runtime_config or load_runtime_config()
        repository = JsonStayRepository(self._config.storage.path)
        self._stays = StayService(
            config=self._config,
            repository=repository,
            now_provider=self._now_provider,
        )
        logger.info(
            "configuration loaded: timezone={} storage={}",
            self._config.timezone,
            self._config.storage.path,
        )

    def preview(self, arrival: datetime, departure: datetime) -> MealPlan:
        if self._config is None:
            raise RuntimeError("application is not bootstrapped")
        calculator = MealEntitlementCalculator(self._config.tzinfo)
        return calculator.compute(StayInterval(arrival=arrival, departure=departure), self._config.meal_windows())

    def archive_once(self, now: datetime | None = None) -> list[str]:
        return self.stays.archive_departed(now)

    def run(self) -> None:
        if self._config is None or self._stays is None:
            raise RuntimeError("application is not bootstrapped")

        self._start_scheduler()
        try:
            while not self._stop_event.wait(timeout=1.0):
                pass
        except KeyboardInterrupt:
            logger.info("interrupted, shutting down")
        finally:
            self._shutdown_scheduler()

    def stop(self) -> None:
        self._stop_event.set()

    def _start_scheduler(self) -> None:
        if self._config is None:
            raise RuntimeError("application is not bootstrapped")

        if self._scheduler is not None:
            return

        scheduler = BackgroundScheduler(timezone=ZoneInfo(self._config.timezone))
        scheduler.add_job(
            self._run_scheduled_archive,
            trigger="interval",
            hours=self._config.archive.interval_hours,
            id=ARCHIVE_JOB_ID,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("archive job started: every {}h", self._config.archive.interval_hours)

    def _shutdown_scheduler(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("archive job stopped")

    def _run_scheduled_archive(self) -> None:
        try:
            self.archive_once()
        except Exception:
            logger.exception("scheduled archive failed")


def configure_logging(
    *,
    level: LogLevelOption | str = LogLevelOption.INFO,
    file_path: str | None = None,
    file_max_size_bytes: int | None = None,
) -> None:
    resolved_level = level.value.upper() if isinstance(level, LogLevelOption) else str(level).upper()
    logger.remove()
    common_options = {
        "level": resolved_level,
        "format": "{time:YYYY-MM-DD HH:mm:ss.SSS} {level} [{name}] {message}",
    }
    logger.add(
        sys.__stderr__,
        **common_options,
    )
    if file_path:
        target = Path(file_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        file_options = dict(common_options)
        file_options["encoding"] = "utf-8"
        if file_max_size_bytes is not None and file_max_size_bytes > 0:
            file_options["rotation"] = file_max_size_bytes
        logger.add(str(target), **file_options)


def _parse_cli_date(raw_value: str | None, option_name: str) -> date | None:
    if raw_value is None:
        return None
    try:
        return datetime.strptime(raw_value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise typer.BadParameter(f"{option_name} must be YYYY-MM-DD") from exc


def _parse_cli_datetime(raw_value: str | None, option_name: str) -> datetime | None:
    if raw_value is None:
        return None
    for pattern in ("%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M"):
        try:
            return datetime.strptime(raw_value, pattern)
        except ValueError:
            continue
    raise typer.BadParameter(f"{option_name} must be YYYY-MM-DDTHH:MM[:SS]")


def _require_cli_datetime(raw_value: str, option_name: str, timezone: str) -> datetime:
    parsed = _parse_cli_datetime(raw_value, option_name)
    if parsed is None:
        raise typer.BadParameter(f"{option_name} is required")
    return to_instant(parsed, ZoneInfo(timezone))


def _parse_cli_flag(raw_value: int | None, option_name: str) -> int | None:
    if raw_value is None:
        return None
    if raw_value not in (0, 1):
        raise typer.BadParameter(f"{option_name} must be 0 or 1")
    return raw_value


def _format_plan(plan: MealPlan) -> list[str]:
    lines = ["date        breakfast lunch dinner"]
    for entry in plan.days:
        lines.append(f"{entry.day.isoformat()}  {entry.breakfast:>9} {entry.lunch:>5} {entry.dinner:>6}")
    totals = plan.totals
    lines.append(f"total       {totals.breakfast:>9} {totals.lunch:>5} {totals.dinner:>6}")
    return lines


def _format_stay(record: StayRecord) -> list[str]:
    meals = ",".join(meal.value for meal in Meal if meal in record.enabled_meals) or "-"
    header = (
        f"stay {record.stay_id} [{record.status.value}] "
        f"{record.arrival.isoformat()} -> {record.departure.isoformat()} "
        f"meals={'included' if record.meals_included else 'excluded'}({meals}) version={record.version}"
    )
    return [header, *_format_plan(record.meal_plan)]


def _echo_lines(lines: list[str]) -> None:
    for line in lines:
        typer.echo(line)


def _load_runtime_config_or_exit() -> RuntimeConfig:
    try:
        return load_runtime_config()
    except ConfigError as exc:
        logger.error(str(exc))
        raise typer.Exit(code=1) from exc


def _bootstrap_application(
    *,
    runtime_config: RuntimeConfig | None = None,
) -> StayMealApplication:
    app = StayMealApplication()
    try:
        app.bootstrap(runtime_config=runtime_config)
    except ConfigError as exc:
        logger.error(str(exc))
        raise typer.Exit(code=1) from exc
    return app


def _run_stay_operation(operation: Callable[[], T]) -> T:
    try:
        return operation()
    except (MealPlanError, StayNotFoundError, StayStateError, StayConflictError, StayStoreError) as exc:
        logger.error(str(exc))
        raise typer.Exit(code=1) from exc


cli = typer.Typer(
    help="Stay meal entitlement CLI",
    no_args_is_help=True,
    add_completion=False,
)
stay_cli = typer.Typer(help="Create and change stays", no_args_is_help=True)
cli.add_typer(stay_cli, name="stay")


@cli.callback()
def root_callback() -> None:
    configure_logging(level=LogLevelOption.INFO)


@cli.command("check", help="Validate configuration and meal windows without touching stored stays.")
def check_command() -> None:
    runtime_config = _load_runtime_config_or_exit()
    windows = runtime_config.meal_windows()
    for meal in Meal:
        window = windows.window_for(meal)
        logger.info("{} window: {}-{}", meal.value, window.start.strftime("%H:%M"), window.end.strftime("%H:%M"))
    logger.info("configuration ok")


@cli.command("run", help="Run the periodic archiving service for departed stays.")
def run_command(
    log_level: LogLevelOption = typer.Option(
        LogLevelOption.INFO,
        "--log-level",
        case_sensitive=False,
        help="Log level for console and file sinks, default info.",
    ),
) -> None:
    runtime_config = _load_runtime_config_or_exit()
    configure_logging(
        level=log_level,
        file_path=runtime_config.logging.file_path,
        file_max_size_bytes=runtime_config.logging.max_size_bytes,
    )
    app = _bootstrap_application(runtime_config=runtime_config)
    app.run()


@cli.command("preview", help="Compute a meal plan for a stay without storing it.")
def preview_command(
    arrival: str = typer.Option(..., "--arrival", help="Arrival, YYYY-MM-DDTHH:MM[:SS]."),
    departure: str = typer.Option(..., "--departure", help="Departure, YYYY-MM-DDTHH:MM[:SS]."),
) -> None:
    runtime_config = _load_runtime_config_or_exit()
    arrival_at = _require_cli_datetime(arrival, "--arrival", runtime_config.timezone)
    departure_at = _require_cli_datetime(departure, "--departure", runtime_config.timezone)
    app = _bootstrap_application(runtime_config=runtime_config)
    try:
        plan = app.preview(arrival_at, departure_at)
    except MealPlanError as exc:
        logger.error(str(exc))
        raise typer.Exit(code=1) from exc
    _echo_lines(_format_plan(plan))


@cli.command("archive", help="Archive every stay whose departure has passed, once.")
def archive_command() -> None:
    app = _bootstrap_application()
    archived = _run_stay_operation(app.archive_once)
    typer.echo(f"archived: {len(archived)}")


@stay_cli.command("create", help="Record a stay and compute its initial meal plan.")
def stay_create_command(
    stay_id: str = typer.Option(..., "--id", help="Stay identifier."),
    arrival: str = typer.Option(..., "--arrival", help="Arrival, YYYY-MM-DDTHH:MM[:SS]."),
    departure: str = typer.Option(..., "--departure", help="Departure, YYYY-MM-DDTHH:MM[:SS]."),
    no_meals: bool = typer.Option(False, "--no-meals", help="Stay without meals."),
    disable: list[Meal] = typer.Option([], "--disable", case_sensitive=False, help="Meal excluded for this stay."),
) -> None:
    runtime_config = _load_runtime_config_or_exit()
    arrival_at = _require_cli_datetime(arrival, "--arrival", runtime_config.timezone)
    departure_at = _require_cli_datetime(departure, "--departure", runtime_config.timezone)
    enabled = [meal for meal in Meal if meal not in set(disable)]

    app = _bootstrap_application(runtime_config=runtime_config)
    record = _run_stay_operation(
        lambda: app.stays.create_stay(
            stay_id,
            arrival_at,
            departure_at,
            meals_included=not no_meals,
            enabled_meals=enabled,
        )
    )
    _echo_lines(_format_stay(record))


@stay_cli.command("extend", help="Move the departure of a stay and merge its meal plan.")
def stay_extend_command(
    stay_id: str = typer.Option(..., "--id", help="Stay identifier."),
    departure: str = typer.Option(..., "--departure", help="New departure, YYYY-MM-DDTHH:MM[:SS]."),
) -> None:
    runtime_config = _load_runtime_config_or_exit()
    departure_at = _require_cli_datetime(departure, "--departure", runtime_config.timezone)
    app = _bootstrap_application(runtime_config=runtime_config)
    record = _run_stay_operation(lambda: app.stays.extend_stay(stay_id, departure_at))
    _echo_lines(_format_stay(record))


@stay_cli.command("adjust", help="Correct the meals recorded for one day of a stay.")
def stay_adjust_command(
    stay_id: str = typer.Option(..., "--id", help="Stay identifier."),
    target_date: str = typer.Option(..., "--date", help="Day to correct, YYYY-MM-DD."),
    breakfast: int | None = typer.Option(None, "--breakfast", help="0 or 1."),
    lunch: int | None = typer.Option(None, "--lunch", help="0 or 1."),
    dinner: int | None = typer.Option(None, "--dinner", help="0 or 1."),
) -> None:
    parsed_date = _parse_cli_date(target_date, "--date")
    if parsed_date is None:
        raise typer.BadParameter("--date is required")
    adjustment = DailyMealAdjustment(
        day=parsed_date,
        breakfast=_parse_cli_flag(breakfast, "--breakfast"),
        lunch=_parse_cli_flag(lunch, "--lunch"),
        dinner=_parse_cli_flag(dinner, "--dinner"),
    )
    app = _bootstrap_application()
    record = _run_stay_operation(lambda: app.stays.adjust_daily_meals(stay_id, [adjustment]))
    _echo_lines(_format_stay(record))


@stay_cli.command("show", help="Print a stay and its meal plan, optionally counting a date range.")
def stay_show_command(
    stay_id: str = typer.Option(..., "--id", help="Stay identifier."),
    from_: str | None = typer.Option(None, "--from", help="Range start, YYYY-MM-DD."),
    to: str | None = typer.Option(None, "--to", help="Range end, YYYY-MM-DD."),
) -> None:
    start = _parse_cli_date(from_, "--from")
    end = _parse_cli_date(to, "--to")
    if start is not None and end is not None and end < start:
        raise typer.BadParameter("--to must not be before --from")

    app = _bootstrap_application()
    record = _run_stay_operation(lambda: app.stays.get_stay(stay_id))
    _echo_lines(_format_stay(record))
    if start is not None or end is not None:
        totals = app.stays.meal_counts(stay_id, start, end)
        typer.echo(
            f"range {start.isoformat() if start else '-'}..{end.isoformat() if end else '-'}: "
            f"breakfast={totals.breakfast} lunch={totals.lunch} dinner={totals.dinner}"
        )


@stay_cli.command("cancel", help="Cancel a stay; its meal plan is kept for reporting.")
def stay_cancel_command(
    stay_id: str = typer.Option(..., "--id", help="Stay identifier."),
) -> None:
    app = _bootstrap_application()
    record = _run_stay_operation(lambda: app.stays.cancel_stay(stay_id))
    typer.echo(f"stay {record.stay_id} [{record.status.value}]")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
