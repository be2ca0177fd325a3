from __future__ import annotations

from datetime import date, datetime
from pathlib import Path
import sys
import threading
from unittest.mock import Mock, patch

import pytest
from loguru import logger
import typer
from typer.testing import CliRunner

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from staymeal.app import (
    StayMealApplication,
    _parse_cli_date,
    _parse_cli_datetime,
    cli,
    configure_logging,
)
from staymeal.config import RuntimeConfig
from staymeal.services.repositories import StayConflictError


def build_runtime_config(tmp_path: Path) -> RuntimeConfig:
    return RuntimeConfig.model_validate(
        {
            "timezone": "UTC",
            "meal_times": {
                "breakfast": {"start": "07:00", "end": "10:00"},
                "lunch": {"start": "12:00", "end": "14:00"},
                "dinner": {"start": "18:00", "end": "21:00"},
            },
            "storage": {"path": str(tmp_path / "stays.json")},
            "logging": {"file_path": str(tmp_path / "logs" / "staymeal.log")},
        }
    )


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


def test_parse_cli_date_argument() -> None:
    parsed = _parse_cli_date("2026-02-14", "--date")
    assert parsed == date(2026, 2, 14)


def test_parse_cli_date_argument_invalid() -> None:
    with pytest.raises(typer.BadParameter):
        _parse_cli_date("2026-02-31", "--date")


def test_parse_cli_datetime_accept_seconds() -> None:
    parsed = _parse_cli_datetime("2026-02-14T09:00:30", "--arrival")
    assert parsed == datetime(2026, 2, 14, 9, 0, 30)


def test_parse_cli_datetime_invalid() -> None:
    with pytest.raises(typer.BadParameter):
        _parse_cli_datetime("2026-02-14 09:00", "--arrival")


def test_preview_prints_plan(runner: CliRunner, tmp_path: Path) -> None:
    with patch("staymeal.app.load_runtime_config", return_value=build_runtime_config(tmp_path)):
        result = runner.invoke(
            cli,
            ["preview", "--arrival", "2025-03-01T23:00", "--departure", "2025-03-04T06:00"],
        )

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert lines[1].split() == ["2025-03-01", "0", "0", "0"]
    assert lines[4].split() == ["2025-03-04", "1", "1", "1"]
    assert lines[-1].split() == ["total", "3", "3", "3"]
    assert not (tmp_path / "stays.json").exists()


def test_preview_rejects_departure_before_arrival(runner: CliRunner, tmp_path: Path) -> None:
    with patch("staymeal.app.load_runtime_config", return_value=build_runtime_config(tmp_path)):
        result = runner.invoke(
            cli,
            ["preview", "--arrival", "2025-03-04T10:00", "--departure", "2025-03-01T10:00"],
        )

    assert result.exit_code == 1


def test_stay_create_extend_show(runner: CliRunner, tmp_path: Path) -> None:
    with patch("staymeal.app.load_runtime_config", return_value=build_runtime_config(tmp_path)):
        created = runner.invoke(
            cli,
            [
                "stay",
                "create",
                "--id",
                "REQ-7",
                "--arrival",
                "2025-03-10T14:30",
                "--departure",
                "2025-03-12T11:00",
                "--disable",
                "lunch",
            ],
        )
        extended = runner.invoke(cli, ["stay", "extend", "--id", "REQ-7", "--departure", "2025-03-13T11:00"])
        shown = runner.invoke(cli, ["stay", "show", "--id", "REQ-7", "--from", "2025-03-12", "--to", "2025-03-13"])

    assert created.exit_code == 0, created.output
    assert "stay REQ-7 [created]" in created.output
    assert "meals=included(breakfast,dinner)" in created.output
    assert extended.exit_code == 0, extended.output
    assert "stay REQ-7 [extended]" in extended.output
    assert extended.output.splitlines()[-1].split() == ["total", "3", "0", "4"]
    assert shown.exit_code == 0, shown.output
    assert "range 2025-03-12..2025-03-13: breakfast=2 lunch=0 dinner=2" in shown.output


def test_stay_adjust_and_cancel(runner: CliRunner, tmp_path: Path) -> None:
    with patch("staymeal.app.load_runtime_config", return_value=build_runtime_config(tmp_path)):
        runner.invoke(
            cli,
            ["stay", "create", "--id", "REQ-8", "--arrival", "2025-03-10T08:00", "--departure", "2025-03-11T08:00"],
        )
        adjusted = runner.invoke(cli, ["stay", "adjust", "--id", "REQ-8", "--date", "2025-03-11", "--dinner", "0"])
        canceled = runner.invoke(cli, ["stay", "cancel", "--id", "REQ-8"])
        rejected = runner.invoke(cli, ["stay", "extend", "--id", "REQ-8", "--departure", "2025-03-15T08:00"])

    assert adjusted.exit_code == 0, adjusted.output
    assert adjusted.output.splitlines()[-1].split() == ["total", "2", "2", "1"]
    assert canceled.exit_code == 0, canceled.output
    assert "stay REQ-8 [canceled]" in canceled.output
    assert rejected.exit_code == 1


def test_stay_adjust_rejects_non_binary_value(runner: CliRunner) -> None:
    with patch("staymeal.app._bootstrap_application") as mocked_bootstrap:
        result = runner.invoke(cli, ["stay", "adjust", "--id", "REQ-1", "--date", "2025-03-11", "--lunch", "2"])

    assert result.exit_code == 2
    mocked_bootstrap.assert_not_called()


def test_stay_extend_unknown_stay_exits_with_error(runner: CliRunner, tmp_path: Path) -> None:
    with patch("staymeal.app.load_runtime_config", return_value=build_runtime_config(tmp_path)):
        result = runner.invoke(cli, ["stay", "extend", "--id", "missing", "--departure", "2025-03-15T08:00"])

    assert result.exit_code == 1


def test_archive_command_reports_count(runner: CliRunner) -> None:
    with patch("staymeal.app._bootstrap_application") as mocked_bootstrap:
        app = Mock()
        app.archive_once.return_value = ["REQ-1"]
        mocked_bootstrap.return_value = app

        result = runner.invoke(cli, ["archive"])

    assert result.exit_code == 0, result.output
    assert "archived: 1" in result.output
    app.archive_once.assert_called_once_with()


def test_archive_command_conflict_exits_with_error(runner: CliRunner) -> None:
    with patch("staymeal.app._bootstrap_application") as mocked_bootstrap:
        app = Mock()
        app.archive_once.side_effect = StayConflictError("stay REQ-1 changed concurrently")
        mocked_bootstrap.return_value = app

        result = runner.invoke(cli, ["archive"])

    assert result.exit_code == 1
    assert not isinstance(result.exception, StayConflictError)


def test_archive_command_with_corrupt_store_exits_with_error(runner: CliRunner, tmp_path: Path) -> None:
    (tmp_path / "stays.json").write_text('{"stays": {', encoding="utf-8")

    with patch("staymeal.app.load_runtime_config", return_value=build_runtime_config(tmp_path)):
        result = runner.invoke(cli, ["archive"])

    assert result.exit_code == 1
    assert isinstance(result.exception, SystemExit)
    assert "archived" not in result.output


def test_run_command_accepts_log_level_option(runner: CliRunner, tmp_path: Path) -> None:
    with patch("staymeal.app._load_runtime_config_or_exit") as mocked_load_config:
        with patch("staymeal.app._bootstrap_application") as mocked_bootstrap:
            app = Mock()
            mocked_load_config.return_value = build_runtime_config(tmp_path)
            mocked_bootstrap.return_value = app

            result = runner.invoke(cli, ["run", "--log-level", "debug"])

    assert result.exit_code == 0, result.output
    app.run.assert_called_once()


def test_check_command_fails_without_config(runner: CliRunner, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = runner.invoke(cli, ["check"])

    assert result.exit_code == 1


def test_application_run_starts_and_stops_scheduler(tmp_path: Path) -> None:
    stop_event = threading.Event()
    stop_event.set()
    app = StayMealApplication(stop_event=stop_event)
    app.bootstrap(runtime_config=build_runtime_config(tmp_path))

    with patch("staymeal.app.BackgroundScheduler") as mocked_scheduler_cls:
        scheduler = mocked_scheduler_cls.return_value
        app.run()

    scheduler.add_job.assert_called_once()
    assert scheduler.add_job.call_args.kwargs["trigger"] == "interval"
    assert scheduler.add_job.call_args.kwargs["hours"] == 6
    scheduler.start.assert_called_once()
    scheduler.shutdown.assert_called_once_with(wait=False)


def test_application_requires_bootstrap() -> None:
    app = StayMealApplication()

    with pytest.raises(RuntimeError):
        app.run()
    with pytest.raises(RuntimeError):
        app.archive_once()


def test_configure_logging_adds_console_and_file_sink(tmp_path: Path) -> None:
    log_file = tmp_path / "staymeal.log"
    configure_logging(level="INFO", file_path=str(log_file), file_max_size_bytes=1024)
    logger.info("hello file sink")
    logger.remove()
    configure_logging(level="INFO")
    content = log_file.read_text(encoding="utf-8")
    assert "hello file sink" in content
