"""Tests for the command-line entry point."""

from __future__ import annotations

from datetime import date
from unittest.mock import Mock

import pytest

from adrev.gam_reports import loader
from adrev.gam_reports.errors import ConfigError, RunLeaseError
from adrev.gam_reports.orchestrator import BatchReport, RunSummary


@pytest.fixture
def wired(monkeypatch):
    config = Mock(job_name="gam_reports", dry_run=False, port=3000)
    pipeline = Mock(dry_run=False)
    build = Mock(return_value=pipeline)
    monkeypatch.setattr(loader.GamReportsConfig, "load", Mock(return_value=config))
    monkeypatch.setattr(loader, "build_pipeline", build)
    monkeypatch.setattr(loader, "_install_signal_handlers", Mock())
    return config, pipeline, build


def test_parse_args_run_with_date():
    args = loader.parse_args(["run", "--date", "2025-02-03", "--dry-run"])

    assert args.command == "run"
    assert args.date == date(2025, 2, 3)
    assert args.dry_run is True


def test_parse_args_backfill_requires_publisher():
    with pytest.raises(SystemExit):
        loader.parse_args(["backfill"])


def test_run_command_executes_all(wired, monkeypatch):
    _, pipeline, build = wired
    report = BatchReport()
    report.record(RunSummary(account_id="pub-1", success=True))
    execute_all = Mock(return_value=report.finish())
    monkeypatch.setattr(loader, "execute_all", execute_all)

    loader.main(["run", "--dry-run", "--date", "2025-02-03"])

    assert build.call_args.kwargs["dry_run"] is True
    assert execute_all.call_args.args == (pipeline,)
    assert execute_all.call_args.kwargs["report_date"] == date(2025, 2, 3)
    assert execute_all.call_args.kwargs["owner"].startswith("cli-")


def test_run_command_fails_when_every_account_fails(wired, monkeypatch):
    report = BatchReport()
    report.record(RunSummary.failure("pub-1", "boom"))
    monkeypatch.setattr(loader, "execute_all", Mock(return_value=report.finish()))

    with pytest.raises(SystemExit) as exc:
        loader.main(["run"])

    assert exc.value.code == 1


def test_lease_conflict_exits_non_zero(wired, monkeypatch):
    monkeypatch.setattr(loader, "execute_all", Mock(side_effect=RunLeaseError("busy", holder="other")))

    with pytest.raises(SystemExit) as exc:
        loader.main(["run"])

    assert exc.value.code == 1


def test_backfill_command(wired, monkeypatch):
    _, pipeline, _ = wired
    execute_single = Mock(return_value=RunSummary(account_id="pub-7", success=True))
    monkeypatch.setattr(loader, "execute_single", execute_single)

    loader.main(["backfill", "--publisher-id", "pub-7"])

    execute_single.assert_called_once_with(pipeline, "pub-7", historical=True)


def test_config_error_exits_with_code_2(monkeypatch):
    monkeypatch.setattr(loader.GamReportsConfig, "load", Mock(side_effect=ConfigError("Missing required environment variables: X")))

    with pytest.raises(SystemExit) as exc:
        loader.main(["run"])

    assert exc.value.code == 2
