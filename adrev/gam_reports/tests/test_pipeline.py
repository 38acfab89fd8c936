"""Tests for run execution under the lease and job-run bookkeeping."""

from __future__ import annotations

import threading
from unittest.mock import Mock

import pytest

from adrev.gam_reports.errors import RunLeaseError
from adrev.gam_reports.orchestrator import BatchReport, RunSummary
from adrev.gam_reports.pipeline import Pipeline, execute_all, execute_single


def _pipeline() -> Pipeline:
    config = Mock()
    config.job_name = "gam_reports"
    return Pipeline(
        config=config,
        ch_client=Mock(),
        orchestrator=Mock(),
        sink=Mock(),
        lease=Mock(),
        stop_event=threading.Event(),
        dry_run=False,
    )


def _report(succeeded: int, failed: int) -> BatchReport:
    report = BatchReport()
    for index in range(succeeded):
        report.record(RunSummary(account_id=f"ok-{index}", success=True, total_revenue=1.0, day_count=1))
    for index in range(failed):
        report.record(RunSummary.failure(f"bad-{index}", "boom"))
    return report.finish()


def test_execute_all_holds_lease_and_records_success():
    pipeline = _pipeline()
    pipeline.orchestrator.run_all.return_value = _report(2, 0)

    report = execute_all(pipeline, owner="run-1")

    assert report.succeeded == 2
    pipeline.lease.acquire.assert_called_once_with("run-1")
    pipeline.lease.release.assert_called_once_with("run-1")
    kwargs = pipeline.sink.record_job_run.call_args.kwargs
    assert kwargs["job"] == "gam_reports"
    assert kwargs["status"] == "success"
    assert kwargs["metrics"]["rows_processed"] == 2
    assert kwargs["metrics"]["owner"] == "run-1"


def test_execute_all_partial_when_an_account_fails():
    pipeline = _pipeline()
    pipeline.orchestrator.run_all.return_value = _report(1, 1)

    execute_all(pipeline, owner="run-1", lease_held=True)

    pipeline.lease.acquire.assert_not_called()
    pipeline.lease.release.assert_called_once_with("run-1")
    assert pipeline.sink.record_job_run.call_args.kwargs["status"] == "partial"


def test_execute_all_records_error_and_releases_lease():
    pipeline = _pipeline()
    pipeline.orchestrator.run_all.side_effect = RuntimeError("publishers unavailable")

    with pytest.raises(RuntimeError):
        execute_all(pipeline, owner="run-1")

    kwargs = pipeline.sink.record_job_run.call_args.kwargs
    assert kwargs["status"] == "error"
    assert kwargs["error"] == {"error_type": "RuntimeError", "message": "publishers unavailable"}
    pipeline.lease.release.assert_called_once_with("run-1")


def test_execute_all_rejected_by_lease():
    pipeline = _pipeline()
    pipeline.lease.acquire.side_effect = RunLeaseError("Run already in progress", holder="run-0")

    with pytest.raises(RunLeaseError):
        execute_all(pipeline, owner="run-1")

    pipeline.orchestrator.run_all.assert_not_called()
    pipeline.lease.release.assert_not_called()


def test_job_run_bookkeeping_failure_is_swallowed():
    pipeline = _pipeline()
    pipeline.orchestrator.run_all.return_value = _report(1, 0)
    pipeline.sink.record_job_run.side_effect = RuntimeError("clickhouse down")

    assert execute_all(pipeline, owner="run-1").succeeded == 1


def test_execute_single_records_backfill_job():
    pipeline = _pipeline()
    pipeline.orchestrator.run_single.return_value = RunSummary(account_id="pub-1", success=True, day_count=61)

    summary = execute_single(pipeline, "pub-1", historical=True)

    assert summary.success
    pipeline.orchestrator.run_single.assert_called_once_with("pub-1", historical=True)
    kwargs = pipeline.sink.record_job_run.call_args.kwargs
    assert kwargs["job"] == "gam_reports_backfill"
    assert kwargs["status"] == "success"
    assert kwargs["metrics"]["rows_processed"] == 61
    assert kwargs["error"] is None
