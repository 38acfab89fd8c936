"""Tests for the submit-and-poll job state machine."""

from __future__ import annotations

import threading
from datetime import date
from unittest.mock import Mock

import pytest

from adrev.gam_reports.errors import JobFailedError, TransportError
from adrev.gam_reports.job import JobState, ReportJobRunner

DAY = date(2025, 2, 1)


def _runner(client, **kwargs) -> ReportJobRunner:
    kwargs.setdefault("poll_interval", 0)
    return ReportJobRunner(client, **kwargs)


def test_job_completes_after_polling():
    client = Mock()
    client.submit_job.return_value = "77"
    client.poll_status.side_effect = ["IN_PROGRESS", "PENDING", "COMPLETED"]

    job = _runner(client).run("1234", DAY, DAY)

    assert job.state is JobState.DONE
    assert job.terminal
    assert job.attempts == 3
    client.submit_job.assert_called_once_with("1234", DAY, DAY)


def test_failed_status_raises():
    client = Mock()
    client.submit_job.return_value = "77"
    client.poll_status.return_value = "FAILED"

    with pytest.raises(JobFailedError) as exc:
        _runner(client).run("1234", DAY, DAY)

    assert str(exc.value) == "Report job failed with status: FAILED"
    assert exc.value.state == JobState.FAILED.value
    assert exc.value.job_id == "77"


def test_poll_budget_exhaustion_times_out():
    client = Mock()
    client.submit_job.return_value = "77"
    client.poll_status.return_value = "IN_PROGRESS"

    with pytest.raises(JobFailedError) as exc:
        _runner(client, max_attempts=4).run("1234", DAY, DAY)

    assert exc.value.state == JobState.TIMED_OUT.value
    assert str(exc.value) == "Report job failed with status: IN_PROGRESS"
    assert client.poll_status.call_count == 4


def test_poll_errors_are_tolerated_by_default():
    client = Mock()
    client.submit_job.return_value = "77"
    client.poll_status.side_effect = [TransportError("blip", status=502), "COMPLETED"]

    job = _runner(client).run("1234", DAY, DAY)

    assert job.state is JobState.DONE
    assert job.attempts == 2


def test_strict_runner_propagates_poll_errors():
    client = Mock()
    client.submit_job.return_value = "77"
    client.poll_status.side_effect = TransportError("blip", status=502)

    with pytest.raises(TransportError):
        _runner(client, tolerate_poll_errors=False).run("1234", DAY, DAY)


def test_stop_event_cancels_polling():
    client = Mock()
    client.submit_job.return_value = "77"
    stop = threading.Event()
    stop.set()

    with pytest.raises(JobFailedError) as exc:
        _runner(client, stop_event=stop).run("1234", DAY, DAY)

    assert exc.value.state == JobState.CANCELLED.value
    client.poll_status.assert_not_called()
