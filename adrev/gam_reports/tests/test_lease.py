"""Tests for the run lease."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from adrev.gam_reports.errors import RunLeaseError
from adrev.gam_reports.lease import RunLease


def _client(rows):
    ch = MagicMock()
    ch.execute.return_value.result_rows = rows
    return ch


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def test_acquire_without_existing_lease_writes_row():
    ch = _client([])
    lease = RunLease(ch, database="adrev")

    lease.acquire("run-1")

    table, rows, _ = ch.insert_rows.call_args.args
    assert table == "adrev.run_leases"
    assert rows[0]["owner"] == "run-1"
    assert rows[0]["released"] == 0
    assert lease.owner == "run-1"


def test_active_lease_is_rejected():
    ch = _client([("run-0", _now() - timedelta(minutes=5), 0)])
    lease = RunLease(ch, database="adrev")

    with pytest.raises(RunLeaseError) as exc:
        lease.acquire("run-1")

    assert exc.value.holder == "run-0"
    ch.insert_rows.assert_not_called()


def test_active_lease_allowed_by_policy():
    ch = _client([("run-0", _now() - timedelta(minutes=5), 0)])
    lease = RunLease(ch, database="adrev", policy="allow")

    lease.acquire("run-1")

    assert ch.insert_rows.call_count == 1


@pytest.mark.parametrize(
    "row",
    [
        ("run-0", _now() - timedelta(minutes=5), 1),
        ("run-0", _now() - timedelta(hours=4), 0),
    ],
)
def test_released_or_stale_lease_is_taken_over(row):
    ch = _client([row])
    lease = RunLease(ch, database="adrev", ttl_seconds=3 * 3600)

    lease.acquire("run-1")

    assert ch.insert_rows.call_args.args[1][0]["owner"] == "run-1"


def test_hold_releases_on_error():
    ch = _client([])
    lease = RunLease(ch, database="adrev")

    with pytest.raises(ValueError):
        with lease.hold("run-1"):
            raise ValueError("boom")

    released = ch.insert_rows.call_args_list[-1].args[1][0]
    assert released["released"] == 1
    assert released["owner"] == "run-1"
    assert lease.owner is None


def test_without_client_lease_is_a_no_op():
    lease = RunLease(None, database="adrev")

    with lease.hold("run-1"):
        assert lease.owner == "run-1"
    assert lease.owner is None
