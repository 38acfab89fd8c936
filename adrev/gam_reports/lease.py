"""Run lease preventing overlapping ingestion runs."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Optional

from adrev.common.ch import ClickHouseClient
from adrev.common.logging import StructuredLogger, setup_integrations_logger
from adrev.common.time import utcnow

from .errors import RunLeaseError
from .sink import next_version

LEASE_TABLE = "run_leases"
LEASE_COLUMNS = ["lease_name", "owner", "started_at", "released", "_ver"]


class RunLease:
    """
    Lease row per ``lease_name`` in a ``ReplacingMergeTree(_ver)`` table.

    A lease is active when its latest row is not released and younger than
    ``ttl_seconds``; older ones are treated as abandoned.  With policy
    ``allow`` an active lease only produces a warning.
    """

    def __init__(
        self,
        ch_client: Optional[ClickHouseClient],
        *,
        database: str,
        lease_name: str = "gam_reports",
        ttl_seconds: int = 10800,
        policy: str = "reject",
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        self.ch_client = ch_client
        self.table = f"{database}.{LEASE_TABLE}"
        self.lease_name = lease_name
        self.ttl = timedelta(seconds=ttl_seconds)
        self.policy = policy
        self.logger = logger or setup_integrations_logger("gam_reports")
        self.owner: Optional[str] = None

    def _current(self) -> Optional[tuple]:
        result = self.ch_client.execute(
            f"SELECT owner, started_at, released FROM {self.table} "
            "WHERE lease_name = %(name)s ORDER BY _ver DESC LIMIT 1",
            {"name": self.lease_name},
        )
        rows = result.result_rows
        return tuple(rows[0]) if rows else None

    def _is_active(self, started_at: datetime, released: int, now: datetime) -> bool:
        if released:
            return False
        return now - started_at < self.ttl

    def _write(self, owner: str, started_at: datetime, released: int) -> None:
        self.ch_client.insert_rows(
            self.table,
            [
                {
                    "lease_name": self.lease_name,
                    "owner": owner,
                    "started_at": started_at,
                    "released": released,
                    "_ver": next_version(),
                }
            ],
            LEASE_COLUMNS,
        )

    def acquire(self, owner: str) -> None:
        if self.ch_client is None:
            self.owner = owner
            return
        now = utcnow().replace(tzinfo=None)
        current = self._current()
        if current is not None:
            holder, started_at, released = current
            if self._is_active(started_at, released, now):
                metrics = {"lease": self.lease_name, "holder": holder, "started_at": started_at, "owner": owner}
                if self.policy == "reject":
                    self.logger.warning("Run lease held by another run, rejecting", metrics=metrics)
                    raise RunLeaseError(f"Run already in progress (owner: {holder})", holder=holder)
                self.logger.warning("Run lease held by another run, overlapping allowed", metrics=metrics)
        self._write(owner, now, 0)
        self.owner = owner
        self.logger.info("Run lease acquired", metrics={"lease": self.lease_name, "owner": owner})

    def release(self, owner: Optional[str] = None) -> None:
        owner = owner or self.owner
        if owner is None:
            return
        if self.ch_client is not None:
            try:
                self._write(owner, utcnow().replace(tzinfo=None), 1)
            except Exception as exc:  # pylint: disable=broad-except
                self.logger.error("Failed to release run lease", metrics={"owner": owner, "error": str(exc)})
                return
            self.logger.info("Run lease released", metrics={"lease": self.lease_name, "owner": owner})
        self.owner = None

    @contextmanager
    def hold(self, owner: str) -> Iterator["RunLease"]:
        """Acquire for the duration of a ``with`` block."""
        self.acquire(owner)
        try:
            yield self
        finally:
            self.release(owner)
