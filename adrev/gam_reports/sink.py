"""
ClickHouse persistence for report rows and pipeline bookkeeping.

Tables use ``ReplacingMergeTree(_ver)`` ordered by their natural key, so an
insert with a higher ``_ver`` replaces an earlier row with the same key.
That is the upsert contract relied on by reruns of the same day.
"""

from __future__ import annotations

import json
import time
import uuid
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from adrev.common.ch import ClickHouseClient
from adrev.common.logging import StructuredLogger, log_data_operation, setup_integrations_logger
from adrev.common.time import to_date, utcnow

from .aggregate import deduplicate_dimensional_rows
from .download import iter_chunks
from .errors import PersistenceError
from .report import ReportData

logger = setup_integrations_logger("gam_reports")

DAILY_TABLE = "reports_daily"
DIMENSIONAL_TABLE = "reports_dimensional"
HISTORICAL_TABLE = "report_historical"
FETCH_LOG_TABLE = "report_fetch_logs"
AUDIT_QUEUE_TABLE = "audit_job_queue"
JOB_RUNS_TABLE = "meta_job_runs"

METRIC_COLUMNS = [
    "ad_requests",
    "matched_requests",
    "match_rate",
    "impressions",
    "clicks",
    "ctr",
    "revenue",
    "ecpm",
    "ad_request_ecpm",
    "mcm_auto_payment_revenue",
    "net_revenue",
    "measurable_impressions",
    "viewable_impressions",
    "viewability",
    "delivery_rate",
    "currency_code",
]

DAILY_COLUMNS = ["publisher_id", "date", *METRIC_COLUMNS, "updated_at", "_ver"]

DIMENSIONAL_COLUMNS = [
    "publisher_id",
    "date",
    "country_name",
    "country_criteria_id",
    "carrier_name",
    "device_category_name",
    "device_category_id",
    "site_name",
    "browser_name",
    "browser_id",
    "mobile_app_name",
    "operating_system_name",
    "operating_system_version_id",
    *METRIC_COLUMNS,
    "updated_at",
    "_ver",
]

HISTORICAL_COLUMNS = [*DIMENSIONAL_COLUMNS, "cleanup_scheduled_at"]

FETCH_LOG_COLUMNS = ["publisher_id", "fetch_date", "status", "metrics_fetched", "error_message", "created_at", "_ver"]

AUDIT_QUEUE_COLUMNS = [
    "id",
    "publisher_id",
    "sites",
    "status",
    "triggered_by",
    "worker_attempts",
    "created_at",
    "_ver",
]

JOB_RUN_COLUMNS = ["job", "started_at", "finished_at", "rows_processed", "status", "message", "metrics"]


def _naive_utc(value: Optional[datetime] = None) -> datetime:
    return (value or utcnow()).replace(tzinfo=None)


def next_version() -> int:
    """Monotonic-enough ``_ver`` stamp for ReplacingMergeTree inserts."""
    return time.time_ns() // 1000


class ReportSink:
    """Writes report rows and bookkeeping entries; with ``dry_run`` nothing is written."""

    def __init__(
        self,
        ch_client: Optional[ClickHouseClient],
        *,
        database: str,
        upsert_chunk_size: int = 1000,
        dry_run: bool = False,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        if ch_client is None and not dry_run:
            raise ValueError("ClickHouse client is required unless dry_run is set")
        self.ch_client = ch_client
        self.database = database
        self.upsert_chunk_size = upsert_chunk_size
        self.dry_run = dry_run
        self.logger = logger or setup_integrations_logger("gam_reports")

    def table(self, name: str) -> str:
        return f"{self.database}.{name}"

    # --------------------------------------------------------------------- #
    # Low-level write
    # --------------------------------------------------------------------- #
    def _write(self, table: str, rows: Sequence[Dict[str, Any]], columns: Sequence[str]) -> int:
        if not rows:
            return 0
        if self.dry_run:
            self.logger.info(
                "Dry-run: skipping ClickHouse insert",
                metrics={"table": table, "rows": len(rows)},
            )
            return len(rows)
        try:
            return self.ch_client.insert_rows(self.table(table), rows, columns)
        except Exception as exc:  # pylint: disable=broad-except
            raise PersistenceError(
                f"Failed to write {len(rows)} rows into {table}: {exc}",
                details={"table": table, "rows": len(rows)},
            ) from exc

    # --------------------------------------------------------------------- #
    # Report rows
    # --------------------------------------------------------------------- #
    @log_data_operation(logger, "upsert", "gam_report", DAILY_TABLE)
    def upsert_daily(self, rows: Iterable[Dict[str, Any]]) -> int:
        """Upsert rollups keyed by ``(publisher_id, date)``."""
        version = next_version()
        updated_at = _naive_utc()
        payload = [
            {**row, "date": to_date(row["date"]), "updated_at": updated_at, "_ver": version}
            for row in rows
        ]
        return self._write(DAILY_TABLE, payload, DAILY_COLUMNS)

    def upsert_dimensional(self, rows: Sequence[Dict[str, Any]], *, table: str = DIMENSIONAL_TABLE) -> int:
        """
        Deduplicate and upsert dimensional rows in chunks of ``upsert_chunk_size``.

        Rows written to :data:`HISTORICAL_TABLE` are stamped with
        ``cleanup_scheduled_at`` for the retention job.
        """
        historical = table == HISTORICAL_TABLE
        deduplicated = deduplicate_dimensional_rows(rows)
        columns = HISTORICAL_COLUMNS if historical else DIMENSIONAL_COLUMNS
        written = 0
        for chunk in iter_chunks(deduplicated, self.upsert_chunk_size):
            now = _naive_utc()
            version = next_version()
            payload = []
            for row in chunk:
                item = {**row, "date": to_date(row["date"]), "updated_at": now, "_ver": version}
                if historical:
                    item["cleanup_scheduled_at"] = now
                payload.append(item)
            written += self._write(table, payload, columns)
        self.logger.info(
            "Dimensional rows saved",
            metrics={"table": table, "input_rows": len(rows), "written": written},
        )
        return written

    def save_report(self, data: ReportData, *, historical: bool = False) -> Dict[str, int]:
        """Persist rollups, dimensional rows and one ``success`` fetch log per day."""
        daily = self.upsert_daily(data.daily_metrics)
        dimensional = 0
        if data.dimensional_rows:
            dimensional = self.upsert_dimensional(
                data.dimensional_rows,
                table=HISTORICAL_TABLE if historical else DIMENSIONAL_TABLE,
            )
        logs = self.record_fetch_success(data.daily_metrics)
        return {"daily_rows": daily, "dimensional_rows": dimensional, "fetch_logs": logs}

    # --------------------------------------------------------------------- #
    # Bookkeeping
    # --------------------------------------------------------------------- #
    def record_fetch_success(self, daily_metrics: Sequence[Dict[str, Any]]) -> int:
        version = next_version()
        created_at = _naive_utc()
        rows = [
            {
                "publisher_id": metric["publisher_id"],
                "fetch_date": to_date(metric["date"]),
                "status": "success",
                "metrics_fetched": json.dumps(
                    {
                        "revenue": metric.get("revenue"),
                        "impressions": metric.get("impressions"),
                        "clicks": metric.get("clicks"),
                    }
                ),
                "error_message": None,
                "created_at": created_at,
                "_ver": version,
            }
            for metric in daily_metrics
        ]
        try:
            return self._write(FETCH_LOG_TABLE, rows, FETCH_LOG_COLUMNS)
        except PersistenceError as exc:
            self.logger.error("Failed to write fetch logs", metrics=exc.as_dict())
            return 0

    def record_fetch_failure(self, account_id: str, fetch_date: date, message: str) -> None:
        row = {
            "publisher_id": account_id,
            "fetch_date": fetch_date,
            "status": "failed",
            "metrics_fetched": None,
            "error_message": message,
            "created_at": _naive_utc(),
            "_ver": next_version(),
        }
        try:
            self._write(FETCH_LOG_TABLE, [row], FETCH_LOG_COLUMNS)
        except PersistenceError as exc:
            self.logger.error("Failed to write failed fetch log", metrics=exc.as_dict())

    def has_pending_audit(self, account_id: str) -> bool:
        if self.dry_run:
            return False
        result = self.ch_client.execute(
            f"SELECT count() FROM {self.table(AUDIT_QUEUE_TABLE)} FINAL "
            "WHERE publisher_id = %(publisher_id)s AND status IN ('pending', 'processing')",
            {"publisher_id": account_id},
        )
        return bool(result.result_rows and result.result_rows[0][0])

    def queue_site_audit(
        self,
        account_id: str,
        site_names: Iterable[str],
        *,
        triggered_by: str = "new_publisher_backfill",
    ) -> Optional[str]:
        """
        Queue one audit job covering the unique known site names.

        Returns the queue entry id, or ``None`` when there is nothing to queue
        or an entry for the account is already pending.
        """
        sites = sorted({name for name in site_names if name and name != "Unknown"})
        if not sites:
            self.logger.warning("No site names to queue for audit", metrics={"account_id": account_id})
            return None
        if self.has_pending_audit(account_id):
            self.logger.info("Audit job already pending, skipping", metrics={"account_id": account_id})
            return None

        entry_id = str(uuid.uuid4())
        row = {
            "id": entry_id,
            "publisher_id": account_id,
            "sites": json.dumps([{"url": name, "name": name} for name in sites], ensure_ascii=False),
            "status": "pending",
            "triggered_by": triggered_by,
            "worker_attempts": 0,
            "created_at": _naive_utc(),
            "_ver": next_version(),
        }
        self._write(AUDIT_QUEUE_TABLE, [row], AUDIT_QUEUE_COLUMNS)
        self.logger.info(
            "Audit job queued",
            metrics={"account_id": account_id, "entry_id": entry_id, "sites": len(sites)},
        )
        return entry_id

    def record_job_run(
        self,
        *,
        job: str,
        status: str,
        started_at: datetime,
        finished_at: datetime,
        metrics: Dict[str, Any],
        error: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Persist a ``meta_job_runs`` entry."""
        message_payload: Dict[str, Any] = {"status": status}
        for key in ("processed", "succeeded", "failed", "revenue_by_currency"):
            if key in metrics:
                message_payload[key] = metrics[key]
        if error:
            message_payload["error"] = error
        row = {
            "job": job,
            "started_at": _naive_utc(started_at),
            "finished_at": _naive_utc(finished_at),
            "rows_processed": int(metrics.get("rows_processed", 0)),
            "status": status,
            "message": json.dumps(message_payload, ensure_ascii=False, default=str),
            "metrics": json.dumps(metrics, ensure_ascii=False, default=str),
        }
        self._write(JOB_RUNS_TABLE, [row], JOB_RUN_COLUMNS)
