"""
Batch/retry control loop driving report ingestion across publisher accounts.

Accounts are processed sequentially in batches.  Each account gets up to
``retry_attempts`` fetch attempts with exponential backoff; a terminal failure
is logged, alerted and written to the fetch log, and the run moves on.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from adrev.common.logging import StructuredLogger, setup_integrations_logger
from adrev.common.time import days_ago, today_local, utcnow

from .accounts import Account, AccountDirectory
from .alerts import AlertManager, ServiceKeyChecker
from .download import iter_chunks
from .errors import GamReportError, is_permission_denied
from .report import ReportData, ReportFetcher
from .sink import ReportSink

FETCH_FAILED_MESSAGE = "Failed to fetch report data"
ACCOUNT_NOT_FOUND_MESSAGE = "Publisher not found or has invalid network code"


@dataclass
class RunSummary:
    account_id: str
    account_name: str = ""
    success: bool = False
    total_revenue: float = 0.0
    total_requests: int = 0
    total_impressions: int = 0
    day_count: int = 0
    currency_code: Optional[str] = None
    empty: bool = False
    error: Optional[str] = None
    site_names: List[str] = field(default_factory=list)

    @classmethod
    def from_report(cls, account: Account, data: ReportData) -> "RunSummary":
        return cls(
            account_id=account.id,
            account_name=account.name,
            success=True,
            total_revenue=data.total_revenue,
            total_requests=data.total_requests,
            total_impressions=data.total_impressions,
            day_count=data.day_count,
            currency_code=data.currency_code,
            empty=data.empty,
        )

    @classmethod
    def failure(cls, account_id: str, error: str, *, account_name: str = "") -> "RunSummary":
        return cls(account_id=account_id, account_name=account_name, success=False, error=error)

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload.pop("site_names")
        return payload


@dataclass
class BatchReport:
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    revenue_by_currency: Dict[str, float] = field(default_factory=dict)
    outcomes: List[RunSummary] = field(default_factory=list)
    cancelled: bool = False

    def record(self, summary: RunSummary) -> None:
        self.processed += 1
        self.outcomes.append(summary)
        if summary.success:
            self.succeeded += 1
            currency = summary.currency_code or "USD"
            self.revenue_by_currency[currency] = self.revenue_by_currency.get(currency, 0.0) + summary.total_revenue
        else:
            self.failed += 1

    def finish(self) -> "BatchReport":
        self.finished_at = utcnow()
        return self

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or utcnow()
        return round((end - self.started_at).total_seconds(), 2)

    def as_metrics(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "revenue_by_currency": {k: round(v, 6) for k, v in self.revenue_by_currency.items()},
            "duration_seconds": self.duration_seconds,
            "cancelled": self.cancelled,
            "rows_processed": sum(o.day_count for o in self.outcomes if o.success),
        }


class RunCancelled(Exception):
    """Raised internally when the stop event fires during a backoff wait."""


class ReportOrchestrator:
    def __init__(
        self,
        *,
        fetcher: ReportFetcher,
        sink: ReportSink,
        accounts: AccountDirectory,
        alerts: AlertManager,
        key_checker: Optional[ServiceKeyChecker] = None,
        batch_size: int = 100,
        batch_delay: float = 2.0,
        account_delay: float = 0.1,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        historical_days: int = 60,
        stop_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], Any]] = None,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        self.fetcher = fetcher
        self.sink = sink
        self.accounts = accounts
        self.alerts = alerts
        self.key_checker = key_checker
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay
        self.account_delay = account_delay
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self.historical_days = historical_days
        self.stop_event = stop_event or threading.Event()
        self._sleep_fn = sleep
        self.logger = logger or setup_integrations_logger("gam_reports")

    @property
    def cancelled(self) -> bool:
        return self.stop_event.is_set()

    def _sleep(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self._sleep_fn is not None:
            self._sleep_fn(seconds)
        elif self.stop_event.wait(seconds):
            raise RunCancelled()

    # --------------------------------------------------------------------- #
    # Per-account flow
    # --------------------------------------------------------------------- #
    def fetch_with_retry(self, account: Account, start_date: date, end_date: date) -> ReportData:
        """Fetch with exponential backoff; the last error propagates once the budget is spent."""
        attempt = 1
        while True:
            try:
                return self.fetcher.fetch(account.id, account.network_code, start_date, end_date)
            except Exception as exc:  # pylint: disable=broad-except
                if not getattr(exc, "retryable", True) or attempt >= self.retry_attempts or self.cancelled:
                    raise
                wait = self.retry_delay * (2 ** (attempt - 1))
                self.logger.warning(
                    "Report fetch failed, retrying",
                    metrics={
                        "account_id": account.id,
                        "attempt": attempt,
                        "max_attempts": self.retry_attempts,
                        "sleep_seconds": wait,
                        "error": str(exc),
                    },
                )
                self._sleep(wait)
                attempt += 1

    def process_account(
        self,
        account: Account,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        *,
        historical: bool = False,
    ) -> RunSummary:
        """Fetch and persist one account; never raises for account-level failures."""
        start_date = start_date or today_local()
        end_date = end_date or start_date

        try:
            data = self.fetch_with_retry(account, start_date, end_date)
        except RunCancelled:
            return RunSummary.failure(account.id, "cancelled", account_name=account.name)
        except Exception as exc:  # pylint: disable=broad-except
            if self.cancelled:
                self.logger.warning("Account processing interrupted by stop request", metrics={"account_id": account.id})
                return RunSummary.failure(account.id, "cancelled", account_name=account.name)
            return self._handle_failure(account, exc, start_date)

        try:
            self.accounts.update_currency(account.id, data.currency_code)
            self.sink.save_report(data, historical=historical)
        except Exception as exc:  # pylint: disable=broad-except
            return self._handle_failure(account, exc, start_date)

        summary = RunSummary.from_report(account, data)
        if historical:
            summary.site_names = sorted({row["site_name"] for row in data.dimensional_rows if row.get("site_name")})
        self.logger.info("Report saved", metrics={**summary.as_dict(), "historical": historical})
        return summary

    def _handle_failure(self, account: Account, exc: Exception, fetch_date: date) -> RunSummary:
        message = str(exc) or exc.__class__.__name__
        error_metrics: Dict[str, Any] = exc.as_dict() if isinstance(exc, GamReportError) else {"error": message}
        self.logger.error(
            "Report processing failed",
            metrics={"account_id": account.id, "account_name": account.name, **error_metrics},
        )
        if is_permission_denied(exc):
            self.alerts.notify_permission_denied(account.id, account.name, account.network_code)
            if self.key_checker is not None:
                self.key_checker.check(account.id)
        self.alerts.notify_failure(account.id, account.name, account.network_code, message)
        self.sink.record_fetch_failure(account.id, fetch_date, f"{FETCH_FAILED_MESSAGE}: {message}")
        return RunSummary.failure(account.id, message, account_name=account.name)

    # --------------------------------------------------------------------- #
    # Runs
    # --------------------------------------------------------------------- #
    def run_all(self, accounts: Optional[Sequence[Account]] = None, *, report_date: Optional[date] = None) -> BatchReport:
        """Process every eligible account for ``report_date`` (default today)."""
        report = BatchReport()
        if accounts is None:
            accounts = self.accounts.list_accounts()
        if not accounts:
            self.logger.warning("No publishers found with valid network codes")
            return report.finish()

        batches = list(iter_chunks(list(accounts), self.batch_size))
        self.logger.info(
            "Starting report fetch run",
            metrics={"accounts": len(accounts), "batches": len(batches), "batch_size": self.batch_size},
        )
        try:
            for batch_index, batch in enumerate(batches):
                if self.cancelled:
                    report.cancelled = True
                    break
                self.logger.info(
                    "Processing batch",
                    metrics={"batch": batch_index + 1, "batches": len(batches), "accounts": len(batch)},
                )
                for index, account in enumerate(batch):
                    if self.cancelled:
                        report.cancelled = True
                        break
                    report.record(self.process_account(account, report_date, report_date))
                    if index < len(batch) - 1:
                        self._sleep(self.account_delay)
                if report.cancelled:
                    break
                if batch_index < len(batches) - 1:
                    self._sleep(self.batch_delay)
        except RunCancelled:
            report.cancelled = True

        report.finish()
        self.logger.info("Report fetch run finished", metrics=report.as_metrics())
        return report

    def run_single(self, account_id: str, *, historical: bool = False) -> RunSummary:
        """
        Process one account: today only, or the ``historical_days`` backfill
        ending today.  A successful backfill queues a site audit.
        """
        account = self.accounts.get_account(account_id)
        if account is None:
            self.logger.warning(ACCOUNT_NOT_FOUND_MESSAGE, metrics={"account_id": account_id})
            return RunSummary.failure(account_id, ACCOUNT_NOT_FOUND_MESSAGE)

        today = today_local()
        start = days_ago(self.historical_days, today=today) if historical else today
        summary = self.process_account(account, start, today, historical=historical)

        if historical and summary.success:
            try:
                self.sink.queue_site_audit(account.id, summary.site_names)
            except Exception as exc:  # pylint: disable=broad-except
                self.logger.error("Failed to queue site audit", metrics={"account_id": account.id, "error": str(exc)})
        return summary

    def run_backfill(self, account_id: str) -> RunSummary:
        return self.run_single(account_id, historical=True)
