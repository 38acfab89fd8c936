"""Wiring of the report pipeline from a :class:`GamReportsConfig`."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Optional

from adrev.common.ch import ClickHouseClient, get_client_from_config
from adrev.common.logging import setup_integrations_logger
from adrev.common.time import utcnow

from .accounts import AccountDirectory
from .alerts import AlertManager, ServiceKeyChecker, TelegramNotifier
from .auth import ServiceAccountTokenProvider
from .client import GamReportClient
from .config import GamReportsConfig
from .download import ReportDownloader
from .errors import GamReportError
from .job import ReportJobRunner
from .lease import RunLease
from .orchestrator import BatchReport, ReportOrchestrator, RunSummary
from .report import ReportFetcher
from .sink import ReportSink

logger = setup_integrations_logger("gam_reports")


@dataclass
class Pipeline:
    config: GamReportsConfig
    ch_client: ClickHouseClient
    orchestrator: ReportOrchestrator
    sink: ReportSink
    lease: RunLease
    stop_event: threading.Event
    dry_run: bool


def build_pipeline(
    config: GamReportsConfig,
    *,
    dry_run: Optional[bool] = None,
    ch_client: Optional[ClickHouseClient] = None,
    stop_event: Optional[threading.Event] = None,
) -> Pipeline:
    """
    Assemble every collaborator.

    Dry-run still reads publishers from ClickHouse but never writes to it and
    never delivers alerts.
    """
    dry_run = config.dry_run if dry_run is None else dry_run
    stop_event = stop_event or threading.Event()
    ch_client = ch_client or get_client_from_config(config)
    database = config.clickhouse_db

    token_provider = ServiceAccountTokenProvider.from_config(config.service_account_json)
    client = GamReportClient(
        token_provider=token_provider,
        api_version=config.api_version,
        application_name=config.application_name,
        timeout=config.request_timeout,
        metadata_timeout=config.metadata_timeout,
        max_retries=config.http_retries,
    )
    job_runner = ReportJobRunner(
        client,
        poll_interval=config.poll_interval,
        max_attempts=config.poll_max_attempts,
        tolerate_poll_errors=config.tolerate_poll_errors,
        stop_event=stop_event,
    )
    fetcher = ReportFetcher(
        client=client,
        job_runner=job_runner,
        downloader=ReportDownloader(timeout=config.request_timeout),
        chunk_size=config.chunk_size,
    )

    sink = ReportSink(
        None if dry_run else ch_client,
        database=database,
        upsert_chunk_size=config.upsert_chunk_size,
        dry_run=dry_run,
    )
    telegram = None
    if config.tg_bot_token and config.tg_chat_id:
        telegram = TelegramNotifier(config.tg_bot_token, config.tg_chat_id)
    alerts = AlertManager(
        None if dry_run else ch_client,
        database=database,
        webhook_url=config.alert_webhook_url,
        auth_token=config.hook_auth_token,
        telegram=telegram,
        dry_run=dry_run,
    )
    key_checker = ServiceKeyChecker(config.service_key_check_url, auth_token=config.hook_auth_token)

    orchestrator = ReportOrchestrator(
        fetcher=fetcher,
        sink=sink,
        accounts=AccountDirectory(ch_client, database=database, dry_run=dry_run),
        alerts=alerts,
        key_checker=None if dry_run else key_checker,
        batch_size=config.batch_size,
        batch_delay=config.batch_delay,
        account_delay=config.account_delay,
        retry_attempts=config.retry_attempts,
        retry_delay=config.retry_delay,
        historical_days=config.historical_days,
        stop_event=stop_event,
    )
    lease = RunLease(
        None if dry_run else ch_client,
        database=database,
        lease_name=config.job_name,
        ttl_seconds=config.lease_ttl_seconds,
        policy=config.overlap_policy,
    )
    return Pipeline(
        config=config,
        ch_client=ch_client,
        orchestrator=orchestrator,
        sink=sink,
        lease=lease,
        stop_event=stop_event,
        dry_run=dry_run,
    )


def _record_job_run(
    pipeline: Pipeline,
    *,
    job: str,
    status: str,
    started_at: datetime,
    metrics: Dict[str, Any],
    error: Optional[Dict[str, Any]] = None,
) -> None:
    """Write the ``meta_job_runs`` row; failures here are logged and swallowed."""
    try:
        pipeline.sink.record_job_run(
            job=job,
            status=status,
            started_at=started_at,
            finished_at=utcnow(),
            metrics=metrics,
            error=error,
        )
    except Exception as exc:  # pylint: disable=broad-except
        logger.error(
            "Unable to record job run in meta_job_runs",
            metrics={"job": job, "status": status, "secondary_error": str(exc)},
        )


def execute_all(
    pipeline: Pipeline,
    *,
    owner: str,
    report_date: Optional[date] = None,
    lease_held: bool = False,
) -> BatchReport:
    """
    Run every eligible account under the run lease and record the run.

    ``lease_held`` means the caller already acquired the lease for ``owner``;
    it is released here either way.  Raises :class:`RunLeaseError` when the
    lease is refused.
    """
    job = pipeline.config.job_name
    if not lease_held:
        pipeline.lease.acquire(owner)
    started_at = utcnow()
    try:
        report = pipeline.orchestrator.run_all(report_date=report_date)
    except Exception as exc:
        _record_job_run(
            pipeline,
            job=job,
            status="error",
            started_at=started_at,
            metrics={"owner": owner},
            error=exc.as_dict() if isinstance(exc, GamReportError) else {"error_type": exc.__class__.__name__, "message": str(exc)},
        )
        raise
    finally:
        pipeline.lease.release(owner)

    status = "success" if report.failed == 0 and not report.cancelled else "partial"
    _record_job_run(pipeline, job=job, status=status, started_at=started_at, metrics={"owner": owner, **report.as_metrics()})
    return report


def execute_single(pipeline: Pipeline, account_id: str, *, historical: bool = False) -> RunSummary:
    """Run one account (today only or the backfill) and record the run."""
    job = f"{pipeline.config.job_name}_{'backfill' if historical else 'single'}"
    started_at = utcnow()
    summary = pipeline.orchestrator.run_single(account_id, historical=historical)
    _record_job_run(
        pipeline,
        job=job,
        status="success" if summary.success else "error",
        started_at=started_at,
        metrics={**summary.as_dict(), "rows_processed": summary.day_count},
        error={"message": summary.error} if summary.error else None,
    )
    return summary
