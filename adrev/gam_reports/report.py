"""Per-account report acquisition: job, download, aggregation and daily rollup."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from adrev.common.logging import StructuredLogger, log_execution_time, setup_integrations_logger

from .aggregate import aggregate_records, build_daily_metrics, zero_daily_metrics
from .client import GamReportClient
from .download import ReportDownloader, iter_chunks
from .job import ReportJobRunner

NO_DATA_MESSAGE = "No data returned from GAM report"

logger = setup_integrations_logger("gam_reports")


@dataclass
class ReportData:
    account_id: str
    start_date: date
    end_date: date
    currency_code: str
    daily_metrics: List[Dict[str, Any]] = field(default_factory=list)
    dimensional_rows: List[Dict[str, Any]] = field(default_factory=list)
    empty: bool = False
    job_id: Optional[str] = None

    @property
    def total_revenue(self) -> float:
        return sum(m.get("revenue") or 0 for m in self.daily_metrics)

    @property
    def total_requests(self) -> int:
        return sum(m.get("ad_requests") or 0 for m in self.daily_metrics)

    @property
    def total_impressions(self) -> int:
        return sum(m.get("impressions") or 0 for m in self.daily_metrics)

    @property
    def day_count(self) -> int:
        return len(self.daily_metrics)


class ReportFetcher:
    def __init__(
        self,
        *,
        client: GamReportClient,
        job_runner: ReportJobRunner,
        downloader: ReportDownloader,
        chunk_size: int = 10000,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        self.client = client
        self.job_runner = job_runner
        self.downloader = downloader
        self.chunk_size = chunk_size
        self.logger = logger or setup_integrations_logger("gam_reports")

    @log_execution_time(logger)
    def fetch(self, account_id: str, network_code: str, start_date: date, end_date: Optional[date] = None) -> ReportData:
        """
        Fetch one account's report for ``start_date..end_date`` (inclusive).

        An empty export is not an error: the result carries ``empty=True`` and
        one zero-valued rollup per day of the range.
        """
        end_date = end_date or start_date
        window = {
            "account_id": account_id,
            "network_code": network_code,
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
        }
        self.logger.info("Fetching Ad Manager report", metrics=window)

        currency_code = self.client.get_network_currency(network_code)
        job = self.job_runner.run(network_code, start_date, end_date)
        download_url = self.client.get_download_url(network_code, job.job_id)
        records = self.downloader.fetch(download_url)

        rows: List[Dict[str, Any]] = []
        if len(records) > self.chunk_size:
            chunks = list(iter_chunks(records, self.chunk_size))
            records = []
            for index in range(len(chunks)):
                chunk_rows = aggregate_records(chunks[index], account_id, currency_code=currency_code)
                rows.extend(chunk_rows)
                chunks[index] = []
                self.logger.debug(
                    "Aggregated report chunk",
                    metrics={"chunk": index + 1, "chunks": len(chunks), "rows": len(chunk_rows)},
                )
        else:
            rows = aggregate_records(records, account_id, currency_code=currency_code)

        if not rows:
            # Covers exports whose records all lacked a usable date.
            self.logger.info(f"{NO_DATA_MESSAGE}, creating zero-value metrics", metrics=window)
            return ReportData(
                account_id=account_id,
                start_date=start_date,
                end_date=end_date,
                currency_code=currency_code,
                daily_metrics=zero_daily_metrics(account_id, start_date, end_date, currency_code),
                empty=True,
                job_id=job.job_id,
            )

        data = ReportData(
            account_id=account_id,
            start_date=start_date,
            end_date=end_date,
            currency_code=currency_code,
            daily_metrics=build_daily_metrics(rows, account_id, currency_code),
            dimensional_rows=rows,
            job_id=job.job_id,
        )
        self.logger.info(
            "Report generated",
            metrics={
                **window,
                "currency": currency_code,
                "revenue": round(data.total_revenue, 2),
                "ad_requests": data.total_requests,
                "impressions": data.total_impressions,
                "days": data.day_count,
                "dimensional_rows": len(rows),
            },
        )
        return data
