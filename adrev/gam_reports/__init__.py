"""Google Ad Manager report ingestion into ClickHouse."""

from .accounts import Account, AccountDirectory
from .client import GamReportClient
from .config import GamReportsConfig
from .errors import (
    ConfigError,
    GamReportError,
    JobFailedError,
    PersistenceError,
    ProtocolError,
    RunLeaseError,
    TransportError,
)
from .orchestrator import BatchReport, ReportOrchestrator, RunSummary
from .pipeline import Pipeline, build_pipeline, execute_all, execute_single
from .report import ReportData, ReportFetcher
from .sink import ReportSink

__all__ = [
    "Account",
    "AccountDirectory",
    "BatchReport",
    "ConfigError",
    "GamReportClient",
    "GamReportError",
    "GamReportsConfig",
    "JobFailedError",
    "Pipeline",
    "PersistenceError",
    "ProtocolError",
    "ReportData",
    "ReportFetcher",
    "ReportOrchestrator",
    "ReportSink",
    "RunLeaseError",
    "RunSummary",
    "TransportError",
    "build_pipeline",
    "execute_all",
    "execute_single",
]
