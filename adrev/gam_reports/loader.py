"""
Command-line entry point for the Ad Manager report worker.

Subcommands:

* ``run``       fetch one day for every eligible publisher (default: today)
* ``backfill``  fetch the historical window for a single publisher
* ``serve``     expose the HTTP trigger endpoints
"""

from __future__ import annotations

import argparse
import os
import signal
import threading
import uuid
from datetime import date
from typing import Optional, Sequence

from adrev.common.logging import setup_integrations_logger
from adrev.common.time import to_date, utcnow

from .config import GamReportsConfig
from .errors import ConfigError, RunLeaseError
from .pipeline import Pipeline, build_pipeline, execute_all, execute_single

logger = setup_integrations_logger("gam_reports")


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--envfile", help="Path to the dotenv file with GAM and ClickHouse settings")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Fetch and aggregate reports without writing to ClickHouse or sending alerts",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging (LOG_LEVEL=DEBUG)")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """CLI argument parsing."""
    parser = argparse.ArgumentParser(description="Google Ad Manager reports to ClickHouse loader")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Fetch reports for all eligible publishers")
    _add_common_arguments(run)
    run.add_argument("--date", type=to_date, help="Report date (YYYY-MM-DD, default: today)")

    backfill = subparsers.add_parser("backfill", help="Backfill the historical window for one publisher")
    _add_common_arguments(backfill)
    backfill.add_argument("--publisher-id", required=True, help="Publisher id to backfill")

    serve = subparsers.add_parser("serve", help="Run the HTTP trigger server")
    _add_common_arguments(serve)
    serve.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    serve.add_argument("--port", type=int, help="Listen port (default: PORT or 3000)")

    return parser.parse_args(argv)


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def _handle(signum, _frame) -> None:
        logger.warning("Stop signal received, finishing current account", metrics={"signal": signum})
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)


def _run(pipeline: Pipeline, report_date: Optional[date]) -> None:
    owner = f"cli-{uuid.uuid4()}"
    report = execute_all(pipeline, owner=owner, report_date=report_date)
    logger.info("Report run completed", metrics={"owner": owner, **report.as_metrics()})
    if report.processed and report.succeeded == 0:
        raise SystemExit(1)


def _backfill(pipeline: Pipeline, publisher_id: str) -> None:
    summary = execute_single(pipeline, publisher_id, historical=True)
    if not summary.success:
        raise SystemExit(1)


def _serve(pipeline: Pipeline, host: str, port: int) -> None:
    from .server import create_app

    logger.info("Starting HTTP trigger server", metrics={"host": host, "port": port, "dry_run": pipeline.dry_run})
    create_app(pipeline).run(host=host, port=port)


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)

    if args.verbose:
        os.environ["LOG_LEVEL"] = "DEBUG"

    started_at = utcnow()
    try:
        config = GamReportsConfig.load(args.envfile)
    except ConfigError as exc:
        logger.error("Invalid configuration", metrics=exc.as_dict())
        raise SystemExit(2) from exc

    dry_run = bool(args.dry_run or config.dry_run)
    stop_event = threading.Event()
    try:
        pipeline = build_pipeline(config, dry_run=dry_run, stop_event=stop_event)
    except ConfigError as exc:
        logger.error("Invalid configuration", metrics=exc.as_dict())
        raise SystemExit(2) from exc
    except Exception as exc:  # pylint: disable=broad-except
        logger.exception("Failed to initialise pipeline", metrics={"job": config.job_name, "error": str(exc)})
        raise SystemExit(1) from exc

    logger.info(
        "GAM report worker starting",
        metrics={"command": args.command, "job": config.job_name, "dry_run": dry_run, "started_at": started_at},
    )

    try:
        if args.command == "serve":
            _serve(pipeline, args.host, args.port or config.port)
            return
        _install_signal_handlers(stop_event)
        if args.command == "run":
            _run(pipeline, args.date)
        else:
            _backfill(pipeline, args.publisher_id)
    except RunLeaseError as exc:
        logger.error("Another run holds the lease, exiting", metrics=exc.as_dict())
        raise SystemExit(1) from exc
    except SystemExit:
        raise
    except Exception as exc:  # pylint: disable=broad-except
        logger.exception("GAM report worker failed", metrics={"job": config.job_name, "error": str(exc)})
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
