"""
HTTP trigger surface for the report worker.

Triggers are acknowledged immediately and the work runs on a background
thread.  ``/fetch-reports`` takes the run lease before acknowledging, so an
overlapping trigger is answered with ``409`` instead of starting a second run.
"""

from __future__ import annotations

import threading
import time
import uuid
from typing import Any, Callable, Optional

from flask import Flask, jsonify, request

from adrev import __version__
from adrev.common.logging import setup_integrations_logger
from adrev.common.time import utcnow

from .errors import RunLeaseError
from .pipeline import Pipeline, execute_all, execute_single

logger = setup_integrations_logger("gam_reports")

SERVICE_NAME = "GAM Report Worker"
BACKGROUND_NOTE = "Check logs for progress and completion status"


def _spawn_thread(target: Callable[[], Any], name: str) -> None:
    threading.Thread(target=target, name=name, daemon=True).start()


def _timestamp() -> str:
    return utcnow().isoformat().replace("+00:00", "Z")


def create_app(pipeline: Pipeline, *, spawn: Optional[Callable[[Callable[[], Any], str], None]] = None) -> Flask:
    """Build the Flask app; ``spawn`` starts background work (a daemon thread by default)."""
    app = Flask(__name__)
    spawn = spawn or _spawn_thread
    started = time.monotonic()

    def _payload() -> dict:
        return request.get_json(silent=True) or {}

    @app.route("/", methods=["GET"])
    def describe():
        return jsonify(
            {
                "service": SERVICE_NAME,
                "version": __version__,
                "dryRun": pipeline.dry_run,
                "endpoints": {
                    "GET /health": "Health check",
                    "POST /fetch-reports": "Fetch today's reports for all publishers",
                    "POST /fetch-historical-reports": "Backfill reports for one publisher",
                },
            }
        )

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify(
            {
                "status": "healthy",
                "uptime": round(time.monotonic() - started, 3),
                "timestamp": _timestamp(),
            }
        )

    @app.route("/fetch-reports", methods=["POST"])
    def fetch_reports():
        body = _payload()
        request_id = body.get("request_id") or str(uuid.uuid4())
        triggered_by = body.get("triggered_by") or "http"
        metrics = {"request_id": request_id, "triggered_by": triggered_by}

        try:
            pipeline.lease.acquire(request_id)
        except RunLeaseError as exc:
            logger.warning("Fetch trigger rejected, run in progress", metrics={**metrics, "holder": exc.holder})
            return jsonify({"success": False, "error": str(exc), "requestId": request_id}), 409
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Unable to acquire run lease", metrics={**metrics, "error": str(exc)})
            return jsonify({"success": False, "error": str(exc), "requestId": request_id}), 500

        def _work() -> None:
            try:
                execute_all(pipeline, owner=request_id, lease_held=True)
            except Exception as exc:  # pylint: disable=broad-except
                logger.exception("Background report fetch failed", metrics={**metrics, "error": str(exc)})

        logger.info("Fetch trigger accepted", metrics=metrics)
        spawn(_work, f"fetch-reports-{request_id}")
        return (
            jsonify(
                {
                    "success": True,
                    "message": "Report fetch started",
                    "requestId": request_id,
                    "triggeredAt": _timestamp(),
                    "note": BACKGROUND_NOTE,
                }
            ),
            202,
        )

    @app.route("/fetch-historical-reports", methods=["POST"])
    def fetch_historical_reports():
        body = _payload()
        request_id = body.get("request_id") or str(uuid.uuid4())
        publisher_id = body.get("publisherId")
        if not publisher_id:
            return jsonify({"success": False, "error": "publisherId is required", "requestId": request_id}), 400

        metrics = {"request_id": request_id, "publisher_id": publisher_id}

        def _work() -> None:
            try:
                execute_single(pipeline, str(publisher_id), historical=True)
            except Exception as exc:  # pylint: disable=broad-except
                logger.exception("Background historical fetch failed", metrics={**metrics, "error": str(exc)})

        logger.info("Historical fetch trigger accepted", metrics=metrics)
        spawn(_work, f"fetch-historical-{publisher_id}")
        return (
            jsonify(
                {
                    "success": True,
                    "message": f"Historical report fetch started for publisher {publisher_id}",
                    "requestId": request_id,
                    "publisherId": publisher_id,
                    "triggeredAt": _timestamp(),
                    "note": BACKGROUND_NOTE,
                }
            ),
            202,
        )

    return app
