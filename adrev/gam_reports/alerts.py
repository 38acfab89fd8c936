"""
Failure alerts and the service-key status hook.

An alert is stored in the ``alerts`` table and then pushed to the configured
channels: an HTTP hook (the e-mail sender) and Telegram.  Delivery problems
are logged and never propagate into the ingestion run.
"""

from __future__ import annotations

import json
import uuid
from typing import Any, Dict, Optional

import requests

from adrev.common.ch import ClickHouseClient
from adrev.common.logging import StructuredLogger, setup_integrations_logger
from adrev.common.time import utcnow

from .sink import next_version

ALERTS_TABLE = "alerts"
ALERT_TITLE = "GAM Report Fetch Failed"
PERMISSION_DENIED_MESSAGE = "Permission denied - service account not authorized"
SILENT_MARKER = "No data returned"

ALERT_COLUMNS = [
    "id",
    "publisher_id",
    "type",
    "severity",
    "title",
    "message",
    "status",
    "details",
    "created_at",
    "_ver",
]


class TelegramNotifier:
    def __init__(self, bot_token: str, chat_id: str, *, session: Optional[requests.Session] = None) -> None:
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.session = session or requests.Session()

    def send(self, text: str) -> None:
        response = self.session.post(
            f"https://api.telegram.org/bot{self.bot_token}/sendMessage",
            json={"chat_id": self.chat_id, "text": text, "disable_web_page_preview": True},
            timeout=10,
        )
        response.raise_for_status()


class AlertManager:
    def __init__(
        self,
        ch_client: Optional[ClickHouseClient],
        *,
        database: str,
        webhook_url: Optional[str] = None,
        auth_token: Optional[str] = None,
        telegram: Optional[TelegramNotifier] = None,
        dry_run: bool = False,
        session: Optional[requests.Session] = None,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        self.ch_client = ch_client
        self.table = f"{database}.{ALERTS_TABLE}"
        self.webhook_url = webhook_url
        self.auth_token = auth_token
        self.telegram = telegram
        self.dry_run = dry_run or ch_client is None
        self.session = session or requests.Session()
        self.logger = logger or setup_integrations_logger("gam_reports")

    def notify_failure(self, account_id: str, account_name: str, network_code: Optional[str], message: str) -> Optional[str]:
        """Record and deliver a fetch failure alert; returns the alert id when one was created."""
        metrics = {"account_id": account_id, "account_name": account_name, "network_code": network_code}
        if message and SILENT_MARKER in message:
            self.logger.info("Empty report, alert suppressed", metrics={**metrics, "error": message})
            return None

        text = f"GAM report fetch failed for {account_name} (Network: {network_code}): {message}"
        details: Dict[str, Any] = {
            "error_type": "report_fetch_failure",
            "network_code": network_code,
            "publisher_name": account_name,
            "error_message": message,
        }
        alert_id = str(uuid.uuid4())
        self.logger.error("Report fetch alert", metrics={**metrics, "alert_id": alert_id, "error": message})

        if not self.dry_run:
            row = {
                "id": alert_id,
                "publisher_id": account_id,
                "type": "api_error",
                "severity": "high",
                "title": ALERT_TITLE,
                "message": text,
                "status": "active",
                "details": json.dumps(details, ensure_ascii=False),
                "created_at": utcnow().replace(tzinfo=None),
                "_ver": next_version(),
            }
            try:
                self.ch_client.insert_rows(self.table, [row], ALERT_COLUMNS)
            except Exception as exc:  # pylint: disable=broad-except
                self.logger.error("Failed to store alert", metrics={**metrics, "error": str(exc)})
                return None

        self._deliver(alert_id, text, metrics)
        return alert_id

    def notify_permission_denied(self, account_id: str, account_name: str, network_code: Optional[str]) -> Optional[str]:
        return self.notify_failure(account_id, account_name, network_code, PERMISSION_DENIED_MESSAGE)

    def _deliver(self, alert_id: str, text: str, metrics: Dict[str, Any]) -> None:
        if self.dry_run:
            return
        if self.webhook_url:
            headers = {"Authorization": f"Bearer {self.auth_token}"} if self.auth_token else {}
            try:
                response = self.session.post(self.webhook_url, json={"alertId": alert_id}, headers=headers, timeout=30)
                response.raise_for_status()
            except requests.RequestException as exc:
                self.logger.error("Failed to send alert e-mail", metrics={**metrics, "error": str(exc)})
        if self.telegram:
            try:
                self.telegram.send(text)
            except requests.RequestException as exc:
                self.logger.error("Failed to send Telegram alert", metrics={**metrics, "error": str(exc)})


class ServiceKeyChecker:
    """Asks the admin service to re-validate an account's service key."""

    def __init__(
        self,
        url: Optional[str],
        *,
        auth_token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        self.url = url
        self.auth_token = auth_token
        self.session = session or requests.Session()
        self.logger = logger or setup_integrations_logger("gam_reports")

    def check(self, account_id: str) -> bool:
        if not self.url:
            self.logger.debug("Service key check hook not configured", metrics={"account_id": account_id})
            return False
        headers = {"Authorization": f"Bearer {self.auth_token}"} if self.auth_token else {}
        try:
            response = self.session.post(self.url, json={"publisherId": account_id}, headers=headers, timeout=30)
            response.raise_for_status()
        except requests.RequestException as exc:
            self.logger.error("Error checking service key status", metrics={"account_id": account_id, "error": str(exc)})
            return False
        self.logger.info("Service key status checked", metrics={"account_id": account_id})
        return True
