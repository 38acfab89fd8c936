"""
HTTP transport for the Ad Manager ``ReportService`` SOAP API.

Each public method builds one SOAP envelope, posts it with a bearer token and
hands the reply to the typed extractors in :mod:`adrev.gam_reports.soap`.
Transient failures (5xx, network errors) are retried with exponential
backoff; anything else surfaces immediately as :class:`TransportError`.
"""

from __future__ import annotations

import time
from datetime import date
from typing import Any, Dict, Optional, Protocol, Sequence

import requests

from adrev.common.logging import StructuredLogger, setup_integrations_logger

from . import soap
from .errors import ProtocolError, TransportError

METADATA_URL = "https://admanager.googleapis.com/v1/networks/{network_code}"
DEFAULT_CURRENCY = "USD"


class TokenProvider(Protocol):
    def get_access_token(self) -> str:
        ...


class GamReportClient:
    """Thin wrapper around the three ``ReportService`` calls used by the pipeline."""

    RETRYABLE_STATUS = {500, 502, 503, 504}

    def __init__(
        self,
        *,
        token_provider: TokenProvider,
        api_version: str = "v202508",
        application_name: str = "GAM Report Worker",
        logger: Optional[StructuredLogger] = None,
        timeout: float = 120,
        metadata_timeout: float = 30,
        max_retries: int = 2,
        backoff_factor: float = 1.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.token_provider = token_provider
        self.api_version = api_version
        self.application_name = application_name
        self.service_url = f"https://ads.google.com/apis/ads/publisher/{api_version}/ReportService"
        self.logger = logger or setup_integrations_logger("gam_reports")
        self.timeout = timeout
        self.metadata_timeout = metadata_timeout
        self.max_retries = max(1, max_retries)
        self.backoff_factor = backoff_factor
        self.session = session or requests.Session()

    # --------------------------------------------------------------------- #
    # ReportService operations
    # --------------------------------------------------------------------- #
    def submit_job(
        self,
        network_code: str,
        start_date: date,
        end_date: date,
        *,
        dimensions: Sequence[str] = soap.DIMENSIONS,
        columns: Sequence[str] = soap.COLUMNS,
    ) -> str:
        """Run ``runReportJob`` and return the new job id."""
        body = soap.run_report_job_body(
            api_version=self.api_version,
            start_date=start_date,
            end_date=end_date,
            dimensions=dimensions,
            columns=columns,
        )
        reply = self._call(network_code, body, operation="runReportJob")
        job_id = soap.extract_job_id(reply)
        self.logger.info(
            "Report job created",
            metrics={
                "network_code": network_code,
                "job_id": job_id,
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
            },
        )
        return job_id

    def poll_status(self, network_code: str, job_id: str) -> str:
        body = soap.report_job_status_body(api_version=self.api_version, job_id=job_id)
        reply = self._call(network_code, body, operation="getReportJobStatus")
        return soap.extract_status(reply)

    def get_download_url(self, network_code: str, job_id: str) -> str:
        body = soap.report_download_url_body(api_version=self.api_version, job_id=job_id)
        reply = self._call(network_code, body, operation="getReportDownloadURL")
        return soap.extract_download_url(reply)

    def get_network_currency(self, network_code: str) -> str:
        """
        Currency configured on the network, from the REST metadata endpoint.

        Any failure (auth, HTTP, payload) falls back to ``USD``.
        """
        url = METADATA_URL.format(network_code=network_code)
        try:
            token = self.token_provider.get_access_token()
            response = self.session.get(
                url,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
                timeout=self.metadata_timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, TransportError, ValueError) as exc:
            self.logger.warning(
                "Failed to fetch network info, using default currency",
                metrics={"network_code": network_code, "error": str(exc), "currency": DEFAULT_CURRENCY},
            )
            return DEFAULT_CURRENCY

        currency = payload.get("currencyCode") if isinstance(payload, dict) else None
        return str(currency) if currency else DEFAULT_CURRENCY

    # --------------------------------------------------------------------- #
    # Internal helpers
    # --------------------------------------------------------------------- #
    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "text/xml; charset=utf-8",
            "SOAPAction": "",
            "Authorization": f"Bearer {self.token_provider.get_access_token()}",
        }

    def _call(self, network_code: str, body: str, *, operation: str) -> str:
        envelope = soap.build_envelope(
            body,
            network_code=network_code,
            api_version=self.api_version,
            application_name=self.application_name,
        )
        request_metrics: Dict[str, Any] = {"operation": operation, "network_code": network_code}

        last_error: Optional[TransportError] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                response = self.session.post(
                    self.service_url,
                    data=envelope.encode("utf-8"),
                    headers=self._headers(),
                    timeout=self.timeout,
                )
            except requests.RequestException as err:
                last_error = TransportError(
                    f"Network error while calling {operation}: {err}",
                    details={**request_metrics, "error": err.__class__.__name__},
                )
                if attempt < self.max_retries:
                    self._sleep(attempt, err)
                    continue
                raise last_error from err

            if response.status_code >= 400:
                text = response.text or ""
                fault = soap.extract_fault(text) if text else None
                error = TransportError(
                    f"HTTP {response.status_code} for {operation}" + (f": {fault}" if fault else ""),
                    status=response.status_code,
                    details={**request_metrics, "fault": fault, "body_preview": text[:1000]},
                )
                log_metrics = {
                    **request_metrics,
                    "http_status": response.status_code,
                    "attempt": attempt,
                    "max_attempts": self.max_retries,
                    "fault": fault,
                }
                if response.status_code in self.RETRYABLE_STATUS and attempt < self.max_retries:
                    self.logger.warning("Transient Ad Manager API error", metrics=log_metrics)
                    last_error = error
                    self._sleep(attempt, error)
                    continue
                self.logger.error("Ad Manager API request failed", metrics=log_metrics)
                raise error

            if not response.content:
                raise ProtocolError(f"Empty reply for {operation}", details=request_metrics)
            return response.content.decode(response.encoding or "utf-8", errors="replace")

        raise last_error or TransportError(f"{operation} failed after {self.max_retries} attempts")

    def _sleep(self, attempt: int, error: Exception) -> None:
        wait = self.backoff_factor * (2 ** (attempt - 1))
        self.logger.warning(
            "Temporary Ad Manager API error, backing off",
            metrics={
                "attempt": attempt,
                "max_attempts": self.max_retries,
                "sleep_seconds": wait,
                "error": str(error),
            },
        )
        time.sleep(wait)
