"""Service-account bearer tokens for the Ad Manager API."""

from __future__ import annotations

import json
import os
import threading
from typing import Any, Dict, List, Optional

import google.auth.exceptions
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from adrev.common.logging import setup_integrations_logger

from .errors import ConfigError, TransportError

DFP_SCOPE = "https://www.googleapis.com/auth/dfp"

logger = setup_integrations_logger("gam_reports")


def load_service_account_info(raw: str) -> Dict[str, Any]:
    """
    Parse the service-account key from inline JSON or a path to a JSON file.

    Keys pasted into env files often carry literal ``\\n`` sequences in
    ``private_key``; those are turned back into newlines.
    """
    text = (raw or "").strip()
    if not text:
        raise ConfigError("GAM service account key is empty")
    if not text.startswith("{"):
        if not os.path.exists(text):
            raise ConfigError(f"GAM service account file not found: {text}")
        with open(text, "r", encoding="utf-8") as handle:
            text = handle.read()
    try:
        info = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError("GAM_SERVICE_ACCOUNT_JSON is not valid JSON") from exc
    if not isinstance(info, dict):
        raise ConfigError("GAM_SERVICE_ACCOUNT_JSON must be a JSON object")

    key = info.get("private_key")
    if isinstance(key, str) and "\\n" in key:
        info = {**info, "private_key": key.replace("\\n", "\n")}
    return info


class ServiceAccountTokenProvider:
    """Caches one ``google-auth`` credential and refreshes it when it expires."""

    def __init__(self, info: Dict[str, Any], scopes: Optional[List[str]] = None) -> None:
        self.scopes = scopes or [DFP_SCOPE]
        try:
            self.credentials = service_account.Credentials.from_service_account_info(info, scopes=self.scopes)
        except (ValueError, KeyError) as exc:
            raise ConfigError(f"Invalid GAM service account key: {exc}") from exc
        self._lock = threading.Lock()
        self._request = Request()

    @classmethod
    def from_config(cls, raw: str) -> "ServiceAccountTokenProvider":
        return cls(load_service_account_info(raw))

    def get_access_token(self) -> str:
        with self._lock:
            if not self.credentials.valid:
                try:
                    self.credentials.refresh(self._request)
                except google.auth.exceptions.GoogleAuthError as exc:
                    logger.error("Failed to obtain access token", metrics={"error": str(exc)})
                    raise TransportError(f"Failed to obtain access token: {exc}") from exc
            token = self.credentials.token
        if not token:
            raise TransportError("Failed to obtain access token")
        return token
