"""ClickHouse client wrapper with connection retry and env-based defaults."""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, TYPE_CHECKING

import clickhouse_connect
from clickhouse_connect.driver.exceptions import ClickHouseError

if TYPE_CHECKING:
    from adrev.gam_reports.config import GamReportsConfig


logger = logging.getLogger(__name__)

_ENV_ALIASES = {
    "host": ("CLICKHOUSE_HOST", "CH_HOST"),
    "port": ("CLICKHOUSE_PORT", "CLICKHOUSE_HTTP_PORT", "CH_PORT"),
    "user": ("CLICKHOUSE_USER", "CH_USER", "CLICKHOUSE_USERNAME"),
    "password": ("CLICKHOUSE_PASSWORD", "CH_PASSWORD"),
    "database": ("CLICKHOUSE_DB", "CLICKHOUSE_DATABASE", "CH_DATABASE"),
    "secure": ("CLICKHOUSE_SECURE", "CH_SECURE"),
    "verify": ("CLICKHOUSE_VERIFY_SSL", "CH_VERIFY_SSL"),
}


def _read_env(key: str) -> Optional[str]:
    for env_name in _ENV_ALIASES.get(key, ()):
        value = os.getenv(env_name)
        if value is not None and value.strip() != "":
            return value
    return None


def _parse_bool(value: Optional[str], *, default: bool = False) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"true", "1", "yes", "y", "on"}:
        return True
    if normalized in {"false", "0", "no", "n", "off"}:
        return False
    return default


def rows_to_columns(rows: Sequence[Mapping[str, Any]], column_names: Sequence[str]) -> List[List[Any]]:
    """Project dict rows onto an ordered column list (missing keys become ``None``)."""
    return [[row.get(name) for name in column_names] for row in rows]


class ClickHouseClient:
    """Convenience wrapper around ``clickhouse_connect`` used by the sinks and the run lease."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        database: Optional[str] = None,
        secure: Optional[bool] = None,
        verify: Optional[bool] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        connect_timeout: int = 10,
        send_receive_timeout: int = 60,
    ) -> None:
        env_secure = _parse_bool(_read_env("secure"), default=False)
        env_verify = _parse_bool(_read_env("verify"), default=env_secure)

        self.host = host or _read_env("host") or "localhost"
        self.secure = env_secure if secure is None else secure
        self.verify = env_verify if verify is None else verify

        port_env = _read_env("port")
        self.port = port if port is not None else int(port_env or ("8443" if self.secure else "8123"))
        self.username = username or _read_env("user") or "default"
        self.password = password or _read_env("password") or ""
        self.database = database or _read_env("database") or "default"

        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.connect_timeout = connect_timeout
        self.send_receive_timeout = send_receive_timeout

        self.client = None
        self._connect()

    # ------------------------------------------------------------------ #
    # Connection helpers
    # ------------------------------------------------------------------ #
    def _connect(self) -> None:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                self.client = clickhouse_connect.get_client(
                    host=self.host,
                    port=self.port,
                    username=self.username,
                    password=self.password,
                    database=self.database,
                    secure=self.secure,
                    verify=self.verify,
                    connect_timeout=self.connect_timeout,
                    send_receive_timeout=self.send_receive_timeout,
                )
                self.client.command("SELECT 1")
                scheme = "https" if self.secure else "http"
                logger.info("Connected to ClickHouse at %s://%s:%s", scheme, self.host, self.port)
                return
            except Exception as exc:  # pylint: disable=broad-except
                last_error = exc
                logger.warning(
                    "ClickHouse connection attempt %s/%s failed: %s",
                    attempt,
                    self.max_retries,
                    exc,
                )
                if attempt < self.max_retries:
                    time.sleep(self.retry_delay * (2 ** (attempt - 1)))
        if last_error:
            raise last_error

    def _call_with_retry(self, func, *args, **kwargs):
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return func(*args, **kwargs)
            except ClickHouseError as exc:
                last_error = exc
                logger.warning("ClickHouseError (%s): %r", exc.__class__.__name__, exc)
            except Exception as exc:  # pylint: disable=broad-except
                last_error = exc
                logger.error(
                    "Unexpected ClickHouse error (%s): %r",
                    exc.__class__.__name__,
                    exc,
                    exc_info=True,
                )
            if attempt < self.max_retries:
                time.sleep(self.retry_delay * (2 ** (attempt - 1)))
                self._connect()
        if last_error:
            raise last_error

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def execute(self, query: str, parameters: Optional[Dict[str, Any]] = None):
        """Run a SELECT and return the ``clickhouse_connect`` result set."""
        if parameters:
            return self._call_with_retry(self.client.query, query, parameters)
        return self._call_with_retry(self.client.query, query)

    def command(self, query: str, parameters: Optional[Dict[str, Any]] = None) -> Any:
        if parameters:
            return self._call_with_retry(self.client.command, query, parameters)
        return self._call_with_retry(self.client.command, query)

    def insert(
        self,
        table: str,
        data: Sequence[Sequence[Any]],
        column_names: Optional[List[str]] = None,
    ) -> None:
        kwargs: Dict[str, Any] = {}
        if column_names:
            kwargs["column_names"] = column_names
        self._call_with_retry(self.client.insert, table, data, **kwargs)
        logger.info("Inserted %s rows into %s", len(data), table)

    def insert_rows(self, table: str, rows: Iterable[Mapping[str, Any]], column_names: Sequence[str]) -> int:
        """Insert dict rows; returns the number of rows written."""
        materialized = list(rows)
        if not materialized:
            return 0
        self.insert(table, rows_to_columns(materialized, column_names), column_names=list(column_names))
        return len(materialized)


def get_client_from_config(cfg: "GamReportsConfig") -> ClickHouseClient:
    return ClickHouseClient(
        host=cfg.clickhouse_host,
        port=cfg.clickhouse_port,
        username=cfg.clickhouse_user,
        password=cfg.clickhouse_password,
        database=cfg.clickhouse_db,
        secure=cfg.clickhouse_secure,
        verify=cfg.clickhouse_verify_ssl,
    )
