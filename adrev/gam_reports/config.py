"""
Environment configuration for the Ad Manager report worker.

Settings come from the process environment, optionally seeded from a dotenv
file (e.g. ``secrets/.env.gam_reports``).  Validation happens once in
:meth:`GamReportsConfig.load`; every other module receives the typed object.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigError

ENV_ALIASES = {
    "GAM_SERVICE_ACCOUNT_JSON": ("GAM_SERVICE_ACCOUNT_JSON", "GAM_SERVICE_ACCOUNT_FILE"),
    "GAM_API_VERSION": ("GAM_API_VERSION",),
    "GAM_APPLICATION_NAME": ("GAM_APPLICATION_NAME",),
    "BATCH_SIZE": ("BATCH_SIZE", "GAM_BATCH_SIZE"),
    "BATCH_DELAY_MS": ("BATCH_DELAY_MS",),
    "PUBLISHER_DELAY_MS": ("PUBLISHER_DELAY_MS", "ACCOUNT_DELAY_MS"),
    "RETRY_ATTEMPTS": ("RETRY_ATTEMPTS", "GAM_RETRY_ATTEMPTS"),
    "RETRY_DELAY_MS": ("RETRY_DELAY_MS", "GAM_RETRY_DELAY_MS"),
    "CLICKHOUSE_HOST": ("CLICKHOUSE_HOST", "CH_HOST"),
    "CLICKHOUSE_PORT": ("CLICKHOUSE_PORT", "CH_PORT", "CLICKHOUSE_HTTP_PORT"),
    "CLICKHOUSE_DB": ("CLICKHOUSE_DB", "CLICKHOUSE_DATABASE", "CH_DATABASE"),
    "CLICKHOUSE_USER": (
        "CLICKHOUSE_USER",
        "CLICKHOUSE_USER_WRITE",
        "CH_USER",
        "CLICKHOUSE_USERNAME",
    ),
    "CLICKHOUSE_PASSWORD": (
        "CLICKHOUSE_PASSWORD",
        "CLICKHOUSE_PASSWORD_WRITE",
        "CH_PASSWORD",
    ),
    "CLICKHOUSE_SECURE": ("CLICKHOUSE_SECURE", "CH_SECURE"),
    "CLICKHOUSE_VERIFY_SSL": ("CLICKHOUSE_VERIFY_SSL", "CH_VERIFY_SSL"),
    "TZ": ("TZ", "DEFAULT_TZ"),
    "JOB_NAME": ("JOB_NAME", "GAM_JOB_NAME"),
    "DRY_RUN": ("DRY_RUN", "GAM_DRY_RUN"),
    "PORT": ("PORT", "GAM_HTTP_PORT"),
}

DEFAULTS = {
    "GAM_API_VERSION": "v202508",
    "GAM_APPLICATION_NAME": "GAM Report Worker",
    "BATCH_SIZE": "100",
    "BATCH_DELAY_MS": "2000",
    "PUBLISHER_DELAY_MS": "100",
    "RETRY_ATTEMPTS": "3",
    "RETRY_DELAY_MS": "1000",
    "GAM_POLL_INTERVAL_SECONDS": "10",
    "GAM_POLL_MAX_ATTEMPTS": "90",
    "GAM_TOLERATE_POLL_ERRORS": "true",
    "GAM_REQUEST_TIMEOUT": "120",
    "GAM_METADATA_TIMEOUT": "30",
    "GAM_HTTP_RETRIES": "2",
    "REPORT_CHUNK_SIZE": "10000",
    "UPSERT_CHUNK_SIZE": "1000",
    "HISTORICAL_DAYS": "60",
    "RUN_OVERLAP_POLICY": "reject",
    "RUN_LEASE_TTL_SECONDS": "10800",
    "CLICKHOUSE_PORT": "8123",
    "CLICKHOUSE_PASSWORD": "",
    "CLICKHOUSE_SECURE": "false",
    "CLICKHOUSE_VERIFY_SSL": "false",
    "TZ": "UTC",
    "JOB_NAME": "gam_reports",
    "DRY_RUN": "false",
    "PORT": "3000",
}

OVERLAP_POLICIES = ("reject", "allow")


@dataclass(frozen=True)
class GamReportsConfig:
    """Typed representation of the worker configuration."""

    # Ad Manager
    service_account_json: str
    api_version: str
    application_name: str

    # Batch / retry
    batch_size: int
    batch_delay: float
    account_delay: float
    retry_attempts: int
    retry_delay: float

    # Report job
    poll_interval: float
    poll_max_attempts: int
    tolerate_poll_errors: bool
    request_timeout: float
    metadata_timeout: float
    http_retries: int
    chunk_size: int
    upsert_chunk_size: int
    historical_days: int

    # Run lease
    overlap_policy: str
    lease_ttl_seconds: int

    # Notifications
    alert_webhook_url: Optional[str]
    service_key_check_url: Optional[str]
    hook_auth_token: Optional[str]
    tg_bot_token: Optional[str]
    tg_chat_id: Optional[str]

    # ClickHouse
    clickhouse_host: str
    clickhouse_port: int
    clickhouse_db: str
    clickhouse_user: str
    clickhouse_password: str
    clickhouse_secure: bool
    clickhouse_verify_ssl: bool

    # Runtime
    tz: str
    job_name: str
    dry_run: bool
    port: int

    REQUIRED_KEYS = (
        "GAM_SERVICE_ACCOUNT_JSON",
        "CLICKHOUSE_HOST",
        "CLICKHOUSE_DB",
        "CLICKHOUSE_USER",
    )

    @classmethod
    def load(cls, env_file: Optional[str] = None, *, override: bool = True) -> "GamReportsConfig":
        """
        Load configuration from environment variables (optionally reading a dotenv file).

        A missing or unreadable ``env_file`` is ignored and the process environment
        is used as is.

        Raises:
            ConfigError: if a required variable is missing or a value is malformed.
        """
        if env_file:
            try:
                if os.path.exists(env_file):
                    load_dotenv(env_file, override=override)
            except OSError:
                pass

        def _read_env(key: str) -> Optional[str]:
            for alias in ENV_ALIASES.get(key, (key,)):
                value = os.getenv(alias)
                if value is not None and value.strip() != "":
                    return value
            return DEFAULTS.get(key)

        missing = [key for key in cls.REQUIRED_KEYS if not (_read_env(key) or "").strip()]
        if missing:
            raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

        def parse_bool(key: str) -> bool:
            value = _read_env(key) or ""
            val = value.strip().lower()
            if val in ("true", "1", "yes", "on"):
                return True
            if val in ("false", "0", "no", "off"):
                return False
            raise ConfigError(f"Invalid boolean value for {key}: {value}")

        def parse_int(key: str, *, minimum: int = 0) -> int:
            value = _read_env(key) or ""
            try:
                parsed = int(value.strip())
            except ValueError as exc:
                raise ConfigError(f"{key} must be an integer, got: {value}") from exc
            if parsed < minimum:
                raise ConfigError(f"{key} must be >= {minimum}, got: {parsed}")
            return parsed

        def parse_float(key: str) -> float:
            value = _read_env(key) or ""
            try:
                parsed = float(value.strip())
            except ValueError as exc:
                raise ConfigError(f"{key} must be a number, got: {value}") from exc
            if parsed < 0:
                raise ConfigError(f"{key} must not be negative, got: {parsed}")
            return parsed

        def optional(key: str) -> Optional[str]:
            value = (_read_env(key) or "").strip()
            return value or None

        policy = (_read_env("RUN_OVERLAP_POLICY") or "").strip().lower()
        if policy not in OVERLAP_POLICIES:
            raise ConfigError(
                f"RUN_OVERLAP_POLICY must be one of {', '.join(OVERLAP_POLICIES)}, got: {policy}"
            )

        config = cls(
            service_account_json=_read_env("GAM_SERVICE_ACCOUNT_JSON").strip(),
            api_version=_read_env("GAM_API_VERSION").strip(),
            application_name=_read_env("GAM_APPLICATION_NAME").strip(),
            batch_size=parse_int("BATCH_SIZE", minimum=1),
            batch_delay=parse_int("BATCH_DELAY_MS") / 1000.0,
            account_delay=parse_int("PUBLISHER_DELAY_MS") / 1000.0,
            retry_attempts=parse_int("RETRY_ATTEMPTS", minimum=1),
            retry_delay=parse_int("RETRY_DELAY_MS") / 1000.0,
            poll_interval=parse_float("GAM_POLL_INTERVAL_SECONDS"),
            poll_max_attempts=parse_int("GAM_POLL_MAX_ATTEMPTS", minimum=1),
            tolerate_poll_errors=parse_bool("GAM_TOLERATE_POLL_ERRORS"),
            request_timeout=parse_float("GAM_REQUEST_TIMEOUT"),
            metadata_timeout=parse_float("GAM_METADATA_TIMEOUT"),
            http_retries=parse_int("GAM_HTTP_RETRIES", minimum=1),
            chunk_size=parse_int("REPORT_CHUNK_SIZE", minimum=1),
            upsert_chunk_size=parse_int("UPSERT_CHUNK_SIZE", minimum=1),
            historical_days=parse_int("HISTORICAL_DAYS"),
            overlap_policy=policy,
            lease_ttl_seconds=parse_int("RUN_LEASE_TTL_SECONDS", minimum=1),
            alert_webhook_url=optional("ALERT_WEBHOOK_URL"),
            service_key_check_url=optional("SERVICE_KEY_CHECK_URL"),
            hook_auth_token=optional("HOOK_AUTH_TOKEN"),
            tg_bot_token=optional("TG_BOT_TOKEN"),
            tg_chat_id=optional("TG_CHAT_ID"),
            clickhouse_host=_read_env("CLICKHOUSE_HOST").strip(),
            clickhouse_port=parse_int("CLICKHOUSE_PORT", minimum=1),
            clickhouse_db=_read_env("CLICKHOUSE_DB").strip(),
            clickhouse_user=_read_env("CLICKHOUSE_USER").strip(),
            clickhouse_password=_read_env("CLICKHOUSE_PASSWORD") or "",
            clickhouse_secure=parse_bool("CLICKHOUSE_SECURE"),
            clickhouse_verify_ssl=parse_bool("CLICKHOUSE_VERIFY_SSL"),
            tz=_read_env("TZ").strip(),
            job_name=_read_env("JOB_NAME").strip(),
            dry_run=parse_bool("DRY_RUN"),
            port=parse_int("PORT", minimum=1),
        )

        config._apply_runtime_env()
        return config

    def _apply_runtime_env(self) -> None:
        """
        Propagate values to the environment variables read by ``adrev.common``.

        ``ClickHouseClient`` resolves ``CLICKHOUSE_*``/``CH_*`` and the time
        helpers read ``DEFAULT_TZ``.
        """
        os.environ["DEFAULT_TZ"] = self.tz

        os.environ["CLICKHOUSE_HOST"] = self.clickhouse_host
        os.environ["CLICKHOUSE_PORT"] = str(self.clickhouse_port)
        os.environ["CLICKHOUSE_USER"] = self.clickhouse_user
        os.environ["CLICKHOUSE_PASSWORD"] = self.clickhouse_password
        os.environ["CLICKHOUSE_DB"] = self.clickhouse_db
        os.environ["CLICKHOUSE_SECURE"] = "true" if self.clickhouse_secure else "false"
        os.environ["CLICKHOUSE_VERIFY_SSL"] = "true" if self.clickhouse_verify_ssl else "false"
