"""Public exports for the ``adrev.common`` convenience package."""

from .ch import ClickHouseClient, get_client_from_config, rows_to_columns
from .logging import (
    Metrics,
    StructuredLogger,
    get_logger,
    log_data_operation,
    log_execution_time,
    setup_integrations_logger,
)
from .time import (
    date_range,
    days_ago,
    now_local,
    to_date,
    today_local,
    utcnow,
)

__all__ = [
    # ClickHouse helpers
    "ClickHouseClient",
    "get_client_from_config",
    "rows_to_columns",
    # Time helpers
    "utcnow",
    "now_local",
    "today_local",
    "to_date",
    "date_range",
    "days_ago",
    # Logging helpers
    "StructuredLogger",
    "Metrics",
    "get_logger",
    "log_execution_time",
    "log_data_operation",
    "setup_integrations_logger",
]
