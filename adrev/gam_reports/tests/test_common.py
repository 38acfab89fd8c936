"""Tests for the shared ClickHouse, time and logging helpers."""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from unittest.mock import MagicMock

import pytest

from adrev.common import ch as ch_module
from adrev.common.logging import StructuredLogger, log_data_operation, setup_integrations_logger
from adrev.common.time import date_range, days_ago, to_date

logger = setup_integrations_logger("gam_reports.test")


def test_rows_to_columns_orders_and_fills_missing():
    rows = [{"a": 1, "b": 2}, {"b": 3}]
    assert ch_module.rows_to_columns(rows, ["b", "a"]) == [[2, 1], [3, None]]


def test_insert_rows_uses_column_names(monkeypatch):
    driver = MagicMock()
    monkeypatch.setattr(ch_module.clickhouse_connect, "get_client", MagicMock(return_value=driver))

    client = ch_module.ClickHouseClient(host="ch.test", port=8123, username="u", database="adrev")
    written = client.insert_rows("adrev.t", [{"x": 1, "y": "a"}], ["x", "y"])

    assert written == 1
    driver.insert.assert_called_once_with("adrev.t", [[1, "a"]], column_names=["x", "y"])
    assert client.insert_rows("adrev.t", [], ["x"]) == 0


def test_to_date_and_ranges():
    assert to_date("2025-01-31T10:00:00") == date(2025, 1, 31)
    assert to_date(datetime(2025, 1, 31, 23, 30, tzinfo=timezone.utc)) == date(2025, 1, 31)
    assert list(date_range("2024-02-28", "2024-03-01")) == [date(2024, 2, 28), date(2024, 2, 29), date(2024, 3, 1)]
    assert days_ago(60, today=date(2025, 3, 1)) == date(2024, 12, 31)
    with pytest.raises(ValueError):
        list(date_range("2025-01-02", "2025-01-01"))


def test_structured_logger_appends_metrics(caplog):
    assert isinstance(logger, StructuredLogger)

    with caplog.at_level(logging.INFO, logger="gam_reports.test"):
        logger.info("Report saved", metrics={"rows": 3})

    assert 'Report saved | metrics={"rows": 3}' in caplog.text


def test_log_data_operation_reports_row_count(caplog):
    @log_data_operation(logger, "upsert", "src", "dst")
    def _write():
        return 5

    with caplog.at_level(logging.INFO, logger="gam_reports.test"):
        assert _write() == 5

    assert '"rows": 5' in caplog.text
