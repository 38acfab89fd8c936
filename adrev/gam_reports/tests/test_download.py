"""Tests for export download and CSV decoding."""

from __future__ import annotations

import gzip
from unittest.mock import MagicMock

import pytest
import requests

from adrev.gam_reports.download import (
    ReportDownloader,
    decompress_payload,
    iter_chunks,
    parse_csv_records,
)
from adrev.gam_reports.errors import TransportError

CSV_TEXT = (
    "Dimension.DATE,Dimension.SITE_NAME,Column.AD_EXCHANGE_TOTAL_REQUESTS\n"
    "2025-01-01, example.com ,100\n"
    "\n"
    "2025-01-01,short.example\n"
    "2025-01-02,extra.example,5,surplus\n"
)


def _make_response(status: int, content: bytes) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response.url = "https://storage.test/report.csv.gz"
    response._content = content
    response.request = requests.Request("GET", response.url).prepare()
    return response


def test_parse_csv_records_normalises_rows():
    records = parse_csv_records(CSV_TEXT)

    assert len(records) == 3
    assert records[0]["Dimension.SITE_NAME"] == "example.com"
    assert records[1]["Column.AD_EXCHANGE_TOTAL_REQUESTS"] == ""
    assert records[2] == {
        "Dimension.DATE": "2025-01-02",
        "Dimension.SITE_NAME": "extra.example",
        "Column.AD_EXCHANGE_TOTAL_REQUESTS": "5",
    }


def test_parse_csv_records_header_only():
    assert parse_csv_records("Dimension.DATE,Column.X\n") == []


def test_decompress_payload_passes_plain_bytes_through():
    assert decompress_payload(b"a,b\n") == b"a,b\n"
    assert decompress_payload(gzip.compress(b"a,b\n")) == b"a,b\n"


def test_iter_chunks():
    assert list(iter_chunks([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
    with pytest.raises(ValueError):
        list(iter_chunks([1], 0))


def test_fetch_decodes_gzip_with_bom():
    session = MagicMock()
    payload = gzip.compress(("\ufeff" + CSV_TEXT).encode("utf-8"))
    session.get.return_value = _make_response(200, payload)

    records = ReportDownloader(session=session).fetch("https://storage.test/report.csv.gz")

    assert len(records) == 3
    assert "Dimension.DATE" in records[0]


def test_fetch_empty_export():
    session = MagicMock()
    session.get.return_value = _make_response(200, gzip.compress(b""))

    assert ReportDownloader(session=session).fetch("https://storage.test/empty") == []


def test_fetch_http_error():
    session = MagicMock()
    session.get.return_value = _make_response(404, b"missing")

    with pytest.raises(TransportError) as exc:
        ReportDownloader(session=session).fetch("https://storage.test/missing")

    assert exc.value.status == 404


def test_fetch_corrupt_gzip():
    session = MagicMock()
    session.get.return_value = _make_response(200, b"\x1f\x8bgarbage")

    with pytest.raises(TransportError):
        ReportDownloader(session=session).fetch("https://storage.test/corrupt")


def test_fetch_network_error():
    session = MagicMock()
    session.get.side_effect = requests.ConnectionError("reset")

    with pytest.raises(TransportError):
        ReportDownloader(session=session).fetch("https://storage.test/report")
