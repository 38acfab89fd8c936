"""Tests for the ReportService transport: retries, faults and currency lookup."""

from __future__ import annotations

import json
from datetime import date
from unittest.mock import MagicMock

import pytest
import requests

from adrev.gam_reports.client import GamReportClient
from adrev.gam_reports.errors import GamReportError, ProtocolError, TransportError, is_permission_denied

ENV = "http://schemas.xmlsoap.org/soap/envelope/"


class _StaticToken:
    def get_access_token(self) -> str:
        return "token-123"


def _make_response(status: int, body: str | dict | None = None, content_type: str = "text/xml") -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response.url = "https://ads.test/ReportService"
    response.headers["Content-Type"] = content_type
    if body is None:
        response._content = b""
    elif isinstance(body, dict):
        response._content = json.dumps(body).encode("utf-8")
    else:
        response._content = body.encode("utf-8")
    response.request = requests.Request("POST", response.url).prepare()
    return response


def _soap(body: str) -> str:
    return f'<soap:Envelope xmlns:soap="{ENV}"><soap:Body>{body}</soap:Body></soap:Envelope>'


def _client(**kwargs) -> GamReportClient:
    return GamReportClient(token_provider=_StaticToken(), backoff_factor=0, **kwargs)


def test_submit_job_posts_envelope_and_returns_id(monkeypatch):
    client = _client()
    mocked_post = MagicMock(return_value=_make_response(200, _soap("<ns2:rval><ns2:id>321</ns2:id></ns2:rval>")))
    monkeypatch.setattr(client.session, "post", mocked_post)

    job_id = client.submit_job("1234", date(2025, 1, 1), date(2025, 1, 1))

    assert job_id == "321"
    args, kwargs = mocked_post.call_args
    assert args[0] == "https://ads.google.com/apis/ads/publisher/v202508/ReportService"
    assert kwargs["headers"]["Authorization"] == "Bearer token-123"
    assert kwargs["timeout"] == 120
    assert b"<ns1:networkCode>1234</ns1:networkCode>" in kwargs["data"]


def test_server_errors_are_retried(monkeypatch):
    client = _client(max_retries=3)
    failure = _make_response(503, "unavailable")
    success = _make_response(200, _soap("<rval>IN_PROGRESS</rval>"))
    mocked_post = MagicMock(side_effect=[failure, failure, success])
    monkeypatch.setattr(client.session, "post", mocked_post)

    assert client.poll_status("1234", "1") == "IN_PROGRESS"
    assert mocked_post.call_count == 3


def test_permission_denied_is_not_retried(monkeypatch):
    client = _client(max_retries=3)
    fault = _soap("<soap:Fault><faultstring>PERMISSION_DENIED</faultstring></soap:Fault>")
    mocked_post = MagicMock(return_value=_make_response(403, fault))
    monkeypatch.setattr(client.session, "post", mocked_post)

    with pytest.raises(TransportError) as exc:
        client.get_download_url("1234", "9")

    assert exc.value.status == 403
    assert exc.value.permission_denied
    assert exc.value.details["fault"] == "PERMISSION_DENIED"
    assert mocked_post.call_count == 1


def test_network_errors_exhaust_retries(monkeypatch):
    client = _client(max_retries=2)
    mocked_post = MagicMock(side_effect=requests.ConnectionError("boom"))
    monkeypatch.setattr(client.session, "post", mocked_post)

    with pytest.raises(TransportError) as exc:
        client.poll_status("1234", "1")

    assert exc.value.retryable
    assert mocked_post.call_count == 2


def test_empty_reply_is_protocol_error(monkeypatch):
    client = _client()
    monkeypatch.setattr(client.session, "post", MagicMock(return_value=_make_response(200, None)))

    with pytest.raises(ProtocolError):
        client.poll_status("1234", "1")


def test_network_currency_from_metadata(monkeypatch):
    client = _client()
    mocked_get = MagicMock(return_value=_make_response(200, {"currencyCode": "EUR"}, "application/json"))
    monkeypatch.setattr(client.session, "get", mocked_get)

    assert client.get_network_currency("1234") == "EUR"
    args, kwargs = mocked_get.call_args
    assert args[0] == "https://admanager.googleapis.com/v1/networks/1234"
    assert kwargs["timeout"] == 30


@pytest.mark.parametrize(
    "response",
    [
        _make_response(500, {"error": "x"}, "application/json"),
        _make_response(200, "not json", "text/plain"),
        _make_response(200, {"displayName": "no currency"}, "application/json"),
    ],
)
def test_network_currency_falls_back_to_usd(monkeypatch, response):
    client = _client()
    monkeypatch.setattr(client.session, "get", MagicMock(return_value=response))

    assert client.get_network_currency("1234") == "USD"


def test_network_currency_falls_back_on_network_error(monkeypatch):
    client = _client()
    monkeypatch.setattr(client.session, "get", MagicMock(side_effect=requests.Timeout("slow")))

    assert client.get_network_currency("1234") == "USD"


@pytest.mark.parametrize(
    "error, expected",
    [
        (TransportError("HTTP 403 for runReportJob", status=403), True),
        (TransportError("HTTP 500 for runReportJob", status=500), False),
        (TransportError("report 403 rows"), False),
        (GamReportError("HTTP 403 for runReportJob", status=403), False),
        (RuntimeError("403"), False),
    ],
)
def test_permission_denied_requires_403_status(error, expected):
    assert is_permission_denied(error) is expected
