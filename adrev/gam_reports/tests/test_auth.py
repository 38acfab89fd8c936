"""Tests for service-account key parsing and token refresh."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import Mock

import google.auth.exceptions
import pytest

from adrev.gam_reports import auth
from adrev.gam_reports.errors import ConfigError, TransportError

KEY = {"type": "service_account", "client_email": "svc@test.iam", "private_key": "-----BEGIN-----\\nabc\\n-----END-----\\n"}


def test_inline_key_fixes_escaped_newlines():
    info = auth.load_service_account_info(json.dumps(KEY))

    assert info["private_key"] == "-----BEGIN-----\nabc\n-----END-----\n"
    assert info["client_email"] == "svc@test.iam"


def test_key_file_path(tmp_path: Path):
    path = tmp_path / "sa.json"
    path.write_text(json.dumps(KEY), encoding="utf-8")

    assert auth.load_service_account_info(str(path))["type"] == "service_account"


@pytest.mark.parametrize("raw", ["", "{not json", "[1, 2]", "/nonexistent/sa.json"])
def test_invalid_keys(raw):
    with pytest.raises(ConfigError):
        auth.load_service_account_info(raw)


def _provider(monkeypatch, credentials) -> auth.ServiceAccountTokenProvider:
    factory = Mock(return_value=credentials)
    monkeypatch.setattr(auth.service_account.Credentials, "from_service_account_info", factory)
    provider = auth.ServiceAccountTokenProvider({"type": "service_account"})
    assert factory.call_args.kwargs["scopes"] == [auth.DFP_SCOPE]
    return provider


def test_token_refreshed_when_invalid(monkeypatch):
    credentials = Mock(valid=False, token=None)

    def _refresh(_request):
        credentials.token = "fresh-token"
        credentials.valid = True

    credentials.refresh.side_effect = _refresh
    provider = _provider(monkeypatch, credentials)

    assert provider.get_access_token() == "fresh-token"
    assert provider.get_access_token() == "fresh-token"
    assert credentials.refresh.call_count == 1


def test_refresh_failure_is_transport_error(monkeypatch):
    credentials = Mock(valid=False, token=None)
    credentials.refresh.side_effect = google.auth.exceptions.RefreshError("invalid_grant")
    provider = _provider(monkeypatch, credentials)

    with pytest.raises(TransportError):
        provider.get_access_token()


def test_malformed_key_is_config_error(monkeypatch):
    monkeypatch.setattr(
        auth.service_account.Credentials,
        "from_service_account_info",
        Mock(side_effect=ValueError("missing fields")),
    )

    with pytest.raises(ConfigError):
        auth.ServiceAccountTokenProvider({})
