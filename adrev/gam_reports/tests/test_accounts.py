"""Tests for the publisher account directory."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from adrev.gam_reports.accounts import Account, AccountDirectory
from adrev.gam_reports.errors import PersistenceError


def test_list_accounts_filters_ineligible_rows():
    ch = MagicMock()
    ch.execute.return_value.result_rows = [
        ("1", "Acme", " 1234 ", None),
        ("2", "Blank", "  ", "valid"),
        ("3", "Revoked", "999", "invalid"),
        (4, None, 5678, "valid"),
    ]
    directory = AccountDirectory(ch, database="adrev")

    accounts = directory.list_accounts()

    assert accounts == [
        Account(id="1", name="Acme", network_code="1234", service_key_status=None),
        Account(id="4", name="", network_code="5678", service_key_status="valid"),
    ]
    query = ch.execute.call_args.args[0]
    assert "adrev.publishers FINAL" in query


def test_get_account_returns_none_when_missing():
    ch = MagicMock()
    ch.execute.return_value.result_rows = []

    assert AccountDirectory(ch, database="adrev").get_account("42") is None
    assert ch.execute.call_args.args[1]["id"] == "42"


def test_query_errors_become_persistence_errors():
    ch = MagicMock()
    ch.execute.side_effect = RuntimeError("timeout")

    with pytest.raises(PersistenceError):
        AccountDirectory(ch, database="adrev").list_accounts()


def test_update_currency_skipped_in_dry_run_and_tolerates_errors():
    ch = MagicMock()
    AccountDirectory(ch, database="adrev", dry_run=True).update_currency("1", "EUR")
    ch.command.assert_not_called()

    ch.command.side_effect = RuntimeError("mutation failed")
    AccountDirectory(ch, database="adrev").update_currency("1", "EUR")
    assert ch.command.call_args.args[1] == {"currency": "EUR", "id": "1"}
