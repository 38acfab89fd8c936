"""Publisher account directory backed by the ``publishers`` table."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from adrev.common.ch import ClickHouseClient
from adrev.common.logging import StructuredLogger, setup_integrations_logger

from .errors import PersistenceError

PUBLISHERS_TABLE = "publishers"
INVALID_KEY_STATUS = "invalid"


@dataclass(frozen=True)
class Account:
    id: str
    name: str
    network_code: Optional[str]
    service_key_status: Optional[str] = None

    @property
    def eligible(self) -> bool:
        return bool((self.network_code or "").strip()) and self.service_key_status != INVALID_KEY_STATUS


def _row_to_account(row: Sequence[Any]) -> Account:
    account_id, name, network_code, status = row
    return Account(
        id=str(account_id),
        name=name or "",
        network_code=str(network_code).strip() if network_code is not None else None,
        service_key_status=status,
    )


class AccountDirectory:
    _SELECT = (
        "SELECT id, name, network_code, service_key_status FROM {table} FINAL "
        "WHERE network_code IS NOT NULL AND network_code != '' "
        "AND (service_key_status IS NULL OR service_key_status != %(invalid)s)"
    )

    def __init__(
        self,
        ch_client: ClickHouseClient,
        *,
        database: str,
        dry_run: bool = False,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        self.ch_client = ch_client
        self.table = f"{database}.{PUBLISHERS_TABLE}"
        self.dry_run = dry_run
        self.logger = logger or setup_integrations_logger("gam_reports")

    def list_accounts(self) -> List[Account]:
        """Accounts with a network code whose service key is not marked invalid."""
        query = self._SELECT.format(table=self.table) + " ORDER BY name"
        try:
            result = self.ch_client.execute(query, {"invalid": INVALID_KEY_STATUS})
        except Exception as exc:  # pylint: disable=broad-except
            raise PersistenceError(f"Failed to load publishers: {exc}") from exc
        accounts = [acc for acc in (_row_to_account(row) for row in result.result_rows) if acc.eligible]
        self.logger.info("Loaded publisher accounts", metrics={"accounts": len(accounts)})
        return accounts

    def get_account(self, account_id: str) -> Optional[Account]:
        query = self._SELECT.format(table=self.table) + " AND id = %(id)s LIMIT 1"
        try:
            result = self.ch_client.execute(query, {"invalid": INVALID_KEY_STATUS, "id": account_id})
        except Exception as exc:  # pylint: disable=broad-except
            raise PersistenceError(f"Failed to load publisher {account_id}: {exc}") from exc
        for row in result.result_rows:
            account = _row_to_account(row)
            if account.eligible:
                return account
        return None

    def update_currency(self, account_id: str, currency_code: str) -> None:
        """Store the network currency on the publisher; failures are logged only."""
        if self.dry_run:
            return
        try:
            self.ch_client.command(
                f"ALTER TABLE {self.table} UPDATE currency_code = %(currency)s WHERE id = %(id)s",
                {"currency": currency_code, "id": account_id},
            )
        except Exception as exc:  # pylint: disable=broad-except
            self.logger.warning(
                "Failed to update publisher currency",
                metrics={"account_id": account_id, "currency": currency_code, "error": str(exc)},
            )
