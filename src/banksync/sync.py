"""
Sync orchestrator — one full pull of accounts, balances and transactions.

Accounts are the root of the data graph: if they can't be fetched the sync
fails. Balances and transactions are best-effort once accounts are known,
and each account's transactions succeed or fail on their own.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import date, datetime, timedelta

from banksync.client import AggregatorClient
from banksync.errors import BankSyncError
from banksync.models.banking import Balance, DataSource, SyncResult, Transaction

logger = logging.getLogger("banksync.sync")


class SyncOrchestrator:
    """Builds :class:`SyncResult` objects from the API client."""

    def __init__(
        self,
        client: AggregatorClient,
        *,
        window_days: int = 30,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.client = client
        self.window_days = window_days
        self._clock = clock
        self.last_result: SyncResult | None = None

    def window_start(self) -> date:
        return (self._clock() - timedelta(days=self.window_days)).date()

    async def sync_all(self) -> SyncResult:
        """Run a full sync.

        Raises:
            BankSyncError: Only when the accounts fetch itself fails.
        """
        started = self._clock()
        logger.info("Starting full data sync...")

        accounts_result = await self.client.get_accounts()
        accounts = accounts_result.items
        account_ids = [account.account_id for account in accounts]
        sources: dict[str, DataSource] = {"accounts": accounts_result.source}

        balances: list[Balance] = []
        if account_ids:
            try:
                balances_result = await self.client.get_balances(account_ids)
                balances = balances_result.items
                sources["balances"] = balances_result.source
            except BankSyncError as e:
                logger.warning("Balances unavailable for this sync: %s", e)

        from_date = self.window_start()
        results = await asyncio.gather(
            *(self.client.get_transactions(account_id, from_date) for account_id in account_ids),
            return_exceptions=True,
        )

        transactions_by_account: dict[str, list[Transaction]] = {}
        failed_accounts: dict[str, str] = {}
        for account_id, result in zip(account_ids, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error("Failed to fetch transactions for account %s: %s", account_id, result)
                transactions_by_account[account_id] = []
                failed_accounts[account_id] = str(result)
            else:
                transactions_by_account[account_id] = result.items
                sources[f"transactions:{account_id}"] = result.source

        sync_result = SyncResult(
            accounts=accounts,
            balances=balances,
            transactions_by_account=transactions_by_account,
            timestamp=started,
            failed_accounts=failed_accounts,
            sources=sources,
        )
        self.last_result = sync_result

        logger.info(
            "Sync complete: %d account(s), %d balance(s), %d transaction(s)%s",
            len(accounts),
            len(balances),
            sync_result.transaction_count,
            f", {len(failed_accounts)} account(s) failed" if failed_accounts else "",
        )
        return sync_result
