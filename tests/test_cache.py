"""Tests for the response cache."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest

from banksync.auth.token_store import TokenCipher
from banksync.cache import ResponseCache
from banksync.models.banking import Account, AccountType, Balance, DataSource, Transaction, TransactionType


def _account(account_id: str = "acc-1") -> Account:
    return Account(account_id=account_id, account_type=AccountType.TRANSACTION, currency="GBP", display_name="Current")


def _transaction(txn_id: str = "tx-1") -> Transaction:
    return Transaction(
        transaction_id=txn_id,
        account_id="acc-1",
        timestamp=datetime(2026, 10, 1, 9, 30),
        description="TESCO",
        type=TransactionType.DEBIT,
        amount=-12.5,
        currency="GBP",
    )


class TestResponseCache:
    @pytest.mark.asyncio
    async def test_accounts_round_trip(self, tmp_path: Path) -> None:
        cache = ResponseCache(tmp_path)
        await cache.save_accounts([_account()])

        loaded = await cache.load_accounts()
        assert loaded == ([_account()], DataSource.LIVE)

    @pytest.mark.asyncio
    async def test_missing_entry(self, tmp_path: Path) -> None:
        cache = ResponseCache(tmp_path)
        assert await cache.load_balances() is None
        assert await cache.load_transactions("acc-1") is None

    @pytest.mark.asyncio
    async def test_transactions_are_per_account(self, tmp_path: Path) -> None:
        cache = ResponseCache(tmp_path)
        await cache.save_transactions("acc-1", [_transaction()])

        assert (await cache.load_transactions("acc-1"))[0] == [_transaction()]
        assert await cache.load_transactions("acc-2") is None

    @pytest.mark.asyncio
    async def test_source_is_kept(self, tmp_path: Path) -> None:
        cache = ResponseCache(tmp_path)
        balance = Balance(account_id="acc-1", current=1000.0, available=1000.0)
        await cache.save_balances([balance], DataSource.SYNTHETIC)

        items, source = await cache.load_balances()
        assert source == DataSource.SYNTHETIC
        assert items[0].current == 1000.0

    @pytest.mark.asyncio
    async def test_last_write_wins(self, tmp_path: Path) -> None:
        cache = ResponseCache(tmp_path)
        await cache.save_accounts([_account("acc-1")])
        await cache.save_accounts([_account("acc-2")])

        items, _ = await cache.load_accounts()
        assert [a.account_id for a in items] == ["acc-2"]

    @pytest.mark.asyncio
    async def test_encrypted_on_disk(self, tmp_path: Path, cipher: TokenCipher) -> None:
        cache = ResponseCache(tmp_path, cipher)
        await cache.save_transactions("acc-1", [_transaction()])

        raw = (tmp_path / "transactions_acc-1.cache").read_text()
        assert "TESCO" not in raw
        assert (await cache.load_transactions("acc-1"))[0][0].description == "TESCO"

    @pytest.mark.asyncio
    async def test_unreadable_entry_is_ignored(self, tmp_path: Path) -> None:
        cache = ResponseCache(tmp_path)
        (tmp_path / "accounts.cache").write_text("{not json")
        assert await cache.load_accounts() is None

    @pytest.mark.asyncio
    async def test_unsafe_account_id_stays_in_cache_dir(self, tmp_path: Path) -> None:
        cache = ResponseCache(tmp_path / "cache")
        await cache.save_transactions("../escape", [_transaction()])
        assert list((tmp_path / "cache").glob("*.cache"))
        assert not (tmp_path / "escape.cache").exists()

    @pytest.mark.asyncio
    async def test_clear(self, tmp_path: Path) -> None:
        cache = ResponseCache(tmp_path)
        await cache.save_accounts([_account()])
        await cache.save_transactions("acc-1", [_transaction()])

        assert cache.clear() == 2
        assert await cache.load_accounts() is None
        assert ResponseCache(tmp_path / "nope").clear() == 0
