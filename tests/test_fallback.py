"""Tests for synthetic fallback data."""

from __future__ import annotations

from datetime import datetime

from banksync.fallback import DEFAULT_ACCOUNT_IDS, SYNTHETIC_BALANCE, SyntheticDataGenerator
from banksync.models.banking import TransactionType


def _generator() -> SyntheticDataGenerator:
    return SyntheticDataGenerator(clock=lambda: datetime(2026, 10, 19, 8, 15))


class TestSyntheticBalances:
    def test_default_accounts(self) -> None:
        balances = _generator().balances()
        assert [b.account_id for b in balances] == DEFAULT_ACCOUNT_IDS
        assert all(b.current == SYNTHETIC_BALANCE for b in balances)

    def test_only_first_account_has_overdraft(self) -> None:
        first, second = _generator().balances(["a", "b"])
        assert first.overdraft == 500.0
        assert second.overdraft == 0.0
        assert not first.is_zero

    def test_deterministic_within_a_day(self) -> None:
        later = SyntheticDataGenerator(clock=lambda: datetime(2026, 10, 19, 22, 0))
        assert _generator().balances(["a"]) == later.balances(["a"])


class TestSyntheticTransactions:
    def test_five_transactions_newest_first(self) -> None:
        txns = _generator().transactions("acc-1")
        assert len(txns) == 5
        assert txns == sorted(txns, key=lambda t: t.timestamp, reverse=True)
        assert all(t.account_id == "acc-1" for t in txns)

    def test_ids_are_tagged_and_unique(self) -> None:
        txns = _generator().transactions("acc-1")
        ids = [t.transaction_id for t in txns]
        assert len(set(ids)) == 5
        assert all(i.startswith("synthetic-acc-1-") for i in ids)

    def test_signs_match_type(self) -> None:
        for txn in _generator().transactions("acc-1"):
            if txn.type == TransactionType.DEBIT:
                assert txn.amount < 0
            else:
                assert txn.amount > 0

    def test_running_balance_starts_at_synthetic_balance(self) -> None:
        newest = _generator().transactions("acc-1")[0]
        assert newest.running_balance == SYNTHETIC_BALANCE
