"""Tests for banking data models."""

from datetime import datetime

import pytest
from pydantic import ValidationError

from banksync.models.banking import (
    Account,
    AccountType,
    Balance,
    DataSource,
    FetchResult,
    SyncResult,
    Transaction,
    TransactionType,
)


class TestAccount:
    def test_frozen(self) -> None:
        account = Account(account_id="a", account_type=AccountType.CREDIT_CARD, currency="GBP", display_name="Card")
        with pytest.raises(ValidationError):
            account.display_name = "changed"

    def test_unknown_account_type(self) -> None:
        with pytest.raises(ValidationError):
            Account(account_id="a", account_type="LOAN", currency="GBP", display_name="Loan")


class TestBalance:
    def test_is_zero(self) -> None:
        assert Balance(account_id="a", current=0, available=0).is_zero
        assert not Balance(account_id="a", current=0.01, available=0).is_zero

    def test_optional_fields(self) -> None:
        balance = Balance(account_id="a", current=5, available=5)
        assert balance.overdraft is None
        assert balance.currency == "GBP"


class TestTransaction:
    def test_is_debit(self) -> None:
        txn = Transaction(
            transaction_id="t",
            account_id="a",
            timestamp=datetime(2026, 10, 1),
            description="RENT",
            type=TransactionType.DEBIT,
            amount=-800,
            currency="GBP",
        )
        assert txn.is_debit
        assert txn.category == "Other"
        assert txn.classification == []


class TestResults:
    def test_fetch_result(self) -> None:
        result = FetchResult[Balance](items=[Balance(account_id="a", current=1, available=1)], source=DataSource.SYNTHETIC)
        assert len(result) == 1
        assert result.is_synthetic

    def test_sync_result_defaults(self) -> None:
        result = SyncResult()
        assert not result.is_partial
        assert result.transaction_count == 0
        assert result.balance_for("a") is None
