"""
Banking data models — accounts, balances, transactions, sync results.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Generic, TypeVar

from pydantic import BaseModel, Field


class AccountType(str, Enum):
    """Account types exposed by the aggregator."""

    TRANSACTION = "TRANSACTION"
    SAVINGS = "SAVINGS"
    CREDIT_CARD = "CREDIT_CARD"


class TransactionType(str, Enum):
    """Direction of money movement."""

    DEBIT = "DEBIT"
    CREDIT = "CREDIT"


class DataSource(str, Enum):
    """Where a batch of records came from."""

    LIVE = "live"
    CACHE = "cache"
    SYNTHETIC = "synthetic"


class Account(BaseModel):
    """A bank account. Reference data, keyed by ``account_id``."""

    model_config = {"frozen": True}

    account_id: str
    account_type: AccountType
    currency: str
    display_name: str
    provider_name: str = ""
    provider_id: str | None = None
    account_number: str | None = None
    sort_code: str | None = None


class Balance(BaseModel):
    """Current balance snapshot for one account."""

    account_id: str
    current: float
    available: float
    overdraft: float | None = None
    limit: float | None = None
    currency: str = "GBP"
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_zero(self) -> bool:
        return self.current == 0


class Transaction(BaseModel):
    """A single posted transaction."""

    model_config = {"frozen": True}

    transaction_id: str
    account_id: str
    timestamp: datetime
    description: str = ""
    type: TransactionType
    category: str = "Other"
    amount: float
    currency: str = "GBP"
    merchant_name: str | None = None
    running_balance: float | None = None
    classification: list[str] = Field(default_factory=list)

    @property
    def is_debit(self) -> bool:
        return self.type == TransactionType.DEBIT


T = TypeVar("T")


class FetchResult(BaseModel, Generic[T]):
    """Records returned by one client call, tagged with their origin."""

    items: list[T] = Field(default_factory=list)
    source: DataSource = DataSource.LIVE
    fetched_at: datetime = Field(default_factory=datetime.now)

    @property
    def is_synthetic(self) -> bool:
        return self.source == DataSource.SYNTHETIC

    def __len__(self) -> int:
        return len(self.items)


class SyncResult(BaseModel):
    """Output of one full sync run.

    Accounts are always complete. An account whose transaction fetch failed
    has an empty list in ``transactions_by_account`` and an entry in
    ``failed_accounts`` with the error message.
    """

    accounts: list[Account] = Field(default_factory=list)
    balances: list[Balance] = Field(default_factory=list)
    transactions_by_account: dict[str, list[Transaction]] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)
    failed_accounts: dict[str, str] = Field(default_factory=dict)
    sources: dict[str, DataSource] = Field(default_factory=dict)

    @property
    def is_partial(self) -> bool:
        return bool(self.failed_accounts)

    @property
    def transaction_count(self) -> int:
        return sum(len(txns) for txns in self.transactions_by_account.values())

    def balance_for(self, account_id: str) -> Balance | None:
        for balance in self.balances:
            if balance.account_id == account_id:
                return balance
        return None
