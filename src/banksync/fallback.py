"""
Synthetic data for sandbox providers that return empty or zeroed payloads.

Output is deterministic for a given day and account ids, and every record
produced here is tagged ``DataSource.SYNTHETIC`` by the caller so it can
never be mistaken for real bank data. Disabled by default outside sandbox.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta

from banksync.models.banking import Balance, Transaction, TransactionType

# Round figure so synthetic balances are easy to spot
SYNTHETIC_BALANCE = 1000.00
SYNTHETIC_OVERDRAFT = 500.00

DEFAULT_ACCOUNT_IDS = ["mock-account-1", "mock-account-2"]

# (days ago, description, type, category, classification, amount, merchant)
_TRANSACTION_TEMPLATES: list[tuple[int, str, TransactionType, str, list[str], float, str]] = [
    (2, "TESCO STORES 3294", TransactionType.DEBIT, "Food & Drink", ["Shopping", "Food"], -45.67, "Tesco"),
    (1, "STARBUCKS COFFEE", TransactionType.DEBIT, "Food & Drink", ["Food", "Coffee"], -12.50, "Starbucks"),
    (7, "SALARY PAYMENT", TransactionType.CREDIT, "Income", ["Salary", "Income"], 2500.00, "Employer Ltd"),
    (10, "AMAZON UK", TransactionType.DEBIT, "Shopping", ["Shopping", "Online"], -89.99, "Amazon"),
    (14, "UBER TRIP", TransactionType.DEBIT, "Transport", ["Transport", "Taxi"], -23.45, "Uber"),
]


class SyntheticDataGenerator:
    """Builds stand-in balances and transactions."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now, currency: str = "GBP") -> None:
        self._clock = clock
        self.currency = currency

    def _anchor(self) -> datetime:
        # Pin to local midday so repeated calls on the same day agree
        return self._clock().replace(hour=12, minute=0, second=0, microsecond=0).astimezone()

    def balances(self, account_ids: list[str] | None = None) -> list[Balance]:
        ids = list(account_ids) if account_ids else list(DEFAULT_ACCOUNT_IDS)
        updated_at = self._anchor()
        return [
            Balance(
                account_id=account_id,
                current=SYNTHETIC_BALANCE,
                available=SYNTHETIC_BALANCE,
                overdraft=SYNTHETIC_OVERDRAFT if index == 0 else 0.0,
                limit=SYNTHETIC_OVERDRAFT if index == 0 else 0.0,
                currency=self.currency,
                updated_at=updated_at,
            )
            for index, account_id in enumerate(ids)
        ]

    def transactions(self, account_id: str) -> list[Transaction]:
        anchor = self._anchor()
        running = SYNTHETIC_BALANCE
        transactions = []
        # Newest first, running balance walks backwards from the synthetic balance
        ordered = sorted(enumerate(_TRANSACTION_TEMPLATES, 1), key=lambda item: item[1][0])
        for number, (days_ago, description, txn_type, category, classification, amount, merchant) in ordered:
            transactions.append(
                Transaction(
                    transaction_id=f"synthetic-{account_id}-tx-{number}",
                    account_id=account_id,
                    timestamp=anchor - timedelta(days=days_ago),
                    description=description,
                    type=txn_type,
                    category=category,
                    amount=amount,
                    currency=self.currency,
                    merchant_name=merchant,
                    running_balance=round(running, 2),
                    classification=classification,
                )
            )
            running -= amount
        return transactions
