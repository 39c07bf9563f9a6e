"""
banksync — bank account aggregation over Open Banking.

Connect a bank with OAuth2 + PKCE, then pull accounts, balances and
transactions, with encrypted token storage, an offline cache and a
periodic sync scheduler.
"""

__version__ = "0.1.0"
__all__ = ["BankSyncService"]

from banksync.service import BankSyncService  # noqa: E402
