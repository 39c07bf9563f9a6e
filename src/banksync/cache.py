"""
Response cache — last-known-good snapshots per resource type.

One file per resource (accounts, balances, transactions per account),
encrypted with the same cipher as the token store. Last write wins; there is
one writer per resource type (the API client). File I/O runs in a worker
thread so the event loop never blocks on disk.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from cryptography.fernet import InvalidToken
from pydantic import BaseModel, Field, ValidationError

from banksync.auth.token_store import TokenCipher
from banksync.models.banking import Account, Balance, DataSource, Transaction

logger = logging.getLogger("banksync.cache")

ModelT = TypeVar("ModelT", bound=BaseModel)

ACCOUNTS_KEY = "accounts"
BALANCES_KEY = "balances"
TRANSACTIONS_KEY = "transactions"


class CachedSnapshot(BaseModel):
    """What was stored for one resource, and where it originally came from."""

    items: list[dict[str, Any]] = Field(default_factory=list)
    source: DataSource = DataSource.LIVE
    saved_at: datetime = Field(default_factory=datetime.now)


def _safe_name(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", value)


class ResponseCache:
    """Persisted per-resource snapshots used as an offline view and fallback."""

    def __init__(self, cache_dir: Path, cipher: TokenCipher | None = None) -> None:
        self.cache_dir = cache_dir
        self.cipher = cipher

    def _path(self, key: str) -> Path:
        return self.cache_dir / f"{_safe_name(key)}.cache"

    @staticmethod
    def transactions_key(account_id: str) -> str:
        return f"{TRANSACTIONS_KEY}_{account_id}"

    # ------------------------------------------------------------------
    # Raw read/write
    # ------------------------------------------------------------------

    def _write_sync(self, key: str, snapshot: CachedSnapshot) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        content = snapshot.model_dump_json()
        if self.cipher is not None:
            content = self.cipher.encrypt(content)
        path = self._path(key)
        path.write_text(content)
        path.chmod(0o600)

    def _read_sync(self, key: str) -> CachedSnapshot | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            content = path.read_text()
            if self.cipher is not None:
                content = self.cipher.decrypt(content)
            return CachedSnapshot.model_validate_json(content)
        except (InvalidToken, ValidationError, ValueError) as e:
            logger.warning("Ignoring unreadable cache entry %s: %s", key, e)
            return None

    async def write(self, key: str, items: list[BaseModel], source: DataSource = DataSource.LIVE) -> None:
        snapshot = CachedSnapshot(
            items=[item.model_dump(mode="json") for item in items],
            source=source,
        )
        await asyncio.to_thread(self._write_sync, key, snapshot)
        logger.debug("Cached %d %s record(s)", len(items), key)

    async def read(self, key: str) -> CachedSnapshot | None:
        return await asyncio.to_thread(self._read_sync, key)

    # ------------------------------------------------------------------
    # Typed accessors
    # ------------------------------------------------------------------

    async def save_accounts(self, accounts: list[Account], source: DataSource = DataSource.LIVE) -> None:
        await self.write(ACCOUNTS_KEY, list(accounts), source)

    async def save_balances(self, balances: list[Balance], source: DataSource = DataSource.LIVE) -> None:
        await self.write(BALANCES_KEY, list(balances), source)

    async def save_transactions(
        self,
        account_id: str,
        transactions: list[Transaction],
        source: DataSource = DataSource.LIVE,
    ) -> None:
        await self.write(self.transactions_key(account_id), list(transactions), source)

    async def _load(self, key: str, model: type[ModelT]) -> tuple[list[ModelT], DataSource] | None:
        snapshot = await self.read(key)
        if snapshot is None:
            return None
        try:
            return [model.model_validate(item) for item in snapshot.items], snapshot.source
        except ValidationError as e:
            logger.warning("Cached %s no longer match the current schema: %s", key, e)
            return None

    async def load_accounts(self) -> tuple[list[Account], DataSource] | None:
        return await self._load(ACCOUNTS_KEY, Account)

    async def load_balances(self) -> tuple[list[Balance], DataSource] | None:
        return await self._load(BALANCES_KEY, Balance)

    async def load_transactions(self, account_id: str) -> tuple[list[Transaction], DataSource] | None:
        return await self._load(self.transactions_key(account_id), Transaction)

    def clear(self) -> int:
        """Delete every cached snapshot. Returns the number of files removed."""
        if not self.cache_dir.exists():
            return 0
        removed = 0
        for path in self.cache_dir.glob("*.cache"):
            path.unlink()
            removed += 1
        logger.info("Cleared %d cached snapshot(s)", removed)
        return removed
