"""
banksync — main service object.

BankSyncService wires the token manager, API client, cache, orchestrator
and scheduler together. Build one at application start and hand it to
whatever needs bank data; there is no module-level instance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from banksync.auth.oauth2 import TokenLifecycleManager, TokenState
from banksync.auth.token_store import SecureTokenStore, TokenCipher
from banksync.cache import ResponseCache
from banksync.client import AggregatorClient
from banksync.config import BankProvider, BankSyncConfig
from banksync.models.banking import Account, Balance, SyncResult, Transaction
from banksync.scheduler import PeriodicSyncScheduler, Timer
from banksync.sync import SyncOrchestrator

logger = logging.getLogger("banksync")


@dataclass
class BankSyncService:
    """Collaborator interface for UI code.

    Usage::

        from banksync import BankSyncService

        service = BankSyncService.from_config("banksync.yaml")
        url = service.connect("mock")
        # ... open url, receive redirect ...
        await service.complete_connection(redirect_url)
        result = await service.sync_all()

    Every method returns plain records or raises a
    :class:`~banksync.errors.BankSyncError` subtype.
    """

    config: BankSyncConfig
    tokens: TokenLifecycleManager
    client: AggregatorClient
    cache: ResponseCache
    orchestrator: SyncOrchestrator
    scheduler: PeriodicSyncScheduler
    _closed: bool = field(default=False, init=False, repr=False)

    @classmethod
    def from_config(cls, config_path: str | None = None, **overrides: Any) -> BankSyncService:
        """Create a service from a config file or keyword arguments."""
        return cls.create(BankSyncConfig.load(config_path, **overrides))

    @classmethod
    def create(cls, config: BankSyncConfig, *, timer: Timer | None = None) -> BankSyncService:
        data_dir = config.security.data_path
        cipher = TokenCipher(data_dir, passphrase=config.security.encryption_key)
        store = SecureTokenStore(data_dir / "tokens", cipher)
        cache = ResponseCache(data_dir / "cache", cipher)

        tokens = TokenLifecycleManager(
            config.provider,
            store,
            safety_margin=config.security.token_safety_margin,
        )
        tokens.load()

        client = AggregatorClient(config, tokens, cache)
        orchestrator = SyncOrchestrator(client, window_days=config.sync.transaction_window_days)
        scheduler = PeriodicSyncScheduler(orchestrator.sync_all, config.sync, timer=timer)

        logger.info(
            "banksync initialized (%s environment, synthetic fallback %s)",
            config.provider.environment,
            "on" if client.synthetic_enabled else "off",
        )
        return cls(
            config=config,
            tokens=tokens,
            client=client,
            cache=cache,
            orchestrator=orchestrator,
            scheduler=scheduler,
        )

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def providers(self) -> list[BankProvider]:
        return list(self.config.provider.providers)

    def connect(self, provider_id: str, redirect_uri: str | None = None) -> str:
        """Start authorization; returns the URL to open in a browser."""
        return self.tokens.begin_authorization(provider_id, redirect_uri)

    async def complete_connection(self, callback_url: str) -> TokenState:
        """Finish authorization from the redirect URL (state is checked first)."""
        await self.tokens.handle_callback(callback_url)
        return self.tokens.state

    def is_connected(self) -> bool:
        """True when tokens are held that are valid or can be refreshed. No I/O."""
        return self.tokens.is_valid() or self.tokens.has_refresh_token()

    def disconnect(self) -> None:
        """Forget tokens and cached data and stop periodic sync."""
        self.scheduler.stop()
        self.tokens.disconnect()
        self.cache.clear()
        self.orchestrator.last_result = None

    async def test_connection(self) -> dict[str, Any]:
        return await self.client.test_connection()

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    async def get_accounts(self) -> list[Account]:
        return (await self.client.get_accounts()).items

    async def get_balances(self, account_ids: list[str] | None = None) -> list[Balance]:
        return (await self.client.get_balances(account_ids)).items

    async def get_transactions(
        self,
        account_id: str,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> list[Transaction]:
        return (await self.client.get_transactions(account_id, from_date, to_date)).items

    async def sync_all(self) -> SyncResult:
        return await self.orchestrator.sync_all()

    @property
    def last_sync(self) -> SyncResult | None:
        return self.orchestrator.last_result

    async def get_cached_accounts(self) -> list[Account]:
        cached = await self.cache.load_accounts()
        return cached[0] if cached else []

    async def get_cached_balances(self) -> list[Balance]:
        cached = await self.cache.load_balances()
        return cached[0] if cached else []

    async def get_cached_transactions(self, account_id: str) -> list[Transaction]:
        cached = await self.cache.load_transactions(account_id)
        return cached[0] if cached else []

    async def close(self) -> None:
        if self._closed:
            return
        self.scheduler.stop()
        await self.client.close()
        await self.tokens.close()
        self._closed = True
