"""
Authenticated client for the aggregator's Data API.

Pulls accounts, balances and transactions with a Bearer token from the
:class:`~banksync.auth.oauth2.TokenLifecycleManager`, refreshing it first
when it is expired. Failures are translated into the banksync error
taxonomy here; raw httpx/json errors never leave this module.

Fallback order for a failed call: per-account endpoint (balances only),
then the last cached snapshot, then synthetic data when the synthetic
fallback is enabled (never for accounts), then the error. A successful call
that comes back empty (or with all-zero balances) is replaced by synthetic
data in the same way; the result is tagged so callers know.

Data API docs:
  https://docs.truelayer.com/docs/data-api-basics
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Any

import httpx
from pydantic import ValidationError

from banksync.auth.oauth2 import TokenLifecycleManager
from banksync.cache import ResponseCache
from banksync.config import BankSyncConfig
from banksync.errors import ApiError, AuthRequiredError, MalformedResponseError, TransportError
from banksync.fallback import SyntheticDataGenerator
from banksync.models.banking import (
    Account,
    AccountType,
    Balance,
    DataSource,
    FetchResult,
    Transaction,
    TransactionType,
)

logger = logging.getLogger("banksync.client")

ACCOUNTS_ENDPOINT = "/data/v1/accounts"
BALANCES_ENDPOINT = "/data/v1/balances"


def _cached_source(source: DataSource) -> DataSource:
    # Synthetic data stays flagged as synthetic even when replayed from cache
    return DataSource.SYNTHETIC if source == DataSource.SYNTHETIC else DataSource.CACHE


class AggregatorClient:
    """Data API client with token refresh, cache fallback and synthetic fallback.

    Usage::

        client = AggregatorClient(config, tokens, cache)
        accounts = await client.get_accounts()
        for account in accounts.items:
            txns = await client.get_transactions(account.account_id)
    """

    def __init__(
        self,
        config: BankSyncConfig,
        tokens: TokenLifecycleManager,
        cache: ResponseCache,
        *,
        synthetic: SyntheticDataGenerator | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.tokens = tokens
        self.cache = cache
        self.synthetic = synthetic or SyntheticDataGenerator()
        self.synthetic_enabled = config.synthetic_fallback_enabled
        self._base_url = config.provider.api_base_url
        self._http = http_client

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create a reusable httpx client."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=self.config.provider.timeout,
                headers={"Accept": "application/json"},
            )
        return self._http

    async def close(self) -> None:
        """Clean up HTTP client."""
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # API helpers
    # ------------------------------------------------------------------

    async def _get(self, endpoint: str, params: dict[str, str] | None) -> httpx.Response:
        client = await self._get_client()
        try:
            return await client.get(
                f"{self._base_url}{endpoint}",
                params=params,
                headers=self.tokens.auth_header(),
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Data API unreachable: {e}") from e

    async def request(self, endpoint: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        """Make an authenticated GET request and return the decoded JSON body.

        Raises:
            AuthRequiredError: No valid token and refresh failed.
            TransportError: Network failure or non-2xx status (``ApiError``).
            MalformedResponseError: Empty body, invalid JSON, or not an object.
        """
        if not await self.tokens.ensure_valid():
            raise AuthRequiredError()

        resp = await self._get(endpoint, params)

        # Handle 401 → force refresh and retry once
        if resp.status_code == 401:
            logger.info("Access token rejected, refreshing...")
            if not await self.tokens.refresh():
                raise AuthRequiredError()
            resp = await self._get(endpoint, params)
            if resp.status_code == 401:
                raise AuthRequiredError()

        if resp.status_code >= 400:
            error_code, description = None, None
            try:
                body = resp.json()
                if isinstance(body, dict):
                    error_code, description = body.get("error"), body.get("error_description")
            except ValueError:
                description = resp.text or None
            logger.error("Data API request %s failed: %s %s", endpoint, resp.status_code, error_code)
            raise ApiError(resp.status_code, error_code, description)

        if not resp.text.strip():
            raise MalformedResponseError(f"Empty response from {endpoint}")
        try:
            payload = resp.json()
        except ValueError as e:
            raise MalformedResponseError(f"Invalid JSON from {endpoint}: {e}") from e
        if not isinstance(payload, dict):
            raise MalformedResponseError(f"Expected a JSON object from {endpoint}")
        return payload

    @staticmethod
    def _results(payload: dict[str, Any], endpoint: str) -> list[dict[str, Any]]:
        results = payload.get("results")
        if not isinstance(results, list):
            raise MalformedResponseError(f"Response from {endpoint} has no 'results' list")
        return [r for r in results if isinstance(r, dict)]

    async def _persist(self, generation: int, save: Any, *args: Any) -> None:
        """Write to the cache unless the tokens were replaced or cleared while the call was in flight."""
        if generation != self.tokens.generation:
            logger.info("Tokens replaced or cleared during fetch; not caching the result")
            return
        await save(*args)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def get_accounts(self) -> FetchResult[Account]:
        """List the connected accounts. Never replaced by synthetic data."""
        generation = self.tokens.generation
        try:
            payload = await self.request(ACCOUNTS_ENDPOINT)
            accounts = self._parse_many(self._results(payload, ACCOUNTS_ENDPOINT), self._parse_account)
        except (TransportError, MalformedResponseError) as e:
            cached = await self.cache.load_accounts()
            if cached is not None:
                logger.warning("Failed to fetch accounts (%s); returning cached accounts", e)
                return FetchResult[Account](items=cached[0], source=_cached_source(cached[1]))
            raise

        if self.config.sync.max_accounts:
            accounts = accounts[: self.config.sync.max_accounts]

        await self._persist(generation, self.cache.save_accounts, accounts, DataSource.LIVE)
        logger.info("Retrieved %d account(s)", len(accounts))
        return FetchResult[Account](items=accounts, source=DataSource.LIVE)

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def _fetch_bulk_balances(self, account_ids: list[str] | None) -> list[Balance]:
        params = {"account_ids": ",".join(account_ids)} if account_ids else None
        payload = await self.request(BALANCES_ENDPOINT, params)
        return self._parse_many(self._results(payload, BALANCES_ENDPOINT), self._parse_balance)

    async def _fetch_account_balance(self, account_id: str) -> Balance | None:
        endpoint = f"{ACCOUNTS_ENDPOINT}/{account_id}/balance"
        results = self._results(await self.request(endpoint), endpoint)
        if not results:
            return None
        return self._parse_balance(results[0], account_id=account_id)

    async def _fetch_individual_balances(self, account_ids: list[str]) -> list[Balance]:
        results = await asyncio.gather(
            *(self._fetch_account_balance(account_id) for account_id in account_ids),
            return_exceptions=True,
        )
        balances: list[Balance] = []
        for account_id, result in zip(account_ids, results):
            if isinstance(result, AuthRequiredError):
                raise result
            if isinstance(result, Exception):
                logger.warning("Failed to fetch balance for account %s: %s", account_id, result)
            elif result is not None:
                balances.append(result)
        return balances

    async def get_balances(self, account_ids: list[str] | None = None) -> FetchResult[Balance]:
        """Current balances for ``account_ids`` (all accounts when None)."""
        generation = self.tokens.generation
        try:
            balances = await self._fetch_bulk_balances(account_ids)
        except (TransportError, MalformedResponseError) as e:
            logger.warning("Bulk balance request failed: %s", e)
            balances = await self._fetch_individual_balances(account_ids) if account_ids else []
            if not balances:
                cached = await self.cache.load_balances()
                if cached is not None:
                    logger.warning("Returning cached balances")
                    return FetchResult[Balance](items=cached[0], source=_cached_source(cached[1]))
                if not self.synthetic_enabled:
                    raise
                logger.warning("No balances from API or cache; using synthetic balances")
                return FetchResult[Balance](
                    items=self.synthetic.balances(account_ids), source=DataSource.SYNTHETIC
                )
            logger.info("Retrieved %d balance(s) from per-account endpoints", len(balances))

        source = DataSource.LIVE
        if self.synthetic_enabled and (not balances or all(b.is_zero for b in balances)):
            logger.warning("No usable balance data from API; using synthetic balances")
            balances = self.synthetic.balances(account_ids)
            source = DataSource.SYNTHETIC

        await self._persist(generation, self.cache.save_balances, balances, source)
        logger.info("Retrieved %d account balance(s)", len(balances))
        return FetchResult[Balance](items=balances, source=source)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def get_transactions(
        self,
        account_id: str,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> FetchResult[Transaction]:
        """Transactions for one account, optionally limited to a date range."""
        generation = self.tokens.generation
        endpoint = f"{ACCOUNTS_ENDPOINT}/{account_id}/transactions"
        params: dict[str, str] = {}
        if from_date:
            params["from"] = from_date.isoformat()
        if to_date:
            params["to"] = to_date.isoformat()

        try:
            payload = await self.request(endpoint, params or None)
            raw = self._results(payload, endpoint)
        except (TransportError, MalformedResponseError) as e:
            cached = await self.cache.load_transactions(account_id)
            if cached is not None:
                logger.warning("Failed to fetch transactions for %s (%s); returning cached", account_id, e)
                return FetchResult[Transaction](items=cached[0], source=_cached_source(cached[1]))
            if not self.synthetic_enabled:
                raise
            logger.warning("No transactions for %s from API or cache; using synthetic transactions", account_id)
            return FetchResult[Transaction](
                items=self.synthetic.transactions(account_id), source=DataSource.SYNTHETIC
            )

        # Unique by id; a repeated id replaces the earlier record
        by_id: dict[str, Transaction] = {}
        for txn in self._parse_many(raw, lambda item: self._parse_transaction(item, account_id)):
            by_id[txn.transaction_id] = txn
        transactions = list(by_id.values())

        source = DataSource.LIVE
        if not transactions and self.synthetic_enabled:
            logger.warning("No transaction data from API for %s; using synthetic transactions", account_id)
            transactions = self.synthetic.transactions(account_id)
            source = DataSource.SYNTHETIC

        await self._persist(generation, self.cache.save_transactions, account_id, transactions, source)
        logger.info("Retrieved %d transaction(s) for account %s", len(transactions), account_id)
        return FetchResult[Transaction](items=transactions, source=source)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def test_connection(self) -> dict[str, Any]:
        """Check the accounts endpoint without touching the cache. Never raises."""
        try:
            payload = await self.request(ACCOUNTS_ENDPOINT)
            results = self._results(payload, ACCOUNTS_ENDPOINT)
        except Exception as e:
            logger.warning("API connection test failed: %s", e)
            return {"connected": False, "error": str(e), "details": None}

        first = results[0].get("display_name", "Unknown") if results else "No accounts"
        return {
            "connected": True,
            "error": None,
            "details": {"accounts_count": len(results), "first_account": first},
        }

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_many(raw: list[dict[str, Any]], parse: Any) -> list[Any]:
        parsed = []
        for item in raw:
            try:
                record = parse(item)
            except (AttributeError, KeyError, TypeError, ValueError, ValidationError) as e:
                logger.debug("Skipping malformed record: %s", e)
                continue
            if record is not None:
                parsed.append(record)
        return parsed

    @staticmethod
    def _parse_account(raw: dict[str, Any]) -> Account:
        provider = raw.get("provider")
        if not isinstance(provider, dict):
            provider = {}
        number = raw.get("account_number")
        if isinstance(number, dict):
            account_number = number.get("number") or number.get("iban")
            sort_code = number.get("sort_code")
        else:
            account_number = number
            sort_code = raw.get("sort_code")

        return Account(
            account_id=raw["account_id"],
            account_type=AccountType(raw.get("account_type", "TRANSACTION")),
            currency=raw.get("currency", "GBP"),
            display_name=raw.get("display_name") or raw["account_id"],
            provider_name=provider.get("display_name", ""),
            provider_id=provider.get("provider_id"),
            account_number=account_number,
            sort_code=sort_code,
        )

    @staticmethod
    def _parse_balance(raw: dict[str, Any], account_id: str | None = None) -> Balance | None:
        # Some providers wrap each balance in its own {"results": [...]}
        nested = raw.get("results")
        if isinstance(nested, list):
            if not nested:
                return None
            raw = {**nested[0], **{k: v for k, v in raw.items() if k != "results"}}

        owner = raw.get("account_id") or account_id
        if not owner or raw.get("current") is None:
            return None

        # pydantic parses ISO strings and epoch numbers; absent means "now"
        updated = raw.get("update_timestamp")
        extra = {"updated_at": updated} if updated is not None else {}
        return Balance(
            account_id=owner,
            current=float(raw["current"]),
            available=float(raw.get("available", raw["current"])),
            overdraft=raw.get("overdraft"),
            limit=raw.get("credit_limit", raw.get("limit")),
            currency=raw.get("currency", "GBP"),
            **extra,
        )

    @staticmethod
    def _parse_transaction(raw: dict[str, Any], account_id: str) -> Transaction:
        running = raw.get("running_balance")
        if isinstance(running, dict):
            running = running.get("amount")

        amount = float(raw["amount"])
        txn_type = raw.get("transaction_type")
        if txn_type not in ("DEBIT", "CREDIT"):
            txn_type = "DEBIT" if amount < 0 else "CREDIT"

        return Transaction(
            transaction_id=raw["transaction_id"],
            account_id=account_id,
            timestamp=raw["timestamp"],
            description=raw.get("description", ""),
            type=TransactionType(txn_type),
            category=raw.get("transaction_category") or "Other",
            amount=amount,
            currency=raw.get("currency", "GBP"),
            merchant_name=raw.get("merchant_name"),
            running_balance=running,
            classification=list(raw.get("transaction_classification") or []),
        )
