"""Shared fixtures for banksync tests."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

from banksync.auth.oauth2 import TokenLifecycleManager
from banksync.auth.token_store import SecureTokenStore, TokenCipher, TokenSet
from banksync.config import BankSyncConfig, ProviderConfig, SecuritySettings

NOW = 1_700_000_000.0

TOKEN_URL = "https://auth.truelayer-sandbox.com/connect/token"
API_URL = "https://api.truelayer-sandbox.com"


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def json_response(status: int, body: Any) -> httpx.Response:
    return httpx.Response(status, content=json.dumps(body).encode(), headers={"Content-Type": "application/json"})


def token_body(access: str = "AT1", refresh: str | None = "RT1", expires_in: int = 3600) -> dict[str, Any]:
    body: dict[str, Any] = {"access_token": access, "expires_in": expires_in, "token_type": "Bearer", "scope": "info accounts"}
    if refresh is not None:
        body["refresh_token"] = refresh
    return body


@pytest.fixture(scope="session")
def cipher(tmp_path_factory: pytest.TempPathFactory) -> TokenCipher:
    # Key derivation is slow; derive once for the whole run
    c = TokenCipher(tmp_path_factory.mktemp("keys"), passphrase="test-passphrase")
    c.encrypt("warm-up")
    return c


@pytest.fixture
def store(tmp_path: Path, cipher: TokenCipher) -> SecureTokenStore:
    return SecureTokenStore(tmp_path / "tokens", cipher)


@pytest.fixture
def provider() -> ProviderConfig:
    return ProviderConfig(client_id="test-client", client_secret="test-secret")


@pytest.fixture
def config(tmp_path: Path, provider: ProviderConfig) -> BankSyncConfig:
    return BankSyncConfig(
        provider=provider,
        security=SecuritySettings(data_dir=str(tmp_path), encryption_key="test-passphrase"),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_manager(
    provider: ProviderConfig,
    store: SecureTokenStore,
    clock: FakeClock,
) -> Callable[..., TokenLifecycleManager]:
    """Build a token manager whose HTTP calls go to ``handler``."""

    def factory(handler: Callable[[httpx.Request], Any] | None = None, token: TokenSet | None = None) -> TokenLifecycleManager:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler)) if handler else None
        manager = TokenLifecycleManager(provider, store, http_client=http_client, clock=clock)
        if token is not None:
            store.save(token)
            manager.load()
        return manager

    return factory


def valid_token(clock: FakeClock, seconds: float = 3600, refresh: str = "RT1") -> TokenSet:
    return TokenSet(access_token="AT1", refresh_token=refresh, expires_at=clock() + seconds)


def fake_api(request: httpx.Request) -> httpx.Response:
    """Token endpoint plus a one-account Data API."""
    path = request.url.path
    if path == "/connect/token":
        return json_response(200, token_body("AT1", "RT1"))
    if path == "/data/v1/accounts":
        return json_response(200, {"results": [
            {"account_id": "acc-1", "account_type": "TRANSACTION", "currency": "GBP", "display_name": "Current"},
        ]})
    if path == "/data/v1/balances":
        return json_response(200, {"results": [{"account_id": "acc-1", "current": 42.0, "available": 40.0}]})
    if path == "/data/v1/accounts/acc-1/transactions":
        return json_response(200, {"results": [{
            "transaction_id": "t1",
            "timestamp": "2026-10-18T10:00:00Z",
            "description": "COFFEE",
            "amount": -3.2,
            "currency": "GBP",
        }]})
    return json_response(404, {"error": "not_found"})
