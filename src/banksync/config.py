"""
banksync configuration management.

Supports loading from YAML files, environment variables, and keyword overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

# Aggregator endpoints per environment
_ENDPOINTS = {
    "sandbox": {
        "auth": "https://auth.truelayer-sandbox.com",
        "api": "https://api.truelayer-sandbox.com",
    },
    "live": {
        "auth": "https://auth.truelayer.com",
        "api": "https://api.truelayer.com",
    },
}


class BankProvider(BaseModel):
    """A bank the user can pick on the connect screen."""

    id: str
    name: str
    country: str = "GB"


_SANDBOX_PROVIDERS = [
    BankProvider(id="mock", name="Mock Bank"),
    BankProvider(id="santander", name="Santander"),
    BankProvider(id="barclays", name="Barclays"),
    BankProvider(id="hsbc", name="HSBC"),
]


class ProviderConfig(BaseModel):
    """OAuth client registration and aggregator endpoints."""

    environment: Literal["sandbox", "live"] = "sandbox"
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = Field(default="http://localhost:8765/callback")
    scopes: list[str] = Field(default_factory=lambda: ["info", "accounts", "balance", "transactions"])
    auth_url: str | None = Field(default=None, description="Override the authorization server base URL")
    api_url: str | None = Field(default=None, description="Override the data API base URL")
    timeout: float = Field(default=30.0, gt=0)
    providers: list[BankProvider] = Field(default_factory=lambda: list(_SANDBOX_PROVIDERS))

    @property
    def auth_base_url(self) -> str:
        return (self.auth_url or _ENDPOINTS[self.environment]["auth"]).rstrip("/")

    @property
    def token_url(self) -> str:
        return f"{self.auth_base_url}/connect/token"

    @property
    def api_base_url(self) -> str:
        return (self.api_url or _ENDPOINTS[self.environment]["api"]).rstrip("/")


class SyncSettings(BaseModel):
    """Periodic sync behaviour."""

    interval_minutes: float = Field(default=15, gt=0)
    sync_on_foreground: bool = True
    sync_on_background: bool = False
    max_retries: int = Field(default=3, ge=0)
    transaction_window_days: int = Field(default=30, ge=1)
    max_accounts: int | None = Field(default=None, ge=1, description="Only keep the first N accounts")


class SecuritySettings(BaseModel):
    """Token storage and validity settings."""

    data_dir: str = Field(default="~/.banksync", description="Where tokens and cached data live")
    token_safety_margin: float = Field(default=30.0, ge=0, description="Seconds before expiry a token counts as expired")
    encryption_key: str | None = Field(default=None, description="Passphrase for at-rest encryption (or set env var)")

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()


class BankSyncConfig(BaseModel):
    """Root configuration for banksync."""

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)

    # None means "on in sandbox, off in live"
    synthetic_fallback: bool | None = None

    @property
    def synthetic_fallback_enabled(self) -> bool:
        if self.synthetic_fallback is None:
            return self.provider.environment == "sandbox"
        return self.synthetic_fallback

    @classmethod
    def load(cls, config_path: str | None = None, **overrides: Any) -> BankSyncConfig:
        """Load configuration from file, env vars, and overrides.

        Priority: overrides > env vars > config file > defaults.
        """
        data: dict[str, Any] = {}

        # 1. Load from YAML file if provided
        if config_path:
            path = Path(config_path)
            if path.exists():
                with open(path) as f:
                    data = yaml.safe_load(f) or {}

        # 2. Override from environment variables
        provider_env = {
            "client_id": os.environ.get("BANKSYNC_CLIENT_ID"),
            "client_secret": os.environ.get("BANKSYNC_CLIENT_SECRET"),
            "redirect_uri": os.environ.get("BANKSYNC_REDIRECT_URI"),
            "environment": os.environ.get("BANKSYNC_ENVIRONMENT"),
        }
        provider_env = {k: v for k, v in provider_env.items() if v}
        if provider_env:
            provider = data.get("provider", {})
            provider.update(provider_env)
            data["provider"] = provider

        env_data_dir = os.environ.get("BANKSYNC_DATA_DIR")
        env_key = os.environ.get("BANKSYNC_TOKEN_KEY")
        if env_data_dir or env_key:
            security = data.get("security", {})
            if env_data_dir:
                security["data_dir"] = env_data_dir
            if env_key:
                security["encryption_key"] = env_key
            data["security"] = security

        env_fallback = os.environ.get("BANKSYNC_SYNTHETIC_FALLBACK")
        if env_fallback:
            data["synthetic_fallback"] = env_fallback.lower() in ("1", "true", "yes")

        # 3. Apply keyword overrides
        data.update(overrides)

        return cls.model_validate(data)
