"""
banksync authentication and token management.

Provides the PKCE authorization flow, encrypted token storage, and the
token lifecycle (exchange, refresh, disconnect) for the aggregator.
"""

from banksync.auth.oauth2 import (
    OAuthCallbackServer,
    TokenLifecycleManager,
    TokenState,
    parse_callback_url,
)
from banksync.auth.pkce import PkceSession, create_challenge, create_state, create_verifier
from banksync.auth.token_store import SecureTokenStore, TokenCipher, TokenSet

__all__ = [
    "OAuthCallbackServer",
    "PkceSession",
    "SecureTokenStore",
    "TokenCipher",
    "TokenLifecycleManager",
    "TokenSet",
    "TokenState",
    "create_challenge",
    "create_state",
    "create_verifier",
    "parse_callback_url",
]
