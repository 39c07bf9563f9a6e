"""
PKCE (Proof Key for Code Exchange) helpers, RFC 7636.

The verifier stays on this machine; only its S256 challenge goes out with
the authorization request. The verifier is presented once, at code exchange.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import string
from dataclasses import dataclass

# Unreserved characters allowed in a code verifier
VERIFIER_ALPHABET = string.ascii_letters + string.digits + "-._~"

MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128


def create_verifier(length: int = 64) -> str:
    """Generate a random code verifier of ``length`` unreserved characters.

    Raises:
        ValueError: If ``length`` is outside 43-128.
    """
    if not MIN_VERIFIER_LENGTH <= length <= MAX_VERIFIER_LENGTH:
        raise ValueError(
            f"Code verifier length must be between {MIN_VERIFIER_LENGTH} "
            f"and {MAX_VERIFIER_LENGTH}, got {length}"
        )
    return "".join(secrets.choice(VERIFIER_ALPHABET) for _ in range(length))


def create_challenge(verifier: str) -> str:
    """S256 challenge: base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def create_state() -> str:
    """Random token echoed back by the authorization server."""
    return secrets.token_urlsafe(16)


def states_match(expected: str | None, returned: str | None) -> bool:
    """Exact, constant-time comparison of two state values."""
    if not expected or not returned:
        return False
    return hmac.compare_digest(expected.encode(), returned.encode())


@dataclass(frozen=True)
class PkceSession:
    """One in-flight authorization attempt. Never persisted."""

    code_verifier: str
    code_challenge: str
    state: str
    redirect_uri: str
    provider_id: str = ""


def new_session(redirect_uri: str, provider_id: str = "", *, verifier_length: int = 64) -> PkceSession:
    verifier = create_verifier(verifier_length)
    return PkceSession(
        code_verifier=verifier,
        code_challenge=create_challenge(verifier),
        state=create_state(),
        redirect_uri=redirect_uri,
        provider_id=provider_id,
    )
