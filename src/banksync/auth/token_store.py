"""
Encrypted on-disk storage for OAuth tokens.

Tokens are encrypted with Fernet (AES-128-CBC + HMAC) using a key derived
with PBKDF2 from either a configured passphrase or machine-specific data plus
a per-install random salt. Files are readable by the owner only.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import socket
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger("banksync.auth.token_store")

_KDF_ITERATIONS = 480000


# ---------------------------------------------------------------------------
# Encryption helpers
# ---------------------------------------------------------------------------


class TokenCipher:
    """Symmetric encryption for anything banksync keeps on disk.

    The key is derived once per instance. Without a passphrase the hostname
    is used, so stored data is only readable on the machine that wrote it.
    """

    def __init__(self, key_dir: Path, passphrase: str | None = None) -> None:
        self.key_dir = key_dir
        self._passphrase = passphrase
        self._fernet: Fernet | None = None

    @property
    def _salt_file(self) -> Path:
        return self.key_dir / ".key_salt"

    def _load_salt(self) -> bytes:
        if self._salt_file.exists():
            return self._salt_file.read_bytes()
        salt = os.urandom(16)
        self.key_dir.mkdir(parents=True, exist_ok=True)
        self._salt_file.write_bytes(salt)
        self._salt_file.chmod(0o600)
        return salt

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            if self._passphrase:
                password = self._passphrase.encode()
            else:
                password = socket.gethostname().encode() + b"banksync-v1"
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=self._load_salt(),
                iterations=_KDF_ITERATIONS,
            )
            self._fernet = Fernet(base64.urlsafe_b64encode(kdf.derive(password)))
        return self._fernet

    def encrypt(self, data: str) -> str:
        return self._get_fernet().encrypt(data.encode()).decode()

    def decrypt(self, encrypted: str) -> str:
        """Decrypt a value written by :meth:`encrypt`.

        Raises:
            cryptography.fernet.InvalidToken: Wrong key or tampered data.
        """
        return self._get_fernet().decrypt(encrypted.encode()).decode()


# ---------------------------------------------------------------------------
# Token model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenSet:
    """Access/refresh token pair with an absolute expiry (epoch seconds)."""

    access_token: str
    refresh_token: str
    expires_at: float
    token_type: str = "Bearer"
    scope: str = ""

    def expires_within(self, margin: float, now: float | None = None) -> bool:
        """True when the token is expired or will be within ``margin`` seconds."""
        current = time.time() if now is None else now
        return current >= self.expires_at - margin

    def seconds_remaining(self, now: float | None = None) -> float:
        current = time.time() if now is None else now
        return self.expires_at - current

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "token_type": self.token_type,
            "scope": self.scope,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenSet:
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", ""),
            expires_at=float(data["expires_at"]),
            token_type=data.get("token_type", "Bearer"),
            scope=data.get("scope", ""),
        )

    @classmethod
    def from_oauth_response(
        cls,
        data: dict[str, Any],
        *,
        now: float | None = None,
        previous_refresh_token: str = "",
    ) -> TokenSet:
        """Parse a standard OAuth2 token response.

        ``expires_in`` is converted to an absolute instant at receipt time.
        Servers that don't rotate refresh tokens omit ``refresh_token``; the
        previous one is carried over in that case.

        Raises:
            ValueError: Not a JSON object, ``access_token`` missing or empty,
                or ``expires_in`` not numeric.
        """
        if not isinstance(data, dict):
            raise ValueError(f"token response is a {type(data).__name__}, not an object")
        access_token = data.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("token response has no access_token")
        received_at = time.time() if now is None else now
        expires_in = int(data.get("expires_in", 3600))
        return cls(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            expires_at=received_at + expires_in,
            token_type=data.get("token_type", "Bearer"),
            scope=data.get("scope", ""),
        )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SecureTokenStore:
    """Persists a single :class:`TokenSet` encrypted on disk."""

    def __init__(self, token_dir: Path, cipher: TokenCipher, *, name: str = "truelayer") -> None:
        self.token_dir = token_dir
        self.cipher = cipher
        self.name = name

    @property
    def token_file(self) -> Path:
        return self.token_dir / f"{self.name}.token"

    def save(self, token_set: TokenSet) -> None:
        self.token_dir.mkdir(parents=True, exist_ok=True)
        encrypted = self.cipher.encrypt(json.dumps(token_set.to_dict()))
        self.token_file.write_text(encrypted)
        self.token_file.chmod(0o600)
        logger.debug("Saved %s tokens to %s", self.name, self.token_file)

    def load(self) -> TokenSet | None:
        """Return the stored tokens, or None when nothing usable is stored."""
        if not self.token_file.exists():
            return None

        try:
            data = json.loads(self.cipher.decrypt(self.token_file.read_text()))
            token_set = TokenSet.from_dict(data)
        except InvalidToken:
            logger.warning("Stored %s tokens could not be decrypted; ignoring them", self.name)
            return None
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Stored %s tokens are corrupt: %s", self.name, e)
            return None

        logger.debug("Loaded %s tokens from %s", self.name, self.token_file)
        return token_set

    def clear(self) -> bool:
        """Delete stored tokens. Returns True if a file was removed."""
        if self.token_file.exists():
            self.token_file.unlink()
            logger.info("Deleted stored %s tokens", self.name)
            return True
        return False

    def exists(self) -> bool:
        return self.token_file.exists()
