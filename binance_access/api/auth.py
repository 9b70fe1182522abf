"""
Binance API Authentication.

Implements HMAC-SHA256 request signing for SIGNED endpoints. The
signature is the hex digest of HMAC-SHA256(secret, canonical query
string), appended to the request as the `signature` parameter. The API
key travels in a request header for KEY and SIGNED endpoints.

Usage:
    signer = Signer(Credentials(api_key="...", api_secret="..."))
    signature = signer.sign("symbol=BTCUSDT&timestamp=1499827319559")
"""

import hashlib
import hmac
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from dotenv import dotenv_values

from .encoding import ArrayStyle, canonical_encode
from .errors import ConfigError


@dataclass(frozen=True)
class Credentials:
    """API credentials. The secret may be empty for key-only use."""
    api_key: str
    api_secret: str = field(default="", repr=False)

    def __post_init__(self):
        """Validate credentials format."""
        if not self.api_key:
            raise ValueError("API key is required")

    @property
    def can_sign(self) -> bool:
        """Check if a secret is available for SIGNED endpoints."""
        return bool(self.api_secret)


def sign(query_string: str, secret: str) -> str:
    """
    Compute the request signature.

    Args:
        query_string: Canonical query string to sign
        secret: API secret

    Returns:
        Lowercase hex HMAC-SHA256 digest
    """
    return hmac.new(
        secret.encode("utf-8"),
        query_string.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def sign_params(
    params: Mapping[str, Any],
    secret: str,
    array_styles: Optional[Mapping[str, ArrayStyle]] = None,
) -> str:
    """Sign the canonical encoding of a parameter mapping."""
    return sign(canonical_encode(params, array_styles), secret)


class Signer:
    """
    Holds credentials and signs canonical payloads.

    The secret never leaves this object; only digests do.
    """

    def __init__(self, credentials: Optional[Credentials] = None):
        """
        Initialize signer.

        Args:
            credentials: API credentials (None for public-only use)
        """
        self._credentials = credentials

    @property
    def has_key(self) -> bool:
        return self._credentials is not None

    @property
    def has_secret(self) -> bool:
        return self._credentials is not None and self._credentials.can_sign

    @property
    def api_key(self) -> str:
        """API key for the request header."""
        if self._credentials is None:
            raise ConfigError("API key required but no credentials configured")
        return self._credentials.api_key

    def sign(self, query_string: str) -> str:
        """
        Sign a canonical query string.

        Raises:
            ConfigError: If no secret is configured
        """
        if not self.has_secret:
            raise ConfigError("API secret required to sign request but none configured")
        return sign(query_string, self._credentials.api_secret)

    def __repr__(self) -> str:
        key = self._credentials.api_key[:4] + "..." if self._credentials else None
        return f"Signer(api_key={key!r}, can_sign={self.has_secret})"


def load_credentials_from_env() -> Credentials:
    """
    Load API credentials from environment variables.

    Expects:
        BINANCE_API_KEY: API key
        BINANCE_API_SECRET: API secret (optional for key-only endpoints)

    Returns:
        Credentials instance

    Raises:
        ConfigError: If BINANCE_API_KEY is not set
    """
    api_key = os.environ.get("BINANCE_API_KEY", "")
    api_secret = os.environ.get("BINANCE_API_SECRET", "")

    if not api_key:
        raise ConfigError("BINANCE_API_KEY environment variable required")

    return Credentials(api_key=api_key, api_secret=api_secret)


def load_credentials_from_file(path: str) -> Credentials:
    """
    Load API credentials from a JSON object or a dotenv-style file.

    Both forms use the keys api_key and api_secret; the secret may be
    omitted for key-only use.

    Raises:
        FileNotFoundError: If the file does not exist
        ConfigError: If the file cannot be parsed or has no api_key
    """
    source = Path(path)
    if not source.is_file():
        raise FileNotFoundError(f"Credentials file not found: {path}")

    text = source.read_text()
    if text.lstrip().startswith("{"):
        try:
            values: Mapping[str, Any] = json.loads(text)
        except ValueError as e:
            raise ConfigError(f"Credentials file {path} is not valid JSON: {e}") from e
    else:
        values = dotenv_values(source)

    api_key = values.get("api_key") or ""
    if not api_key:
        raise ConfigError(f"Credentials file {path} has no api_key")
    return Credentials(api_key=str(api_key), api_secret=str(values.get("api_secret") or ""))
