"""
Request construction.

Turns an Endpoint plus caller parameters into a frozen PreparedRequest:
- resolves the base URL for the endpoint's sub-market
- adds the API key header for KEY and SIGNED endpoints
- injects timestamp/recvWindow and the signature for SIGNED endpoints

A PreparedRequest is built fresh for every attempt; nothing is mutated
after the signature is computed.
"""

import logging
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional

from ..config.settings import ApiConfig
from .auth import Signer
from .encoding import canonical_encode
from .endpoints import Endpoint, HttpMethod
from .errors import ConfigError, ParameterError

logger = logging.getLogger(__name__)

RESERVED_PARAMS = ("timestamp", "signature")
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


def current_millis() -> int:
    """Milliseconds since epoch."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class PreparedRequest:
    """A fully built request, ready to dispatch."""
    endpoint: Endpoint
    url: str
    payload: str  # canonical string, signature appended when signed
    headers: Mapping[str, str]
    timestamp: Optional[int] = None
    signature: Optional[str] = None

    @property
    def method(self) -> str:
        return self.endpoint.method.value

    @property
    def sends_body(self) -> bool:
        return self.endpoint.method in (HttpMethod.POST, HttpMethod.PUT)

    @property
    def full_url(self) -> str:
        """URL including query string for GET/DELETE."""
        if self.sends_body or not self.payload:
            return self.url
        return f"{self.url}?{self.payload}"

    @property
    def body(self) -> Optional[str]:
        return self.payload if self.sends_body and self.payload else None


class RequestBuilder:
    """
    Builds PreparedRequests for endpoints.

    Usage:
        builder = RequestBuilder(ApiConfig(), Signer(credentials))
        request = builder.build(endpoints.QUERY_ORDER, {"symbol": "BTCUSDT", "orderId": 1})
    """

    def __init__(
        self,
        config: ApiConfig,
        signer: Optional[Signer] = None,
        clock: Callable[[], int] = current_millis,
    ):
        """
        Initialize request builder.

        Args:
            config: Endpoint configuration
            signer: Signer holding credentials (None for public-only use)
            clock: Millisecond timestamp source
        """
        self._config = config
        self._signer = signer or Signer()
        self._clock = clock

    def check(self, endpoint: Endpoint) -> str:
        """
        Verify an endpoint can be called with the current configuration.

        Returns:
            Base URL for the endpoint's sub-market

        Raises:
            ConfigError: Sub-market disabled, URL missing, or credentials missing
        """
        sub_market = endpoint.sub_market
        if not self._config.is_enabled(sub_market):
            raise ConfigError(f"Sub-market {sub_market.value} is disabled")

        base_url = self._config.rest_url(sub_market)
        if not base_url:
            raise ConfigError(f"No REST URL configured for sub-market {sub_market.value}")

        if endpoint.requires_key and not self._signer.has_key:
            raise ConfigError(f"{endpoint} requires an API key")

        if endpoint.requires_signature and not self._signer.has_secret:
            raise ConfigError(f"{endpoint} requires an API secret for signing")

        return base_url

    def build(
        self,
        endpoint: Endpoint,
        params: Optional[Mapping[str, Any]] = None,
        recv_window: Optional[int] = None,
    ) -> PreparedRequest:
        """
        Build a request for an endpoint.

        Args:
            endpoint: Endpoint descriptor
            params: Caller parameters (None values are dropped)
            recv_window: Override the configured recvWindow (ms)

        Returns:
            Frozen PreparedRequest

        Raises:
            ConfigError: Before any I/O, if the endpoint cannot be called
            ParameterError: If parameters cannot be encoded
        """
        base_url = self.check(endpoint)

        fields: Dict[str, Any] = {
            key: value for key, value in (params or {}).items() if value is not None
        }
        for reserved in RESERVED_PARAMS:
            if reserved in fields:
                raise ParameterError(f"Parameter {reserved!r} is set by the request builder")

        headers: Dict[str, str] = {}
        if endpoint.requires_key:
            headers[self._config.api_key_header] = self._signer.api_key

        timestamp = None
        if endpoint.requires_signature:
            timestamp = self._clock()
            fields["timestamp"] = timestamp
            window = self._config.recv_window if recv_window is None else recv_window
            if window:
                fields["recvWindow"] = window

        payload = canonical_encode(fields, endpoint.array_styles)

        signature = None
        if endpoint.requires_signature:
            signature = self._signer.sign(payload)
            payload = f"{payload}&signature={signature}"

        if endpoint.method in (HttpMethod.POST, HttpMethod.PUT) and payload:
            headers["Content-Type"] = FORM_CONTENT_TYPE

        logger.debug(f"Built {endpoint} ({len(fields)} params, auth={endpoint.auth_level.name})")

        return PreparedRequest(
            endpoint=endpoint,
            url=f"{base_url}{endpoint.path}",
            payload=payload,
            headers=MappingProxyType(headers),
            timestamp=timestamp,
            signature=signature,
        )
