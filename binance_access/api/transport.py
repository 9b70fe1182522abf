"""
Binance REST Transport Client.

Dispatches PreparedRequests and classifies the outcome:
- JSON success bodies are returned as decoded objects
- {code, msg} envelopes raise ExchangeError (TimestampError for -1021)
- 429/418 responses back off (Retry-After hint, exponential, capped) and
  retry; exhaustion raises RateLimited
- Network failures and 5xx are retried for idempotent endpoints;
  non-idempotent endpoints raise Indeterminate without retrying

Blocking requests.Session calls run in the event loop's executor.
"""

import asyncio
import functools
import json
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config.settings import ApiConfig, RetryConfig
from .endpoints import Endpoint
from .errors import (
    DecodeError,
    Indeterminate,
    NetworkError,
    RateLimited,
    calculate_backoff,
    exchange_error,
    parse_error_envelope,
)
from .rate_limiter import RateLimitState
from .request_builder import PreparedRequest, RequestBuilder

logger = logging.getLogger(__name__)

RATE_LIMIT_STATUSES = (429, 418)


def parse_retry_after(headers: Mapping[str, str]) -> Optional[float]:
    """Read the Retry-After header as seconds (None if absent or malformed)."""
    value = headers.get("Retry-After")
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring malformed Retry-After header {value!r}")
        return None
    return max(0.0, seconds)


class TransportClient:
    """
    Async HTTP transport for Binance REST endpoints.

    Usage:
        transport = TransportClient(RequestBuilder(ApiConfig(), Signer(creds)))
        result = await transport.execute(endpoints.ACCOUNT)
    """

    def __init__(
        self,
        builder: RequestBuilder,
        config: Optional[ApiConfig] = None,
        retry: Optional[RetryConfig] = None,
        rate_limits: Optional[RateLimitState] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize transport client.

        Args:
            builder: Request builder (owns credentials and base URLs)
            config: Endpoint configuration (request timeout)
            retry: Retry policy
            rate_limits: Shared rate limit state (one per process)
            session: HTTP session (created if not provided)
            sleep: Awaitable sleep used for backoff
        """
        self._builder = builder
        self._config = config or ApiConfig()
        self._retry = retry or RetryConfig()
        self._rate_limits = rate_limits or RateLimitState()
        self._sleep = sleep

        if session is None:
            session = requests.Session()
            retry_strategy = Retry(
                total=0,  # We handle retries ourselves
                backoff_factor=0,
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            session.mount("https://", adapter)
            session.mount("http://", adapter)
        self._session = session

    @property
    def rate_limits(self) -> RateLimitState:
        return self._rate_limits

    async def execute(
        self,
        endpoint: Endpoint,
        params: Optional[Mapping[str, Any]] = None,
        recv_window: Optional[int] = None,
    ) -> Any:
        """
        Execute an endpoint call with retry policy applied.

        Every attempt builds (and for SIGNED endpoints re-signs) a fresh
        request, so no timestamp or signature is ever reused.

        Args:
            endpoint: Endpoint descriptor
            params: Caller parameters
            recv_window: Override recvWindow (ms)

        Returns:
            Decoded JSON response

        Raises:
            ConfigError: Before any I/O if the call cannot be made
            ExchangeError: Exchange rejected the request
            TimestampError: Timestamp outside recvWindow
            RateLimited: 429/418 persisted through backoff
            NetworkError: Idempotent call failed through retries
            Indeterminate: Non-idempotent call outcome unknown
            DecodeError: Response body not understood
        """
        rate_limit_attempts = 0
        failure_attempts = 0

        self._builder.check(endpoint)

        while True:
            # Sign after waiting so the timestamp is fresh at dispatch
            await self._wait_for_capacity(endpoint)
            request = self._builder.build(endpoint, params, recv_window)

            try:
                response = await self._dispatch(request)
            except requests.exceptions.RequestException as e:
                if not endpoint.is_idempotent:
                    logger.error(f"{endpoint} failed without response, outcome unknown: {e}")
                    raise Indeterminate(request.method, endpoint.path, str(e)) from e

                failure_attempts += 1
                if failure_attempts > self._retry.max_retries:
                    raise NetworkError(
                        f"{endpoint} failed after {failure_attempts} attempts: {e}",
                        attempts=failure_attempts,
                    ) from e

                backoff = calculate_backoff(failure_attempts - 1, self._retry)
                logger.warning(
                    f"Retry {failure_attempts}/{self._retry.max_retries} for {endpoint} "
                    f"after {type(e).__name__}, waiting {backoff:.2f}s"
                )
                await self._sleep(backoff)
                continue

            self._rate_limits.record_usage(endpoint.sub_market, response.headers)
            status = response.status_code

            if status in RATE_LIMIT_STATUSES:
                hint = parse_retry_after(response.headers)
                rate_limit_attempts += 1

                if rate_limit_attempts > self._retry.rate_limit_retries:
                    raise RateLimited(hint, status, rate_limit_attempts)

                if hint is not None and hint > self._retry.max_delay:
                    # Bans can last hours; do not sleep that long in here
                    self._rate_limits.record_backoff(endpoint.sub_market, hint, status)
                    raise RateLimited(hint, status, rate_limit_attempts)

                backoff = calculate_backoff(rate_limit_attempts - 1, self._retry, jitter=False)
                if hint is not None:
                    backoff = max(backoff, hint)

                self._rate_limits.record_backoff(endpoint.sub_market, backoff, status)
                logger.warning(
                    f"HTTP {status} for {endpoint}, retry "
                    f"{rate_limit_attempts}/{self._retry.rate_limit_retries} in {backoff:.2f}s"
                )
                await self._sleep(backoff)
                continue

            if status >= 500:
                if not endpoint.is_idempotent:
                    logger.error(f"HTTP {status} for {endpoint}, outcome unknown")
                    raise Indeterminate(request.method, endpoint.path, f"HTTP {status}")

                failure_attempts += 1
                if failure_attempts > self._retry.max_retries:
                    raise NetworkError(
                        f"{endpoint} returned HTTP {status} after {failure_attempts} attempts",
                        attempts=failure_attempts,
                    )

                backoff = calculate_backoff(failure_attempts - 1, self._retry)
                logger.warning(
                    f"Retry {failure_attempts}/{self._retry.max_retries} for {endpoint} "
                    f"after HTTP {status}, waiting {backoff:.2f}s"
                )
                await self._sleep(backoff)
                continue

            return self._parse_response(endpoint, response)

    async def _wait_for_capacity(self, endpoint: Endpoint) -> None:
        """
        Sleep until the sub-market may be called.

        Raises:
            RateLimited: An earlier ban outlasts retry.max_delay
        """
        remaining, status = self._rate_limits.backoff_remaining(endpoint.sub_market)
        if remaining > self._retry.max_delay:
            logger.warning(f"{endpoint} blocked by HTTP {status} ban for another {remaining:.0f}s")
            raise RateLimited(remaining, status, 0)

        delay = self._rate_limits.delay_for(endpoint.sub_market, endpoint.weight)
        if delay > 0:
            logger.debug(f"Delaying {endpoint} by {delay:.2f}s for rate limits")
            await self._sleep(delay)

    async def _dispatch(self, request: PreparedRequest) -> requests.Response:
        """Send one request without blocking the event loop."""
        call = functools.partial(
            self._session.request,
            request.method,
            request.full_url,
            data=request.body,
            headers=dict(request.headers),
            timeout=self._config.request_timeout,
        )
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, call)

    def _parse_response(self, endpoint: Endpoint, response: requests.Response) -> Any:
        """Decode a response body and raise on error envelopes."""
        status = response.status_code
        text = response.text or ""

        try:
            payload = json.loads(text) if text.strip() else None
        except ValueError as e:
            raise DecodeError(
                f"{endpoint} returned non-JSON body (HTTP {status})",
                status=status,
                body=text[:500],
            ) from e

        envelope = parse_error_envelope(payload)
        if envelope is not None:
            code, msg = envelope
            logger.debug(f"{endpoint} rejected: {code} {msg}")
            raise exchange_error(code, msg, status)

        if status >= 400:
            raise DecodeError(
                f"{endpoint} returned HTTP {status} without an error envelope",
                status=status,
                body=text[:500],
            )

        return payload

    def close(self) -> None:
        """Close the underlying HTTP session."""
        self._session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.close()
