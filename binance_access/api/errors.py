"""
Binance API Error Handling.

Error taxonomy for the access layer:
- ConfigError / ParameterError - caller or configuration mistakes, raised before I/O
- ExchangeError - server-reported business error ({code, msg} envelope)
- TimestampError - request timestamp outside the server's recvWindow
- RateLimited - 429/418 responses after backoff was exhausted
- NetworkError - transport failure on an idempotent call after retries
- Indeterminate - non-idempotent call whose outcome is unknown
- DecodeError - response body did not match the expected shape
- StreamFailure - stream manager exhausted reconnect attempts

Binance Error Codes Reference:
- -1000..-1099 - general server or network issues
- -1100..-1199 - request issues (bad parameters, bad symbol)
- -2010..-2015 - order rejection and key/permission problems
- -3xxx - margin and sapi errors
"""

import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple

from ..config.settings import RetryConfig


class ErrorCategory(Enum):
    """Categories of Binance API errors."""
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    TIMESTAMP = "timestamp"
    ORDER = "order"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INVALID_PARAMETER = "invalid_parameter"
    SERVER = "server"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorInfo:
    """Classification of a known exchange error code."""
    code: int
    message: str
    category: ErrorCategory


TIMESTAMP_ERROR_CODE = -1021

# Error code mappings
ERROR_MAPPINGS: Dict[int, ErrorInfo] = {
    info.code: info
    for info in (
        ErrorInfo(-1000, "Unknown error while processing the request", ErrorCategory.SERVER),
        ErrorInfo(-1001, "Internal error; unable to process the request", ErrorCategory.SERVER),
        ErrorInfo(-1002, "Not authorized to execute this request", ErrorCategory.AUTHENTICATION),
        ErrorInfo(-1003, "Too many requests", ErrorCategory.RATE_LIMIT),
        ErrorInfo(-1006, "Unexpected response from message bus", ErrorCategory.SERVER),
        ErrorInfo(-1007, "Timeout waiting for response from backend", ErrorCategory.SERVER),
        ErrorInfo(-1015, "Too many new orders", ErrorCategory.RATE_LIMIT),
        ErrorInfo(-1016, "Service no longer available", ErrorCategory.SERVER),
        ErrorInfo(-1021, "Timestamp outside of recvWindow", ErrorCategory.TIMESTAMP),
        ErrorInfo(-1022, "Signature for this request is not valid", ErrorCategory.AUTHENTICATION),
        ErrorInfo(-1100, "Illegal characters in parameter", ErrorCategory.INVALID_PARAMETER),
        ErrorInfo(-1102, "Mandatory parameter missing or malformed", ErrorCategory.INVALID_PARAMETER),
        ErrorInfo(-1111, "Precision is over the maximum defined", ErrorCategory.INVALID_PARAMETER),
        ErrorInfo(-1121, "Invalid symbol", ErrorCategory.INVALID_PARAMETER),
        ErrorInfo(-2010, "New order rejected", ErrorCategory.ORDER),
        ErrorInfo(-2011, "Cancel order rejected", ErrorCategory.ORDER),
        ErrorInfo(-2013, "Order does not exist", ErrorCategory.ORDER),
        ErrorInfo(-2014, "API-key format invalid", ErrorCategory.AUTHENTICATION),
        ErrorInfo(-2015, "Invalid API-key, IP, or permissions for action", ErrorCategory.AUTHENTICATION),
        ErrorInfo(-2019, "Margin is insufficient", ErrorCategory.INSUFFICIENT_FUNDS),
        ErrorInfo(-3041, "Balance is not enough", ErrorCategory.INSUFFICIENT_FUNDS),
    )
}


def classify_code(code: int) -> ErrorInfo:
    """Classify an exchange error code into ErrorInfo."""
    if code in ERROR_MAPPINGS:
        return ERROR_MAPPINGS[code]

    # Ranges documented by the exchange
    if -1099 <= code <= -1000:
        category = ErrorCategory.SERVER
    elif -1199 <= code <= -1100:
        category = ErrorCategory.INVALID_PARAMETER
    elif -2099 <= code <= -2000:
        category = ErrorCategory.ORDER
    else:
        category = ErrorCategory.UNKNOWN

    return ErrorInfo(code=code, message=f"Unknown error: {code}", category=category)


class BinanceAccessError(Exception):
    """Base exception for the access layer."""
    pass


class ConfigError(BinanceAccessError):
    """Missing credentials, disabled sub-market or bad configuration."""
    pass


class ParameterError(ConfigError):
    """Request parameters that cannot be encoded as declared."""
    pass


class ExchangeError(BinanceAccessError):
    """Business error reported by the exchange in a {code, msg} envelope."""

    def __init__(self, code: int, msg: str, status: Optional[int] = None):
        self.code = code
        self.msg = msg
        self.status = status
        self.error_info = classify_code(code)
        super().__init__(f"Binance API error {code}: {msg}")

    @property
    def category(self) -> ErrorCategory:
        """Get error category."""
        return self.error_info.category


class TimestampError(ExchangeError):
    """Request rejected because its timestamp fell outside recvWindow."""
    pass


class RateLimited(BinanceAccessError):
    """Rate limit (429) or IP ban (418) persisted through backoff."""

    def __init__(
        self,
        retry_after: Optional[float],
        status: int,
        attempts: int,
    ):
        self.retry_after = retry_after
        self.status = status
        self.attempts = attempts
        super().__init__(
            f"Rate limited (HTTP {status}) after {attempts} attempts, "
            f"retry after {retry_after}s"
        )


class NetworkError(BinanceAccessError):
    """Transport failure that persisted through retries."""

    def __init__(self, message: str, attempts: int = 1):
        self.attempts = attempts
        super().__init__(message)


class Indeterminate(BinanceAccessError):
    """
    Outcome of a non-idempotent request is unknown.

    The request may or may not have been executed by the exchange;
    callers must reconcile with a query call before retrying.
    """

    def __init__(self, method: str, path: str, reason: str):
        self.method = method
        self.path = path
        self.reason = reason
        super().__init__(f"Outcome of {method} {path} unknown: {reason}")


class DecodeError(BinanceAccessError):
    """Response body did not match the expected shape."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(message)


class StreamFailure(BinanceAccessError):
    """Stream manager gave up reconnecting a connection."""

    def __init__(self, channels: Iterable[str], attempts: int, reason: str = ""):
        self.channels = tuple(sorted(channels))
        self.attempts = attempts
        self.reason = reason
        super().__init__(
            f"Stream failed after {attempts} reconnect attempts "
            f"for {list(self.channels)}: {reason}"
        )


def parse_error_envelope(payload: Any) -> Optional[Tuple[int, str]]:
    """
    Extract (code, msg) if payload is the exchange's error envelope.

    Some sapi endpoints answer success with {"code": 200, "msg": "..."}
    or {"code": 0}; only negative codes are errors.
    """
    if not isinstance(payload, dict):
        return None

    code = payload.get("code")
    msg = payload.get("msg")
    if isinstance(code, bool) or not isinstance(code, int) or not isinstance(msg, str):
        return None

    if code >= 0:
        return None

    return code, msg


def exchange_error(code: int, msg: str, status: Optional[int] = None) -> ExchangeError:
    """Build the appropriate ExchangeError subclass for a code."""
    if code == TIMESTAMP_ERROR_CODE:
        return TimestampError(code, msg, status)
    return ExchangeError(code, msg, status)


def calculate_backoff(
    attempt: int,
    config: RetryConfig,
    jitter: Optional[bool] = None,
) -> float:
    """
    Calculate exponential backoff time for retry.

    Args:
        attempt: Current attempt number (0-indexed)
        config: Retry configuration
        jitter: Override config.jitter

    Returns:
        Seconds to wait before retry
    """
    delay = config.base_delay * (config.exponential_base ** attempt)

    # Apply max delay cap
    delay = min(delay, config.max_delay)

    use_jitter = config.jitter if jitter is None else jitter

    # Add jitter (up to 25% of delay)
    if use_jitter and delay > 0:
        delay += delay * 0.25 * random.random()

    return delay
