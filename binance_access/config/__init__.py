"""Configuration module for the Binance access layer."""

from .settings import (
    SubMarket,
    ApiConfig,
    RateLimitConfig,
    RetryConfig,
    StreamConfig,
    LoggingConfig,
    AccessConfig,
)

__all__ = [
    "SubMarket",
    "ApiConfig",
    "RateLimitConfig",
    "RetryConfig",
    "StreamConfig",
    "LoggingConfig",
    "AccessConfig",
]
