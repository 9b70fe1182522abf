"""
Rate limiting state for Binance REST calls.

Binance accounts request weight per rolling window and reports the
consumed weight in response headers (X-MBX-USED-WEIGHT-1M). This module
tracks that weight per sub-market:
- Updated after each response carrying the header (server value wins)
- Read before dispatch to decide whether to delay
- Holds a backoff deadline after 429/418 responses so every caller
  for the sub-market waits, not just the one that was rejected

Usage:
    state = RateLimitState()
    delay = state.delay_for(SubMarket.SPOT, weight=20)
    if delay:
        await asyncio.sleep(delay)
    response = send()
    state.record_usage(SubMarket.SPOT, response.headers)
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Tuple

from ..config.settings import RateLimitConfig, SubMarket

logger = logging.getLogger(__name__)


@dataclass
class WeightWindow:
    """Consumed weight for one sub-market."""
    used_weight: int = 0
    window_started: float = 0.0
    blocked_until: float = 0.0
    blocked_status: int = 0  # HTTP status that set blocked_until


class RateLimitState:
    """
    Process-wide weight counters, one window per sub-market.

    Shared by every TransportClient call. Writes happen under a lock in
    a single step so a cancelled call never leaves a half-applied update;
    reads may be stale by one in-flight update.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize rate limit state.

        Args:
            config: Weight limits and window length
            clock: Monotonic time source
        """
        self._config = config or RateLimitConfig()
        self._clock = clock
        self._windows: Dict[SubMarket, WeightWindow] = {}
        self._lock = threading.Lock()

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    def _window(self, sub_market: SubMarket, now: float) -> WeightWindow:
        window = self._windows.get(sub_market)
        if window is None:
            window = WeightWindow(window_started=now)
            self._windows[sub_market] = window
        elif now - window.window_started >= self._config.window_seconds:
            window.used_weight = 0
            window.window_started = now
        return window

    def delay_for(self, sub_market: SubMarket, weight: int = 1) -> float:
        """
        Seconds to wait before dispatching a request of this weight.

        Args:
            sub_market: Sub-market the request targets
            weight: Request weight

        Returns:
            Wait time in seconds (0 if no wait needed)
        """
        with self._lock:
            now = self._clock()
            window = self._window(sub_market, now)

            if window.blocked_until > now:
                return window.blocked_until - now

            if window.used_weight + weight > self._config.usable_limit(sub_market):
                wait_time = window.window_started + self._config.window_seconds - now
                logger.debug(
                    f"Rate limiting {sub_market.value}: used={window.used_weight}, "
                    f"weight={weight}, waiting {wait_time:.2f}s"
                )
                return max(0.0, wait_time)

            return 0.0

    def record_usage(self, sub_market: SubMarket, headers: Mapping[str, str]) -> Optional[int]:
        """
        Update consumed weight from response headers.

        Args:
            sub_market: Sub-market the response came from
            headers: Response headers

        Returns:
            Reported used weight, or None if no header was present
        """
        used = self._parse_used_weight(headers)
        if used is None:
            return None

        with self._lock:
            now = self._clock()
            window = self._window(sub_market, now)
            if used < window.used_weight:
                # Server-side window rolled over
                window.window_started = now
            window.used_weight = used

        return used

    def record_backoff(self, sub_market: SubMarket, seconds: float, status: int = 429) -> None:
        """
        Block dispatch for a sub-market for the given time.

        Args:
            sub_market: Sub-market that was rate limited
            seconds: Time to block
            status: HTTP status that caused the block (429 or 418)
        """
        with self._lock:
            now = self._clock()
            window = self._window(sub_market, now)
            if now + seconds > window.blocked_until:
                window.blocked_until = now + seconds
                window.blocked_status = status

        logger.warning(f"Backing off {sub_market.value} requests for {seconds:.1f}s (HTTP {status})")

    def backoff_remaining(self, sub_market: SubMarket) -> Tuple[float, int]:
        """
        Get the active backoff for a sub-market.

        Returns:
            (seconds remaining, HTTP status that set it); (0.0, 0) if none
        """
        with self._lock:
            now = self._clock()
            window = self._window(sub_market, now)
            if window.blocked_until > now:
                return window.blocked_until - now, window.blocked_status
            return 0.0, 0

    def used_weight(self, sub_market: SubMarket) -> int:
        """Get current used weight (for monitoring)."""
        with self._lock:
            return self._window(sub_market, self._clock()).used_weight

    def available_capacity(self, sub_market: SubMarket) -> float:
        """Get remaining weight before dispatch is delayed."""
        return self._config.usable_limit(sub_market) - self.used_weight(sub_market)

    def reset(self) -> None:
        """Forget all counters and backoff deadlines."""
        with self._lock:
            self._windows.clear()

    def _parse_used_weight(self, headers: Mapping[str, str]) -> Optional[int]:
        prefix = self._config.used_weight_header_prefix.lower()
        for name, value in headers.items():
            if name.lower().startswith(prefix):
                try:
                    return int(value)
                except (TypeError, ValueError):
                    logger.warning(f"Ignoring malformed rate limit header {name}={value!r}")
                    return None
        return None
