"""
Stream frames and events.

Binance combined streams wrap every payload as {"stream": name, "data": ...}.
Control traffic on the same socket:
- acks: {"result": null, "id": n}
- errors: {"error": {"code": ..., "msg": ...}, "id": n}
"""

import json
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Iterable, Optional, Tuple, Union

from ..api.errors import DecodeError
from ..config.settings import SubMarket


class FrameKind(Enum):
    ACK = auto()
    ERROR = auto()
    EVENT = auto()


@dataclass(frozen=True)
class StreamEvent:
    """One market or user data event delivered to consumers."""
    channel: str
    sub_market: SubMarket
    data: Any
    received_at: float = field(default_factory=time.time)

    @property
    def event_type(self) -> Optional[str]:
        """Payload "e" field (e.g. "trade", "depthUpdate", "executionReport")."""
        if isinstance(self.data, dict):
            return self.data.get("e")
        return None

    @property
    def event_time(self) -> Optional[int]:
        if isinstance(self.data, dict):
            return self.data.get("E")
        return None


def decode_frame(raw: Union[str, bytes]) -> Any:
    """
    Parse one text frame.

    Raises:
        DecodeError: Frame is not valid JSON
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"Stream frame is not UTF-8: {e}") from e

    try:
        return json.loads(raw)
    except ValueError as e:
        raise DecodeError(f"Invalid JSON stream frame: {e}", body=raw[:500]) from e


def classify_frame(frame: Any) -> FrameKind:
    if isinstance(frame, dict) and "id" in frame:
        if "error" in frame:
            return FrameKind.ERROR
        if "result" in frame:
            return FrameKind.ACK
    return FrameKind.EVENT


def split_event(frame: Any, default_channel: Optional[str] = None) -> Tuple[Optional[str], Any]:
    """
    Split a data frame into (channel, payload).

    Raw frames without the combined-stream wrapper are attributed to
    default_channel.
    """
    if isinstance(frame, dict) and "stream" in frame and "data" in frame:
        return frame["stream"], frame["data"]
    return default_channel, frame


def control_message(method: str, channels: Iterable[str], request_id: int) -> str:
    """Build a SUBSCRIBE/UNSUBSCRIBE request."""
    return json.dumps({
        "method": method,
        "params": sorted(channels),
        "id": request_id,
    })
