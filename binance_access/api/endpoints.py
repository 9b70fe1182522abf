"""
Endpoint descriptors.

Every REST operation is described once by an Endpoint: path, method,
authentication level, sub-market, request weight and, for list-valued
parameters, the declared array convention.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Optional, Tuple

from ..config.settings import SubMarket
from .encoding import ArrayStyle


class AuthLevel(IntEnum):
    """Authentication required by an endpoint (ordered)."""
    NONE = 0
    KEY = 1     # API key header only
    SIGNED = 2  # API key header + timestamp + signature


class HttpMethod(Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"


@dataclass(frozen=True)
class Endpoint:
    """Static description of one REST operation."""
    path: str
    method: HttpMethod
    auth_level: AuthLevel
    sub_market: SubMarket
    weight: int = 1
    array_params: Tuple[Tuple[str, ArrayStyle], ...] = ()
    idempotent: Optional[bool] = None  # None = derive from method

    @property
    def is_idempotent(self) -> bool:
        """Whether a failed attempt may be retried blindly."""
        if self.idempotent is not None:
            return self.idempotent
        return self.method in (HttpMethod.GET, HttpMethod.DELETE)

    @property
    def array_styles(self) -> dict:
        return dict(self.array_params)

    @property
    def requires_key(self) -> bool:
        return self.auth_level >= AuthLevel.KEY

    @property
    def requires_signature(self) -> bool:
        return self.auth_level == AuthLevel.SIGNED

    def __str__(self) -> str:
        return f"{self.method.value} {self.path}"


def _spot(path, method, auth, weight=1, **kwargs) -> Endpoint:
    return Endpoint(path, method, auth, SubMarket.SPOT, weight, **kwargs)


def _margin(path, method, auth, weight=1, **kwargs) -> Endpoint:
    return Endpoint(path, method, auth, SubMarket.MARGIN, weight, **kwargs)


def _futures(path, method, auth, weight=1, **kwargs) -> Endpoint:
    return Endpoint(path, method, auth, SubMarket.FUTURES, weight, **kwargs)


def _savings(path, method, auth, weight=1, **kwargs) -> Endpoint:
    return Endpoint(path, method, auth, SubMarket.SAVINGS, weight, **kwargs)


def _wallet(path, method, auth, weight=1, **kwargs) -> Endpoint:
    return Endpoint(path, method, auth, SubMarket.WALLET, weight, **kwargs)


GET, POST, PUT, DELETE = HttpMethod.GET, HttpMethod.POST, HttpMethod.PUT, HttpMethod.DELETE
NONE, KEY, SIGNED = AuthLevel.NONE, AuthLevel.KEY, AuthLevel.SIGNED


# ===========================================
# SPOT
# ===========================================

PING = _spot("/api/v3/ping", GET, NONE)
SERVER_TIME = _spot("/api/v3/time", GET, NONE)
EXCHANGE_INFO = _spot("/api/v3/exchangeInfo", GET, NONE, 20)
DEPTH = _spot("/api/v3/depth", GET, NONE, 5)
RECENT_TRADES = _spot("/api/v3/trades", GET, NONE, 25)
KLINES = _spot("/api/v3/klines", GET, NONE, 2)
TICKER_PRICE = _spot("/api/v3/ticker/price", GET, NONE, 2)
TICKER_24HR = _spot("/api/v3/ticker/24hr", GET, NONE, 2)

ACCOUNT = _spot("/api/v3/account", GET, SIGNED, 20)
ORDER = _spot("/api/v3/order", POST, SIGNED)
ORDER_TEST = _spot("/api/v3/order/test", POST, SIGNED, idempotent=True)
QUERY_ORDER = _spot("/api/v3/order", GET, SIGNED, 4)
CANCEL_ORDER = _spot("/api/v3/order", DELETE, SIGNED)
OPEN_ORDERS = _spot("/api/v3/openOrders", GET, SIGNED, 6)
CANCEL_OPEN_ORDERS = _spot("/api/v3/openOrders", DELETE, SIGNED)
MY_TRADES = _spot("/api/v3/myTrades", GET, SIGNED, 20)

USER_STREAM_START = _spot("/api/v3/userDataStream", POST, KEY, 2, idempotent=True)
USER_STREAM_KEEPALIVE = _spot("/api/v3/userDataStream", PUT, KEY, 2, idempotent=True)
USER_STREAM_CLOSE = _spot("/api/v3/userDataStream", DELETE, KEY, 2)

# ===========================================
# MARGIN
# ===========================================

MARGIN_ACCOUNT = _margin("/sapi/v1/margin/account", GET, SIGNED, 10)
MARGIN_ORDER = _margin("/sapi/v1/margin/order", POST, SIGNED, 6)
MARGIN_CANCEL_ORDER = _margin("/sapi/v1/margin/order", DELETE, SIGNED, 10)
MARGIN_USER_STREAM_START = _margin("/sapi/v1/userDataStream", POST, KEY, idempotent=True)
MARGIN_USER_STREAM_KEEPALIVE = _margin("/sapi/v1/userDataStream", PUT, KEY, idempotent=True)
MARGIN_USER_STREAM_CLOSE = _margin("/sapi/v1/userDataStream", DELETE, KEY)

# ===========================================
# FUTURES
# ===========================================

FUTURES_PING = _futures("/fapi/v1/ping", GET, NONE)
FUTURES_ACCOUNT = _futures("/fapi/v2/account", GET, SIGNED, 5)
FUTURES_ORDER = _futures("/fapi/v1/order", POST, SIGNED)
FUTURES_CANCEL_ORDER = _futures("/fapi/v1/order", DELETE, SIGNED)
FUTURES_POSITION_RISK = _futures("/fapi/v2/positionRisk", GET, SIGNED, 5)
FUTURES_USER_STREAM_START = _futures("/fapi/v1/listenKey", POST, KEY, idempotent=True)
FUTURES_USER_STREAM_KEEPALIVE = _futures("/fapi/v1/listenKey", PUT, KEY, idempotent=True)
FUTURES_USER_STREAM_CLOSE = _futures("/fapi/v1/listenKey", DELETE, KEY)

# ===========================================
# SAVINGS (simple earn)
# ===========================================

FLEXIBLE_PRODUCT_LIST = _savings("/sapi/v1/simple-earn/flexible/list", GET, SIGNED, 150)
FLEXIBLE_POSITION = _savings("/sapi/v1/simple-earn/flexible/position", GET, SIGNED, 150)

# ===========================================
# WALLET
# ===========================================

SYSTEM_STATUS = _wallet("/sapi/v1/system/status", GET, NONE)
ALL_COIN_INFO = _wallet("/sapi/v1/capital/config/getall", GET, SIGNED, 10)
ACCOUNT_STATUS = _wallet("/sapi/v1/account/status", GET, SIGNED)
API_TRADING_STATUS = _wallet("/sapi/v1/account/apiTradingStatus", GET, SIGNED)
DEPOSIT_ADDRESS = _wallet("/sapi/v1/capital/deposit/address", GET, SIGNED, 10)
DEPOSIT_HISTORY = _wallet("/sapi/v1/capital/deposit/hisrec", GET, SIGNED)
WITHDRAW_HISTORY = _wallet("/sapi/v1/capital/withdraw/history", GET, SIGNED)
WITHDRAW = _wallet("/sapi/v1/capital/withdraw/apply", POST, SIGNED, 600)
DUST_TRANSFER = _wallet(
    "/sapi/v1/asset/dust", POST, SIGNED, 10,
    array_params=(("asset", ArrayStyle.COMMA),),
)
ASSET_DETAIL = _wallet("/sapi/v1/asset/assetDetail", GET, SIGNED)
TRADE_FEE = _wallet("/sapi/v1/asset/tradeFee", GET, SIGNED)
TRADE_FEE_US = _wallet("/sapi/v1/asset/query/trading-fee", GET, SIGNED)
FUNDING_WALLET = _wallet("/sapi/v1/asset/get-funding-asset", POST, SIGNED, idempotent=True)
API_KEY_PERMISSIONS = _wallet("/sapi/v1/account/apiRestrictions", GET, SIGNED)
