"""
Binance REST Client.

One TransportClient shared by per-sub-market gateways:
- market - public market data
- account - spot account and orders
- margin - cross margin account and orders
- futures - USD-M futures account and orders
- savings - simple earn flexible products
- wallet - capital, asset and account status endpoints
- user_stream - listen keys for user data streams

Responses are returned as decoded JSON.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from ..config.settings import AccessConfig, SubMarket
from . import endpoints
from .auth import Credentials, Signer, load_credentials_from_env
from .endpoints import Endpoint
from .rate_limiter import RateLimitState
from .request_builder import RequestBuilder
from .transport import TransportClient

logger = logging.getLogger(__name__)

Number = Union[int, float, Decimal, str]

DEFAULT_HISTORY_WINDOW = timedelta(days=90)


class OrderSide(Enum):
    """Order side (buy/sell)."""
    BUY = "BUY"
    SELL = "SELL"


class OrderType(Enum):
    """Order types supported by Binance spot."""
    LIMIT = "LIMIT"
    MARKET = "MARKET"
    STOP_LOSS = "STOP_LOSS"
    STOP_LOSS_LIMIT = "STOP_LOSS_LIMIT"
    TAKE_PROFIT = "TAKE_PROFIT"
    TAKE_PROFIT_LIMIT = "TAKE_PROFIT_LIMIT"
    LIMIT_MAKER = "LIMIT_MAKER"


class TimeInForce(Enum):
    GTC = "GTC"
    IOC = "IOC"
    FOK = "FOK"


def _millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


class _Gateway:
    """Base for gateways sharing one transport."""

    def __init__(self, transport: TransportClient, recv_window: Optional[int] = None):
        self._transport = transport
        self._recv_window = recv_window

    async def _call(self, endpoint: Endpoint, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._transport.execute(endpoint, params, self._recv_window)


class MarketGateway(_Gateway):
    """Public market data (no authentication)."""

    async def ping(self) -> Dict[str, Any]:
        return await self._call(endpoints.PING)

    async def server_time(self) -> int:
        """Get server time in milliseconds."""
        result = await self._call(endpoints.SERVER_TIME)
        return int(result["serverTime"])

    async def exchange_info(self, symbol: Optional[str] = None) -> Dict[str, Any]:
        return await self._call(endpoints.EXCHANGE_INFO, {"symbol": symbol})

    async def depth(self, symbol: str, limit: Optional[int] = None) -> Dict[str, Any]:
        """Get order book snapshot."""
        return await self._call(endpoints.DEPTH, {"symbol": symbol, "limit": limit})

    async def recent_trades(self, symbol: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return await self._call(endpoints.RECENT_TRADES, {"symbol": symbol, "limit": limit})

    async def klines(
        self,
        symbol: str,
        interval: str,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[List[Any]]:
        return await self._call(
            endpoints.KLINES,
            {
                "symbol": symbol,
                "interval": interval,
                "startTime": start_time,
                "endTime": end_time,
                "limit": limit,
            },
        )

    async def price(self, symbol: Optional[str] = None) -> Any:
        """Latest price for one symbol, or all symbols if None."""
        return await self._call(endpoints.TICKER_PRICE, {"symbol": symbol})

    async def ticker_24hr(self, symbol: Optional[str] = None) -> Any:
        return await self._call(endpoints.TICKER_24HR, {"symbol": symbol})


class AccountGateway(_Gateway):
    """Spot account and order endpoints (signed)."""

    async def account_info(self) -> Dict[str, Any]:
        return await self._call(endpoints.ACCOUNT)

    @staticmethod
    def _order_params(
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: Optional[Number],
        price: Optional[Number],
        time_in_force: Optional[TimeInForce],
        client_order_id: Optional[str],
        extra: Dict[str, Any],
    ) -> Dict[str, Any]:
        if order_type in (OrderType.LIMIT, OrderType.STOP_LOSS_LIMIT, OrderType.TAKE_PROFIT_LIMIT):
            time_in_force = time_in_force or TimeInForce.GTC

        params = {
            "symbol": symbol,
            "side": side,
            "type": order_type,
            "quantity": quantity,
            "price": price,
            "timeInForce": time_in_force,
            "newClientOrderId": client_order_id,
        }
        params.update(extra)
        return params

    async def place_order(
        self,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: Optional[Number] = None,
        price: Optional[Number] = None,
        time_in_force: Optional[TimeInForce] = None,
        client_order_id: Optional[str] = None,
        **extra: Any,
    ) -> Dict[str, Any]:
        """
        Place a new order.

        Never retried on network failure; an unknown outcome raises
        Indeterminate. Pass client_order_id to make reconciliation via
        query_order possible.
        """
        params = self._order_params(
            symbol, side, order_type, quantity, price, time_in_force, client_order_id, extra
        )
        logger.info(f"Placing {side.value} {order_type.value} order on {symbol}")
        return await self._call(endpoints.ORDER, params)

    async def test_order(
        self,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: Optional[Number] = None,
        price: Optional[Number] = None,
        time_in_force: Optional[TimeInForce] = None,
        **extra: Any,
    ) -> Dict[str, Any]:
        """Validate an order without sending it to the matching engine."""
        params = self._order_params(
            symbol, side, order_type, quantity, price, time_in_force, None, extra
        )
        return await self._call(endpoints.ORDER_TEST, params)

    async def query_order(
        self,
        symbol: str,
        order_id: Optional[int] = None,
        client_order_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self._call(
            endpoints.QUERY_ORDER,
            {"symbol": symbol, "orderId": order_id, "origClientOrderId": client_order_id},
        )

    async def cancel_order(
        self,
        symbol: str,
        order_id: Optional[int] = None,
        client_order_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self._call(
            endpoints.CANCEL_ORDER,
            {"symbol": symbol, "orderId": order_id, "origClientOrderId": client_order_id},
        )

    async def open_orders(self, symbol: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self._call(endpoints.OPEN_ORDERS, {"symbol": symbol})

    async def cancel_open_orders(self, symbol: str) -> List[Dict[str, Any]]:
        return await self._call(endpoints.CANCEL_OPEN_ORDERS, {"symbol": symbol})

    async def my_trades(
        self,
        symbol: str,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        from_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        return await self._call(
            endpoints.MY_TRADES,
            {
                "symbol": symbol,
                "startTime": start_time,
                "endTime": end_time,
                "fromId": from_id,
                "limit": limit,
            },
        )


class MarginGateway(_Gateway):
    """Cross margin endpoints."""

    async def account_info(self) -> Dict[str, Any]:
        return await self._call(endpoints.MARGIN_ACCOUNT)

    async def place_order(
        self,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: Optional[Number] = None,
        price: Optional[Number] = None,
        time_in_force: Optional[TimeInForce] = None,
        **extra: Any,
    ) -> Dict[str, Any]:
        params = AccountGateway._order_params(
            symbol, side, order_type, quantity, price, time_in_force, None, extra
        )
        return await self._call(endpoints.MARGIN_ORDER, params)

    async def cancel_order(self, symbol: str, order_id: int) -> Dict[str, Any]:
        return await self._call(
            endpoints.MARGIN_CANCEL_ORDER, {"symbol": symbol, "orderId": order_id}
        )


class FuturesGateway(_Gateway):
    """USD-M futures endpoints."""

    async def ping(self) -> Dict[str, Any]:
        return await self._call(endpoints.FUTURES_PING)

    async def account_info(self) -> Dict[str, Any]:
        return await self._call(endpoints.FUTURES_ACCOUNT)

    async def place_order(
        self,
        symbol: str,
        side: OrderSide,
        order_type: str,
        quantity: Optional[Number] = None,
        price: Optional[Number] = None,
        time_in_force: Optional[TimeInForce] = None,
        reduce_only: Optional[bool] = None,
        **extra: Any,
    ) -> Dict[str, Any]:
        params = {
            "symbol": symbol,
            "side": side,
            "type": order_type,
            "quantity": quantity,
            "price": price,
            "timeInForce": time_in_force,
            "reduceOnly": reduce_only,
        }
        params.update(extra)
        return await self._call(endpoints.FUTURES_ORDER, params)

    async def cancel_order(self, symbol: str, order_id: int) -> Dict[str, Any]:
        return await self._call(
            endpoints.FUTURES_CANCEL_ORDER, {"symbol": symbol, "orderId": order_id}
        )

    async def position_risk(self, symbol: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self._call(endpoints.FUTURES_POSITION_RISK, {"symbol": symbol})


class SavingsGateway(_Gateway):
    """Simple earn flexible products."""

    async def flexible_products(self, asset: Optional[str] = None) -> Dict[str, Any]:
        return await self._call(endpoints.FLEXIBLE_PRODUCT_LIST, {"asset": asset})

    async def flexible_positions(self, asset: Optional[str] = None) -> Dict[str, Any]:
        return await self._call(endpoints.FLEXIBLE_POSITION, {"asset": asset})


class WalletGateway(_Gateway):
    """Capital, asset and account status endpoints."""

    def __init__(
        self,
        transport: TransportClient,
        recv_window: Optional[int] = None,
        binance_us_api: bool = False,
    ):
        super().__init__(transport, recv_window)
        self._binance_us_api = binance_us_api

    async def system_status(self) -> Dict[str, Any]:
        return await self._call(endpoints.SYSTEM_STATUS)

    async def all_coin_info(self) -> List[Dict[str, Any]]:
        """Coins available for deposit and withdrawal."""
        return await self._call(endpoints.ALL_COIN_INFO)

    async def account_status(self) -> Dict[str, Any]:
        return await self._call(endpoints.ACCOUNT_STATUS)

    async def api_trading_status(self) -> Dict[str, Any]:
        return await self._call(endpoints.API_TRADING_STATUS)

    async def deposit_address(self, coin: str, network: Optional[str] = None) -> Dict[str, Any]:
        return await self._call(endpoints.DEPOSIT_ADDRESS, {"coin": coin, "network": network})

    async def deposit_history(self, **query: Any) -> List[Dict[str, Any]]:
        return await self._call(endpoints.DEPOSIT_HISTORY, query)

    async def withdraw_history(self, **query: Any) -> List[Dict[str, Any]]:
        return await self._call(endpoints.WITHDRAW_HISTORY, query)

    async def deposit_history_quick(
        self,
        start_from: Optional[datetime] = None,
        total_duration: timedelta = DEFAULT_HISTORY_WINDOW,
        **query: Any,
    ) -> List[Dict[str, Any]]:
        """
        Deposit history walking back from start_from in 90-day windows.

        Returns:
            List of {"start_at", "end_at", "records"} for windows with records
        """
        return await self._walk_history(self.deposit_history, start_from, total_duration, query)

    async def withdraw_history_quick(
        self,
        start_from: Optional[datetime] = None,
        total_duration: timedelta = DEFAULT_HISTORY_WINDOW,
        **query: Any,
    ) -> List[Dict[str, Any]]:
        """Withdraw history walking back from start_from in 90-day windows."""
        return await self._walk_history(self.withdraw_history, start_from, total_duration, query)

    async def _walk_history(self, fetch, start_from, total_duration, query) -> List[Dict[str, Any]]:
        # The exchange caps each history query at a 90 day span
        period_end = start_from or datetime.now(timezone.utc)
        end_at = period_end - total_duration
        period_start = period_end - DEFAULT_HISTORY_WINDOW

        windows = []
        while period_end > end_at:
            records = await fetch(
                startTime=_millis(period_start),
                endTime=_millis(period_end),
                **query,
            )
            if records:
                windows.append({
                    "start_at": period_start,
                    "end_at": period_end,
                    "records": records,
                })

            period_start -= DEFAULT_HISTORY_WINDOW
            period_end -= DEFAULT_HISTORY_WINDOW

        return windows

    async def withdraw(
        self,
        coin: str,
        address: str,
        amount: Number,
        network: Optional[str] = None,
        address_tag: Optional[str] = None,
        withdraw_order_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Submit a withdrawal (never retried on network failure)."""
        logger.info(f"Submitting {coin} withdrawal")
        return await self._call(
            endpoints.WITHDRAW,
            {
                "coin": coin,
                "address": address,
                "amount": amount,
                "network": network,
                "addressTag": address_tag,
                "withdrawOrderId": withdraw_order_id,
            },
        )

    async def dust_transfer(self, assets: List[str]) -> Dict[str, Any]:
        """Convert small balances to BNB."""
        return await self._call(endpoints.DUST_TRANSFER, {"asset": list(assets)})

    async def asset_detail(self, asset: Optional[str] = None) -> Dict[str, Any]:
        return await self._call(endpoints.ASSET_DETAIL, {"asset": asset})

    async def trade_fees(self, symbol: Optional[str] = None) -> List[Dict[str, Any]]:
        endpoint = endpoints.TRADE_FEE_US if self._binance_us_api else endpoints.TRADE_FEE
        return await self._call(endpoint, {"symbol": symbol})

    async def funding_wallet(
        self,
        asset: Optional[str] = None,
        need_btc_valuation: Optional[bool] = None,
    ) -> List[Dict[str, Any]]:
        return await self._call(
            endpoints.FUNDING_WALLET,
            {"asset": asset, "needBtcValuation": need_btc_valuation},
        )

    async def api_key_permissions(self) -> Dict[str, Any]:
        return await self._call(endpoints.API_KEY_PERMISSIONS)


USER_STREAM_ENDPOINTS = {
    SubMarket.SPOT: (
        endpoints.USER_STREAM_START,
        endpoints.USER_STREAM_KEEPALIVE,
        endpoints.USER_STREAM_CLOSE,
    ),
    SubMarket.MARGIN: (
        endpoints.MARGIN_USER_STREAM_START,
        endpoints.MARGIN_USER_STREAM_KEEPALIVE,
        endpoints.MARGIN_USER_STREAM_CLOSE,
    ),
    SubMarket.FUTURES: (
        endpoints.FUTURES_USER_STREAM_START,
        endpoints.FUTURES_USER_STREAM_KEEPALIVE,
        endpoints.FUTURES_USER_STREAM_CLOSE,
    ),
}


class UserStreamGateway(_Gateway):
    """
    Listen key management (API key only, no signature).

    The returned listen key is subscribed like any other channel on the
    StreamManager for the same sub-market.
    """

    def _endpoints(self, sub_market: SubMarket):
        try:
            return USER_STREAM_ENDPOINTS[sub_market]
        except KeyError:
            raise ValueError(f"No user data stream for sub-market {sub_market.value}")

    async def start(self, sub_market: SubMarket = SubMarket.SPOT) -> str:
        """Create a listen key."""
        start, _, _ = self._endpoints(sub_market)
        result = await self._call(start)
        return result["listenKey"]

    async def keep_alive(self, listen_key: str, sub_market: SubMarket = SubMarket.SPOT) -> None:
        """Extend a listen key's validity (60 minutes)."""
        _, keepalive, _ = self._endpoints(sub_market)
        await self._call(keepalive, {"listenKey": listen_key})

    async def close(self, listen_key: str, sub_market: SubMarket = SubMarket.SPOT) -> None:
        _, _, close = self._endpoints(sub_market)
        await self._call(close, {"listenKey": listen_key})


class BinanceClient:
    """
    Client for the Binance REST API.

    Usage:
        # From environment variables
        client = BinanceClient.from_env()

        # Public data only
        client = BinanceClient()
        price = await client.market.price("BTCUSDT")

        # Place order
        order = await client.account.place_order(
            symbol="BTCUSDT",
            side=OrderSide.BUY,
            order_type=OrderType.LIMIT,
            quantity="0.001",
            price="50000",
        )
    """

    def __init__(
        self,
        credentials: Optional[Credentials] = None,
        config: Optional[AccessConfig] = None,
        rate_limits: Optional[RateLimitState] = None,
        transport: Optional[TransportClient] = None,
    ):
        """
        Initialize client.

        Args:
            credentials: API credentials (None for public endpoints only)
            config: Complete configuration
            rate_limits: Shared rate limit state (pass the same object to
                every client in the process)
            transport: Pre-built transport (overrides the above)
        """
        self._config = config or AccessConfig()

        if transport is None:
            builder = RequestBuilder(self._config.api, Signer(credentials))
            transport = TransportClient(
                builder,
                config=self._config.api,
                retry=self._config.retry,
                rate_limits=rate_limits or RateLimitState(self._config.rate_limit),
            )
        self._transport = transport

        self.market = MarketGateway(transport)
        self.account = AccountGateway(transport)
        self.margin = MarginGateway(transport)
        self.futures = FuturesGateway(transport)
        self.savings = SavingsGateway(transport)
        self.wallet = WalletGateway(transport, binance_us_api=self._config.api.binance_us_api)
        self.user_stream = UserStreamGateway(transport)

        logger.info(
            f"Initialized Binance client "
            f"(authenticated={credentials is not None})"
        )

    @classmethod
    def from_env(cls, **kwargs) -> "BinanceClient":
        """
        Create client from environment variables.

        Expects BINANCE_API_KEY and BINANCE_API_SECRET.
        """
        return cls(credentials=load_credentials_from_env(), **kwargs)

    @property
    def config(self) -> AccessConfig:
        return self._config

    @property
    def transport(self) -> TransportClient:
        return self._transport

    def close(self) -> None:
        self._transport.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.close()
