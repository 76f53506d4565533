import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Mapping, Optional

from config.utils import as_decimal
from ingest.bitfinex_rest import BitfinexAPIError, BitfinexRESTClient, TransportError
from strategy.orders import Order, ParseError
from strategy.trader import Fees


__all__ = ["BitfinexTransport", "Balances", "BitfinexAPIError", "TransportError"]


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Balances:
    base: Optional[Decimal]
    quote: Optional[Decimal]


class BitfinexTransport:
    """Typed adapter over the v1 REST endpoints the trader needs."""

    def __init__(self, exchange_cfg: Mapping) -> None:
        self.exchange_cfg = exchange_cfg
        self.symbol = exchange_cfg.get('symbol', 'btcusd')
        self.base_currency = exchange_cfg.get('base_currency', 'btc')
        self.quote_currency = exchange_cfg.get('quote_currency', 'usd')
        self.wallet_type = exchange_cfg.get('wallet_type', 'exchange')
        self._rest: Optional[BitfinexRESTClient] = None
        self._lock = asyncio.Lock()

    def _client(self) -> BitfinexRESTClient:
        if self._rest is None:
            self._rest = BitfinexRESTClient(self.exchange_cfg)
        return self._rest

    async def place_order(self, request: Order) -> Order:
        data = await self._client().post("/v1/order/new", params=request.to_wire())
        return self._parse_order_ack(data)

    async def replace_order(self, order_id: str, request: Order) -> Order:
        params = request.to_wire()
        params["order_id"] = int(order_id)
        data = await self._client().post("/v1/order/cancel/replace", params=params)
        return self._parse_order_ack(data)

    async def get_balances(self) -> Balances:
        payload = await self._client().post("/v1/balances")
        if not isinstance(payload, list) or not payload:
            raise TransportError(f"Unexpected balances payload: {payload!r}")
        return Balances(
            base=self._available(payload, self.base_currency),
            quote=self._available(payload, self.quote_currency),
        )

    async def get_fees(self, defaults: Fees) -> Fees:
        payload = await self._client().post("/v1/account_infos")
        if not isinstance(payload, list) or not payload:
            raise TransportError(f"Unexpected account_infos payload: {payload!r}")
        info = payload[0] if isinstance(payload[0], dict) else {}
        maker = as_decimal(info.get("maker_fees"))
        taker = as_decimal(info.get("taker_fees"))
        if maker is None and taker is None:
            logger.error("Error parsing fees: %s", info)
        return Fees(
            maker=maker / 100 if maker is not None else defaults.maker,
            taker=taker / 100 if taker is not None else defaults.taker,
        )

    async def get_open_orders(self) -> List[Order]:
        payload = await self._client().post("/v1/orders")
        if not isinstance(payload, list):
            raise TransportError(f"Unexpected orders payload: {payload!r}")
        orders: List[Order] = []
        for item in payload:
            try:
                order = Order.from_rest_active(item)
            except ParseError as exc:
                logger.error("Skipping unparseable open order: %s", exc)
                continue
            if order.symbol and order.symbol != self.symbol:
                continue
            orders.append(order)
        return orders

    async def get_past_trades(self, pair: Optional[str] = None) -> List[Order]:
        symbol = pair or self.symbol
        payload = await self._client().post("/v1/mytrades", params={"symbol": symbol, "limit_trades": 50})
        if not isinstance(payload, list):
            raise TransportError(f"Unexpected trades payload: {payload!r}")
        trades: List[Order] = []
        for item in payload:
            try:
                trades.append(Order.from_rest_past(item, symbol=symbol))
            except ParseError as exc:
                logger.error("Skipping unparseable past trade: %s", exc)
        trades.sort(key=lambda o: o.timestamp or 0.0, reverse=True)
        return trades

    async def close(self) -> None:
        async with self._lock:
            if self._rest:
                try:
                    await self._rest.close()
                finally:
                    self._rest = None

    def _parse_order_ack(self, payload: Any) -> Order:
        try:
            return Order.from_rest_active(payload)
        except ParseError as exc:
            raise TransportError(f"Unusable order acknowledgement: {exc}") from exc

    def _available(self, payload: List[Any], currency: str) -> Optional[Decimal]:
        for entry in payload:
            if not isinstance(entry, dict):
                continue
            if entry.get("currency") != currency or entry.get("type", self.wallet_type) != self.wallet_type:
                continue
            value = as_decimal(entry.get("available"))
            if value is None:
                logger.error("Error parsing %s balance: %s", currency, entry)
            return value
        return Decimal(0)
