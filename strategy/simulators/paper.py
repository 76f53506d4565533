import itertools
import logging
import time
from dataclasses import replace
from decimal import Decimal
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from analytics.average import Tick
from config.utils import as_decimal
from ingest.bitfinex_rest import TransportError
from strategy.orders import Order, OrderSide, OrderStatus
from strategy.trader import Fees
from strategy.transports.bitfinex import Balances


logger = logging.getLogger(__name__)


class PaperExchange:
    """In-memory stand-in for the exchange commands, filling our resting orders against live ticks."""

    def __init__(self, exchange_cfg: Mapping, fees: Optional[Fees] = None) -> None:
        balances = exchange_cfg.get('paper_balances') or {}
        self.symbol = exchange_cfg.get('symbol', 'btcusd')
        self.fees = fees or Fees(maker=Decimal('0.001'), taker=Decimal('0.002'))
        self.base = as_decimal(balances.get('base'), Decimal(0))
        self.quote = as_decimal(balances.get('quote'), Decimal(0))
        self._orders: Dict[str, Order] = {}
        self._trades: List[Order] = []
        self._ids = itertools.count(1)

    @property
    def orders(self) -> Mapping[str, Order]:
        return MappingProxyType(self._orders)

    async def place_order(self, request: Order) -> Order:
        self._check_funds(request)
        order = replace(
            request,
            id=f"paper-{next(self._ids)}",
            status=OrderStatus.ACTIVE,
            timestamp=time.time(),
        )
        self._orders[order.id] = order
        return order

    async def replace_order(self, order_id: str, request: Order) -> Order:
        if order_id not in self._orders:
            raise TransportError(f"Paper order {order_id} not found")
        self._check_funds(request)
        self._orders.pop(order_id)
        return await self.place_order(request)

    async def get_balances(self) -> Balances:
        return Balances(base=self.base, quote=self.quote)

    async def get_fees(self, defaults: Fees) -> Fees:
        return self.fees

    async def get_open_orders(self) -> List[Order]:
        return list(self._orders.values())

    async def get_past_trades(self, pair: Optional[str] = None) -> List[Order]:
        return list(reversed(self._trades))

    async def close(self) -> None:
        return None

    def match(self, tick: Tick) -> List[Order]:
        """Fill resting orders crossed by ``tick`` and return them as executed updates."""
        executed: List[Order] = []
        for order_id, order in list(self._orders.items()):
            crossed = (
                (order.is_buy and tick.price <= order.price)
                or (order.is_sell and tick.price >= order.price)
            )
            if not crossed:
                continue
            self._orders.pop(order_id)
            fill = replace(order, status=OrderStatus.EXECUTED, timestamp=tick.timestamp)
            self._settle(fill)
            self._trades.append(fill)
            executed.append(fill)
            logger.info("Paper fill %s %s @ %s", fill.side.value, fill.amount, fill.price)
        return executed

    def _check_funds(self, request: Order) -> None:
        if request.side is OrderSide.BUY and request.quote_value > self.quote:
            raise TransportError(
                f"Paper buy needs {request.quote_value} {self.symbol[3:]}, have {self.quote}"
            )
        if request.side is OrderSide.SELL and request.amount > self.base:
            raise TransportError(f"Paper sell needs {request.amount}, have {self.base}")

    def _settle(self, fill: Order) -> None:
        if fill.is_buy:
            self.quote -= fill.quote_value
            self.base += fill.amount * (1 - self.fees.maker)
        else:
            self.base -= fill.amount
            self.quote += fill.quote_value * (1 - self.fees.maker)
