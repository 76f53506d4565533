import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Optional

from strategy.orders import Order, OrderSide, OrderStatus


logger = logging.getLogger(__name__)


class InvariantViolation(Exception):
    """An event would leave the trading state inconsistent; the event is dropped."""


@dataclass
class TradingState:
    """Account view owned by the orchestrator.

    ``last_*`` hold the most recent executed order per side, ``active_*`` the
    resting order per side. Balances are ``None`` until first read.
    """

    balance_quote: Optional[Decimal] = None
    balance_base: Optional[Decimal] = None
    last_buy: Optional[Order] = None
    last_sell: Optional[Order] = None
    active_buy: Optional[Order] = None
    active_sell: Optional[Order] = None

    def has_active_order(self) -> bool:
        return self.active_buy is not None or self.active_sell is not None

    def snapshot(self) -> 'TradingState':
        return replace(self)

    def set_active(self, order: Order) -> None:
        if order.side is OrderSide.BUY:
            self.active_buy = order
        elif order.side is OrderSide.SELL:
            self.active_sell = order
        else:
            raise InvariantViolation(f"Order without side: {order!r}")

    def apply_order_update(self, order: Order) -> bool:
        """Fold one order event into the state. Returns True when anything changed."""
        if not isinstance(order.side, OrderSide):
            raise InvariantViolation(f"Order update without side: {order!r}")

        if order.status is OrderStatus.EXECUTED:
            self.active_buy = None
            self.active_sell = None
            if order.is_buy:
                self.last_buy = order
            else:
                self.last_sell = order
            return True

        if order.status is OrderStatus.ACTIVE:
            self.set_active(order)
            return True

        if order.status is OrderStatus.CANCELLED:
            current = self.active_buy if order.is_buy else self.active_sell
            if current is not None and current.id is not None and current.id == order.id:
                if order.is_buy:
                    self.active_buy = None
                else:
                    self.active_sell = None
                return True
            return False

        logger.info("Order %s %s: %s, no state change", order.id, order.side.value, order.status.value)
        return False

    def update_balances(self, base: Optional[Decimal], quote: Optional[Decimal]) -> None:
        # unparseable reads arrive as None and keep the previous value
        if base is not None:
            self.balance_base = base
        if quote is not None:
            self.balance_quote = quote
