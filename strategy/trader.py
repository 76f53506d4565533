import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Mapping, Optional

from analytics.average import PriceAverager, Tick
from analytics.quantize import Quantizer
from config.utils import as_decimal
from strategy.orders import Order, OrderSide


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Fees:
    maker: Decimal
    taker: Decimal


@dataclass(frozen=True)
class Position:
    entry_price: Decimal
    amount: Decimal


@dataclass
class Thresholds:
    resistance_zone: Decimal = Decimal(0)
    highest_support_zone: Decimal = Decimal(0)


class TraderState(Enum):
    FLAT = "flat"
    HOLDING = "holding"
    SELL_ARMED = "sell_armed"


@dataclass
class ActiveData:
    sell: Optional[Order] = None
    sell_price: Optional[Decimal] = None
    sell_time: Optional[float] = None
    stop_loss_price: Optional[Decimal] = None
    min_sell_price: Optional[Decimal] = None


class SellReason(Enum):
    STOP_LOSS = "stop_loss"
    TRAILING_STOP = "trailing_stop"
    MAX_WAIT = "max_wait"


PlaceOrder = Callable[[Order, SellReason], bool]


class Trader:
    """Price-driven sell decisions for the open position plus the buy-side pricing primitives.

    The sell side is a small state machine. With no position the trader is FLAT
    and keeps no scratch state. Once a position exists it is HOLDING: the
    stop-loss and break-even prices are cached on first sight. When the average
    clears the break-even floor the peak is tracked (SELL_ARMED) and a sell is
    emitted on a stop-loss breach, a drop out of the trailing band below the
    peak, or when the peak has aged past ``max_wait_s``.
    """

    def __init__(
        self,
        trader_cfg: Mapping,
        exchange_cfg: Mapping,
        fees: Fees,
        quantizer: Quantizer,
        place_order: Optional[PlaceOrder] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.symbol = exchange_cfg.get('symbol', 'btcusd')
        self.exchange = exchange_cfg.get('name', 'bitfinex')
        self.buy_type = exchange_cfg.get('buy_order_type', 'exchange limit')
        self.sell_type = exchange_cfg.get('sell_order_type', 'exchange fill-or-kill')

        self.risk = as_decimal(trader_cfg.get('risk'), Decimal('0.005'))
        self.max_loss = as_decimal(trader_cfg.get('max_loss'), Decimal('0.02'))
        self.min_gain = as_decimal(trader_cfg.get('min_gain'), Decimal('0.004'))
        self.max_wait_s = float(trader_cfg.get('max_wait_s', 1800))
        self.sell_offset = as_decimal(trader_cfg.get('sell_offset'), Decimal(0))
        self.buy_offset = as_decimal(trader_cfg.get('buy_offset'), Decimal(0))

        self.fees = fees
        self.quantizer = quantizer
        self.place_order = place_order
        self.clock = clock
        self.average = PriceAverager(
            trader_cfg.get('resolution_s', 60),
            trader_cfg.get('min_trades', 5),
            quantizer,
            clock=clock,
        )

        self.thresholds = Thresholds()
        self.active_data = ActiveData()
        self.current_average: Optional[Decimal] = None

    @property
    def state(self) -> TraderState:
        if self.active_data.min_sell_price is None:
            return TraderState.FLAT
        if self.active_data.sell is not None or self.active_data.sell_price is not None:
            return TraderState.SELL_ARMED
        return TraderState.HOLDING

    @property
    def sell_pending(self) -> bool:
        return self.active_data.sell is not None

    def set_fees(self, fees: Fees) -> None:
        self.fees = fees

    def restore_thresholds(self, thresholds: Thresholds) -> None:
        self.thresholds = Thresholds(
            resistance_zone=thresholds.resistance_zone,
            highest_support_zone=thresholds.highest_support_zone,
        )

    def on_tick(self, tick: Optional[Tick], position: Optional[Position]) -> Optional[Order]:
        self.observe(tick)
        return self.evaluate(position)

    def observe(self, tick: Optional[Tick]) -> Optional[Decimal]:
        self.current_average = self.average.observe(tick)
        return self.current_average

    def evaluate(self, position: Optional[Position]) -> Optional[Order]:
        tic = self.current_average
        if self.active_data.sell is not None:
            return None

        if position is None or position.amount <= 0:
            self.reset_active_data()
            return None

        if tic is None:
            return None

        data = self.active_data
        if data.min_sell_price is None:
            data.min_sell_price = self._lowest_sell_price(position.entry_price)
        if data.stop_loss_price is None:
            data.stop_loss_price = self.stop_loss_price(position.entry_price)

        if tic < data.stop_loss_price:
            logger.warning(
                "Stop loss hit: average %s below %s (entry %s)",
                tic,
                data.stop_loss_price,
                position.entry_price,
            )
            return self._emit_sell(tic, position, SellReason.STOP_LOSS)

        if self.quantizer.compare_prices(tic, data.min_sell_price) < 1:
            return None

        if data.sell_price is None or data.sell_time is None:
            self._set_possible_sell(tic)
            return None

        if self.quantizer.compare_prices(tic, data.sell_price) == 1:
            self._set_possible_sell(tic)
            return None

        if tic < self._max_drop(data.sell_price):
            return self._emit_sell(tic, position, SellReason.TRAILING_STOP)

        if data.sell_time + self.max_wait_s < self.clock():
            return self._emit_sell(tic, position, SellReason.MAX_WAIT)

        return None

    def sell_order(self, price: Decimal, amount: Decimal) -> Order:
        return Order.request(
            OrderSide.SELL,
            self.quantizer.quantize_price(price),
            self.quantizer.quantize_amount(amount, 8),
            symbol=self.symbol,
            exchange=self.exchange,
            order_type=self.sell_type,
        )

    def buy_order(self, price: Decimal, quote_funds: Decimal) -> Order:
        buy_price = self.support_zone(price)
        if buy_price <= 0:
            raise ValueError(f"Cannot price a buy at {price}")
        amount = self.quantizer.quantize_amount(Decimal(quote_funds) / buy_price, 8)
        return Order.request(
            OrderSide.BUY,
            buy_price,
            amount,
            symbol=self.symbol,
            exchange=self.exchange,
            order_type=self.buy_type,
        )

    def support_zone(self, price: Decimal) -> Decimal:
        return self.quantizer.quantize_price(Decimal(price) * (1 - self.buy_offset))

    def resistance_zone(self, price: Decimal) -> Decimal:
        return self.quantizer.quantize_price(
            Decimal(price) * (1 + self.fees.maker + self.min_gain)
        )

    def stop_loss_price(self, price: Decimal) -> Decimal:
        return Decimal(price) * (1 - (self.fees.maker + self.max_loss))

    def record_buy(self, price: Decimal) -> None:
        self.thresholds.resistance_zone = self.resistance_zone(price)
        logger.info("Resistance zone set to %s from buy at %s", self.thresholds.resistance_zone, price)

    def record_support(self, price: Decimal) -> None:
        if price > self.thresholds.highest_support_zone:
            self.thresholds.highest_support_zone = price

    def clear_support(self) -> None:
        self.thresholds.highest_support_zone = Decimal(0)

    def clear_pending_sell(self) -> None:
        if self.active_data.sell is not None:
            logger.info("Clearing pending sell %s", self.active_data.sell.price)
        self.active_data.sell = None

    def reset_active_data(self) -> None:
        self.active_data = ActiveData()

    def _emit_sell(self, tic: Decimal, position: Position, reason: SellReason) -> Optional[Order]:
        order = self.sell_order(tic * (1 - self.sell_offset), position.amount)
        self.active_data.sell = order
        logger.info(
            "Sell decided (%s): %s @ %s, average %s",
            reason.value,
            order.amount,
            order.price,
            tic,
        )
        if self.place_order is not None and not self.place_order(order, reason):
            self.active_data.sell = None
            return None
        return order

    def _set_possible_sell(self, price: Decimal) -> None:
        self.active_data.sell_price = price
        self.active_data.sell_time = self.clock()

    def _lowest_sell_price(self, entry_price: Decimal) -> Decimal:
        if self.thresholds.resistance_zone > 0:
            return self.thresholds.resistance_zone
        return Decimal(entry_price) * (1 + self.fees.maker + self.min_gain)

    def _max_drop(self, price: Decimal) -> Decimal:
        possible = price * (1 - self.risk)
        if self.quantizer.quantize_price(possible) < self.quantizer.quantize_price(price):
            return possible
        # band collapsed under rounding; step one tick below the peak
        return price - self.quantizer.price_tick
