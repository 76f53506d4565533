from decimal import Decimal, ROUND_DOWN
from typing import Any, Mapping, Optional

from config.utils import as_decimal


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class Quantizer:
    """Truncate prices and amounts to what the exchange accepts.

    Prices are floored to the tick size and, when configured, to a number of
    significant digits (Bitfinex quotes five). Amounts are floored to a fixed
    number of fractional digits. Rounding is always toward zero so an emitted
    price never overshoots what the caller computed.
    """

    def __init__(
        self,
        price_tick: Any = '0.1',
        significant_digits: Optional[int] = None,
        amount_decimals: int = 8,
    ):
        self.price_tick = to_decimal(price_tick)
        if self.price_tick <= 0:
            raise ValueError(f"price_tick must be positive, got {price_tick}")
        self.significant_digits = int(significant_digits) if significant_digits else None
        self.amount_decimals = int(amount_decimals)

    @classmethod
    def from_config(cls, exchange_cfg: Mapping) -> 'Quantizer':
        return cls(
            price_tick=as_decimal(exchange_cfg.get('price_tick'), Decimal('0.1')),
            significant_digits=exchange_cfg.get('price_significant_digits'),
            amount_decimals=exchange_cfg.get('amount_decimals', 8),
        )

    def quantize_price(self, value: Any) -> Decimal:
        price = to_decimal(value)
        if not price.is_finite():
            return price
        steps = (price / self.price_tick).to_integral_value(rounding=ROUND_DOWN)
        price = steps * self.price_tick
        if self.significant_digits and price != 0:
            unit = Decimal(1).scaleb(price.adjusted() - self.significant_digits + 1)
            if unit > self.price_tick:
                price = (price / unit).to_integral_value(rounding=ROUND_DOWN) * unit
        return price

    def quantize_amount(self, value: Any, decimals: Optional[int] = None) -> Decimal:
        places = self.amount_decimals if decimals is None else int(decimals)
        unit = Decimal(1).scaleb(-places)
        return to_decimal(value).quantize(unit, rounding=ROUND_DOWN)

    def compare_prices(self, first: Any, second: Any) -> int:
        a = self.quantize_price(first)
        b = self.quantize_price(second)
        if a > b:
            return 1
        if a < b:
            return -1
        return 0
