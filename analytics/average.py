import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, List, Optional

from analytics.quantize import Quantizer, to_decimal


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Tick:
    price: Decimal
    volume: Decimal
    timestamp: float

    @classmethod
    def create(cls, price, volume, timestamp: Optional[float] = None) -> 'Tick':
        return cls(
            price=to_decimal(price),
            volume=abs(to_decimal(volume)),
            timestamp=time.time() if timestamp is None else float(timestamp),
        )


class PriceAverager:
    """Volume-weighted average of the trades seen over the last resolution window."""

    def __init__(
        self,
        resolution_s: float,
        min_trades: int,
        quantizer: Quantizer,
        clock: Callable[[], float] = time.time,
    ):
        self.resolution_s = float(resolution_s)
        self.min_trades = max(int(min_trades), 0)
        self.quantizer = quantizer
        self.clock = clock
        # newest first
        self._trades: List[Tick] = []

    def trades_in_average(self) -> int:
        return len(self._trades)

    @property
    def trades(self) -> List[Tick]:
        return list(self._trades)

    def observe(self, tick: Optional[Tick] = None) -> Optional[Decimal]:
        self._remove_old_trades()
        if tick is not None:
            self._trades.insert(0, tick)
        return self._weighted_average()

    def _remove_old_trades(self) -> None:
        if len(self._trades) <= self.min_trades:
            return
        now = self.clock()
        kept = self._trades[:self.min_trades]
        for trade in self._trades[self.min_trades:]:
            if now - trade.timestamp < self.resolution_s:
                kept.append(trade)
        self._trades = kept

    def _weighted_average(self) -> Optional[Decimal]:
        total_volume = Decimal(0)
        total = Decimal(0)
        for trade in self._trades:
            total += trade.price * trade.volume
            total_volume += trade.volume
        if total_volume == 0:
            return None
        return self.quantizer.quantize_price(total / total_volume)
