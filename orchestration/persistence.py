import logging
import time
from typing import TYPE_CHECKING, Any, Dict

from strategy.orders import Order

if TYPE_CHECKING:
    from main import TradingSystem


logger = logging.getLogger(__name__)


class PersistenceCoordinator:
    """Persistence calls made by the orchestrator: order events and throttled trader snapshots."""

    def __init__(self, system: 'TradingSystem', snapshot_interval_s: float = 60.0):
        self.system = system
        self.persister = system.persister
        self.snapshot_interval_s = snapshot_interval_s
        self.clock = time.monotonic
        self.last_trader_snapshot = None

    def trader_snapshot(self) -> Dict[str, Any]:
        state = self.system.state
        thresholds = self.system.trader.thresholds
        return {
            'balance_quote': state.balance_quote,
            'balance_base': state.balance_base,
            'resistance_zone': thresholds.resistance_zone,
            'support_zone': thresholds.highest_support_zone,
        }

    async def persist_trader_state(self, force: bool = False):
        now = self.clock()
        if (
            not force
            and self.last_trader_snapshot is not None
            and now - self.last_trader_snapshot < self.snapshot_interval_s
        ):
            return
        try:
            await self.persister.record_trader_state(self.trader_snapshot())
            self.last_trader_snapshot = now
        except Exception as exc:
            logger.error("Trader state persist failed: %s", exc)

    async def persist_order_update(self, order: Order):
        try:
            await self.persister.record_order_update(order)
        except Exception as exc:
            logger.error("Order update persist failed: %s", exc)
