import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional

from api.metrics import metrics
from config.utils import as_decimal
from orchestration.state_store import TradingState
from strategy.orders import Order
from strategy.trader import Fees, Thresholds
from strategy.transports.bitfinex import Balances


logger = logging.getLogger(__name__)


class ReconciliationFailure(Exception):
    """One or more boot steps could not be completed; live trading must not start."""

    def __init__(self, failed_steps: Iterable[str]):
        self.failed_steps = sorted(failed_steps)
        super().__init__(f"System boot failed: {', '.join(self.failed_steps)}")


@dataclass
class BootResult:
    state: TradingState = field(default_factory=TradingState)
    thresholds: Thresholds = field(default_factory=Thresholds)
    fees: Optional[Fees] = None


class BootReconciler:
    """Rebuilds the trading state from persisted and exchange sources before going live.

    Steps run concurrently and each is retried ``boot.step_retries`` times. Every
    step must succeed; otherwise ``ReconciliationFailure`` names the failed ones.
    """

    def __init__(self, execution, persister, default_fees: Fees, boot_cfg: Optional[Mapping] = None):
        boot_cfg = boot_cfg or {}
        self.execution = execution
        self.persister = persister
        self.default_fees = default_fees
        self.step_retries = max(int(boot_cfg.get('step_retries', 2)), 0)
        self.retry_delay_s = float(boot_cfg.get('retry_delay_s', 2))

        self._persisted: Optional[Mapping[str, Any]] = None
        self._fees: Optional[Fees] = None
        self._open_order: Optional[Order] = None
        self._last_order: Optional[Order] = None
        self._balances: Optional[Balances] = None

    async def run(self) -> BootResult:
        steps: Dict[str, Callable[[], Awaitable[None]]] = {
            'trader': self._restore_trader,
            'fees': self._restore_fees,
            'orders': self._restore_orders,
            'balances': self._restore_balances,
        }
        outcomes = await asyncio.gather(*(self._run_step(name, fn) for name, fn in steps.items()))
        failed = [name for name, ok in zip(steps, outcomes) if not ok]
        if failed:
            logger.error("==================")
            logger.error("System boot failed")
            raise ReconciliationFailure(failed)

        result = self._assemble()
        logger.info("==================")
        logger.info("System operational")
        return result

    async def _run_step(self, name: str, step: Callable[[], Awaitable[None]]) -> bool:
        for attempt in range(self.step_retries + 1):
            try:
                await step()
            except Exception as exc:
                logger.warning("BAD - %s (attempt %d): %s", name, attempt + 1, exc)
                metrics.record_boot_step(name, False)
                if attempt < self.step_retries:
                    await asyncio.sleep(self.retry_delay_s)
                continue
            logger.info("OK - %s", name)
            metrics.record_boot_step(name, True)
            return True
        return False

    async def _restore_trader(self):
        self._persisted = await self.persister.get_last_trader_state()

    async def _restore_fees(self):
        self._fees = await self.execution.get_fees(self.default_fees)

    async def _restore_orders(self):
        self._open_order = None
        self._last_order = None
        open_orders = await self.execution.get_open_orders()
        if open_orders:
            self._open_order = open_orders[0]
            return
        past = await self.execution.get_past_trades()
        if past:
            self._last_order = past[0]

    async def _restore_balances(self):
        self._balances = await self.execution.get_balances()

    def _assemble(self) -> BootResult:
        result = BootResult(fees=self._fees or self.default_fees)
        state = result.state

        if self._persisted:
            state.balance_quote = as_decimal(self._persisted.get('balance_quote'), Decimal(0))
            state.balance_base = as_decimal(self._persisted.get('balance_base'), Decimal(0))
            result.thresholds = Thresholds(
                resistance_zone=as_decimal(self._persisted.get('resistance_zone'), Decimal(0)),
                highest_support_zone=as_decimal(self._persisted.get('support_zone'), Decimal(0)),
            )

        if self._balances is not None:
            state.update_balances(self._balances.base, self._balances.quote)

        if self._open_order is not None:
            state.set_active(self._open_order)
            logger.info(
                "Resuming open %s order %s @ %s",
                self._open_order.side.value,
                self._open_order.id,
                self._open_order.price,
            )
        elif self._last_order is not None:
            if self._last_order.is_buy:
                state.last_buy, state.last_sell = self._last_order, None
            else:
                state.last_buy, state.last_sell = None, self._last_order
            logger.info(
                "Last %s at %s",
                self._last_order.side.value,
                self._last_order.price,
            )
        return result
