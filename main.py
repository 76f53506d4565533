import asyncio
import logging
import time
from decimal import Decimal
from typing import Callable, Optional, Set

from analytics.average import Tick
from analytics.quantize import Quantizer
from api.alerts import AlertWebhook
from api.metrics import metrics, start_metrics_server
from config import config
from config.utils import as_decimal, get_config_section
from ingest.market_data_manager import MarketDataManager
from ingest.persister import DataPersister
from ingest.websocket_client import WebSocketClient
from monitoring.async_utils import cancel_and_wait, run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from monitoring.order_auditor import OrderAuditor
from orchestration.boot import BootReconciler, ReconciliationFailure
from orchestration.order_lock import OrderLock
from orchestration.persistence import PersistenceCoordinator
from orchestration.state_store import InvariantViolation, TradingState
from strategy.execution import ExecutionManager
from strategy.orders import Order, OrderStatus
from strategy.trader import Fees, Position, SellReason, Trader


logger = logging.getLogger(__name__)


class TradingSystem:
    """Own the trading state and turn stream events into order decisions.

    Stream events are queued and consumed by one task in receipt order. Every
    state mutation happens under ``_state_lock``. Order submissions run as
    separate tasks guarded by the ``OrderLock`` so ticks keep feeding the
    average while a request is in flight.
    """

    def __init__(
        self,
        config_obj=None,
        execution: Optional[ExecutionManager] = None,
        persister=None,
        ws_client: Optional[WebSocketClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config_obj if config_obj is not None else config
        self.exchange_cfg = get_config_section(self.config, 'exchange')
        self.trader_cfg = get_config_section(self.config, 'trader')
        self.fees_cfg = get_config_section(self.config, 'fees')
        self.execution_cfg = get_config_section(self.config, 'execution')
        self.boot_cfg = get_config_section(self.config, 'boot')
        self.websocket_cfg = get_config_section(self.config, 'websocket')
        self.database_cfg = get_config_section(self.config, 'database')
        self.persistence_cfg = get_config_section(self.config, 'persistence')
        self.monitoring_cfg = get_config_section(self.config, 'monitoring')

        self.symbol = self.exchange_cfg.get('symbol', 'btcusd')
        self.min_trade_base = as_decimal(self.exchange_cfg.get('min_trade_base'), Decimal('0.01'))
        self.submission_timeout_s = float(self.execution_cfg.get('submission_timeout_s', 20))
        self.clock = clock

        self.quantizer = Quantizer.from_config(self.exchange_cfg)
        self.default_fees = Fees(
            maker=as_decimal(self.fees_cfg.get('maker'), Decimal('0.001')),
            taker=as_decimal(self.fees_cfg.get('taker'), Decimal('0.002')),
        )
        self.trader = Trader(
            self.trader_cfg,
            self.exchange_cfg,
            self.default_fees,
            self.quantizer,
            place_order=self._request_sell,
            clock=clock,
        )

        self.state = TradingState()
        self.order_lock = OrderLock()
        self._state_lock = asyncio.Lock()
        self.events: asyncio.Queue = asyncio.Queue()

        self.execution_manager = execution or ExecutionManager(self.exchange_cfg)
        self.persister = persister or DataPersister(self.database_cfg, self.persistence_cfg, self.symbol)
        self.persistence = PersistenceCoordinator(
            self,
            snapshot_interval_s=float(self.persistence_cfg.get('snapshot_interval_s', 60)),
        )
        self.auditor = OrderAuditor(
            self.monitoring_cfg.get('order_audit_log'),
            ack_budget_ms=int(self.monitoring_cfg.get('order_ack_budget_ms', 3000)),
        )
        self.alerts = AlertWebhook(self.monitoring_cfg.get('alert_webhook'))

        self.market_data_manager = MarketDataManager(
            self.symbol,
            ws_client or WebSocketClient(self.exchange_cfg, self.websocket_cfg),
        )
        self.market_data_manager.register_handlers(
            trade_handler=self.enqueue_trade,
            order_handler=self.enqueue_order,
            stream_lost_handler=self.handle_stream_lost,
        )

        self._submissions: Set[asyncio.Task] = set()
        self._background: Set[asyncio.Task] = set()
        self._consumer_task: Optional[asyncio.Task] = None
        self._updating_balances = False
        self.running = False
        self.booted = False

    async def boot(self):
        reconciler = BootReconciler(
            self.execution_manager,
            self.persister,
            self.default_fees,
            self.boot_cfg,
        )
        try:
            result = await reconciler.run()
        except ReconciliationFailure as exc:
            await self.alerts.boot_failure_alert(exc.failed_steps)
            raise

        async with self._state_lock:
            self.state = result.state
            self.trader.set_fees(result.fees)
            self.trader.restore_thresholds(result.thresholds)
        self._publish_balances()
        self.booted = True
        logger.info(
            "Booted: quote=%s base=%s maker=%s resistance=%s",
            self.state.balance_quote,
            self.state.balance_base,
            result.fees.maker,
            result.thresholds.resistance_zone,
        )

    async def enqueue_trade(self, tick: Tick):
        await self.events.put(('trade', tick))

    async def enqueue_order(self, order: Order):
        await self.events.put(('order', order))

    async def process_events(self):
        while self.running:
            kind, payload = await self.events.get()
            try:
                if kind == 'trade':
                    await self.handle_tick(payload)
                elif kind == 'order':
                    await self.handle_order_update(payload)
            except Exception:
                logger.exception("Handling %s event failed", kind)
            finally:
                self.events.task_done()

    async def handle_tick(self, tick: Tick):
        for fill in self.execution_manager.match_paper_orders(tick):
            await self.handle_order_update(fill)

        async with self._state_lock:
            average = self.trader.observe(tick)
            latency = max(self.clock() - tick.timestamp, 0.0) if tick is not None else None
            metrics.record_tick(latency)
            metrics.update_average(average, self.trader.average.trades_in_average())
            if average is None:
                return

            self._check_should_update(average)
            self._check_should_buy(average)
            self._check_should_sell()

        await self.persistence.persist_trader_state()

    async def handle_order_update(self, order: Order):
        async with self._state_lock:
            try:
                self.state.apply_order_update(order)
            except InvariantViolation as exc:
                logger.error("Order update dropped: %s", exc)
                metrics.record_drop('invariant_violation')
                return
            metrics.record_order_update(order.status.value)
            self._apply_to_trader(order)

        logger.info(
            "Order %s %s %s: %s @ %s",
            order.id,
            order.side.value,
            order.status.value,
            order.amount,
            order.price,
        )
        self.auditor.record_update(order)
        await self.persistence.persist_order_update(order)
        await self.refresh_balances()
        await self.persistence.persist_trader_state(force=order.status is OrderStatus.EXECUTED)

    async def handle_stream_lost(self, reason: str):
        logger.error("Exchange stream lost: %s", reason)
        await self.alerts.stream_lost_alert(reason)

    async def refresh_balances(self) -> bool:
        """Re-read balances; a refresh already in flight makes this a no-op returning False."""
        if self._updating_balances:
            return False
        self._updating_balances = True
        try:
            balances = await self.execution_manager.get_balances()
        except Exception as exc:
            logger.error("Balance refresh failed: %s", exc)
            return False
        finally:
            self._updating_balances = False

        async with self._state_lock:
            self.state.update_balances(balances.base, balances.quote)
        self._publish_balances()
        return True

    def has_active_order(self) -> bool:
        return self.state.has_active_order()

    def _busy(self) -> bool:
        return self.state.has_active_order() or self.order_lock.held

    def position(self) -> Optional[Position]:
        base = self.state.balance_base
        if base is None or base < self.min_trade_base:
            return None
        if self.state.last_buy is None:
            return None
        return Position(entry_price=self.state.last_buy.price, amount=base)

    def _check_should_update(self, average: Decimal) -> bool:
        active = self.state.active_buy
        if active is None or not active.id:
            return False
        new_price = self.trader.support_zone(average)
        # never chase below a support level already submitted, even if its ack was lost
        floor = max(active.price, self.trader.thresholds.highest_support_zone)
        if new_price <= floor:
            return False
        if not self.order_lock.try_acquire('replace'):
            return False

        quote_funds = self.quantizer.quantize_amount(active.price * active.amount, 8)
        request = self.trader.buy_order(average, quote_funds)
        self.trader.record_support(request.price)
        self.trader.record_buy(request.price)
        self._submit('replace', request, order_id=active.id)
        return True

    def _check_should_buy(self, average: Decimal) -> bool:
        if self._busy():
            return False
        quote = self.state.balance_quote
        if quote is None or quote <= 0:
            return False
        if quote < self.min_trade_base * average:
            return False
        if not self.order_lock.try_acquire('buy'):
            return False

        request = self.trader.buy_order(average, quote)
        if request.amount <= 0:
            self.order_lock.release()
            return False
        self.trader.record_support(request.price)
        self.trader.record_buy(request.price)
        self._submit('buy', request)
        return True

    def _check_should_sell(self) -> bool:
        if self._busy():
            return False
        return self.trader.evaluate(self.position()) is not None

    def _request_sell(self, request: Order, reason: SellReason) -> bool:
        if not self.order_lock.try_acquire('sell'):
            return False
        metrics.record_sell_decision(reason.value)
        if reason is SellReason.STOP_LOSS:
            self._spawn(self.alerts.stop_loss_alert(format(request.price, 'f'), format(request.amount, 'f')))
        self._submit('sell', request)
        return True

    def _submit(self, kind: str, request: Order, order_id: Optional[str] = None):
        task = asyncio.get_running_loop().create_task(self._run_submission(kind, request, order_id))
        self._submissions.add(task)
        task.add_done_callback(self._submissions.discard)

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_submission(self, kind: str, request: Order, order_id: Optional[str]):
        metrics.record_submission(request.side.value, kind)
        self.auditor.record_submission(kind, request)
        logger.info(
            "Submitting %s: %s %s @ %s",
            kind,
            request.side.value,
            request.amount,
            request.price,
        )
        try:
            if order_id is not None:
                call = self.execution_manager.replace_order(order_id, request)
            else:
                call = self.execution_manager.place_order(request)
            order = await asyncio.wait_for(call, timeout=self.submission_timeout_s)
        except asyncio.TimeoutError:
            held = self.order_lock.held_for()
            logger.error(
                "%s submission unanswered after %.1fs; order lock force-released, state may be inconsistent",
                kind,
                held,
            )
            metrics.record_lock_timeout()
            metrics.record_submission_failure(kind, 'timeout')
            self.auditor.record_result(kind, None, 'timeout')
            if request.is_sell:
                self.trader.clear_pending_sell()
            self._spawn(self.alerts.lock_timeout_alert(kind, held))
        except Exception as exc:
            logger.error("%s order failed: %s", kind, exc)
            metrics.record_submission_failure(kind, type(exc).__name__)
            self.auditor.record_result(kind, None, str(exc))
            if request.is_sell:
                self.trader.clear_pending_sell()
        else:
            await self._apply_submission_result(kind, order)
        finally:
            self.order_lock.release()

    async def _apply_submission_result(self, kind: str, order: Order):
        async with self._state_lock:
            if order.status in (OrderStatus.NEW, OrderStatus.ACTIVE):
                self.state.set_active(order)
            else:
                self.state.apply_order_update(order)
                self._apply_to_trader(order)
        logger.info("%s acknowledged: order %s %s @ %s", kind, order.id, order.status.value, order.price)
        self.auditor.record_result(kind, order)
        await self.persistence.persist_order_update(order)
        if order.status in (OrderStatus.EXECUTED, OrderStatus.CANCELLED):
            # the order lock is still held, so no decision sees pre-fill balances
            await self.refresh_balances()
            await self.persistence.persist_trader_state(force=True)

    def _apply_to_trader(self, order: Order):
        if order.status is OrderStatus.EXECUTED:
            if order.is_buy:
                self.trader.record_buy(order.price)
                self.trader.clear_support()
                self.trader.reset_active_data()
            else:
                self.trader.reset_active_data()
        elif order.status is OrderStatus.CANCELLED and order.is_sell:
            self.trader.clear_pending_sell()

    def _publish_balances(self):
        metrics.update_balances({
            self.exchange_cfg.get('base_currency', 'btc'): self.state.balance_base,
            self.exchange_cfg.get('quote_currency', 'usd'): self.state.balance_quote,
        })

    async def wait_for_submissions(self):
        if self._submissions:
            await asyncio.gather(*list(self._submissions), return_exceptions=True)

    async def start(self):
        self.running = True
        start_metrics_server(
            int(self.monitoring_cfg.get('prometheus_port', 9108)),
            port_scan_limit=self.monitoring_cfg.get('prometheus_port_scan', 0),
            port_file=self.monitoring_cfg.get('metrics_port_file'),
        )

        await self.boot()
        await self.persister.start()

        self._consumer_task = asyncio.create_task(self.process_events())
        tasks = [
            asyncio.create_task(self.market_data_manager.start()),
            self._consumer_task,
        ]

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def stop(self):
        if not self.running and self._consumer_task is None:
            return
        self.running = False
        await self.market_data_manager.stop()
        await cancel_and_wait(self._consumer_task)
        self._consumer_task = None
        await self.wait_for_submissions()
        for task in list(self._background):
            await cancel_and_wait(task)
        if self.booted:
            await self.persistence.persist_trader_state(force=True)
        await self.persister.stop()
        await self.execution_manager.close()


async def main():
    system = TradingSystem(config)
    try:
        await system.start()
    except ReconciliationFailure as exc:
        logger.critical("Refusing to trade: %s", exc)
        await system.stop()
        raise SystemExit(1)
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()

if __name__ == "__main__":
    setup_logging()
    asyncio.run(main())
