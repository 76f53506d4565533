import logging
import time
from typing import List, Mapping, Optional

from analytics.average import Tick
from api.metrics import metrics
from ingest.bitfinex_rest import BitfinexAPIError
from strategy.orders import Order
from strategy.simulators.paper import PaperExchange
from strategy.trader import Fees
from strategy.transports.bitfinex import Balances, BitfinexTransport


logger = logging.getLogger(__name__)


class ExecutionManager:
    """Exchange command surface used by the orchestrator, live or paper.

    Transport failures propagate to the caller untouched; this layer only
    logs them with the failing step and times order round trips.
    """

    def __init__(self, exchange_cfg: Mapping, transport=None):
        self.symbol = exchange_cfg.get('symbol', 'btcusd')
        self.paper_mode = bool(exchange_cfg.get('paper', False))
        if transport is not None:
            self.transport = transport
        elif self.paper_mode:
            self.transport = PaperExchange(exchange_cfg)
        else:
            self.transport = BitfinexTransport(exchange_cfg)

    async def place_order(self, request: Order) -> Order:
        start = time.monotonic()
        try:
            return await self.transport.place_order(request)
        except Exception as exc:
            self._log_transport_error(f"place {request.side.value} order", exc)
            raise
        finally:
            metrics.record_order_send_latency(time.monotonic() - start)

    async def replace_order(self, order_id: str, request: Order) -> Order:
        start = time.monotonic()
        try:
            return await self.transport.replace_order(order_id, request)
        except Exception as exc:
            self._log_transport_error(f"replace order {order_id}", exc)
            raise
        finally:
            metrics.record_order_send_latency(time.monotonic() - start)

    async def get_balances(self) -> Balances:
        try:
            return await self.transport.get_balances()
        except Exception as exc:
            self._log_transport_error("fetch balances", exc)
            raise

    async def get_fees(self, defaults: Fees) -> Fees:
        try:
            return await self.transport.get_fees(defaults)
        except Exception as exc:
            self._log_transport_error("fetch fees", exc)
            raise

    async def get_open_orders(self) -> List[Order]:
        try:
            return await self.transport.get_open_orders()
        except Exception as exc:
            self._log_transport_error("fetch open orders", exc)
            raise

    async def get_past_trades(self, pair: Optional[str] = None) -> List[Order]:
        try:
            return await self.transport.get_past_trades(pair or self.symbol)
        except Exception as exc:
            self._log_transport_error("fetch past trades", exc)
            raise

    def match_paper_orders(self, tick: Tick) -> List[Order]:
        if not self.paper_mode or not isinstance(self.transport, PaperExchange):
            return []
        return self.transport.match(tick)

    async def close(self):
        await self.transport.close()

    def _log_transport_error(self, action: str, error: Exception) -> None:
        if isinstance(error, BitfinexAPIError):
            logger.error(
                "Bitfinex %s failed (status=%s, msg=%s)",
                action,
                error.status,
                error.msg,
            )
        else:
            logger.error("%s failed: %s", action, error)
