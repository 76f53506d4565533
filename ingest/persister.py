import asyncio
import asyncpg
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from strategy.orders import Order


logger = logging.getLogger(__name__)


SCHEMA = '''
CREATE TABLE IF NOT EXISTS trader_state (
    id BIGSERIAL PRIMARY KEY,
    symbol TEXT NOT NULL,
    balance_quote NUMERIC,
    balance_base NUMERIC,
    resistance_zone NUMERIC,
    support_zone NUMERIC,
    recorded_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS order_updates (
    id BIGSERIAL PRIMARY KEY,
    order_id TEXT,
    symbol TEXT NOT NULL,
    side TEXT NOT NULL,
    status TEXT NOT NULL,
    price NUMERIC NOT NULL,
    amount NUMERIC NOT NULL,
    ts TIMESTAMPTZ NOT NULL,
    raw_json JSONB
);
'''


class DataPersister:
    """Postgres sink for trader snapshots and order updates.

    Order updates are buffered and written in batches by the flush loop; trader
    snapshots are written immediately. With ``persistence.enabled`` false every
    call is a no-op and no previous state exists.
    """

    def __init__(self, db_cfg: Optional[Mapping] = None, persistence_cfg: Optional[Mapping] = None,
                 symbol: str = 'btcusd'):
        self.db_cfg = dict(db_cfg or {})
        persistence_cfg = persistence_cfg or {}
        self.enabled = bool(persistence_cfg.get('enabled', True))
        self.batch_size = int(persistence_cfg.get('batch_size', 50))
        self.flush_interval = float(persistence_cfg.get('flush_interval_s', 5))
        self.max_buffer_size = int(persistence_cfg.get('max_buffer_size', 5000))
        self.symbol = symbol

        self.pool = None
        self.order_buffer: List[Dict[str, Any]] = []
        self.running = False
        self._auto_task = None

    async def initialize(self):
        if not self.enabled or self.pool is not None:
            return
        self.pool = await asyncpg.create_pool(
            host=self.db_cfg.get('host'),
            port=int(self.db_cfg.get('port', 5432)),
            database=self.db_cfg.get('database'),
            user=self.db_cfg.get('user'),
            password=self.db_cfg.get('password'),
            min_size=1,
            max_size=5
        )
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA)

    async def close(self):
        if self.pool:
            await self.flush_orders()
            await self.pool.close()
            self.pool = None

    async def get_last_trader_state(self) -> Optional[Dict[str, Any]]:
        if not self.enabled:
            return None
        await self.initialize()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                '''SELECT balance_quote, balance_base, resistance_zone, support_zone, recorded_at
                   FROM trader_state
                   WHERE symbol = $1
                   ORDER BY recorded_at DESC
                   LIMIT 1''',
                self.symbol
            )
        return dict(row) if row else None

    async def record_trader_state(self, snapshot: Mapping[str, Any]):
        if not self.enabled or self.pool is None:
            return
        async with self.pool.acquire() as conn:
            await conn.execute(
                '''INSERT INTO trader_state
                   (symbol, balance_quote, balance_base, resistance_zone, support_zone)
                   VALUES ($1, $2, $3, $4, $5)''',
                self.symbol,
                _numeric(snapshot.get('balance_quote')),
                _numeric(snapshot.get('balance_base')),
                _numeric(snapshot.get('resistance_zone')),
                _numeric(snapshot.get('support_zone')),
            )

    async def record_order_update(self, order: Order):
        if not self.enabled:
            return
        self.order_buffer.append({
            'order_id': order.id,
            'symbol': order.symbol or self.symbol,
            'side': order.side.value,
            'status': order.status.value,
            'price': order.price,
            'amount': order.amount,
            'timestamp': order.timestamp,
            'raw': order.raw,
        })
        if len(self.order_buffer) > self.max_buffer_size:
            # drop oldest fifth
            drop_n = max(int(self.max_buffer_size * 0.2), 1)
            del self.order_buffer[:drop_n]
            logger.warning("Order update buffer over capacity, dropped %d oldest", drop_n)
        if len(self.order_buffer) >= self.batch_size and self.pool is not None:
            await self.flush_orders()

    async def flush_orders(self):
        if not self.order_buffer or self.pool is None:
            return
        batch = list(self.order_buffer)
        self.order_buffer.clear()
        try:
            async with self.pool.acquire() as conn:
                await conn.executemany(
                    '''INSERT INTO order_updates
                       (order_id, symbol, side, status, price, amount, ts, raw_json)
                       VALUES ($1, $2, $3, $4, $5, $6, $7, $8)''',
                    [
                        (
                            o['order_id'],
                            o['symbol'],
                            o['side'],
                            o['status'],
                            o['price'],
                            o['amount'],
                            _timestamp(o['timestamp']),
                            json.dumps(o['raw'], default=str) if o['raw'] is not None else None,
                        )
                        for o in batch
                    ]
                )
        except Exception as e:
            logger.error("Order update flush failed: %s", e)
            self.order_buffer[:0] = batch

    async def auto_flush_loop(self):
        self.running = True
        try:
            while self.running:
                try:
                    await asyncio.sleep(self.flush_interval)
                except asyncio.CancelledError:
                    break
                await self.flush_orders()
        finally:
            await self.flush_orders()

    async def start(self):
        if not self.enabled:
            logger.info("Persistence disabled")
            return
        await self.initialize()
        if self._auto_task is None:
            self._auto_task = asyncio.create_task(self.auto_flush_loop())

    async def stop(self):
        self.running = False
        if self._auto_task is not None:
            self._auto_task.cancel()
            await asyncio.gather(self._auto_task, return_exceptions=True)
            self._auto_task = None
        await self.close()


def _numeric(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def _timestamp(value: Optional[float]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(value, tz=timezone.utc)
