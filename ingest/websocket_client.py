import asyncio
import hashlib
import hmac
import json
import logging
import random
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import websockets

from analytics.average import Tick
from api.metrics import metrics
from strategy.orders import Order, ParseError


logger = logging.getLogger(__name__)

ORDER_EVENTS = ("on", "ou", "oc")


def parse_trade(payload: Any) -> Tick:
    """``[ID, MTS, AMOUNT, PRICE]`` from a ``te`` message."""
    if not isinstance(payload, (list, tuple)) or len(payload) < 4:
        raise ParseError(f"Malformed trade: {payload!r}")
    try:
        price = Decimal(str(payload[3]))
        amount = Decimal(str(payload[2]))
    except (InvalidOperation, ValueError) as exc:
        raise ParseError(f"Malformed trade: {payload!r}") from exc
    if not price.is_finite() or price <= 0:
        raise ParseError(f"Invalid trade price: {payload!r}")
    mts = payload[1]
    return Tick.create(price, amount, float(mts) / 1000 if mts else None)


class WebSocketClient:
    """Bitfinex v2 stream: public trades for one pair plus the authenticated order channel.

    Handlers are registered by event name: ``trade`` receives a ``Tick``,
    ``order`` receives an ``Order``, ``stream_lost`` receives a reason string when
    reconnects exceed the per-minute limit.
    """

    def __init__(self, exchange_cfg: Mapping, ws_cfg: Optional[Mapping] = None):
        ws_cfg = ws_cfg or {}
        self.pair = exchange_cfg.get('ws_symbol', 'tBTCUSD')
        # paper mode never subscribes to the real account's order channel
        self.api_key = None if exchange_cfg.get('paper') else (exchange_cfg.get('api_key') or None)
        self.api_secret = exchange_cfg.get('api_secret') or None
        public_url = exchange_cfg.get('ws_url', 'wss://api-pub.bitfinex.com/ws/2')
        auth_url = exchange_cfg.get('ws_auth_url', 'wss://api.bitfinex.com/ws/2')
        self.url = auth_url if self.api_key else public_url

        self.reconnect_backoff: List[float] = list(ws_cfg.get('reconnect_backoff', [1, 2, 5, 10, 30]))
        self.max_reconnects = int(ws_cfg.get('max_reconnects_per_minute', 6))
        self.stream_timeout = float(ws_cfg.get('stream_stale_s', 30))

        self.handlers: Dict[str, Callable] = {}
        self.running = False
        self.reconnect_count = 0
        self.last_reconnect_window = time.time()
        self.gap_start_ts: Optional[float] = None
        self.trade_chan_id: Optional[int] = None
        self.authenticated = False
        self._ws = None

    def register_handler(self, event: str, handler: Callable):
        self.handlers[event] = handler

    def subscribe_message(self) -> Dict[str, str]:
        return {"event": "subscribe", "channel": "trades", "symbol": self.pair}

    def auth_message(self, nonce: Optional[int] = None) -> Dict[str, Any]:
        if not self.api_key or not self.api_secret:
            raise ValueError("API credentials required for authenticated stream")
        nonce = nonce if nonce is not None else int(time.time() * 1_000_000)
        payload = f"AUTH{nonce}"
        signature = hmac.new(
            self.api_secret.encode(),
            payload.encode(),
            hashlib.sha384,
        ).hexdigest()
        return {
            "event": "auth",
            "apiKey": self.api_key,
            "authSig": signature,
            "authPayload": payload,
            "authNonce": nonce,
        }

    async def subscribe(self, ws):
        await ws.send(json.dumps(self.subscribe_message()))

    async def authenticate(self, ws):
        await ws.send(json.dumps(self.auth_message()))

    def parse_message(self, message: Any) -> List[Tuple[str, Any]]:
        """Turn one decoded frame into ``(event, value)`` pairs; bookkeeping frames yield nothing."""
        if isinstance(message, dict):
            self._on_event(message)
            return []
        if not isinstance(message, list) or len(message) < 2:
            return []

        chan_id, body = message[0], message[1]
        if body == "hb":
            return []

        if chan_id == 0:
            if body in ORDER_EVENTS and len(message) > 2:
                return [("order", Order.from_socket(message[2]))]
            if body == "os" and len(message) > 2:
                out = []
                for entry in message[2] or []:
                    try:
                        out.append(("order", Order.from_socket(entry)))
                    except ParseError as exc:
                        logger.error("Order snapshot entry dropped: %s", exc)
                        metrics.record_drop('parse_error')
                return out
            return []

        if self.trade_chan_id is not None and chan_id != self.trade_chan_id:
            return []
        if body == "te" and len(message) > 2:
            return [("trade", parse_trade(message[2]))]
        # snapshots and "tu" confirmations repeat trades already seen as "te"
        return []

    def _on_event(self, message: Dict[str, Any]):
        event = message.get("event")
        if event == "subscribed" and message.get("channel") == "trades":
            self.trade_chan_id = message.get("chanId")
            logger.info("Subscribed to trades %s (chan %s)", message.get("symbol"), self.trade_chan_id)
        elif event == "auth":
            self.authenticated = message.get("status") == "OK"
            if self.authenticated:
                logger.info("Order stream authenticated")
            else:
                logger.error("Order stream authentication failed: %s", message.get("msg"))
        elif event == "error":
            logger.error("Stream error %s: %s", message.get("code"), message.get("msg"))
        elif event == "info" and message.get("code"):
            logger.warning("Stream info %s: %s", message.get("code"), message.get("msg"))

    async def _dispatch(self, raw: str):
        try:
            message = json.loads(raw)
        except ValueError:
            logger.error("Undecodable frame dropped: %.200s", raw)
            metrics.record_drop('decode_error')
            return
        try:
            events = self.parse_message(message)
        except ParseError as exc:
            logger.error("Stream frame dropped: %s", exc)
            metrics.record_drop('parse_error')
            return
        for event, value in events:
            handler = self.handlers.get(event)
            if handler is not None:
                await handler(value)

    async def _handle_reconnect(self, backoff_index: int = 0):
        if backoff_index >= len(self.reconnect_backoff):
            backoff_index = len(self.reconnect_backoff) - 1

        now = time.time()
        if now - self.last_reconnect_window > 60:
            self.reconnect_count = 0
            self.last_reconnect_window = now

        self.reconnect_count += 1
        metrics.record_reconnect()

        if self.reconnect_count > self.max_reconnects:
            logger.warning(
                "%s reconnects in 60s; entering degraded reconnect mode",
                self.reconnect_count,
            )
            if "stream_lost" in self.handlers:
                await self.handlers["stream_lost"]("reconnect_limit")
            self.reconnect_count = 0
            self.last_reconnect_window = now
            delay = self.reconnect_backoff[-1] + random.uniform(0, 0.5)
            logger.info("Reconnecting in %.1fs (extended backoff)", delay)
            await asyncio.sleep(delay)
            return

        delay = self.reconnect_backoff[backoff_index] + random.uniform(0, 0.5)
        logger.info("Reconnecting in %.1fs (attempt %s)", delay, self.reconnect_count)
        await asyncio.sleep(delay)

    async def run(self):
        backoff_index = 0

        while self.running:
            try:
                async with websockets.connect(self.url, ping_interval=None) as ws:
                    self._ws = ws
                    self.trade_chan_id = None
                    self.authenticated = False
                    await self.subscribe(ws)
                    if self.api_key:
                        await self.authenticate(ws)
                    while self.running:
                        try:
                            raw = await asyncio.wait_for(ws.recv(), timeout=self.stream_timeout)
                        except asyncio.TimeoutError:
                            logger.warning("Stream stale for %.0fs; reconnecting", self.stream_timeout)
                            self.gap_start_ts = time.time()
                            raise

                        if self.gap_start_ts is not None:
                            logger.info(
                                "Stream reconnected after %.1fs gap",
                                time.time() - self.gap_start_ts,
                            )
                            self.gap_start_ts = None
                            backoff_index = 0

                        await self._dispatch(raw)

            except asyncio.CancelledError:
                break
            except Exception as e:
                if not self.running:
                    break
                logger.error("Stream error: %s", e)
                if self.gap_start_ts is None:
                    self.gap_start_ts = time.time()
                await self._handle_reconnect(backoff_index)
                backoff_index = min(backoff_index + 1, len(self.reconnect_backoff) - 1)
            else:
                backoff_index = 0
            finally:
                self._ws = None

    async def start(self):
        self.running = True
        await self.run()

    async def stop(self):
        self.running = False
        if self._ws is not None:
            await self._ws.close()
