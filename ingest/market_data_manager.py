import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from ingest.websocket_client import WebSocketClient

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None]]


class MarketDataManager:
    """Route stream events to registered async handlers."""

    _WS_EVENT_MAP = {
        'trade': 'trade',
        'order': 'order',
        'stream_lost': 'stream_lost',
    }

    _ALIASES = {
        'trade_handler': 'trade',
        'order_handler': 'order',
        'stream_lost_handler': 'stream_lost',
    }

    def __init__(self, symbol: str, ws_client: WebSocketClient):
        self.symbol = symbol
        self.ws_client = ws_client
        self._handlers: Dict[str, Handler] = {}

        self._register_ws_handlers()

    def _register_ws_handlers(self) -> None:
        for ws_event, logical_name in self._WS_EVENT_MAP.items():
            self.ws_client.register_handler(ws_event, self._build_dispatcher(logical_name))

    def register_handlers(self, **handlers: Optional[Handler]) -> None:
        """Register async callbacks per logical event name."""
        for name, handler in self._normalize_handlers(handlers).items():
            if handler is None:
                continue
            self._handlers[name] = handler

    def _normalize_handlers(self, handlers: Mapping[str, Optional[Handler]]) -> Dict[str, Optional[Handler]]:
        normalized: Dict[str, Optional[Handler]] = {}
        for key, handler in handlers.items():
            normalized[self._ALIASES.get(key, key)] = handler
        return normalized

    def _build_dispatcher(self, logical_name: str) -> Handler:
        async def _dispatch(payload: Any):
            handler = self._handlers.get(logical_name)
            if not handler:
                return
            try:
                await handler(payload)
            except Exception:
                logger.exception("Stream handler %s failed", logical_name)

        return _dispatch

    async def start(self):
        await self.ws_client.start()

    async def stop(self):
        await self.ws_client.stop()
