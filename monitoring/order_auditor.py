import json
import logging
import time
from pathlib import Path
from typing import Dict, Optional

from strategy.orders import Order


logger = logging.getLogger(__name__)


class OrderAuditor:
    """Append-only JSONL trail of order submissions and order updates, with ack latency."""

    def __init__(self, log_path: Optional[str], ack_budget_ms: int = 3000):
        self.log_path = Path(log_path) if log_path else None
        self.ack_budget_s = max(ack_budget_ms / 1000.0, 0.0)
        self.pending: Dict[str, float] = {}

    def record_submission(self, kind: str, request: Order):
        self.pending[kind] = time.monotonic()
        self._write_entry({
            'timestamp': time.time(),
            'event': 'submitted',
            'kind': kind,
            'order': request.as_dict(),
        })

    def record_result(self, kind: str, order: Optional[Order], error: Optional[str] = None):
        started = self.pending.pop(kind, None)
        ack_latency = time.monotonic() - started if started is not None else None
        if ack_latency is not None and ack_latency > self.ack_budget_s:
            logger.warning("%s acknowledgement took %.2fs (budget %.2fs)", kind, ack_latency, self.ack_budget_s)
        self._write_entry({
            'timestamp': time.time(),
            'event': 'rejected' if error else 'acknowledged',
            'kind': kind,
            'order': order.as_dict() if order else None,
            'error': error,
            'ack_latency_s': ack_latency,
        })

    def record_update(self, order: Order, details: Optional[Dict] = None):
        self._write_entry({
            'timestamp': time.time(),
            'event': 'update',
            'order': order.as_dict(),
            'details': details or {},
        })

    def _write_entry(self, payload: Dict):
        if self.log_path is None:
            return
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open('a', encoding='utf-8') as handle:
                handle.write(json.dumps(payload, default=str) + '\n')
        except Exception as exc:
            logger.error("Failed to persist order audit log: %s", exc)
