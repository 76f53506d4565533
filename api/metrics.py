import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Mapping, Optional


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _write_port_file(path_value: Optional[str], port: int) -> None:
    if not path_value:
        return
    port_file = Path(path_value)
    try:
        port_file.parent.mkdir(parents=True, exist_ok=True)
        port_file.write_text(str(port))
    except Exception as exc:
        logger.warning("Failed to persist metrics port file %s: %s", port_file, exc)


class MetricsCollector:
    def __init__(self):
        self.tick_count = Counter('ticks_processed_total', 'Total trade ticks processed')
        self.tick_latency = Histogram('tick_latency_seconds', 'Latency between exchange trade time and processing')
        self.current_average = Gauge('current_average_price', 'Volume-weighted average price')
        self.trades_in_average = Gauge('trades_in_average', 'Ticks retained in the average window')

        self.orders_submitted = Counter('orders_submitted_total', 'Order submissions', ['side', 'kind'])
        self.submission_failures = Counter('order_submission_failures_total', 'Failed order submissions', ['kind', 'reason'])
        self.order_updates = Counter('order_updates_total', 'Order update events applied', ['status'])
        self.order_send_latency = Histogram('order_send_latency_seconds', 'Latency from order send to acknowledgement')
        self.dropped_events = Counter('dropped_events_total', 'Events dropped before reaching state', ['reason'])

        self.in_flight = Gauge('order_in_flight', 'Order submission lock held (1) or idle (0)')
        self.lock_timeouts = Counter('order_lock_timeouts_total', 'Submissions that timed out and force-released the lock')
        self.sell_decisions = Counter('sell_decisions_total', 'Sell decisions by trigger', ['reason'])

        self.balance = Gauge('account_balance', 'Available balance', ['currency'])
        self.boot_step = Gauge('boot_step_ok', 'Boot reconciliation step status', ['step'])
        self.reconnect_count = Counter('websocket_reconnects_total', 'Total WebSocket reconnects')

    def record_tick(self, latency_seconds: Optional[float] = None):
        self.tick_count.inc()
        if latency_seconds is not None:
            self.tick_latency.observe(latency_seconds)

    def update_average(self, average, retained: int):
        if average is not None:
            self.current_average.set(float(average))
        self.trades_in_average.set(retained)

    def record_submission(self, side: str, kind: str):
        self.orders_submitted.labels(side=side, kind=kind).inc()

    def record_submission_failure(self, kind: str, reason: str):
        self.submission_failures.labels(kind=kind, reason=reason).inc()

    def record_order_update(self, status: str):
        self.order_updates.labels(status=status).inc()

    def record_order_send_latency(self, latency_seconds: float):
        self.order_send_latency.observe(latency_seconds)

    def record_drop(self, reason: str):
        self.dropped_events.labels(reason=reason).inc()

    def set_in_flight(self, held: bool):
        self.in_flight.set(1 if held else 0)

    def record_lock_timeout(self):
        self.lock_timeouts.inc()

    def record_sell_decision(self, reason: str):
        self.sell_decisions.labels(reason=reason).inc()

    def update_balances(self, balances: Mapping[str, object]):
        for currency, value in balances.items():
            if value is not None:
                self.balance.labels(currency=currency).set(float(value))

    def record_boot_step(self, step: str, ok: bool):
        self.boot_step.labels(step=step).set(1 if ok else 0)

    def record_reconnect(self):
        self.reconnect_count.inc()


def start_metrics_server(port: int = 9108, port_scan_limit: int = 0, port_file: Optional[str] = None):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, int(port_scan_limit or 0))
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        _write_port_file(port_file, candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error

metrics = MetricsCollector()
