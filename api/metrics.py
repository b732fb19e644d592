import errno
import logging
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    try:
        return int(config.section('monitoring').get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


class MetricsCollector:
    def __init__(self):
        self.spread_updates = Counter('spread_updates_total', 'Total spread snapshots computed')
        self.spread_ticks = Gauge('spread_ticks', 'Latest spread between venues in ticks')
        self.spread_percent = Gauge('spread_percent', 'Latest spread between venues in percent of reference mid')
        self.reference_mid = Gauge('reference_mid_price', 'Reference venue mid price')
        self.execution_mid = Gauge('execution_mid_price', 'Execution venue mid price')

        self.feed_connected = Gauge('feed_connected', 'Feed connectivity flag', ['feed'])
        self.feed_reconnects = Counter('feed_reconnects_total', 'Total feed reconnects', ['feed'])
        self.feed_errors = Counter('feed_errors_total', 'Total feed transport errors', ['feed'])

        self.signals_emitted = Counter('signals_emitted_total', 'Total executable signals', ['side'])
        self.signals_rejected = Counter('signals_rejected_total', 'Total signals rejected before execution', ['reason'])

        self.orders_placed = Counter('orders_placed_total', 'Total orders sent to the venue', ['kind'])
        self.orders_failed = Counter('orders_failed_total', 'Total orders that failed', ['kind', 'reason'])
        self.order_send_latency = Histogram('order_send_latency_seconds', 'Latency from order send to acknowledgement')
        self.positions_closed = Counter('positions_closed_total', 'Total closed positions', ['reason'])
        self.position_open = Gauge('position_open', 'Open position flag')

        self.pnl_realized = Gauge('pnl_realized_total', 'Total realized PnL')
        self.equity = Gauge('account_equity', 'Current account equity')

        self.circuit_breaker_trips = Counter('circuit_breaker_trips_total', 'Total circuit breaker trips', ['reason'])

    def record_spread(self, tick_difference: float, percent: float, reference_mid: float, execution_mid: float):
        self.spread_updates.inc()
        self.spread_ticks.set(tick_difference)
        self.spread_percent.set(percent)
        self.reference_mid.set(reference_mid)
        self.execution_mid.set(execution_mid)

    def mark_feed(self, feed: str, connected: bool):
        self.feed_connected.labels(feed=feed).set(1 if connected else 0)

    def record_reconnect(self, feed: str):
        self.feed_reconnects.labels(feed=feed).inc()

    def record_feed_error(self, feed: str):
        self.feed_errors.labels(feed=feed).inc()

    def record_signal(self, side: str):
        self.signals_emitted.labels(side=side).inc()

    def record_signal_rejected(self, reason: str):
        self.signals_rejected.labels(reason=reason).inc()

    def record_order_placed(self, kind: str):
        self.orders_placed.labels(kind=kind).inc()

    def record_order_failed(self, kind: str, reason: str):
        self.orders_failed.labels(kind=kind, reason=reason).inc()

    def record_order_send_latency(self, latency_seconds: float):
        self.order_send_latency.observe(latency_seconds)

    def record_position_opened(self):
        self.position_open.set(1)

    def record_position_closed(self, reason: str):
        self.position_open.set(0)
        self.positions_closed.labels(reason=reason).inc()

    def record_pnl(self, pnl: float):
        if pnl is None:
            return
        if pnl >= 0:
            self.pnl_realized.inc(pnl)
        else:
            self.pnl_realized.dec(abs(float(pnl)))

    def update_equity(self, equity: float):
        self.equity.set(equity)

    def record_circuit_breaker(self, reason: str):
        self.circuit_breaker_trips.labels(reason=reason).inc()


def start_metrics_server(port: int = 9090) -> Optional[int]:
    """Start the Prometheus exporter once; walks up to ``prometheus_port_scan`` ports past ``port``."""
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return _METRICS_PORT
    candidates = range(port, port + max(0, _get_port_scan_limit()) + 1)
    for candidate in candidates:
        try:
            start_http_server(candidate)
        except OSError as exc:
            if exc.errno != errno.EADDRINUSE:
                raise
            logger.warning("Metrics port %s in use", candidate)
            continue
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        logger.info("Prometheus metrics server started on port %s", candidate)
        return candidate
    raise RuntimeError(f"No free metrics port in {candidates.start}-{candidates.stop - 1}")


metrics = MetricsCollector()
