import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from analytics.spread import SpreadEngine, SpreadSnapshot
from api.alerts import alert_webhook
from api.metrics import metrics, start_metrics_server
from config import config
from ingest.binance_ws import BinanceBookTickerFeed, reference_symbol_for
from ingest.book_manager import LiquiditySnapshotStore
from ingest.market_data_manager import MarketDataManager
from ingest.market_types import Quote
from ingest.mexc_ws import MexcContractFeed
from ingest.websocket_client import FeedClient
from monitoring.async_utils import cancel_all, run_tasks_with_cleanup, spawn_background
from monitoring.logging_utils import setup_logging
from risk.position_sizer import RiskManager
from strategy.execution import ExecutionCoordinator, OrderIdMissingError, RateLimitError
from strategy.signal_manager import ArbitrageStrategy, Signal, StrategyRuntime
from strategy.simulators.paper import PaperVenue
from strategy.transports.mexc import MexcTransport


logger = logging.getLogger(__name__)

FeedFactory = Callable[[str, str], Tuple[FeedClient, FeedClient]]


def default_feed_factory(symbol: str, reference_symbol: str) -> Tuple[FeedClient, FeedClient]:
    return BinanceBookTickerFeed(reference_symbol), MexcContractFeed(symbol)


class ArbitrageBot:
    """Wire feeds, spread engine, strategy and execution; expose lifecycle to the API."""

    def __init__(
        self,
        config_obj: Optional[Any] = None,
        transport: Optional[Any] = None,
        feed_factory: Optional[FeedFactory] = None,
        risk_manager: Optional[RiskManager] = None,
    ):
        self.config = config_obj or config
        self.exchange_cfg = self.config.section('exchange')
        self.strategy_cfg = self.config.section('strategy')
        self.execution_cfg = self.config.section('execution')
        self.monitoring_cfg = self.config.section('monitoring')

        self.symbol = self.exchange_cfg.get('symbol', 'UNI_USDT')
        self.reference_symbol = self.exchange_cfg.get('reference_symbol') or reference_symbol_for(self.symbol)
        self.paper_mode = bool(self.exchange_cfg.get('paper', True))
        self.trade_cooldown_s = float(self.strategy_cfg.get('trade_cooldown_s', 0))
        self.rate_limit_block_s = float(self.execution_cfg.get('rate_limit_block_s', 10))

        self.transport = transport or self._build_transport()
        self.feed_factory = feed_factory or default_feed_factory
        self.risk = risk_manager or RiskManager(self.config.section('risk'), self.exchange_cfg.get('leverage', 10))

        self.runtime = StrategyRuntime()
        self.book = LiquiditySnapshotStore(self.symbol)
        self.strategy = ArbitrageStrategy.from_config(self.strategy_cfg, self.book, self.runtime, symbol=self.symbol)
        self.spread_engine = SpreadEngine(self.strategy.config.tick_size)
        self.execution = ExecutionCoordinator(
            self.symbol,
            self.transport,
            self.runtime,
            settings=self.execution_cfg,
            margin_mode=self.exchange_cfg.get('margin_mode', 'isolated'),
            leverage=self.exchange_cfg.get('leverage', 10),
            on_commission=self._on_commission,
        )

        self.market_data: Optional[MarketDataManager] = None
        self.running = False
        self.stop_reason: Optional[str] = None
        self.started_at: Optional[float] = None
        self.current_spread: Optional[SpreadSnapshot] = None
        self._tasks: Set[asyncio.Task] = set()
        self._close_task: Optional[asyncio.Task] = None
        self._lifecycle = asyncio.Lock()
        self._stopped = asyncio.Event()

    def _build_transport(self):
        if self.paper_mode:
            logger.info("Paper mode: orders are simulated in-process")
            return PaperVenue(
                initial_balance=float(self.exchange_cfg.get('paper_balance_usd', 1000.0)),
                fee_rate=float(self.exchange_cfg.get('paper_fee_rate', 0.0)),
            )
        if not (self.exchange_cfg.get('api_key') and self.exchange_cfg.get('api_secret')):
            logger.warning("Live mode without MEXC credentials; private requests will fail")
        return MexcTransport()

    # Lifecycle ---------------------------------------------------------
    async def start(self, symbol: Optional[str] = None) -> bool:
        async with self._lifecycle:
            if self.running:
                logger.info("Bot already running for %s", self.symbol)
                return False
            if symbol and symbol != self.symbol:
                self._switch_symbol(symbol)

            await self._load_tick_size()

            feed_a, feed_b = self.feed_factory(self.symbol, self.reference_symbol)
            self.market_data = MarketDataManager(self.symbol, feed_a, feed_b)
            self.market_data.register_handlers(
                reference_quote=self._on_reference_quote,
                execution_quote=self._on_execution_quote,
                execution_depth=self.book.update_snapshot,
                reference_connect=lambda: self._on_feed_state(feed_a, True),
                execution_connect=lambda: self._on_feed_state(feed_b, True),
                reference_disconnect=lambda: self._on_feed_state(feed_a, False),
                execution_disconnect=lambda: self._on_feed_state(feed_b, False),
                feed_error=self._on_feed_error,
            )
            self.spread_engine.remove_all_listeners()
            self.spread_engine.add_listener(self._on_spread_update)
            self.strategy.remove_all_listeners()
            self.strategy.add_listener(self._on_signal)

            self.runtime.enabled = True
            self.running = True
            self.stop_reason = None
            self.started_at = time.time()
            self._stopped.clear()
            self.market_data.connect()

        logger.info("Bot started: %s vs %s (tick=%s, paper=%s)",
                    self.symbol, self.reference_symbol, self.strategy.config.tick_size, self.paper_mode)
        spawn_background(alert_webhook.lifecycle_alert('started', self.symbol), self._tasks, name='alert')
        return True

    async def stop(self, reason: str = 'manual') -> bool:
        async with self._lifecycle:
            if not self.running:
                return False
            self.runtime.enabled = False
            self.running = False
            self.stop_reason = reason

            # Listeners go before sockets so nothing evaluates during teardown
            self.spread_engine.remove_all_listeners()
            self.strategy.remove_all_listeners()
            if self.market_data is not None:
                await self.market_data.disconnect()
                self.market_data = None

            self.runtime.clear_trade()
            self.runtime.stop_after_close = False
            self.spread_engine.reset()
            self.book.clear()
            self.current_spread = None
            self._stopped.set()

        logger.info("Bot stopped (%s)", reason)
        spawn_background(alert_webhook.lifecycle_alert('stopped', self.symbol, reason), self._tasks, name='alert')
        return True

    async def restart(self, symbol: Optional[str] = None) -> bool:
        await self.stop('restart')
        return await self.start(symbol)

    async def shutdown(self) -> None:
        await self.stop('shutdown')
        await cancel_all(self._tasks)
        await self.execution.close()
        await self.transport.close()

    async def run_forever(self) -> None:
        await self.start()
        waiter = asyncio.create_task(self._stopped.wait())
        await run_tasks_with_cleanup([waiter], cleanup=self.shutdown)

    def _switch_symbol(self, symbol: str) -> None:
        logger.info("Switching symbol %s -> %s", self.symbol, symbol)
        self.symbol = symbol
        self.reference_symbol = reference_symbol_for(symbol)
        self.book.symbol = symbol
        self.book.clear()
        self.strategy.update_config(symbol=symbol)
        self.execution.symbol = symbol
        self.execution.metadata.invalidate()

    async def _load_tick_size(self) -> None:
        try:
            contract = await self.execution.get_contract()
        except Exception as exc:
            logger.warning("Contract detail unavailable for %s (%s); using tick size %s",
                           self.symbol, exc, self.strategy.config.tick_size)
            self.spread_engine.set_tick_size(self.strategy.config.tick_size)
            return
        tick = contract.tick_size
        self.strategy.update_config(tick_size=tick)
        self.spread_engine.set_tick_size(tick)

    # Feed events -------------------------------------------------------
    def _on_reference_quote(self, quote: Quote) -> None:
        self.spread_engine.update_feed_a(quote)

    def _on_execution_quote(self, quote: Quote) -> None:
        self.spread_engine.update_feed_b(quote)

    def _on_feed_state(self, feed: FeedClient, connected: bool) -> None:
        metrics.mark_feed(feed.name, connected)
        if connected and feed.reconnects:
            metrics.record_reconnect(feed.name)
        logger.info("%s feed %s", feed.name, 'connected' if connected else 'disconnected')

    def _on_feed_error(self, source: str, error: Exception) -> None:
        metrics.record_feed_error(source)

    # Spread / signal routing -------------------------------------------
    def _on_spread_update(self, spread: SpreadSnapshot) -> None:
        self.current_spread = spread
        stats = spread.spread
        metrics.record_spread(stats.tick_difference, stats.percent, spread.feed_a.mid, spread.feed_b.mid)

        runtime = self.runtime
        if not runtime.enabled or runtime.closing:
            return
        if runtime.position is not None:
            if self._close_task is not None and not self._close_task.done():
                return
            reason = self.strategy.exit_reason(spread)
            if reason is not None:
                self._close_task = spawn_background(self._close(spread, reason), self._tasks, name='close')
            return
        self.strategy.process_spread(spread)

    def entry_block_reasons(self, now: Optional[float] = None) -> List[str]:
        now = now or time.time()
        runtime = self.runtime
        reasons = []
        if not runtime.enabled:
            reasons.append('disabled')
        if runtime.position is not None:
            reasons.append('position_open')
        if runtime.closing:
            reasons.append('closing')
        if runtime.rate_limited_until > now:
            reasons.append('rate_limited')
        if runtime.awaiting_commission:
            reasons.append('awaiting_commission')
        if runtime.cooldown_until > now:
            reasons.append('cooldown')
        if runtime.stop_after_close:
            reasons.append('stop_after_close')
        return reasons

    def _on_signal(self, signal: Signal) -> None:
        reasons = self.entry_block_reasons()
        if reasons:
            logger.info("Rejecting %s signal: %s", signal.side, ', '.join(reasons))
            metrics.record_signal_rejected(reasons[0])
            self.strategy.clear_signal()
            return
        metrics.record_signal(signal.side)
        logger.info("Executable %s signal: %.1f ticks, entry=%s",
                    signal.side, signal.spread.spread.tick_difference, signal.entry_price)
        spawn_background(self._open(signal), self._tasks, name='open')

    async def _resolve_volume(self) -> float:
        volume = self.strategy.config.position_size_usd
        if not self.risk.auto_volume_enabled:
            return volume
        balance = await self.transport.get_available_balance('USDT')
        volume = self.risk.calculate_auto_volume(balance, self.execution.leverage)
        if volume > 0:
            self.risk.check_margin(volume, balance, self.execution.leverage)
        return volume

    async def _open(self, signal: Signal) -> None:
        try:
            volume = await self._resolve_volume()
            if volume <= 0:
                logger.warning("Order volume resolved to 0; skipping %s signal", signal.side)
                return
            await self.execution.open_position(signal, volume_usd=volume)
        except RateLimitError as exc:
            self.runtime.rate_limited_until = time.time() + self.rate_limit_block_s
            logger.warning("%s; entries blocked for %.0fs", exc, self.rate_limit_block_s)
        except OrderIdMissingError as exc:
            logger.warning("%s; local position left unset", exc)
            await self.execution.reconcile_after_failed_open()
        except Exception as exc:
            logger.error("Open %s failed: %s", signal.side, exc)
        finally:
            if self.runtime.position is None and self.runtime.signal is signal:
                self.strategy.clear_signal()

    async def _close(self, spread: SpreadSnapshot, reason: str) -> None:
        try:
            await self.execution.close_position(spread, reason)
        except Exception as exc:
            logger.error("Close %s failed: %s", self.symbol, exc)
            await alert_webhook.close_failed_alert(self.symbol, str(exc))
            return
        if self.runtime.position is not None:
            return
        if self.trade_cooldown_s > 0:
            self.runtime.cooldown_until = time.time() + self.trade_cooldown_s
        if self.runtime.stop_after_close:
            await self.stop('stop_after_close')

    async def close_position(self) -> bool:
        """Close the open position at the current spread, outside of exit evaluation."""
        if self.runtime.position is None or self.current_spread is None:
            return False
        return await self.execution.close_position(self.current_spread, 'manual')

    async def _on_commission(self, order_id: int, fee: float) -> None:
        metrics.record_circuit_breaker('commission')
        await self.stop('commission')
        await alert_webhook.circuit_breaker_alert('commission charged', order_id, fee)

    async def request_stop_after_close(self) -> Dict[str, Any]:
        if self.runtime.position is None:
            stopped = await self.stop('stop_after_close')
            return {'stopped': stopped, 'pending': False}
        self.runtime.stop_after_close = True
        logger.info("Bot will stop after the current position closes")
        return {'stopped': False, 'pending': True}

    # Queries -----------------------------------------------------------
    def get_current_spread(self) -> Optional[SpreadSnapshot]:
        return self.current_spread

    def get_config(self) -> Dict[str, Any]:
        return self.strategy.get_config().to_dict()

    def update_config(self, changes: Mapping[str, Any]) -> Dict[str, Any]:
        changes = {k: v for k, v in changes.items() if v is not None}
        symbol = changes.pop('symbol', None)
        if symbol and symbol != self.symbol:
            if self.running:
                raise ValueError("Symbol can only be changed while stopped or through restart")
            self._switch_symbol(symbol)
        updated = self.strategy.update_config(**changes)
        if 'tick_size' in changes:
            self.spread_engine.set_tick_size(updated.tick_size)
        return updated.to_dict()

    def get_last_close(self, since_ms: Optional[int] = None) -> Dict[str, Any]:
        last = self.runtime.last_close_ts
        last_ms = int(last * 1000) if last is not None else None
        should_update = last_ms is not None and (since_ms is None or last_ms > since_ms)
        return {'last_close_time': last_ms, 'should_update': should_update}

    def get_status(self) -> Dict[str, Any]:
        feeds = self.market_data.status() if self.market_data else {
            'feed_a_connected': False,
            'feed_b_connected': False,
        }
        return {
            'running': self.running,
            'symbol': self.symbol,
            'reference_symbol': self.reference_symbol,
            'paper_mode': self.paper_mode,
            'state': self.runtime.state.value,
            **feeds,
            'current_spread': self.current_spread.to_dict() if self.current_spread else None,
            'current_position': self.runtime.position.to_dict() if self.runtime.position else None,
            'signal': self.runtime.signal.to_dict() if self.runtime.signal else None,
            'stop_reason': self.stop_reason,
            'started_at': self.started_at,
        }

    def get_debug_state(self) -> Dict[str, Any]:
        reasons = self.entry_block_reasons()
        return {
            **self.runtime.to_dict(),
            'running': self.running,
            'rate_limited_until': self.runtime.rate_limited_until or None,
            'cooldown_until': self.runtime.cooldown_until or None,
            'can_trade': not reasons,
            'reasons': reasons,
            'book': self.book.get_top_levels(5),
        }


async def main():
    monitoring_cfg = config.section('monitoring')
    port = int(monitoring_cfg.get('prometheus_port') or 0)
    if port:
        start_metrics_server(port)
    bot = ArbitrageBot(config)
    try:
        await bot.run_forever()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Bot shutting down on interrupt")
        await bot.shutdown()


if __name__ == "__main__":
    monitoring_cfg = config.section('monitoring')
    setup_logging(monitoring_cfg.get('log_level', 'INFO'), log_file=monitoring_cfg.get('log_file') or None)
    asyncio.run(main())
