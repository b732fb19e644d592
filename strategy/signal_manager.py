from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional
import logging
import time
import uuid

from analytics.spread import LONG, SHORT, SpreadSnapshot
from ingest.book_manager import ExecutionEstimate, LiquiditySnapshotStore


logger = logging.getLogger(__name__)

# Float tolerance for tick comparisons
EPSILON = 1e-9


class SignalState(Enum):
    IDLE = "idle"
    SIGNAL_PENDING = "signal_pending"
    POSITION_OPEN = "position_open"


@dataclass
class StrategyConfig:
    symbol: str = 'UNI_USDT'
    min_tick_difference: float = 2.0
    position_size_usd: float = 100.0
    max_slippage_pct: float = 0.1
    tick_size: float = 0.001

    @classmethod
    def from_section(cls, section: Mapping[str, Any], symbol: Optional[str] = None) -> 'StrategyConfig':
        defaults = cls()
        return cls(
            symbol=symbol or defaults.symbol,
            min_tick_difference=float(section.get('min_tick_difference', defaults.min_tick_difference)),
            position_size_usd=float(section.get('position_size_usd', defaults.position_size_usd)),
            max_slippage_pct=float(section.get('max_slippage_pct', defaults.max_slippage_pct)),
            tick_size=float(section.get('tick_size', defaults.tick_size)),
        )

    def merge(self, changes: Mapping[str, Any]) -> 'StrategyConfig':
        """Return a copy with ``changes`` applied; unknown keys and bad values raise ValueError."""
        known = {f.name: f for f in fields(self)}
        data = asdict(self)
        for key, value in changes.items():
            if value is None:
                continue
            if key not in known:
                raise ValueError(f"Unknown strategy setting '{key}'")
            if key == 'symbol':
                if not isinstance(value, str) or not value:
                    raise ValueError("symbol must be a non-empty string")
                data[key] = value
                continue
            try:
                number = float(value)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"{key} must be numeric") from exc
            if key == 'min_tick_difference':
                if number < 0:
                    raise ValueError("min_tick_difference must be >= 0")
            elif number <= 0:
                raise ValueError(f"{key} must be positive")
            data[key] = number
        return StrategyConfig(**data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Signal:
    side: str
    spread: SpreadSnapshot
    estimate: ExecutionEstimate
    entry_price: float
    volume_usd: float
    can_execute: bool
    signal_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)

    def age(self, now: Optional[float] = None) -> float:
        return (now or time.time()) - self.created_at

    def to_dict(self) -> Dict:
        return {
            'signal_id': self.signal_id,
            'type': self.side,
            'entry_price': self.entry_price,
            'volume_usd': self.volume_usd,
            'can_execute': self.can_execute,
            'tick_difference': self.spread.spread.tick_difference,
            'slippage_pct': self.estimate.slippage_pct,
            'volume_ratio': self.estimate.volume_ratio,
            'timestamp': int(self.created_at * 1000),
        }


@dataclass
class Position:
    order_id: int
    side: str
    entry_price: float
    volume_usd: float
    opened_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict:
        return {
            'order_id': self.order_id,
            'side': self.side,
            'entry_price': self.entry_price,
            'volume_usd': self.volume_usd,
            'opened_at': int(self.opened_at * 1000),
        }


@dataclass
class StrategyRuntime:
    """Mutable trading state shared by the strategy and the execution coordinator."""

    enabled: bool = False
    signal: Optional[Signal] = None
    position: Optional[Position] = None
    closing: bool = False
    last_order_ts: float = 0.0
    last_close_ts: Optional[float] = None
    rate_limited_until: float = 0.0
    awaiting_commission: bool = False
    cooldown_until: float = 0.0
    stop_after_close: bool = False

    @property
    def state(self) -> SignalState:
        if self.position is not None:
            return SignalState.POSITION_OPEN
        if self.signal is not None:
            return SignalState.SIGNAL_PENDING
        return SignalState.IDLE

    def clear_trade(self) -> None:
        self.signal = None
        self.position = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'enabled': self.enabled,
            'closing': self.closing,
            'signal': self.signal.to_dict() if self.signal else None,
            'position': self.position.to_dict() if self.position else None,
            'last_close_ts': self.last_close_ts,
            'awaiting_commission': self.awaiting_commission,
            'stop_after_close': self.stop_after_close,
        }


@dataclass
class Transition:
    from_state: str
    to_state: str
    action: str
    reason: Optional[str] = None
    signal: Optional[Signal] = None


from .signal_states import IdleState, SignalPendingState, PositionOpenState

SignalListener = Callable[[Signal], None]


class ArbitrageStrategy:
    """
    Entry/exit decisions for a single-signal, single-position spread trade.

    Entry: the execution venue lags the reference venue by at least
    ``min_tick_difference`` ticks, its own book is tight and deep enough for
    ``position_size_usd``. Exit: the reference venue has moved through the
    entry price, or the gap has closed with the execution venue still tight.
    """

    def __init__(
        self,
        config: StrategyConfig,
        book: LiquiditySnapshotStore,
        runtime: Optional[StrategyRuntime] = None,
        signal_ttl_s: float = 30.0,
        max_entry_spread_ticks: float = 3.0,
        min_volume_ratio: float = 0.8,
        exit_spread_ticks: float = 1.0,
    ):
        self.config = config
        self.book = book
        self.runtime = runtime or StrategyRuntime()
        self.signal_ttl_s = signal_ttl_s
        self.max_entry_spread_ticks = max_entry_spread_ticks
        self.min_volume_ratio = min_volume_ratio
        self.exit_spread_ticks = exit_spread_ticks
        self._listeners: List[SignalListener] = []

        self.state_map = {
            SignalState.IDLE: IdleState,
            SignalState.SIGNAL_PENDING: SignalPendingState,
            SignalState.POSITION_OPEN: PositionOpenState,
        }

    @classmethod
    def from_config(cls, section: Mapping[str, Any], book: LiquiditySnapshotStore,
                    runtime: Optional[StrategyRuntime] = None, symbol: Optional[str] = None) -> 'ArbitrageStrategy':
        return cls(
            StrategyConfig.from_section(section, symbol=symbol),
            book,
            runtime,
            signal_ttl_s=float(section.get('signal_ttl_s', 30)),
            max_entry_spread_ticks=float(section.get('max_entry_spread_ticks', 3.0)),
            min_volume_ratio=float(section.get('min_volume_ratio', 0.8)),
            exit_spread_ticks=float(section.get('exit_spread_ticks', 1.0)),
        )

    # Listeners ----------------------------------------------------------
    def add_listener(self, listener: SignalListener) -> None:
        self._listeners.append(listener)

    def remove_all_listeners(self) -> None:
        self._listeners.clear()

    # Config -------------------------------------------------------------
    def update_config(self, **changes: Any) -> StrategyConfig:
        self.config = self.config.merge(changes)
        logger.info("Strategy config updated: %s", self.config.to_dict())
        return self.config

    def get_config(self) -> StrategyConfig:
        return StrategyConfig(**self.config.to_dict())

    # Evaluation ---------------------------------------------------------
    def evaluate(self, spread: SpreadSnapshot) -> List[Transition]:
        """Run the processor for the current state; never raises."""
        processor = self.state_map[self.runtime.state](self)
        try:
            return processor.process(spread)
        except Exception:
            logger.exception("Strategy evaluation failed in state %s", self.runtime.state.value)
            return []

    def process_spread(self, spread: SpreadSnapshot) -> Optional[Signal]:
        """Entry evaluation. Returns the stored signal, executable or not."""
        if not self.runtime.enabled or self.runtime.position is not None:
            return None
        for transition in self.evaluate(spread):
            if transition.action in ('signal', 'open'):
                return transition.signal
        return None

    def should_close_position(self, spread: SpreadSnapshot) -> bool:
        return self.exit_reason(spread) is not None

    def exit_reason(self, spread: SpreadSnapshot) -> Optional[str]:
        if self.runtime.position is None or self.runtime.signal is None:
            return None
        for transition in self.evaluate(spread):
            if transition.action == 'close':
                return transition.reason
        return None

    def clear_signal(self) -> None:
        self.runtime.signal = None

    # Helpers used by the state processors -------------------------------
    def discard_stale_signal(self, now: Optional[float] = None) -> bool:
        signal = self.runtime.signal
        if signal is None or self.runtime.position is not None:
            return False
        if signal.age(now) <= self.signal_ttl_s:
            return False
        logger.debug("Discarding stale %s signal %s", signal.side, signal.signal_id)
        self.runtime.signal = None
        return True

    def build_signal(self, spread: SpreadSnapshot) -> Optional[Signal]:
        cfg = self.config
        stats = spread.spread
        if stats.tick_difference < cfg.min_tick_difference - EPSILON or stats.direction not in (LONG, SHORT):
            return None

        side = stats.direction
        estimate = self.book.estimate_execution(side, cfg.position_size_usd, cfg.max_slippage_pct)
        if estimate is None:
            return None

        venue_b = spread.feed_b
        venue_b_ticks = (venue_b.ask - venue_b.bid) / cfg.tick_size
        if venue_b_ticks > self.max_entry_spread_ticks + EPSILON:
            logger.debug("Execution venue spread %.1f ticks too wide for entry", venue_b_ticks)
            return None

        leg = estimate.best_ask if side == LONG else estimate.best_bid
        leg_price = leg[0]
        if leg_price <= 0:
            return None
        # Walked fill against the coins needed at this leg's best price
        volume_ratio = estimate.filled_volume / (cfg.position_size_usd / leg_price)
        if volume_ratio < self.min_volume_ratio or estimate.slippage_pct > cfg.max_slippage_pct:
            logger.debug(
                "Insufficient liquidity for %s: ratio=%.2f slippage=%.4f%%",
                side, volume_ratio, estimate.slippage_pct,
            )
            return None

        if side == LONG:
            entry_price = venue_b.ask or venue_b.price
        else:
            entry_price = venue_b.bid or venue_b.price

        return Signal(
            side=side,
            spread=spread,
            estimate=estimate,
            entry_price=entry_price,
            volume_usd=cfg.position_size_usd,
            can_execute=estimate.can_execute,
        )

    def publish(self, signal: Signal) -> None:
        for listener in list(self._listeners):
            try:
                listener(signal)
            except Exception:
                logger.exception("Signal listener failed")

    def close_reason_for(self, spread: SpreadSnapshot) -> Optional[str]:
        signal = self.runtime.signal
        if signal is None:
            return None
        tick = self.config.tick_size
        feed_a = spread.feed_a
        venue_b = spread.feed_b
        entry = signal.entry_price

        if signal.side == LONG:
            if entry - feed_a.ask >= tick - EPSILON:
                return 'reference_below_entry'
        else:
            if feed_a.bid - entry >= tick - EPSILON:
                return 'reference_above_entry'

        direction = spread.spread.direction
        if direction not in (signal.side, 'none'):
            return 'direction_reversed'

        if signal.side == LONG:
            converged = feed_a.ask <= venue_b.ask + EPSILON
            exit_ok = venue_b.bid >= entry - tick * 0.5 - EPSILON
        else:
            converged = feed_a.bid >= venue_b.bid - EPSILON
            exit_ok = venue_b.ask <= entry + tick * 0.5 + EPSILON
        venue_b_ticks = (venue_b.ask - venue_b.bid) / tick
        if converged and exit_ok and venue_b_ticks <= self.exit_spread_ticks + EPSILON:
            return 'converged'
        return None
