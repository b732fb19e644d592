import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ingest.market_types import Quote


logger = logging.getLogger(__name__)

LONG = 'long'
SHORT = 'short'
NONE = 'none'

SpreadListener = Callable[['SpreadSnapshot'], None]


def _round_half_up(value: float) -> float:
    return math.floor(value + 0.5)


@dataclass(frozen=True)
class SpreadStats:
    absolute: float
    percent: float
    direction: str
    tick_difference: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'absolute': self.absolute,
            'percent': self.percent,
            'direction': self.direction,
            'tick_difference': self.tick_difference,
        }


@dataclass(frozen=True)
class SpreadSnapshot:
    """Reference quote (feed A), execution quote (feed B) and their spread."""

    feed_a: Quote
    feed_b: Quote
    spread: SpreadStats
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'feed_a': self.feed_a.to_dict(),
            'feed_b': self.feed_b.to_dict(),
            'spread': self.spread.to_dict(),
            'timestamp': self.timestamp,
        }


def compute_spread(feed_a: Quote, feed_b: Quote, tick_size: float) -> Optional[SpreadStats]:
    """
    Spread between the two venues' mid prices, normalized to ticks.

    Returns None unless both quotes have strictly positive bid, ask and mid.
    The absolute difference is rounded half-up to a whole number of ticks;
    direction compares the raw mids, ``long`` when feed A trades above feed B.
    """
    if tick_size <= 0:
        return None
    for quote in (feed_a, feed_b):
        if quote.bid <= 0 or quote.ask <= 0 or quote.mid <= 0:
            return None

    mid_a = feed_a.mid
    mid_b = feed_b.mid

    ticks = _round_half_up(abs(mid_a - mid_b) / tick_size)
    absolute = ticks * tick_size
    percent = absolute / mid_a * 100.0

    if mid_a > mid_b:
        direction = LONG
    elif mid_a < mid_b:
        direction = SHORT
    else:
        direction = NONE

    tick_difference = absolute / tick_size
    if tick_difference < 0.5:
        tick_difference = 0.0
    else:
        tick_difference = _round_half_up(tick_difference * 10) / 10

    return SpreadStats(
        absolute=absolute,
        percent=percent,
        direction=direction,
        tick_difference=tick_difference,
    )


class SpreadEngine:
    """Keep the latest quote per venue and publish a spread on every update."""

    def __init__(self, tick_size: float = 0.001):
        self.tick_size = float(tick_size)
        self.feed_a: Optional[Quote] = None
        self.feed_b: Optional[Quote] = None
        self._listeners: List[SpreadListener] = []

    def add_listener(self, listener: SpreadListener) -> None:
        self._listeners.append(listener)

    def remove_all_listeners(self) -> None:
        self._listeners.clear()

    def set_tick_size(self, tick_size: float) -> None:
        if tick_size <= 0:
            raise ValueError(f"tick size must be positive, got {tick_size}")
        self.tick_size = float(tick_size)

    def reset(self) -> None:
        self.feed_a = None
        self.feed_b = None

    def update_feed_a(self, quote: Quote) -> Optional[SpreadSnapshot]:
        self.feed_a = quote
        return self._publish()

    def update_feed_b(self, quote: Quote) -> Optional[SpreadSnapshot]:
        self.feed_b = quote
        return self._publish()

    def current_spread(self) -> Optional[SpreadSnapshot]:
        if self.feed_a is None or self.feed_b is None:
            return None
        stats = compute_spread(self.feed_a, self.feed_b, self.tick_size)
        if stats is None:
            return None
        return SpreadSnapshot(
            feed_a=self.feed_a,
            feed_b=self.feed_b,
            spread=stats,
            timestamp=int(time.time() * 1000),
        )

    def _publish(self) -> Optional[SpreadSnapshot]:
        snapshot = self.current_spread()
        if snapshot is None:
            return None
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Spread listener failed")
        return snapshot
