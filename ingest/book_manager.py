from sortedcontainers import SortedDict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging
import time

from ingest.market_types import Level, OrderBookSnapshot


logger = logging.getLogger(__name__)

MIN_FILL_RATIO = 0.5


@dataclass
class ExecutionEstimate:
    """Outcome of walking the book for a hypothetical market order."""

    side: str
    best_bid: Level
    best_ask: Level
    best_price: float
    requested_volume: float
    filled_volume: float
    average_price: float
    slippage_pct: float
    volume_ratio: float
    can_execute: bool

    @property
    def available_volume(self) -> float:
        return self.filled_volume

    def to_dict(self) -> Dict[str, Any]:
        return {
            'side': self.side,
            'best_bid': list(self.best_bid),
            'best_ask': list(self.best_ask),
            'best_price': self.best_price,
            'requested_volume': self.requested_volume,
            'available_volume': self.filled_volume,
            'average_price': self.average_price,
            'slippage_pct': self.slippage_pct,
            'volume_ratio': self.volume_ratio,
            'can_execute': self.can_execute,
        }


class LiquiditySnapshotStore:
    """Latest depth snapshot of the execution venue, replaced wholesale on every update."""

    def __init__(self, symbol: str = '', max_depth: int = 200):
        self.symbol = symbol
        self.max_depth = max_depth

        self.bids = SortedDict()
        self.asks = SortedDict()
        self.last_event_time: Optional[int] = None
        self.updates = 0

    @property
    def has_snapshot(self) -> bool:
        return self.last_event_time is not None

    def update_snapshot(self, snapshot: OrderBookSnapshot) -> None:
        self.bids.clear()
        self.asks.clear()

        for price, qty in snapshot.bids[: self.max_depth]:
            self._write_level(self.bids, price, qty)
        for price, qty in snapshot.asks[: self.max_depth]:
            self._write_level(self.asks, price, qty)

        self.last_event_time = snapshot.timestamp
        self.updates += 1

    def clear(self) -> None:
        self.bids.clear()
        self.asks.clear()
        self.last_event_time = None

    def estimate_execution(
        self,
        side: str,
        volume_usd: float,
        max_slippage_pct: float = 0.1,
    ) -> Optional[ExecutionEstimate]:
        """
        Estimate filling ``volume_usd`` of quote currency as a market order.

        ``long`` consumes asks from the lowest price up, ``short`` consumes
        bids from the highest price down. The notional is converted to base
        units at the best opposing price. Returns None when there is no
        usable book; never raises.
        """
        best_bid = self.get_best_bid()
        best_ask = self.get_best_ask()
        if best_bid is None or best_ask is None:
            return None

        if side == 'long':
            best_price = best_ask[0]
            levels: Iterable[Tuple[float, float]] = self.asks.items()
        elif side == 'short':
            best_price = best_bid[0]
            levels = reversed(self.bids.items())
        else:
            logger.debug("Unknown side %r for execution estimate", side)
            return None

        if best_price <= 0 or volume_usd <= 0:
            return None

        needed = volume_usd / best_price
        remaining = needed
        filled = 0.0
        cost = 0.0
        for price, qty in levels:
            if remaining <= 0:
                break
            take = min(remaining, qty)
            filled += take
            cost += take * price
            remaining -= take

        average = cost / filled if filled > 0 else best_price
        # Signed: sells walking down the bids report a negative value
        slippage = (average - best_price) / best_price * 100.0
        ratio = filled / needed if needed > 0 else 0.0

        return ExecutionEstimate(
            side=side,
            best_bid=best_bid,
            best_ask=best_ask,
            best_price=best_price,
            requested_volume=needed,
            filled_volume=filled,
            average_price=average,
            slippage_pct=slippage,
            volume_ratio=ratio,
            can_execute=slippage <= max_slippage_pct and ratio >= MIN_FILL_RATIO,
        )

    # Query helpers ------------------------------------------------------
    def get_best_bid(self) -> Optional[Level]:
        if not self.bids:
            return None
        price = self.bids.peekitem(-1)[0]
        return price, self.bids[price]

    def get_best_ask(self) -> Optional[Level]:
        if not self.asks:
            return None
        price = self.asks.peekitem(0)[0]
        return price, self.asks[price]

    def get_top_levels(self, depth: int = 10) -> Dict[str, Any]:
        depth = max(1, min(depth, self.max_depth))
        bids: List[Level] = list(reversed(list(self.bids.items())[-depth:]))
        asks: List[Level] = list(self.asks.items())[:depth]
        return {
            'symbol': self.symbol,
            'bids': bids,
            'asks': asks,
            'best_bid': bids[0][0] if bids else None,
            'best_ask': asks[0][0] if asks else None,
            'timestamp': self.last_event_time,
        }

    def to_dict(self, depth: int = 20) -> Dict[str, Any]:
        levels = self.get_top_levels(depth)
        return {
            'symbol': self.symbol,
            'bids': [[price, qty] for price, qty in levels['bids']],
            'asks': [[price, qty] for price, qty in levels['asks']],
            'updates': self.updates,
            'timestamp': self.last_event_time or time.time() * 1000,
        }

    # Internal helpers ---------------------------------------------------
    @staticmethod
    def _write_level(book: SortedDict, price: float, qty: float) -> None:
        if price <= 0 or qty <= 0:
            return
        book[price] = qty
