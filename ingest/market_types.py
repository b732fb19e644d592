import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

Level = Tuple[float, float]


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Quote:
    """Top-of-book view of one venue. Timestamp is epoch milliseconds."""

    price: float
    bid: float
    ask: float
    timestamp: int

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'price': self.price,
            'bid': self.bid,
            'ask': self.ask,
            'mid': self.mid,
            'timestamp': self.timestamp,
        }


@dataclass
class OrderBookSnapshot:
    bids: List[Level] = field(default_factory=list)
    asks: List[Level] = field(default_factory=list)
    timestamp: int = field(default_factory=now_ms)

    @property
    def empty(self) -> bool:
        return not self.bids and not self.asks


def as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return None


def first_float(payload: Dict[str, Any], *keys: str) -> Optional[float]:
    """Return the first key present in ``payload`` that parses as a float."""
    for key in keys:
        if key in payload:
            value = as_float(payload.get(key))
            if value is not None:
                return value
    return None
