import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from config import config
from ingest.market_types import Level, OrderBookSnapshot, Quote, as_float, as_int, first_float, now_ms
from ingest.websocket_client import FeedClient


logger = logging.getLogger(__name__)

PRICE_KEYS = ('lastPrice', 'p', 'price', 'c')
BID_KEYS = ('bid1', 'b', 'bid', 'bidPrice')
ASK_KEYS = ('ask1', 'a', 'ask', 'askPrice')


class MexcContractFeed(FeedClient):
    """Ticker and depth stream of the execution venue (contract edge gateway)."""

    name = 'mexc'

    def __init__(
        self,
        symbol: str,
        url: Optional[str] = None,
        reconnect_delay: Optional[float] = None,
        keepalive_interval: Optional[float] = None,
        subscribe_delay: Optional[float] = None,
        depth_limit: Optional[int] = None,
        connector: Optional[Callable[..., Any]] = None,
    ):
        feeds_cfg = config.section('feeds')
        self.symbol = symbol
        self.subscribe_delay = float(
            subscribe_delay if subscribe_delay is not None else feeds_cfg.get('subscribe_delay_s', 0.5)
        )
        self.depth_limit = int(depth_limit or feeds_cfg.get('depth_limit', 20))
        if keepalive_interval is None:
            keepalive_interval = float(feeds_cfg.get('keepalive_interval_s', 15))
        super().__init__(
            url or feeds_cfg.get('mexc_ws_url', 'wss://contract.mexc.com/edge'),
            reconnect_delay=reconnect_delay,
            keepalive_interval=keepalive_interval,
            connector=connector,
        )

    def subscriptions(self) -> List[Dict[str, Any]]:
        return [
            {'method': 'sub.ticker', 'param': {'symbol': self.symbol}},
            {'method': 'sub.depth.full', 'param': {'symbol': self.symbol, 'limit': self.depth_limit}},
        ]

    async def _on_open(self, ws) -> None:
        if self.subscribe_delay > 0:
            await asyncio.sleep(self.subscribe_delay)
        for payload in self.subscriptions():
            await self.send_json(payload)
        logger.info("mexc subscribed to ticker and depth for %s", self.symbol)

    def _keepalive_payload(self) -> Optional[Dict[str, Any]]:
        return {'method': 'ping'}

    def _route(self, message: Dict[str, Any]) -> None:
        if message.get('error'):
            logger.error("mexc stream error: %s", message['error'])
            return

        channel = message.get('channel')
        if not isinstance(channel, str):
            raise TypeError(f"channel must be a string, got {channel!r}")
        if channel == 'pong':
            return
        if channel.startswith('rs.'):
            logger.debug("mexc subscription ack %s: %s", channel, message.get('data'))
            return

        data = message.get('data')
        if channel == 'push.ticker':
            quote = self.parse_ticker(data, message.get('ts'))
            if quote is not None:
                self._emit('quote', quote)
        elif channel in ('push.depth', 'push.depth.full'):
            snapshot = self.parse_depth(data, message.get('ts'))
            if snapshot is not None:
                self._emit('depth', snapshot)
        else:
            logger.debug("mexc unhandled channel %r", channel)

    @staticmethod
    def parse_ticker(data: Any, ts: Any = None) -> Optional[Quote]:
        if not isinstance(data, dict):
            raise TypeError("ticker payload is not an object")
        price = first_float(data, *PRICE_KEYS) or 0.0
        bid = first_float(data, *BID_KEYS) or 0.0
        ask = first_float(data, *ASK_KEYS) or 0.0
        if price <= 0:
            return None
        timestamp = as_int(ts) or as_int(data.get('timestamp')) or now_ms()
        return Quote(price=price, bid=bid, ask=ask, timestamp=timestamp)

    @classmethod
    def parse_depth(cls, data: Any, ts: Any = None) -> Optional[OrderBookSnapshot]:
        if not isinstance(data, dict):
            raise TypeError("depth payload is not an object")
        bids = cls._parse_levels(data.get('bids'))
        asks = cls._parse_levels(data.get('asks'))
        if not bids and not asks:
            return None
        # Sorted best-first regardless of how the venue orders them
        bids.sort(key=lambda level: level[0], reverse=True)
        asks.sort(key=lambda level: level[0])
        timestamp = as_int(ts) or as_int(data.get('ct')) or now_ms()
        return OrderBookSnapshot(bids=bids, asks=asks, timestamp=timestamp)

    @staticmethod
    def _parse_levels(raw: Any) -> List[Level]:
        if not raw:
            return []
        if isinstance(raw, dict):
            items = list(raw.items())
        else:
            items = []
            for level in raw:
                if isinstance(level, dict):
                    items.append((level.get('price'), level.get('volume', level.get('vol'))))
                elif isinstance(level, (list, tuple)) and len(level) >= 2:
                    items.append((level[0], level[1]))
        levels: List[Level] = []
        for price, volume in items:
            p = as_float(price)
            v = as_float(volume)
            if p is None or v is None or p <= 0 or v <= 0:
                continue
            levels.append((p, v))
        return levels
