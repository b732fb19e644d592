import logging
from typing import Any, Callable, Dict, Optional

from config import config
from ingest.market_types import Quote, as_float, as_int, now_ms
from ingest.websocket_client import FeedClient


logger = logging.getLogger(__name__)


def reference_symbol_for(symbol: str) -> str:
    """UNI_USDT -> UNIUSDT."""
    return symbol.replace('_', '').upper()


class BinanceBookTickerFeed(FeedClient):
    """Best bid/ask stream of the reference venue (USD-M futures bookTicker)."""

    name = 'binance'

    def __init__(
        self,
        symbol: str,
        base_url: Optional[str] = None,
        reconnect_delay: Optional[float] = None,
        connector: Optional[Callable[..., Any]] = None,
    ):
        self.symbol = symbol.upper()
        base = (base_url or config.section('feeds').get('binance_ws_url', 'wss://fstream.binance.com/ws')).rstrip('/')
        url = f"{base}/{self.symbol.lower()}@bookTicker"
        super().__init__(url, reconnect_delay=reconnect_delay, connector=connector)

    def _route(self, message: Dict[str, Any]) -> None:
        if message.get('s') != self.symbol:
            logger.debug("binance message for other symbol: %s", message.get('s'))
            return
        if 'b' not in message or 'a' not in message:
            return
        quote = self.parse_book_ticker(message)
        if quote is not None:
            self._emit('quote', quote)

    @staticmethod
    def parse_book_ticker(message: Dict[str, Any]) -> Optional[Quote]:
        bid = as_float(message.get('b'))
        ask = as_float(message.get('a'))
        if bid is None or ask is None:
            raise ValueError("non-numeric bookTicker prices")
        if bid <= 0 or ask <= 0:
            return None
        ts = as_int(message.get('E')) or as_int(message.get('T')) or now_ms()
        return Quote(price=(bid + ask) / 2.0, bid=bid, ask=ask, timestamp=ts)
