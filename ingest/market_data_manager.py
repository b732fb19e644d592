import asyncio
import logging
from typing import Callable, Dict, Optional

from ingest.websocket_client import FeedClient

logger = logging.getLogger(__name__)

Handler = Callable[..., None]


class MarketDataManager:
    """Own the reference and execution feeds and route their events to named handlers."""

    _EVENT_MAP = {
        ('a', 'quote'): 'reference_quote',
        ('b', 'quote'): 'execution_quote',
        ('b', 'depth'): 'execution_depth',
        ('a', 'connect'): 'reference_connect',
        ('b', 'connect'): 'execution_connect',
        ('a', 'disconnect'): 'reference_disconnect',
        ('b', 'disconnect'): 'execution_disconnect',
        ('a', 'error'): 'feed_error',
        ('b', 'error'): 'feed_error',
    }

    def __init__(self, symbol: str, feed_a: FeedClient, feed_b: FeedClient):
        self.symbol = symbol
        self.feed_a = feed_a
        self.feed_b = feed_b
        self._handlers: Dict[str, Handler] = {}

    def register_handlers(self, **handlers: Optional[Handler]) -> None:
        """Register callbacks per logical event name and attach them to the feeds."""
        for name, handler in handlers.items():
            if handler is None:
                continue
            if name not in self._EVENT_MAP.values():
                raise ValueError(f"Unknown market data event '{name}'")
            self._handlers[name] = handler
        self._attach()

    def _attach(self) -> None:
        self.feed_a.remove_all_listeners()
        self.feed_b.remove_all_listeners()
        feeds = {'a': self.feed_a, 'b': self.feed_b}
        for (which, event), logical_name in self._EVENT_MAP.items():
            if logical_name in self._handlers:
                feeds[which].add_listener(event, self._build_dispatcher(logical_name, feeds[which].name))

    def _build_dispatcher(self, logical_name: str, source: str) -> Handler:
        def _dispatch(*payload):
            handler = self._handlers.get(logical_name)
            if not handler:
                return
            if logical_name == 'feed_error':
                handler(source, *payload)
            else:
                handler(*payload)

        return _dispatch

    def detach_all(self) -> None:
        """Drop every registered handler and feed listener."""
        self._handlers.clear()
        self.feed_a.remove_all_listeners()
        self.feed_b.remove_all_listeners()

    def connect(self) -> None:
        self.feed_a.connect()
        self.feed_b.connect()

    async def disconnect(self) -> None:
        self.detach_all()
        await asyncio.gather(self.feed_a.disconnect(), self.feed_b.disconnect())

    def status(self) -> Dict[str, bool]:
        return {
            'feed_a_connected': self.feed_a.is_connected,
            'feed_b_connected': self.feed_b.is_connected,
        }
