import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional

import websockets

from config import config


logger = logging.getLogger(__name__)

EVENTS = ('quote', 'depth', 'connect', 'disconnect', 'error')


class FeedClient:
    """
    Base websocket feed with a fixed-delay reconnect loop.

    Subclasses provide the stream URL, optional on-open subscription and
    keep-alive payloads, and ``_route`` which turns a decoded message into
    ``quote`` / ``depth`` events. Listeners are plain callables invoked
    synchronously from the receive loop.
    """

    name = 'feed'

    def __init__(
        self,
        url: str,
        reconnect_delay: Optional[float] = None,
        keepalive_interval: Optional[float] = None,
        connector: Optional[Callable[..., Any]] = None,
    ):
        feeds_cfg = config.section('feeds')
        self.url = url
        self.reconnect_delay = float(
            reconnect_delay if reconnect_delay is not None else feeds_cfg.get('reconnect_delay_s', 5)
        )
        self.keepalive_interval = keepalive_interval
        self._connector = connector or websockets.connect

        self._listeners: Dict[str, List[Callable]] = {event: [] for event in EVENTS}
        self.running = False
        self.connected = False
        self.reconnects = 0
        self.messages = 0
        self.dropped = 0

        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None

    # Listener registry -------------------------------------------------
    def add_listener(self, event: str, callback: Callable) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown feed event '{event}'")
        self._listeners[event].append(callback)

    def remove_all_listeners(self) -> None:
        for callbacks in self._listeners.values():
            callbacks.clear()

    def listener_count(self) -> int:
        return sum(len(callbacks) for callbacks in self._listeners.values())

    def _emit(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners.get(event, ())):
            try:
                callback(*args)
            except Exception:
                logger.exception("%s %s listener failed", self.name, event)

    # Lifecycle ---------------------------------------------------------
    @property
    def is_connected(self) -> bool:
        return self.connected

    def connect(self) -> None:
        if self.running:
            return
        self.running = True
        self._task = asyncio.create_task(self._run(), name=f"{self.name}-feed")

    async def disconnect(self) -> None:
        self.running = False
        self.remove_all_listeners()
        await self._stop_keepalive()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as exc:
                logger.debug("%s close failed: %s", self.name, exc)
        self.connected = False

    async def _run(self) -> None:
        while self.running:
            try:
                async with self._connector(self.url, ping_interval=None) as ws:
                    self._ws = ws
                    self.connected = True
                    logger.info("%s connected to %s", self.name, self.url)
                    self._emit('connect')
                    await self._on_open(ws)
                    self._start_keepalive(ws)
                    async for raw in ws:
                        self.handle_raw(raw)
                logger.warning("%s connection closed", self.name)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("%s stream error: %s", self.name, exc)
                self._emit('error', exc)
            finally:
                await self._stop_keepalive()
                self._ws = None
                if self.connected:
                    self.connected = False
                    self._emit('disconnect')

            if not self.running:
                break
            self.reconnects += 1
            logger.info("%s reconnecting in %.1fs", self.name, self.reconnect_delay)
            await asyncio.sleep(self.reconnect_delay)

    # Keep-alive --------------------------------------------------------
    def _start_keepalive(self, ws) -> None:
        payload = self._keepalive_payload()
        if payload is None or not self.keepalive_interval:
            return
        self._keepalive_task = asyncio.create_task(self._keepalive_loop(ws, payload))

    async def _stop_keepalive(self) -> None:
        task, self._keepalive_task = self._keepalive_task, None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _keepalive_loop(self, ws, payload: Dict[str, Any]) -> None:
        message = json.dumps(payload)
        while self.running:
            await asyncio.sleep(self.keepalive_interval)
            try:
                await ws.send(message)
            except Exception as exc:
                logger.debug("%s keep-alive send failed: %s", self.name, exc)
                return

    # Message handling --------------------------------------------------
    def handle_raw(self, raw: Any) -> None:
        self.messages += 1
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            self.dropped += 1
            logger.warning("%s dropped malformed message: %.200r", self.name, raw)
            return
        if not isinstance(message, dict):
            self.dropped += 1
            logger.debug("%s dropped non-object message", self.name)
            return
        try:
            self._route(message)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            self.dropped += 1
            logger.warning("%s dropped unroutable message (%s): %.200r", self.name, exc, message)

    async def send_json(self, payload: Dict[str, Any]) -> None:
        if self._ws is None:
            raise ConnectionError(f"{self.name} is not connected")
        await self._ws.send(json.dumps(payload))

    async def _on_open(self, ws) -> None:
        return None

    def _keepalive_payload(self) -> Optional[Dict[str, Any]]:
        return None

    def _route(self, message: Dict[str, Any]) -> None:
        raise NotImplementedError
