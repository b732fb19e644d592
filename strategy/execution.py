import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set

from config import config
from api.metrics import metrics
from analytics.spread import LONG, SpreadSnapshot
from ingest.mexc_rest import MexcAPIError
from monitoring.async_utils import cancel_all, spawn_background
from strategy.execution_types import LONG_POSITION, ContractDetail, OrderAck, VenuePosition
from strategy.signal_manager import Position, Signal, StrategyRuntime


logger = logging.getLogger(__name__)

ORDER_TYPE_MARKET = 5
SIDE_OPEN_LONG = 1
SIDE_CLOSE_SHORT = 2
SIDE_OPEN_SHORT = 3
SIDE_CLOSE_LONG = 4
OPEN_TYPES = {'isolated': 1, 'cross': 2}

CommissionCallback = Callable[[int, float], Awaitable[None]]


class ExecutionError(Exception):
    pass


class RateLimitError(ExecutionError):
    def __init__(self, code: Optional[int], message: Optional[str] = None):
        self.code = code
        super().__init__(f"Rate limited by venue (code={code}, msg={message})")


class OrderRejectedError(ExecutionError):
    def __init__(self, code: Optional[int], message: Optional[str] = None):
        self.code = code
        self.message = message
        super().__init__(f"Order rejected (code={code}, msg={message})")


class InvalidVolumeError(ExecutionError):
    pass


class OrderIdMissingError(ExecutionError):
    """The venue accepted the order but returned no usable identifier."""

    def __init__(self, ack: OrderAck):
        self.ack = ack
        super().__init__(f"Order accepted without an order id: {ack.raw!r}")


class PositionStateError(ExecutionError):
    pass


@dataclass
class ContractMetadataCache:
    ttl_s: float = 60.0
    detail: Optional[ContractDetail] = None
    fetched_at: float = 0.0

    def get(self, now: float) -> Optional[ContractDetail]:
        if self.detail is None or now - self.fetched_at > self.ttl_s:
            return None
        return self.detail

    def put(self, detail: ContractDetail, now: float) -> None:
        self.detail = detail
        self.fetched_at = now

    def invalidate(self) -> None:
        self.detail = None
        self.fetched_at = 0.0


def round_half_up(value: float) -> float:
    return math.floor(value + 0.5)


def compute_order_volume(volume_usd: float, price: float, contract: ContractDetail) -> float:
    """USD notional -> venue volume (contracts), stepped to ``vol_unit`` and rounded to ``vol_scale``."""
    if price <= 0 or volume_usd <= 0:
        return 0.0
    volume = volume_usd / price
    if contract.contract_size > 0 and contract.contract_size != 1:
        volume = volume / contract.contract_size
    step = contract.vol_unit
    if step > 0:
        volume = round_half_up(volume / step) * step
        if volume < step:
            volume = step
    return round(volume, contract.vol_scale)


class ExecutionCoordinator:
    """Open and close the single position on the execution venue."""

    def __init__(
        self,
        symbol: str,
        transport: Any,
        runtime: StrategyRuntime,
        settings: Optional[Mapping[str, Any]] = None,
        margin_mode: Optional[str] = None,
        leverage: Optional[int] = None,
        on_commission: Optional[CommissionCallback] = None,
    ):
        exec_cfg = settings if settings is not None else config.section('execution')
        exchange_cfg = config.section('exchange')
        self.symbol = symbol
        self.transport = transport
        self.runtime = runtime
        self.min_order_interval = float(exec_cfg.get('min_order_interval_ms', 500)) / 1000.0
        self.rate_limit_code = int(exec_cfg.get('rate_limit_code', 510))
        self.rate_limit_backoff = float(exec_cfg.get('rate_limit_backoff_s', 2))
        self.check_commission = bool(exec_cfg.get('check_commission', True))
        self.metadata = ContractMetadataCache(ttl_s=float(exec_cfg.get('contract_cache_ttl_s', 60)))

        mode = (margin_mode or exchange_cfg.get('margin_mode', 'isolated')).lower()
        if mode not in OPEN_TYPES:
            raise ValueError(f"Unknown margin mode '{mode}'")
        self.open_type = OPEN_TYPES[mode]
        self.leverage = int(leverage or exchange_cfg.get('leverage', 10))
        self.on_commission = on_commission
        self._background: Set[asyncio.Task] = set()

    # Contract metadata -------------------------------------------------
    async def get_contract(self) -> ContractDetail:
        now = time.monotonic()
        cached = self.metadata.get(now)
        if cached is not None:
            return cached
        detail = await self.transport.get_contract_detail(self.symbol)
        self.metadata.put(detail, now)
        return detail

    # Order submission --------------------------------------------------
    async def _pace(self) -> None:
        wait = self.min_order_interval - (time.monotonic() - self.runtime.last_order_ts)
        if wait > 0:
            await asyncio.sleep(wait)
        self.runtime.last_order_ts = time.monotonic()

    async def _submit(self, params: Dict[str, Any], kind: str) -> OrderAck:
        await self._pace()
        started = time.monotonic()
        try:
            ack = await self.transport.submit_order(params)
        except MexcAPIError as exc:
            metrics.record_order_failed(kind, str(exc.code))
            if exc.code == self.rate_limit_code:
                await asyncio.sleep(self.rate_limit_backoff)
                raise RateLimitError(exc.code, exc.msg) from exc
            raise OrderRejectedError(exc.code, exc.msg) from exc
        metrics.record_order_send_latency(time.monotonic() - started)

        if not ack.success:
            metrics.record_order_failed(kind, str(ack.code))
            if ack.code == self.rate_limit_code:
                logger.warning("Rate limited on %s order; backing off %.1fs", kind, self.rate_limit_backoff)
                await asyncio.sleep(self.rate_limit_backoff)
                raise RateLimitError(ack.code, ack.message)
            raise OrderRejectedError(ack.code, ack.message)

        metrics.record_order_placed(kind)
        return ack

    # Open --------------------------------------------------------------
    async def open_position(self, signal: Signal, volume_usd: Optional[float] = None) -> Position:
        """Submit a market order for ``signal``; the pending signal is cleared on any failure."""
        try:
            if self.runtime.position is not None:
                raise PositionStateError("A position is already open")
            contract = await self.get_contract()
            price = signal.entry_price
            if price <= 0:
                raise InvalidVolumeError(f"Invalid entry price {price}")
            notional = volume_usd if volume_usd is not None else signal.volume_usd
            volume = compute_order_volume(notional, price, contract)
            if volume <= 0:
                raise InvalidVolumeError(f"Order volume rounds to {volume} for {notional} USD at {price}")

            rounded_price = round(price, contract.price_scale)
            params = {
                'symbol': self.symbol,
                'side': SIDE_OPEN_LONG if signal.side == LONG else SIDE_OPEN_SHORT,
                'type': ORDER_TYPE_MARKET,
                'vol': volume,
                'price': rounded_price,
                'openType': self.open_type,
                'leverage': self.leverage,
            }
            logger.info("Opening %s %s: vol=%s price=%s notional=%.2f",
                        signal.side, self.symbol, volume, rounded_price, notional)
            ack = await self._submit(params, 'open')
            if ack.order_id is None:
                raise OrderIdMissingError(ack)
        except BaseException:
            self.runtime.signal = None
            raise

        position = Position(
            order_id=ack.order_id,
            side=signal.side,
            entry_price=rounded_price,
            volume_usd=notional,
        )
        self.runtime.position = position
        metrics.record_position_opened()
        logger.info("Position opened: order=%s side=%s entry=%s", position.order_id, position.side, position.entry_price)
        return position

    async def find_venue_position(self) -> Optional[VenuePosition]:
        positions = await self.transport.get_open_positions(self.symbol)
        for pos in positions:
            if pos.symbol == self.symbol and pos.hold_vol > 0:
                return pos
        return None

    async def reconcile_after_failed_open(self) -> Optional[VenuePosition]:
        """Look for a venue position the local state does not know about. Never adopts it."""
        try:
            venue = await self.find_venue_position()
        except Exception as exc:
            logger.error("Reconciliation query failed for %s: %s", self.symbol, exc)
            return None
        if venue is not None and self.runtime.position is None:
            logger.warning(
                "Venue reports an open %s position on %s (vol=%s, id=%s) unknown locally; manual review required",
                venue.side, self.symbol, venue.hold_vol, venue.position_id,
            )
        return venue

    # Close -------------------------------------------------------------
    async def close_position(self, spread: SpreadSnapshot, reason: Optional[str] = None) -> bool:
        """
        Close the venue position with a reduce-only market order.

        Returns True when a close order was accepted, False when another close
        is in flight or there was nothing to close. Order failures propagate
        after one reconciliation query.
        """
        if self.runtime.closing:
            logger.debug("Close already in flight; skipping")
            return False
        self.runtime.closing = True
        try:
            try:
                venue = await self.find_venue_position()
                if venue is None:
                    logger.info("No open %s position on venue; clearing local state", self.symbol)
                    self._clear_after_close('already_closed')
                    return False

                contract = await self.get_contract()
                quote = spread.feed_b
                if venue.position_type == LONG_POSITION:
                    side = SIDE_CLOSE_LONG
                    exit_price = quote.bid or quote.price
                else:
                    side = SIDE_CLOSE_SHORT
                    exit_price = quote.ask or quote.price

                params = {
                    'symbol': self.symbol,
                    'side': side,
                    'type': ORDER_TYPE_MARKET,
                    'vol': round(venue.hold_vol, contract.vol_scale),
                    'price': round(exit_price, contract.price_scale),
                    'openType': self.open_type,
                    'leverage': venue.leverage or self.leverage,
                    'positionId': venue.position_id,
                    'reduceOnly': True,
                }
                logger.info("Closing %s %s (%s): vol=%s price=%s",
                            venue.side, self.symbol, reason or 'manual', params['vol'], params['price'])
                ack = await self._submit(params, 'close')
            except Exception:
                await self._reconcile_after_failed_close()
                raise

            self._clear_after_close(reason or 'manual')
            if ack.order_id is None:
                logger.warning("Close accepted without an order id; commission check skipped")
            elif self.check_commission:
                self.runtime.awaiting_commission = True
                spawn_background(self._check_commission(ack.order_id), self._background, name='commission-check')
            return True
        finally:
            self.runtime.closing = False

    def _clear_after_close(self, reason: str) -> None:
        had_position = self.runtime.position is not None
        self.runtime.clear_trade()
        self.runtime.last_close_ts = time.time()
        if had_position:
            metrics.record_position_closed(reason)

    async def _reconcile_after_failed_close(self) -> None:
        try:
            venue = await self.find_venue_position()
        except Exception as exc:
            logger.error("Position re-query after failed close errored: %s", exc)
            return
        if venue is None:
            logger.info("Close failed but venue has no %s position; clearing local state", self.symbol)
            self._clear_after_close('already_closed')
        else:
            logger.warning("Close failed; %s position still open (vol=%s), will retry", self.symbol, venue.hold_vol)

    # Commission circuit breaker ----------------------------------------
    async def _check_commission(self, order_id: int) -> None:
        try:
            detail = await self.transport.get_order_details(order_id, self.symbol)
            if detail.fee > 0:
                logger.warning("Commission %.8f charged on order %s; disabling trading", detail.fee, order_id)
                if self.on_commission is not None:
                    await self.on_commission(order_id, detail.fee)
            else:
                logger.info("No commission charged on order %s", order_id)
        except Exception as exc:
            logger.error("Commission check for order %s failed: %s", order_id, exc)
        finally:
            self.runtime.awaiting_commission = False

    async def wait_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        await cancel_all(self._background)
