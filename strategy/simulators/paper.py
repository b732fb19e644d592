import itertools
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from api.metrics import metrics
from ingest.market_types import as_float, as_int

from strategy.execution_types import (
    LONG_POSITION,
    SHORT_POSITION,
    ContractDetail,
    OrderAck,
    OrderDetail,
    VenuePosition,
)


logger = logging.getLogger(__name__)

OPEN_LONG = 1
CLOSE_SHORT = 2
OPEN_SHORT = 3
CLOSE_LONG = 4


@dataclass
class PaperPosition:
    position_id: int
    symbol: str
    position_type: int
    hold_vol: float
    entry_price: float
    leverage: int


class PaperVenue:
    """In-process execution venue with the same interface as the live transport."""

    def __init__(
        self,
        contract: Optional[ContractDetail] = None,
        initial_balance: float = 1000.0,
        fee_rate: float = 0.0,
    ) -> None:
        self.contract = contract
        self._balance = initial_balance
        self.fee_rate = fee_rate
        self._ids = itertools.count(1)
        self._positions: Dict[str, PaperPosition] = {}
        self._orders: Dict[int, OrderDetail] = {}

    @property
    def balance(self) -> float:
        return self._balance

    @property
    def positions(self) -> Mapping[str, PaperPosition]:
        return MappingProxyType(self._positions)

    async def submit_order(self, params: Dict[str, Any]) -> OrderAck:
        symbol = params.get('symbol') or ''
        side = as_int(params.get('side'))
        vol = as_float(params.get('vol')) or 0.0
        price = as_float(params.get('price')) or 0.0
        if vol <= 0 or price <= 0:
            return OrderAck(success=False, code=2005, message='invalid volume or price', raw=params)

        contract = await self.get_contract_detail(symbol)
        notional = vol * contract.contract_size * price
        fee = notional * self.fee_rate

        if side in (OPEN_LONG, OPEN_SHORT):
            position_type = LONG_POSITION if side == OPEN_LONG else SHORT_POSITION
            existing = self._positions.get(symbol)
            if existing and existing.position_type != position_type:
                return OrderAck(success=False, code=2011, message='opposite position open', raw=params)
            if existing:
                total = existing.hold_vol + vol
                existing.entry_price = (existing.entry_price * existing.hold_vol + price * vol) / total
                existing.hold_vol = total
            else:
                self._positions[symbol] = PaperPosition(
                    position_id=next(self._ids),
                    symbol=symbol,
                    position_type=position_type,
                    hold_vol=vol,
                    entry_price=price,
                    leverage=as_int(params.get('leverage')) or 1,
                )
        elif side in (CLOSE_LONG, CLOSE_SHORT):
            expected = LONG_POSITION if side == CLOSE_LONG else SHORT_POSITION
            existing = self._positions.get(symbol)
            if existing is None or existing.position_type != expected:
                return OrderAck(success=False, code=2009, message='position does not exist', raw=params)
            closed = min(vol, existing.hold_vol)
            direction = 1.0 if expected == LONG_POSITION else -1.0
            pnl = (price - existing.entry_price) * closed * contract.contract_size * direction
            self._record_pnl(pnl)
            existing.hold_vol -= closed
            if existing.hold_vol <= 0:
                self._positions.pop(symbol, None)
        else:
            return OrderAck(success=False, code=600, message=f'unsupported side {side}', raw=params)

        self._record_pnl(-fee)
        order_id = next(self._ids)
        self._orders[order_id] = OrderDetail(order_id=order_id, fee=fee, raw=dict(params))
        logger.info("Paper order %s side=%s vol=%s price=%s fee=%.6f", order_id, side, vol, price, fee)
        return OrderAck(success=True, order_id=order_id, code=0, raw={'data': order_id})

    async def get_open_positions(self, symbol: Optional[str] = None) -> List[VenuePosition]:
        return [
            VenuePosition(
                symbol=pos.symbol,
                position_type=pos.position_type,
                hold_vol=pos.hold_vol,
                leverage=pos.leverage,
                position_id=pos.position_id,
                open_avg_price=pos.entry_price,
            )
            for pos in self._positions.values()
            if symbol is None or pos.symbol == symbol
        ]

    async def get_contract_detail(self, symbol: str) -> ContractDetail:
        if self.contract is not None:
            return self.contract
        return ContractDetail(symbol=symbol)

    async def get_order_details(self, order_id: int, symbol: Optional[str] = None) -> OrderDetail:
        detail = self._orders.get(order_id)
        if detail is None:
            raise KeyError(f"unknown paper order {order_id}")
        return detail

    async def get_available_balance(self, currency: str = 'USDT') -> Optional[float]:
        return self._balance

    async def close(self) -> None:
        return None

    def _record_pnl(self, pnl: float) -> None:
        if not pnl:
            return
        self._balance += pnl
        metrics.record_pnl(pnl)
        metrics.update_equity(self._balance)
