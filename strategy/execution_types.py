"""
Canonical shapes for execution-venue responses.

The venue wraps the same payload in different envelopes depending on the
endpoint and API version (bare value, ``{"data": ...}``, ``{"data": {"data":
...}}``). Everything is decoded here, at the transport boundary, so the
execution coordinator only ever sees these dataclasses.
"""
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ingest.market_types import as_float, as_int

LONG_POSITION = 1
SHORT_POSITION = 2

_MAX_NESTING = 3


@dataclass
class OrderAck:
    success: bool
    order_id: Optional[int] = None
    code: Optional[int] = None
    message: Optional[str] = None
    raw: Any = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'order_id': self.order_id,
            'code': self.code,
            'message': self.message,
        }


@dataclass
class VenuePosition:
    symbol: str
    position_type: int
    hold_vol: float
    leverage: Optional[int] = None
    position_id: Optional[int] = None
    open_avg_price: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def side(self) -> str:
        return 'long' if self.position_type == LONG_POSITION else 'short'

    def as_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'side': self.side,
            'hold_vol': self.hold_vol,
            'leverage': self.leverage,
            'position_id': self.position_id,
            'open_avg_price': self.open_avg_price,
        }


@dataclass
class ContractDetail:
    symbol: str
    price_scale: int = 3
    vol_scale: int = 0
    contract_size: float = 1.0
    vol_unit: float = 0.0
    price_unit: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def tick_size(self) -> float:
        return round(10 ** -self.price_scale, 12)

    def as_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'price_scale': self.price_scale,
            'vol_scale': self.vol_scale,
            'contract_size': self.contract_size,
            'vol_unit': self.vol_unit,
            'price_unit': self.price_unit,
            'tick_size': self.tick_size,
        }


@dataclass
class OrderDetail:
    order_id: Optional[int]
    fee: float = 0.0
    raw: Any = None


def unwrap(payload: Any, depth: int = 0) -> Any:
    """Strip ``data`` envelopes until a non-envelope value is reached."""
    while isinstance(payload, dict) and 'data' in payload and depth < _MAX_NESTING:
        payload = payload['data']
        depth += 1
    return payload


def extract_order_id(node: Any, depth: int = 0) -> Optional[int]:
    if depth > _MAX_NESTING or node is None or isinstance(node, bool):
        return None
    if isinstance(node, int):
        return node
    if isinstance(node, float):
        return int(node) if math.isfinite(node) and node.is_integer() else None
    if isinstance(node, str):
        text = node.strip()
        return int(text) if text.isdigit() else None
    if isinstance(node, dict):
        for key in ('data', 'orderId', 'id'):
            if key in node:
                found = extract_order_id(node[key], depth + 1)
                if found is not None:
                    return found
    return None


def parse_order_ack(payload: Any) -> OrderAck:
    if isinstance(payload, dict) and payload.get('success') is False:
        return OrderAck(
            success=False,
            code=as_int(payload.get('code')),
            message=payload.get('message') or payload.get('msg'),
            raw=payload,
        )
    code = as_int(payload.get('code')) if isinstance(payload, dict) else None
    return OrderAck(success=True, order_id=extract_order_id(payload), code=code, raw=payload)


def parse_positions(payload: Any, symbol: Optional[str] = None) -> List[VenuePosition]:
    items = unwrap(payload)
    if isinstance(items, dict):
        items = [items]
    if not isinstance(items, list):
        return []
    positions: List[VenuePosition] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        if symbol and item.get('symbol') != symbol:
            continue
        positions.append(
            VenuePosition(
                symbol=item.get('symbol', ''),
                position_type=as_int(item.get('positionType')) or LONG_POSITION,
                hold_vol=as_float(item.get('holdVol')) or 0.0,
                leverage=as_int(item.get('leverage')),
                position_id=as_int(item.get('positionId')),
                open_avg_price=as_float(item.get('openAvgPrice') or item.get('holdAvgPrice')),
                raw=item,
            )
        )
    return positions


def parse_contract_detail(payload: Any, symbol: str) -> ContractDetail:
    data = unwrap(payload)
    if isinstance(data, list):
        match = next((item for item in data if isinstance(item, dict) and item.get('symbol') == symbol), None)
        data = match
    if not isinstance(data, dict):
        return ContractDetail(symbol=symbol)
    price_scale = as_int(data.get('priceScale'))
    vol_scale = as_int(data.get('volScale'))
    contract_size = as_float(data.get('contractSize'))
    return ContractDetail(
        symbol=data.get('symbol') or symbol,
        price_scale=3 if price_scale is None else price_scale,
        vol_scale=0 if vol_scale is None else vol_scale,
        contract_size=contract_size if contract_size and contract_size > 0 else 1.0,
        vol_unit=as_float(data.get('volUnit')) or 0.0,
        price_unit=as_float(data.get('priceUnit')),
        raw=data,
    )


def _deducted_fee_total(items: Any) -> float:
    if not isinstance(items, list):
        return 0.0
    total = 0.0
    for item in items:
        if isinstance(item, dict):
            total += as_float(item.get('fee') or item.get('amount')) or 0.0
    return total


def parse_order_detail(payload: Any) -> OrderDetail:
    data = unwrap(payload)
    if not isinstance(data, dict):
        return OrderDetail(order_id=None, fee=0.0, raw=payload)
    for key in ('fee', 'commission', 'feeAmount', 'totalFee', 'feeDeduct'):
        value = as_float(data.get(key))
        if value:
            fee = value
            break
    else:
        fee = _deducted_fee_total(data.get('deductFeeList'))
    return OrderDetail(order_id=as_int(data.get('orderId') or data.get('id')), fee=fee, raw=data)


def parse_available_balance(payload: Any) -> Optional[float]:
    data = unwrap(payload)
    if isinstance(data, list):
        data = next((item for item in data if isinstance(item, dict) and item.get('currency') == 'USDT'), None)
    if not isinstance(data, dict):
        return None
    return as_float(data.get('availableBalance'))
