import asyncio
from typing import Any, Dict, List, Optional

from ingest.mexc_rest import MexcAPIError, MexcRESTClient

from strategy.execution_types import (
    ContractDetail,
    OrderAck,
    OrderDetail,
    VenuePosition,
    parse_available_balance,
    parse_contract_detail,
    parse_order_ack,
    parse_order_detail,
    parse_positions,
)


__all__ = ["MexcTransport", "MexcAPIError"]


class MexcTransport:
    """Thin adapter around the MEXC contract REST API returning canonical types."""

    def __init__(self, rest: Optional[MexcRESTClient] = None) -> None:
        self._rest = rest
        self._lock = asyncio.Lock()

    def _client(self) -> MexcRESTClient:
        if self._rest is None:
            self._rest = MexcRESTClient()
        return self._rest

    async def submit_order(self, params: Dict[str, Any]) -> OrderAck:
        data = await self._client().post("/api/v1/private/order/submit", body=params, signed=True)
        return parse_order_ack(data)

    async def get_open_positions(self, symbol: Optional[str] = None) -> List[VenuePosition]:
        params = {"symbol": symbol} if symbol else None
        data = await self._client().get(
            "/api/v1/private/position/open_positions",
            params=params,
            signed=True,
        )
        return parse_positions(data, symbol)

    async def get_contract_detail(self, symbol: str) -> ContractDetail:
        data = await self._client().get("/api/v1/contract/detail", params={"symbol": symbol})
        return parse_contract_detail(data, symbol)

    async def get_order_details(self, order_id: int, symbol: Optional[str] = None) -> OrderDetail:
        data = await self._client().get(f"/api/v1/private/order/get/{order_id}", signed=True)
        return parse_order_detail(data)

    async def get_available_balance(self, currency: str = "USDT") -> Optional[float]:
        data = await self._client().get(f"/api/v1/private/account/asset/{currency}", signed=True)
        return parse_available_balance(data)

    async def close(self) -> None:
        async with self._lock:
            if self._rest:
                try:
                    await self._rest.close()
                finally:
                    self._rest = None
