import asyncio
import sys
import time

sys.path.insert(0, '.')

import pytest

from ingest.book_manager import LiquiditySnapshotStore
from ingest.mexc_rest import MexcAPIError
from strategy.execution import (
    ExecutionCoordinator,
    InvalidVolumeError,
    OrderIdMissingError,
    OrderRejectedError,
    RateLimitError,
    compute_order_volume,
)
from strategy.execution_types import ContractDetail, OrderAck, OrderDetail, VenuePosition
from strategy.signal_manager import ArbitrageStrategy, Position, StrategyConfig, StrategyRuntime
from tests.fakes import FakeTransport, deep_book, quote, snapshot

FAST = {
    'min_order_interval_ms': 0,
    'rate_limit_code': 510,
    'rate_limit_backoff_s': 0,
    'contract_cache_ttl_s': 60,
    'check_commission': True,
}


def _signal(runtime):
    book = LiquiditySnapshotStore()
    book.update_snapshot(deep_book(99.999, 100.001))
    strategy = ArbitrageStrategy(StrategyConfig(), book, runtime)
    runtime.enabled = True
    signal = strategy.process_spread(snapshot(quote(100.009, 100.011), quote(99.999, 100.001)))
    assert signal is not None
    return signal


def _coordinator(transport=None, runtime=None, settings=None, on_commission=None):
    return ExecutionCoordinator(
        'UNI_USDT',
        transport or FakeTransport(),
        runtime or StrategyRuntime(),
        settings=settings or FAST,
        margin_mode='isolated',
        leverage=10,
        on_commission=on_commission,
    )


def _venue_long(vol=1.0):
    return VenuePosition(symbol='UNI_USDT', position_type=1, hold_vol=vol, leverage=10, position_id=77)


def test_volume_rounding_to_contract_size_and_step():
    contract = ContractDetail(symbol='X', price_scale=3, vol_scale=0, contract_size=100, vol_unit=1)
    # 6058.48 coins at price 1.0
    assert compute_order_volume(6058.48, 1.0, contract) == 61


def test_volume_rounds_up_to_one_step_instead_of_zero():
    contract = ContractDetail(symbol='X', vol_scale=0, contract_size=10, vol_unit=1)
    assert compute_order_volume(1.0, 1.0, contract) == 1


def test_volume_rounding_respects_decimal_scale():
    contract = ContractDetail(symbol='X', vol_scale=2, contract_size=1, vol_unit=0.01)
    assert compute_order_volume(100.0, 3.0, contract) == 33.33


def test_zero_volume_is_rejected_and_clears_signal():
    async def _run():
        runtime = StrategyRuntime()
        signal = _signal(runtime)
        coordinator = _coordinator(runtime=runtime)
        with pytest.raises(InvalidVolumeError):
            await coordinator.open_position(signal, volume_usd=0.0)
        assert runtime.signal is None
        assert runtime.position is None

    asyncio.run(_run())


def test_open_position_sends_market_order_and_records_position():
    async def _run():
        runtime = StrategyRuntime()
        signal = _signal(runtime)
        transport = FakeTransport()
        transport.ack = OrderAck(success=True, order_id=4242)
        coordinator = _coordinator(transport, runtime)

        position = await coordinator.open_position(signal)

        assert position.order_id == 4242
        assert position.side == 'long'
        assert position.entry_price == 100.001
        assert runtime.position is position
        assert runtime.signal is signal
        order = transport.orders[0]
        assert order['side'] == 1
        assert order['type'] == 5
        assert order['openType'] == 1
        assert order['leverage'] == 10
        assert order['vol'] == 1

    asyncio.run(_run())


def test_rate_limit_response_raises_and_clears_signal():
    async def _run():
        runtime = StrategyRuntime()
        signal = _signal(runtime)
        transport = FakeTransport()
        transport.ack = OrderAck(success=False, code=510, message='too frequent')
        coordinator = _coordinator(transport, runtime)
        with pytest.raises(RateLimitError):
            await coordinator.open_position(signal)
        assert runtime.signal is None
        assert len(transport.orders) == 1

    asyncio.run(_run())


def test_rate_limit_http_error_maps_to_rate_limit_error():
    async def _run():
        runtime = StrategyRuntime()
        signal = _signal(runtime)
        transport = FakeTransport()
        transport.submit_error = MexcAPIError(429, 510, 'slow down', '{}')
        coordinator = _coordinator(transport, runtime)
        with pytest.raises(RateLimitError):
            await coordinator.open_position(signal)

    asyncio.run(_run())


def test_venue_rejection_raises_order_rejected():
    async def _run():
        runtime = StrategyRuntime()
        signal = _signal(runtime)
        transport = FakeTransport()
        transport.ack = OrderAck(success=False, code=2005, message='balance insufficient')
        coordinator = _coordinator(transport, runtime)
        with pytest.raises(OrderRejectedError) as info:
            await coordinator.open_position(signal)
        assert info.value.code == 2005
        assert runtime.signal is None

    asyncio.run(_run())


def test_missing_order_id_is_fatal_and_leaves_position_unset():
    async def _run():
        runtime = StrategyRuntime()
        signal = _signal(runtime)
        transport = FakeTransport()
        transport.ack = OrderAck(success=True, order_id=None, raw={'success': True})
        coordinator = _coordinator(transport, runtime)
        with pytest.raises(OrderIdMissingError):
            await coordinator.open_position(signal)
        assert runtime.position is None
        assert runtime.signal is None

        transport.positions = [_venue_long()]
        found = await coordinator.reconcile_after_failed_open()
        assert found is not None
        assert runtime.position is None

    asyncio.run(_run())


def test_orders_are_spaced_by_min_interval():
    async def _run():
        transport = FakeTransport()
        settings = dict(FAST, min_order_interval_ms=200)
        runtime = StrategyRuntime()
        coordinator = _coordinator(transport, runtime, settings=settings)
        started = time.monotonic()
        await coordinator._submit({'n': 1}, 'open')
        await coordinator._submit({'n': 2}, 'open')
        elapsed = time.monotonic() - started
        assert elapsed >= 0.19

    asyncio.run(_run())


def test_contract_detail_is_cached():
    async def _run():
        transport = FakeTransport()
        coordinator = _coordinator(transport)
        await coordinator.get_contract()
        await coordinator.get_contract()
        assert transport.contract_calls == 1
        coordinator.metadata.invalidate()
        await coordinator.get_contract()
        assert transport.contract_calls == 2

    asyncio.run(_run())


def _open_runtime():
    runtime = StrategyRuntime(enabled=True)
    signal = _signal(runtime)
    runtime.position = Position(order_id=1, side='long', entry_price=100.001, volume_usd=100.0)
    return runtime, signal


def test_close_uses_venue_volume_and_reduce_only():
    async def _run():
        runtime, _ = _open_runtime()
        transport = FakeTransport()
        transport.positions = [_venue_long(vol=3.0)]
        transport.ack = OrderAck(success=True, order_id=9001)
        coordinator = _coordinator(transport, runtime)
        spread = snapshot(quote(99.998, 100.000), quote(99.997, 100.001))

        closed = await coordinator.close_position(spread, 'test')
        await coordinator.wait_background()

        assert closed
        order = transport.orders[0]
        assert order['side'] == 4
        assert order['vol'] == 3
        assert order['price'] == 99.997
        assert order['positionId'] == 77
        assert order['reduceOnly'] is True
        assert runtime.position is None
        assert runtime.signal is None
        assert runtime.closing is False
        assert runtime.last_close_ts is not None
        assert transport.order_detail_calls == [9001]

    asyncio.run(_run())


def test_concurrent_close_submits_exactly_one_order():
    async def _run():
        runtime, _ = _open_runtime()
        transport = FakeTransport()
        transport.positions = [_venue_long()]
        transport.submit_delay = 0.05
        coordinator = _coordinator(transport, runtime)
        spread = snapshot(quote(99.998, 100.000), quote(99.999, 100.001))

        results = await asyncio.gather(
            coordinator.close_position(spread),
            coordinator.close_position(spread),
        )
        await coordinator.wait_background()

        assert sorted(results) == [False, True]
        assert len(transport.orders) == 1
        assert runtime.closing is False

    asyncio.run(_run())


def test_close_with_no_venue_position_clears_without_ordering():
    async def _run():
        runtime, _ = _open_runtime()
        transport = FakeTransport()
        transport.positions = []
        coordinator = _coordinator(transport, runtime)
        spread = snapshot(quote(99.998, 100.000), quote(99.999, 100.001))

        closed = await coordinator.close_position(spread)

        assert closed is False
        assert transport.orders == []
        assert runtime.position is None
        assert runtime.signal is None
        assert runtime.closing is False

    asyncio.run(_run())


def test_failed_close_with_position_still_open_keeps_state():
    async def _run():
        runtime, _ = _open_runtime()
        transport = FakeTransport()
        transport.positions = [_venue_long()]
        transport.ack = OrderAck(success=False, code=3000, message='busy')
        coordinator = _coordinator(transport, runtime)
        spread = snapshot(quote(99.998, 100.000), quote(99.999, 100.001))

        with pytest.raises(OrderRejectedError):
            await coordinator.close_position(spread)

        assert runtime.position is not None
        assert runtime.closing is False
        assert transport.position_queries == 2

    asyncio.run(_run())


def test_failed_close_with_position_gone_clears_state():
    async def _run():
        runtime, _ = _open_runtime()
        transport = FakeTransport()
        transport.positions = [_venue_long()]
        transport.positions_after_submit = []
        transport.submit_error = MexcAPIError(500, None, 'gateway', '')
        coordinator = _coordinator(transport, runtime)
        spread = snapshot(quote(99.998, 100.000), quote(99.999, 100.001))

        with pytest.raises(OrderRejectedError):
            await coordinator.close_position(spread)

        assert runtime.position is None
        assert runtime.closing is False

    asyncio.run(_run())


def test_commission_triggers_callback():
    async def _run():
        runtime, _ = _open_runtime()
        transport = FakeTransport()
        transport.positions = [_venue_long()]
        transport.order_detail = OrderDetail(order_id=1001, fee=0.02)
        tripped = []

        async def on_commission(order_id, fee):
            tripped.append((order_id, fee))

        coordinator = _coordinator(transport, runtime, on_commission=on_commission)
        spread = snapshot(quote(99.998, 100.000), quote(99.999, 100.001))
        await coordinator.close_position(spread)
        await coordinator.wait_background()

        assert tripped == [(1001, 0.02)]
        assert runtime.awaiting_commission is False

    asyncio.run(_run())


def test_commission_check_errors_never_trip_the_breaker():
    async def _run():
        runtime, _ = _open_runtime()
        transport = FakeTransport()
        transport.positions = [_venue_long()]
        transport.order_detail_error = MexcAPIError(500, None, 'down', '')
        tripped = []

        async def on_commission(order_id, fee):
            tripped.append(order_id)

        coordinator = _coordinator(transport, runtime, on_commission=on_commission)
        spread = snapshot(quote(99.998, 100.000), quote(99.999, 100.001))
        assert await coordinator.close_position(spread)
        await coordinator.wait_background()

        assert tripped == []
        assert runtime.awaiting_commission is False

    asyncio.run(_run())
