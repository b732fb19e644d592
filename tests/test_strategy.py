import sys

sys.path.insert(0, '.')

import pytest

from ingest.book_manager import LiquiditySnapshotStore
from ingest.market_types import OrderBookSnapshot
from strategy.signal_manager import (
    ArbitrageStrategy,
    Position,
    SignalState,
    StrategyConfig,
    StrategyRuntime,
)
from tests.fakes import deep_book, quote, snapshot


def _strategy(book=None, **cfg):
    book = book or LiquiditySnapshotStore('UNI_USDT')
    runtime = StrategyRuntime(enabled=True)
    config = StrategyConfig(**{'min_tick_difference': 2.0, 'position_size_usd': 100.0,
                               'max_slippage_pct': 0.1, 'tick_size': 0.001, **cfg})
    return ArbitrageStrategy(config, book, runtime)


def _long_spread():
    # reference mid 100.010, execution mid 100.000, execution spread 2 ticks
    return snapshot(quote(100.009, 100.011), quote(99.999, 100.001))


def _short_spread():
    return snapshot(quote(99.989, 99.991), quote(99.999, 100.001))


def test_long_signal_emitted_with_sufficient_liquidity():
    book = LiquiditySnapshotStore()
    book.update_snapshot(deep_book(99.999, 100.001))
    strategy = _strategy(book)
    emitted = []
    strategy.add_listener(emitted.append)

    signal = strategy.process_spread(_long_spread())

    assert signal is not None
    assert signal.side == 'long'
    assert signal.can_execute
    assert signal.entry_price == 100.001
    assert signal.volume_usd == 100.0
    assert emitted == [signal]
    assert strategy.runtime.signal is signal
    assert strategy.runtime.state == SignalState.SIGNAL_PENDING


def test_short_signal_enters_at_execution_bid():
    book = LiquiditySnapshotStore()
    book.update_snapshot(deep_book(99.999, 100.001))
    strategy = _strategy(book)
    signal = strategy.process_spread(_short_spread())
    assert signal.side == 'short'
    assert signal.entry_price == 99.999


def test_below_min_tick_difference_is_rejected():
    book = LiquiditySnapshotStore()
    book.update_snapshot(deep_book(99.999, 100.001))
    strategy = _strategy(book, min_tick_difference=20)
    assert strategy.process_spread(_long_spread()) is None
    assert strategy.runtime.signal is None


def test_missing_book_is_a_silent_no_op():
    strategy = _strategy()
    assert strategy.process_spread(_long_spread()) is None


def test_wide_execution_spread_is_rejected():
    book = LiquiditySnapshotStore()
    book.update_snapshot(deep_book(99.996, 100.001))
    strategy = _strategy(book)
    wide = snapshot(quote(100.009, 100.011), quote(99.996, 100.001))
    assert strategy.process_spread(wide) is None


def test_thin_best_level_is_accepted_when_next_level_fills():
    book = LiquiditySnapshotStore()
    book.update_snapshot(OrderBookSnapshot(bids=[(99.999, 100.0)],
                                           asks=[(100.001, 0.7), (100.002, 100.0)]))
    strategy = _strategy(book)
    signal = strategy.process_spread(_long_spread())
    assert signal is not None
    assert signal.can_execute
    assert signal.estimate.volume_ratio == pytest.approx(1.0)


def test_walked_fill_below_strict_volume_ratio_is_rejected():
    book = LiquiditySnapshotStore()
    # 0.75 coins across both levels against ~1 coin needed
    book.update_snapshot(OrderBookSnapshot(bids=[(99.999, 100.0)],
                                           asks=[(100.001, 0.5), (100.002, 0.25)]))
    strategy = _strategy(book, max_slippage_pct=1.0)
    assert strategy.process_spread(_long_spread()) is None
    assert strategy.runtime.signal is None


def test_failing_signal_listener_is_contained():
    book = LiquiditySnapshotStore()
    book.update_snapshot(deep_book(99.999, 100.001, levels=1))
    strategy = _strategy(book, max_slippage_pct=0.0)
    emitted = []

    def boom(_):
        raise RuntimeError("listener bug")

    strategy.add_listener(boom)
    strategy.add_listener(emitted.append)
    signal = strategy.process_spread(_long_spread())
    assert signal is not None and signal.can_execute
    assert emitted == [signal]


def test_fresh_pending_signal_blocks_new_evaluation():
    book = LiquiditySnapshotStore()
    book.update_snapshot(deep_book(99.999, 100.001))
    strategy = _strategy(book)
    first = strategy.process_spread(_long_spread())
    assert strategy.process_spread(_long_spread()) is None
    assert strategy.runtime.signal is first


def test_stale_signal_is_discarded_and_reevaluated():
    book = LiquiditySnapshotStore()
    book.update_snapshot(deep_book(99.999, 100.001))
    strategy = _strategy(book)
    first = strategy.process_spread(_long_spread())
    first.created_at -= 31

    second = strategy.process_spread(_long_spread())
    assert second is not None
    assert second is not first
    assert strategy.runtime.signal is second


def test_stale_signal_without_new_opportunity_reverts_to_idle():
    book = LiquiditySnapshotStore()
    book.update_snapshot(deep_book(99.999, 100.001))
    strategy = _strategy(book)
    first = strategy.process_spread(_long_spread())
    first.created_at -= 31
    flat = snapshot(quote(99.999, 100.001), quote(99.999, 100.001))
    assert strategy.process_spread(flat) is None
    assert strategy.runtime.state == SignalState.IDLE


def test_disabled_strategy_does_nothing():
    book = LiquiditySnapshotStore()
    book.update_snapshot(deep_book(99.999, 100.001))
    strategy = _strategy(book)
    strategy.runtime.enabled = False
    assert strategy.process_spread(_long_spread()) is None


def _open_long(strategy):
    signal = strategy.process_spread(_long_spread())
    strategy.runtime.position = Position(order_id=1, side='long', entry_price=100.001, volume_usd=100.0)
    return signal


def test_exit_when_reference_drops_below_entry():
    book = LiquiditySnapshotStore()
    book.update_snapshot(deep_book(99.999, 100.001))
    strategy = _strategy(book)
    _open_long(strategy)
    # reference ask 100.000 is one tick under the 100.001 entry
    spread = snapshot(quote(99.998, 100.000), quote(99.999, 100.001))
    assert strategy.should_close_position(spread)
    assert strategy.exit_reason(spread) == 'reference_below_entry'


def test_exit_on_direction_reversal():
    book = LiquiditySnapshotStore()
    book.update_snapshot(deep_book(99.999, 100.001))
    strategy = _strategy(book)
    _open_long(strategy)
    spread = snapshot(quote(100.001, 100.011), quote(100.005, 100.009))
    assert spread.spread.direction == 'short'
    assert strategy.exit_reason(spread) == 'direction_reversed'


def test_exit_on_convergence_with_tight_execution_book():
    book = LiquiditySnapshotStore()
    book.update_snapshot(deep_book(99.999, 100.001))
    strategy = _strategy(book)
    _open_long(strategy)
    # execution venue caught up: one tick wide, bid above entry, venues level
    spread = snapshot(quote(100.004, 100.005), quote(100.004, 100.005))
    assert spread.spread.direction == 'none'
    assert strategy.exit_reason(spread) == 'converged'


def test_stays_open_while_spread_persists():
    book = LiquiditySnapshotStore()
    book.update_snapshot(deep_book(99.999, 100.001))
    strategy = _strategy(book)
    _open_long(strategy)
    assert not strategy.should_close_position(_long_spread())


def test_exit_requires_position_and_signal():
    strategy = _strategy()
    assert not strategy.should_close_position(_long_spread())


def test_process_spread_is_noop_with_open_position():
    book = LiquiditySnapshotStore()
    book.update_snapshot(deep_book(99.999, 100.001))
    strategy = _strategy(book)
    _open_long(strategy)
    assert strategy.process_spread(_long_spread()) is None


def test_config_merge_update():
    strategy = _strategy()
    updated = strategy.update_config(min_tick_difference=5, position_size_usd=250)
    assert updated.min_tick_difference == 5.0
    assert updated.position_size_usd == 250.0
    assert updated.max_slippage_pct == 0.1
    copy = strategy.get_config()
    copy.position_size_usd = 1.0
    assert strategy.config.position_size_usd == 250.0


def test_config_rejects_unknown_and_invalid_values():
    strategy = _strategy()
    with pytest.raises(ValueError):
        strategy.update_config(leverage=20)
    with pytest.raises(ValueError):
        strategy.update_config(tick_size=0)
    assert strategy.config.tick_size == 0.001
