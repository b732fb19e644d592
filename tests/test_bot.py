import asyncio
import sys
import time

sys.path.insert(0, '.')

from main import ArbitrageBot
from strategy.execution_types import OrderAck, OrderDetail, VenuePosition
from tests.fakes import FakeFeed, FakeTransport, deep_book, quote


class FeedPair:
    """Feed factory that keeps every pair it builds."""

    def __init__(self):
        self.built = []

    def __call__(self, symbol, reference_symbol):
        pair = (FakeFeed('binance'), FakeFeed('mexc'))
        self.built.append((symbol, reference_symbol, pair))
        return pair

    @property
    def a(self):
        return self.built[-1][2][0]

    @property
    def b(self):
        return self.built[-1][2][1]


def _bot(transport=None):
    feeds = FeedPair()
    bot = ArbitrageBot(transport=transport or FakeTransport(), feed_factory=feeds)
    bot.execution.min_order_interval = 0
    bot.execution.rate_limit_backoff = 0
    return bot, feeds


async def _settle(bot):
    for _ in range(3):
        await asyncio.sleep(0.01)
        if bot._tasks:
            await asyncio.gather(*list(bot._tasks), return_exceptions=True)
        await bot.execution.wait_background()


def _push_long_opportunity(feeds):
    feeds.b.push_depth(deep_book(99.999, 100.001))
    feeds.b.push_quote(quote(99.999, 100.001))
    feeds.a.push_quote(quote(100.009, 100.011))


def _venue_long():
    return VenuePosition(symbol='UNI_USDT', position_type=1, hold_vol=1.0, leverage=10, position_id=5)


def test_start_and_stop_are_idempotent():
    async def _run():
        bot, feeds = _bot()
        assert await bot.start()
        assert not await bot.start()
        assert len(feeds.built) == 1
        assert bot.get_status()['feed_a_connected']

        assert await bot.stop()
        assert not await bot.stop()
        assert feeds.a.disconnect_calls == 1
        assert feeds.b.disconnect_calls == 1
        assert not bot.get_status()['running']
        await bot.shutdown()

    asyncio.run(_run())


def test_opportunity_opens_and_reference_move_closes():
    async def _run():
        transport = FakeTransport()
        bot, feeds = _bot(transport)
        await bot.start()

        _push_long_opportunity(feeds)
        await _settle(bot)

        assert len(transport.orders) == 1
        assert transport.orders[0]['side'] == 1
        assert bot.runtime.position is not None
        assert bot.get_status()['state'] == 'position_open'

        transport.positions = [_venue_long()]
        feeds.a.push_quote(quote(99.998, 100.000))
        await _settle(bot)

        assert len(transport.orders) == 2
        assert transport.orders[1]['side'] == 4
        assert bot.runtime.position is None
        assert bot.running
        assert bot.get_last_close(0)['should_update']
        await bot.shutdown()

    asyncio.run(_run())


def test_commission_stops_bot_and_disconnects_feeds():
    async def _run():
        transport = FakeTransport()
        transport.order_detail = OrderDetail(order_id=1001, fee=0.05)
        bot, feeds = _bot(transport)
        await bot.start()
        _push_long_opportunity(feeds)
        await _settle(bot)

        transport.positions = [_venue_long()]
        feeds.a.push_quote(quote(99.998, 100.000))
        await _settle(bot)

        assert not bot.running
        assert bot.stop_reason == 'commission'
        assert not bot.runtime.enabled
        assert feeds.a.disconnect_calls == 1
        assert feeds.b.disconnect_calls == 1
        assert bot.runtime.position is None
        await bot.shutdown()

    asyncio.run(_run())


def test_rate_limit_blocks_new_entries():
    async def _run():
        transport = FakeTransport()
        transport.ack = OrderAck(success=False, code=510, message='too frequent')
        bot, feeds = _bot(transport)
        await bot.start()
        _push_long_opportunity(feeds)
        await _settle(bot)

        assert bot.runtime.signal is None
        assert bot.runtime.rate_limited_until > time.time()
        assert 'rate_limited' in bot.entry_block_reasons()

        transport.ack = OrderAck(success=True, order_id=7)
        feeds.a.push_quote(quote(100.009, 100.011))
        await _settle(bot)
        assert len(transport.orders) == 1
        assert bot.runtime.position is None
        await bot.shutdown()

    asyncio.run(_run())


def test_missing_order_id_leaves_bot_flat():
    async def _run():
        transport = FakeTransport()
        transport.ack = OrderAck(success=True, order_id=None, raw={'success': True})
        bot, feeds = _bot(transport)
        await bot.start()
        _push_long_opportunity(feeds)
        await _settle(bot)

        assert bot.runtime.position is None
        assert bot.runtime.signal is None
        assert transport.position_queries == 1
        await bot.shutdown()

    asyncio.run(_run())


def test_stop_after_close_waits_for_the_position():
    async def _run():
        transport = FakeTransport()
        bot, feeds = _bot(transport)
        await bot.start()
        _push_long_opportunity(feeds)
        await _settle(bot)

        result = await bot.request_stop_after_close()
        assert result == {'stopped': False, 'pending': True}
        assert bot.running

        transport.positions = [_venue_long()]
        feeds.a.push_quote(quote(99.998, 100.000))
        await _settle(bot)

        assert not bot.running
        assert bot.stop_reason == 'stop_after_close'
        await bot.shutdown()

    asyncio.run(_run())


def test_stop_after_close_without_position_stops_now():
    async def _run():
        bot, _ = _bot()
        await bot.start()
        result = await bot.request_stop_after_close()
        assert result == {'stopped': True, 'pending': False}
        assert not bot.running
        await bot.shutdown()

    asyncio.run(_run())


def test_symbol_change_requires_stopped_bot():
    async def _run():
        bot, feeds = _bot()
        await bot.start()
        try:
            bot.update_config({'symbol': 'BTC_USDT'})
        except ValueError:
            pass
        else:
            raise AssertionError("symbol change accepted while running")

        await bot.stop()
        data = bot.update_config({'symbol': 'BTC_USDT', 'position_size_usd': 50})
        assert data['symbol'] == 'BTC_USDT'
        assert data['position_size_usd'] == 50.0
        assert bot.reference_symbol == 'BTCUSDT'

        await bot.start()
        assert feeds.built[-1][:2] == ('BTC_USDT', 'BTCUSDT')
        await bot.shutdown()

    asyncio.run(_run())


def test_debug_state_reports_block_reasons():
    async def _run():
        bot, _ = _bot()
        state = bot.get_debug_state()
        assert not state['can_trade']
        assert 'disabled' in state['reasons']

        await bot.start()
        state = bot.get_debug_state()
        assert state['can_trade']
        assert state['reasons'] == []
        await bot.shutdown()

    asyncio.run(_run())
