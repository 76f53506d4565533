import asyncio
import sys
from decimal import Decimal

sys.path.insert(0, '.')

from analytics.average import Tick
from orchestration.order_lock import LockState
from strategy.orders import Order, OrderSide, OrderStatus
from strategy.transports.bitfinex import Balances
from tests.trading_fixtures import FakeExchange, build_system, failing, order


NOW = 1_700_000_000.0


def _tick(price, volume=1, ts=NOW):
    return Tick.create(Decimal(str(price)), Decimal(str(volume)), ts)


def test_buy_spends_full_quote_balance_at_average():
    async def _run():
        system, exchange = build_system(clock=lambda: NOW)
        system.state.balance_quote = Decimal('50')
        system.state.balance_base = Decimal('0')

        await system.handle_tick(_tick(40))
        await system.wait_for_submissions()

        assert len(exchange.placed) == 1
        request = exchange.placed[0]
        assert request.side is OrderSide.BUY
        assert request.price == Decimal('40')
        assert request.quote_value == Decimal('50')
        assert request.amount == Decimal('1.25')
        assert system.state.active_buy is not None
        assert system.state.active_buy.id == '101'
        assert system.order_lock.state is LockState.IDLE
        assert system.trader.thresholds.resistance_zone == Decimal('40.2')

    asyncio.run(_run())


def test_buy_requires_min_trade_amount():
    async def _run():
        system, exchange = build_system(clock=lambda: NOW)
        system.state.balance_quote = Decimal('0.3')

        await system.handle_tick(_tick(40))
        await system.wait_for_submissions()

        assert exchange.placed == []

    asyncio.run(_run())


def test_replace_references_resting_order_id():
    async def _run():
        system, exchange = build_system(clock=lambda: NOW)
        system.state.balance_quote = Decimal('0')
        system.state.active_buy = order('buy', '39', '1', order_id='77')

        await system.handle_tick(_tick(40))
        await system.wait_for_submissions()

        assert len(exchange.replaced) == 1
        order_id, request = exchange.replaced[0]
        assert order_id == '77'
        assert request.price == Decimal('40')
        # keeps the resting order's quote value
        assert request.amount == Decimal('0.975')
        assert system.trader.thresholds.highest_support_zone == Decimal('40')
        assert system.state.active_buy.id == '101'
        assert system.order_lock.state is LockState.IDLE

    asyncio.run(_run())


def test_replace_skipped_when_price_not_better():
    async def _run():
        system, exchange = build_system(clock=lambda: NOW)
        system.state.active_buy = order('buy', '40', '1', order_id='77')

        await system.handle_tick(_tick(40))
        await system.wait_for_submissions()

        assert exchange.replaced == []
        assert exchange.placed == []

    asyncio.run(_run())


def test_executed_buy_sets_last_buy_and_resistance():
    async def _run():
        exchange = FakeExchange(balances=Balances(base=Decimal('1'), quote=Decimal('0')))
        system, _ = build_system(exchange=exchange, clock=lambda: NOW)
        system.state.active_buy = order('buy', '100', '1', order_id='5')
        system.trader.record_support(Decimal('100'))

        filled = order('buy', '100', '1', status=OrderStatus.EXECUTED, order_id='5')
        await system.handle_order_update(filled)

        assert system.state.active_buy is None
        assert system.state.active_sell is None
        assert system.state.last_buy == filled
        assert system.trader.thresholds.resistance_zone == Decimal('100.5')
        assert system.trader.thresholds.highest_support_zone == Decimal('0')
        assert system.state.balance_base == Decimal('1')
        assert exchange.calls['get_balances'] == 1
        assert system.persister.order_updates == [filled]

    asyncio.run(_run())


def test_lock_released_after_failed_submission():
    async def _run():
        system, exchange = build_system(clock=lambda: NOW)
        exchange.failures['place_order'] = failing('insufficient funds')
        system.state.balance_quote = Decimal('50')

        await system.handle_tick(_tick(40))
        assert system.order_lock.state is LockState.SUBMITTING
        await system.wait_for_submissions()

        assert system.order_lock.state is LockState.IDLE
        assert system.state.active_buy is None

    asyncio.run(_run())


def test_lock_force_released_on_submission_timeout():
    async def _run():
        system, exchange = build_system(clock=lambda: NOW, execution={'submission_timeout_s': 0.05})
        exchange.hang['place_order'] = asyncio.Event()
        system.state.balance_quote = Decimal('50')

        await system.handle_tick(_tick(40))
        await system.wait_for_submissions()

        assert system.order_lock.state is LockState.IDLE
        assert system.state.active_buy is None

    asyncio.run(_run())


def test_in_flight_submission_suppresses_decisions_but_not_average():
    async def _run():
        system, exchange = build_system(clock=lambda: NOW)
        system.state.balance_quote = Decimal('50')
        assert system.order_lock.try_acquire('sell')

        await system.handle_tick(_tick(40))
        await system.handle_tick(_tick(41))
        await system.wait_for_submissions()

        assert exchange.placed == []
        assert system.trader.average.trades_in_average() == 2
        assert system.trader.current_average == Decimal('40.5')

    asyncio.run(_run())


def test_one_active_order_blocks_buy():
    async def _run():
        system, exchange = build_system(clock=lambda: NOW)
        system.state.balance_quote = Decimal('50')
        system.state.active_sell = order('sell', '45', '1', order_id='9')

        await system.handle_tick(_tick(40))
        await system.wait_for_submissions()

        assert exchange.placed == []

    asyncio.run(_run())


def test_stop_loss_sell_submitted_for_position():
    async def _run():
        system, exchange = build_system(clock=lambda: NOW)
        system.state.balance_base = Decimal('1')
        system.state.balance_quote = Decimal('0')
        system.state.last_buy = order('buy', '100', '1', status=OrderStatus.EXECUTED, order_id='1')

        await system.handle_tick(_tick(97))
        await system.wait_for_submissions()

        assert len(exchange.placed) == 1
        sell = exchange.placed[0]
        assert sell.side is OrderSide.SELL
        assert sell.amount == Decimal('1')
        assert sell.price == Decimal('96.9')
        assert sell.type == 'exchange fill-or-kill'
        assert system.state.active_sell is not None

    asyncio.run(_run())


def test_failed_sell_clears_pending_flag():
    async def _run():
        system, exchange = build_system(clock=lambda: NOW)
        exchange.failures['place_order'] = failing()
        system.state.balance_base = Decimal('1')
        system.state.last_buy = order('buy', '100', '1', status=OrderStatus.EXECUTED, order_id='1')

        await system.handle_tick(_tick(97))
        assert system.trader.sell_pending
        await system.wait_for_submissions()

        assert not system.trader.sell_pending
        assert system.order_lock.state is LockState.IDLE

    asyncio.run(_run())


def test_sell_acked_as_executed_refreshes_balances_before_next_tick():
    async def _run():
        exchange = FakeExchange(balances=Balances(base=Decimal('0'), quote=Decimal('97')))
        exchange.ack_status = OrderStatus.EXECUTED
        system, _ = build_system(exchange=exchange, clock=lambda: NOW)
        system.state.balance_base = Decimal('1')
        system.state.balance_quote = Decimal('0')
        system.state.last_buy = order('buy', '100', '1', status=OrderStatus.EXECUTED, order_id='1')

        await system.handle_tick(_tick(97))
        await system.wait_for_submissions()

        assert exchange.calls['get_balances'] == 1
        assert system.state.balance_base == Decimal('0')
        assert system.state.active_sell is None
        assert system.state.last_sell is not None

        await system.handle_tick(_tick(97))
        await system.wait_for_submissions()

        sells = [o for o in exchange.placed if o.side is OrderSide.SELL]
        assert len(sells) == 1

    asyncio.run(_run())


def test_buy_acked_as_executed_does_not_buy_again():
    async def _run():
        exchange = FakeExchange(balances=Balances(base=Decimal('1.25'), quote=Decimal('0')))
        exchange.ack_status = OrderStatus.EXECUTED
        system, _ = build_system(exchange=exchange, clock=lambda: NOW)
        system.state.balance_quote = Decimal('50')
        system.state.balance_base = Decimal('0')

        await system.handle_tick(_tick(40))
        await system.wait_for_submissions()
        await system.handle_tick(_tick(40))
        await system.wait_for_submissions()

        assert len(exchange.placed) == 1
        assert system.state.balance_quote == Decimal('0')
        assert system.state.last_buy is not None
        assert system.order_lock.state is LockState.IDLE

    asyncio.run(_run())


def test_replace_bounded_by_highest_submitted_support():
    async def _run():
        system, exchange = build_system(clock=lambda: NOW)
        system.state.balance_quote = Decimal('0')
        system.state.active_buy = order('buy', '39', '1', order_id='77')
        system.trader.thresholds.highest_support_zone = Decimal('41')

        await system.handle_tick(_tick(40))
        await system.wait_for_submissions()
        assert exchange.replaced == []

        await system.handle_tick(_tick(45, volume=10))
        await system.wait_for_submissions()

        assert len(exchange.replaced) == 1
        assert exchange.replaced[0][1].price > Decimal('41')

    asyncio.run(_run())


def test_cancelled_sell_clears_active_slot_and_pending_flag():
    async def _run():
        system, _ = build_system(clock=lambda: NOW)
        resting = order('sell', '101', '1', order_id='8')
        system.state.active_sell = resting
        system.trader.active_data.sell = resting

        await system.handle_order_update(order('sell', '101', '1', status=OrderStatus.CANCELLED, order_id='8'))

        assert system.state.active_sell is None
        assert not system.trader.sell_pending

    asyncio.run(_run())


def test_order_update_without_side_is_dropped():
    async def _run():
        system, exchange = build_system(clock=lambda: NOW)
        bad = Order(side=None, price=Decimal('1'), amount=Decimal('1'), status=OrderStatus.EXECUTED)

        await system.handle_order_update(bad)

        assert system.state.last_buy is None
        assert system.state.last_sell is None
        assert 'get_balances' not in exchange.calls

    asyncio.run(_run())


def test_balance_refresh_coalesces_concurrent_callers():
    async def _run():
        exchange = FakeExchange(balances=Balances(base=Decimal('2'), quote=Decimal('3')))
        system, _ = build_system(exchange=exchange, clock=lambda: NOW)
        gate = asyncio.Event()
        exchange.hang['get_balances'] = gate

        first = asyncio.create_task(system.refresh_balances())
        await asyncio.sleep(0)
        second = await system.refresh_balances()
        gate.set()
        assert await first is True

        assert second is False
        assert exchange.calls['get_balances'] == 1
        assert system.state.balance_base == Decimal('2')
        assert system.state.balance_quote == Decimal('3')

    asyncio.run(_run())


def test_events_are_consumed_in_receipt_order():
    async def _run():
        system, _ = build_system(clock=lambda: NOW)
        system.running = True
        consumer = asyncio.create_task(system.process_events())

        await system.enqueue_order(order('buy', '40', '1', order_id='3'))
        await system.enqueue_order(order('buy', '40', '1', status=OrderStatus.EXECUTED, order_id='3'))
        await system.enqueue_trade(_tick(40))
        await system.events.join()

        assert system.state.active_buy is None
        assert system.state.last_buy.id == '3'
        assert system.trader.average.trades_in_average() == 1

        system.running = False
        consumer.cancel()
        await asyncio.gather(consumer, return_exceptions=True)

    asyncio.run(_run())


def test_paper_mode_fills_resting_buy_on_crossing_tick():
    async def _run():
        from main import TradingSystem
        from tests.trading_fixtures import DummyPersister, FakeWSClient, make_config

        cfg = make_config(exchange={'paper': True, 'paper_balances': {'base': '0', 'quote': '100'}})
        system = TradingSystem(cfg, persister=DummyPersister(), ws_client=FakeWSClient(), clock=lambda: NOW)
        await system.refresh_balances()

        await system.handle_tick(_tick(50))
        await system.wait_for_submissions()
        assert system.state.active_buy is not None

        await system.handle_tick(_tick(49))
        await system.wait_for_submissions()

        assert system.state.active_buy is None
        assert system.state.last_buy is not None
        assert system.state.last_buy.price == Decimal('50')
        assert system.state.balance_quote == Decimal('0')
        assert system.state.balance_base == Decimal('1.998')

    asyncio.run(_run())
