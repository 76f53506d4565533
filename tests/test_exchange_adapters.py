import asyncio
import base64
import json
import sys
from decimal import Decimal

sys.path.insert(0, '.')

import pytest

from analytics.average import Tick
from ingest.bitfinex_rest import BitfinexRESTClient, TransportError
from strategy.orders import Order, OrderSide, OrderStatus
from strategy.simulators.paper import PaperExchange
from strategy.trader import Fees
from strategy.transports.bitfinex import BitfinexTransport


EXCHANGE_CFG = {
    'symbol': 'btcusd',
    'base_currency': 'btc',
    'quote_currency': 'usd',
    'wallet_type': 'exchange',
    'api_key': 'key',
    'api_secret': 'secret',
    'paper_balances': {'base': '0.5', 'quote': '100'},
}
DEFAULT_FEES = Fees(maker=Decimal('0.001'), taker=Decimal('0.002'))


class FakeREST:
    def __init__(self, responses):
        self.responses = responses
        self.requests = []

    async def post(self, path, params=None, signed=True):
        self.requests.append((path, params))
        response = self.responses[path]
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        return None


def _transport(responses):
    transport = BitfinexTransport(EXCHANGE_CFG)
    transport._rest = FakeREST(responses)
    return transport


def _request(side, price, amount):
    return Order.request(OrderSide(side), Decimal(price), Decimal(amount), symbol='btcusd')


def test_balances_pick_exchange_wallet():
    async def _run():
        transport = _transport({'/v1/balances': [
            {'type': 'trading', 'currency': 'btc', 'amount': '9', 'available': '9'},
            {'type': 'exchange', 'currency': 'btc', 'amount': '1', 'available': '0.75'},
            {'type': 'exchange', 'currency': 'usd', 'amount': '10', 'available': 'oops'},
        ]})
        balances = await transport.get_balances()
        assert balances.base == Decimal('0.75')
        # unparseable reads come back as None so callers keep the previous value
        assert balances.quote is None

    asyncio.run(_run())


def test_fees_converted_from_percent():
    async def _run():
        transport = _transport({'/v1/account_infos': [{'maker_fees': '0.1', 'taker_fees': '0.2', 'fees': []}]})
        fees = await transport.get_fees(DEFAULT_FEES)
        assert fees.maker == Decimal('0.001')
        assert fees.taker == Decimal('0.002')

    asyncio.run(_run())


def test_place_and_replace_send_wire_shape():
    async def _run():
        ack = {'id': 77, 'side': 'buy', 'price': '40', 'original_amount': '1.25', 'remaining_amount': '1.25',
               'is_live': True, 'symbol': 'btcusd'}
        transport = _transport({'/v1/order/new': ack, '/v1/order/cancel/replace': dict(ack, id=78)})

        placed = await transport.place_order(_request('buy', '40', '1.25'))
        replaced = await transport.replace_order('77', _request('buy', '40.5', '1.2'))

        assert placed.id == '77' and placed.status is OrderStatus.ACTIVE
        assert replaced.id == '78'
        path, params = transport._rest.requests[1]
        assert path == '/v1/order/cancel/replace'
        assert params['order_id'] == 77
        assert params['price'] == '40.5'
        assert params['amount'] == '1.2'

    asyncio.run(_run())


def test_unusable_ack_is_transport_error():
    async def _run():
        transport = _transport({'/v1/order/new': {'message': 'Invalid order'}})
        with pytest.raises(TransportError):
            await transport.place_order(_request('buy', '40', '1'))

    asyncio.run(_run())


def test_past_trades_sorted_newest_first():
    async def _run():
        transport = _transport({'/v1/mytrades': [
            {'price': '100', 'amount': '1', 'timestamp': '10', 'type': 'Buy', 'order_id': 1},
            {'price': '101', 'amount': '1', 'timestamp': '20', 'type': 'Sell', 'order_id': 2},
        ]})
        trades = await transport.get_past_trades('btcusd')
        assert [t.id for t in trades] == ['2', '1']
        assert trades[0].side is OrderSide.SELL

    asyncio.run(_run())


def test_open_orders_skip_other_pairs_and_garbage():
    async def _run():
        transport = _transport({'/v1/orders': [
            {'id': 1, 'symbol': 'ethusd', 'side': 'buy', 'price': '1', 'original_amount': '1', 'is_live': True},
            {'id': 2, 'symbol': 'btcusd', 'side': '?', 'price': '1', 'original_amount': '1'},
            {'id': 3, 'symbol': 'btcusd', 'side': 'sell', 'price': '2', 'original_amount': '1', 'is_live': True},
        ]})
        orders = await transport.get_open_orders()
        assert [o.id for o in orders] == ['3']

    asyncio.run(_run())


def test_signed_headers_carry_request_and_nonce():
    client = BitfinexRESTClient(EXCHANGE_CFG)
    headers = client._signed_headers('/v1/balances', {})
    payload = json.loads(base64.b64decode(headers['X-BFX-PAYLOAD']))
    assert headers['X-BFX-APIKEY'] == 'key'
    assert payload['request'] == '/v1/balances'
    assert int(client._nonce()) > int(payload['nonce'])
    assert len(headers['X-BFX-SIGNATURE']) == 96


def test_unsigned_client_refuses_private_calls():
    client = BitfinexRESTClient({'api_key': '', 'api_secret': ''})
    with pytest.raises(TransportError):
        client._signed_headers('/v1/balances', {})


def test_paper_exchange_fills_and_settles():
    async def _run():
        paper = PaperExchange(EXCHANGE_CFG, fees=DEFAULT_FEES)
        buy = await paper.place_order(_request('buy', '40', '2'))
        assert buy.status is OrderStatus.ACTIVE

        assert paper.match(Tick.create('40.1', '1', 1.0)) == []
        fills = paper.match(Tick.create('39.9', '1', 2.0))

        assert [f.id for f in fills] == [buy.id]
        assert fills[0].status is OrderStatus.EXECUTED
        balances = await paper.get_balances()
        assert balances.quote == Decimal('20')
        assert balances.base == Decimal('2.498')
        assert (await paper.get_past_trades())[0].id == buy.id

    asyncio.run(_run())


def test_paper_exchange_rejects_unfunded_orders():
    async def _run():
        paper = PaperExchange(EXCHANGE_CFG)
        with pytest.raises(TransportError):
            await paper.place_order(_request('sell', '40', '1'))
        resting = await paper.place_order(_request('buy', '40', '1'))
        with pytest.raises(TransportError):
            await paper.replace_order(resting.id, _request('buy', '50', '3'))
        assert resting.id in paper.orders

    asyncio.run(_run())
