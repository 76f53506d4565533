import json
import sys

sys.path.insert(0, '.')

from monitoring.order_auditor import OrderAuditor
from strategy.orders import OrderStatus
from tests.trading_fixtures import order


def test_order_auditor_writes_jsonl(tmp_path):
    path = tmp_path / 'audit.jsonl'
    auditor = OrderAuditor(str(path), ack_budget_ms=1)
    request = order('buy', '40', '1.25', status=OrderStatus.NEW)

    auditor.record_submission('buy', request)
    auditor.pending['buy'] -= 10
    auditor.record_result('buy', order('buy', '40', '1.25', order_id='9'))
    auditor.record_update(order('buy', '40', '1.25', status=OrderStatus.EXECUTED, order_id='9'))

    rows = [json.loads(line) for line in path.read_text().splitlines()]
    assert [r['event'] for r in rows] == ['submitted', 'acknowledged', 'update']
    assert rows[1]['ack_latency_s'] >= 10
    assert rows[2]['order']['status'] == 'EXECUTED'
    assert rows[0]['order']['amount'] == '1.25'


def test_order_auditor_records_rejections(tmp_path):
    path = tmp_path / 'audit.jsonl'
    auditor = OrderAuditor(str(path))
    auditor.record_result('sell', None, 'timeout')
    row = json.loads(path.read_text())
    assert row['event'] == 'rejected'
    assert row['error'] == 'timeout'
    assert row['ack_latency_s'] is None


def test_disabled_auditor_writes_nothing(tmp_path):
    auditor = OrderAuditor(None)
    auditor.record_update(order('sell', '1', '1'))
    assert list(tmp_path.iterdir()) == []
