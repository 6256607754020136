from __future__ import annotations

import unittest
from datetime import datetime
from decimal import Decimal
from unittest.mock import patch

from sqlalchemy import select

from reconciliation.errors import UpstreamError
from reconciliation.models import (
    ActivityLog,
    CashPayment,
    Inconsistency,
    InconsistencyType,
    Order,
    OrderLineItem,
    PaymentSource,
    PaymentState,
    QueueStatus,
    SyncQueueItem,
    WorkflowState,
)
from reconciliation.services.consistency_service import list_open_inconsistencies
from reconciliation.services.mock_platform_provider import MockPlatformProvider
from reconciliation.services.order_sync_service import (
    ORDER_CANCELLED,
    ORDER_CREATED,
    ORDER_PAID,
    ORDER_UPDATED,
    build_order_change_message,
    poll_for_missing_orders,
    process_next_item,
    resync_all_orders,
    resync_inconsistent_orders,
    run_worker,
    save_line_items,
    sync_cancelled_orders,
)
from reconciliation.services.platform_provider import RemoteLineItem, RemoteOrder
from reconciliation.services.sync_queue_service import dequeue_next, enqueue
from tests.db_support import make_session_factory


def _line_items(db, order_number: str) -> dict[tuple[str, str], int]:
    rows = db.execute(select(OrderLineItem).where(OrderLineItem.order_number == order_number)).scalars().all()
    return {(row.product_id, row.variant_id): row.quantity for row in rows}


def _order(db, order_number: str) -> Order:
    return db.execute(select(Order).where(Order.order_number == order_number)).scalar_one()


class SaveLineItemsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()

    def tearDown(self) -> None:
        self.db.close()

    def test_applying_the_same_list_twice_is_idempotent(self) -> None:
        items = [
            RemoteLineItem('A', 'S', 'Remera S', 1, Decimal('100')),
            RemoteLineItem('A', 'M', 'Remera M', 2, Decimal('100')),
        ]

        first = save_line_items(self.db, '1001', items)
        second = save_line_items(self.db, '1001', items)

        self.assertEqual(first.inserted, 2)
        self.assertEqual((second.inserted, second.updated, second.deleted), (0, 0, 0))
        self.assertEqual(_line_items(self.db, '1001'), {('A', 'S'): 1, ('A', 'M'): 2})

    def test_removed_items_are_deleted_and_changes_applied(self) -> None:
        save_line_items(
            self.db,
            '1001',
            [RemoteLineItem('A', '', 'Remera', 1, Decimal('100')), RemoteLineItem('B', '', 'Gorra', 1, Decimal('50'))],
        )

        result = save_line_items(self.db, '1001', [RemoteLineItem('A', '', 'Remera', 3, Decimal('100'))])

        self.assertEqual((result.updated, result.deleted), (1, 1))
        self.assertEqual(_line_items(self.db, '1001'), {('A', ''): 3})

    def test_empty_remote_list_keeps_local_copy(self) -> None:
        save_line_items(self.db, '1001', [RemoteLineItem('A', '', 'Remera', 1, Decimal('100'))])

        result = save_line_items(self.db, '1001', [])

        self.assertTrue(result.skipped)
        self.assertEqual(_line_items(self.db, '1001'), {('A', ''): 1})

    def test_repeated_remote_keys_are_merged(self) -> None:
        save_line_items(
            self.db,
            '1001',
            [RemoteLineItem('A', '', 'Remera', 1, Decimal('100')), RemoteLineItem('A', '', 'Remera', 2, Decimal('100'))],
        )
        self.assertEqual(_line_items(self.db, '1001'), {('A', ''): 3})

    def test_saving_resolves_open_inconsistencies(self) -> None:
        self.db.add(Inconsistency(order_number='1001', type=InconsistencyType.MISSING, detail={}))
        self.db.flush()

        result = save_line_items(self.db, '1001', [RemoteLineItem('A', '', 'Remera', 1, Decimal('100'))])

        self.assertEqual(result.resolved_inconsistencies, 1)
        self.assertEqual(list_open_inconsistencies(self.db, '1001'), [])

    def test_change_message_lists_each_change_and_new_total(self) -> None:
        previous = [
            RemoteLineItem('A', '', 'Remera', 2, Decimal('100')),
            RemoteLineItem('B', '', 'Gorra', 1, Decimal('50')),
            RemoteLineItem('C', '', 'Medias', 3, Decimal('10')),
        ]
        current = [
            RemoteLineItem('A', '', 'Remera', 1, Decimal('100')),
            RemoteLineItem('C', '', 'Medias', 5, Decimal('10')),
            RemoteLineItem('D', '', 'Buzo', 1, Decimal('300')),
        ]

        message = build_order_change_message(previous, current, Decimal('25500'))

        self.assertEqual(
            message.splitlines(),
            ['Gorra: removed -1', 'Remera: reduced -1', 'Medias: added +2', 'Buzo: added +1', 'New total: $25.500'],
        )


@patch('reconciliation.services.order_sync_service.send_order_created_message', return_value=True)
class QueueProcessingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        self.db = self.session_factory()
        self.client = MockPlatformProvider()

    def tearDown(self) -> None:
        self.db.close()

    def _process(self, item_type: str, remote_id: str, **payload) -> dict:
        enqueue(self.db, item_type=item_type, resource_id=remote_id, payload={'order_id': remote_id, **payload})
        self.db.commit()
        return process_next_item(self.db, self.client)

    def test_order_created_mirrors_order_and_notifies_for_webhooks(self, message_mock) -> None:
        result = self._process(ORDER_CREATED, '900001', source='webhook')

        self.assertTrue(result['success'])
        order = _order(self.db, '1001')
        self.assertEqual(order.declared_total, Decimal('25000'))
        self.assertEqual(_line_items(self.db, '1001'), {('P-100', 'V-1'): 2, ('P-200', ''): 1})
        message_mock.assert_called_once()

    def test_polled_orders_do_not_notify(self, message_mock) -> None:
        self._process(ORDER_CREATED, '900001', source='poll')
        message_mock.assert_not_called()

    def test_order_paid_twice_records_one_platform_payment(self, message_mock) -> None:
        self._process(ORDER_PAID, '900002')
        self._process(ORDER_PAID, '900002')

        payments = self.db.execute(
            select(CashPayment).where(CashPayment.source == PaymentSource.PLATFORM)
        ).scalars().all()
        self.assertEqual(len(payments), 1)
        order = _order(self.db, '1002')
        self.assertEqual(order.payment_state, PaymentState.FULLY_CONFIRMED)
        self.assertEqual(order.workflow_state, WorkflowState.READY_TO_PRINT)

    def test_order_updated_replaces_items_and_declared_total(self, message_mock) -> None:
        self._process(ORDER_CREATED, '900001')
        self.client.add_order(
            RemoteOrder(
                remote_id='900001',
                order_number='1001',
                total=Decimal('32500'),
                line_items=[
                    RemoteLineItem('P-100', 'V-1', 'Remera basica', 3, Decimal('7500')),
                    RemoteLineItem('P-200', '', 'Gorra', 1, Decimal('10000')),
                ],
            )
        )

        result = self._process(ORDER_UPDATED, '900001')

        self.assertTrue(result['success'])
        order = _order(self.db, '1001')
        self.assertEqual(order.declared_total, Decimal('32500'))
        self.assertEqual(order.balance, Decimal('32500'))
        self.assertEqual(_line_items(self.db, '1001')[('P-100', 'V-1')], 3)
        self.assertEqual(list_open_inconsistencies(self.db, '1001'), [])
        summary = self.db.execute(
            select(ActivityLog.meta).where(ActivityLog.action == 'order_updated')
        ).scalar_one()['summary']
        self.assertIn('Remera basica: added +1', summary)

    def test_update_for_untracked_order_is_ignored(self, message_mock) -> None:
        result = self._process(ORDER_UPDATED, '900001')

        self.assertTrue(result['success'])
        self.assertIsNone(self.db.execute(select(Order)).scalar_one_or_none())

    def test_order_cancelled_is_terminal(self, message_mock) -> None:
        self._process(ORDER_CREATED, '900001')
        self._process(ORDER_CANCELLED, '900001')

        self.assertEqual(_order(self.db, '1001').workflow_state, WorkflowState.CANCELLED)

    def test_failed_item_is_rescheduled(self, message_mock) -> None:
        result = self._process(ORDER_CREATED, '404404')

        self.assertFalse(result['success'])
        item = self.db.execute(select(SyncQueueItem)).scalar_one()
        self.assertEqual(item.status, QueueStatus.PENDING)
        self.assertEqual(item.attempts, 1)
        self.assertIn('404404', item.last_error)
        self.assertIsNotNone(item.next_retry_at)

    def test_poll_queues_orders_missing_locally(self, message_mock) -> None:
        self._process(ORDER_CREATED, '900001')

        result = poll_for_missing_orders(self.db, self.client)
        self.db.commit()

        self.assertEqual(result, {'checked': 2, 'queued': 1})
        queued = self.db.execute(
            select(SyncQueueItem).where(SyncQueueItem.status == QueueStatus.PENDING)
        ).scalar_one()
        self.assertEqual((queued.type, queued.resource_id), (ORDER_PAID, '900002'))
        self.assertEqual(queued.payload['source'], 'poll')

    def test_worker_drains_queue_up_to_limit(self, message_mock) -> None:
        enqueue(self.db, item_type=ORDER_CREATED, resource_id='900001', payload={'order_id': '900001'})
        enqueue(self.db, item_type=ORDER_PAID, resource_id='900002', payload={'order_id': '900002'})
        self.db.commit()
        pauses = []

        result = run_worker(self.session_factory, self.client, max_items=1, delay_seconds=0.5, sleep=pauses.append)
        self.assertEqual(result, {'processed': 1, 'errors': 0})
        self.assertEqual(pauses, [0.5])

        result = run_worker(self.session_factory, self.client, max_items=10, delay_seconds=0)
        self.assertEqual(result, {'processed': 1, 'errors': 0})

    def test_worker_recovers_item_left_in_processing(self, message_mock) -> None:
        enqueue(self.db, item_type=ORDER_CREATED, resource_id='900001', payload={'order_id': '900001'})
        self.db.commit()
        dequeue_next(self.db, now=datetime(2026, 1, 10, 12, 0, 0))
        self.db.commit()
        enqueue(self.db, item_type=ORDER_CREATED, resource_id='900001', payload={'order_id': '900001'})
        self.db.commit()

        result = run_worker(self.session_factory, self.client, max_items=10, delay_seconds=0)

        self.assertEqual(result, {'processed': 1, 'errors': 0})
        self.db.expire_all()
        item = self.db.execute(select(SyncQueueItem)).scalar_one()
        self.assertEqual((item.status, item.attempts), (QueueStatus.COMPLETED, 2))
        self.assertEqual(_order(self.db, '1001').declared_total, Decimal('25000'))

    def test_cancellation_sync_cancels_orders_gone_from_the_platform(self, message_mock) -> None:
        self._process(ORDER_CREATED, '900001')
        self._process(ORDER_PAID, '900002')
        self.client.add_order(
            RemoteOrder(remote_id='900001', order_number='1001', total=Decimal('25000'), status='cancelled')
        )
        del self.client.orders['900002']
        pauses = []

        result = sync_cancelled_orders(self.session_factory, self.client, limit=10, delay_seconds=0.2, sleep=pauses.append)

        self.assertEqual((result['checked'], result['cancelled'], result['failed']), (2, 2, 0))
        self.assertEqual(pauses, [0.2])
        self.db.expire_all()
        self.assertEqual(_order(self.db, '1001').workflow_state, WorkflowState.CANCELLED)
        self.assertEqual(_order(self.db, '1002').workflow_state, WorkflowState.CANCELLED)
        origins = self.db.execute(
            select(ActivityLog.origin).where(ActivityLog.action == 'order_cancelled')
        ).scalars().all()
        self.assertEqual(origins, ['cancellation_sync', 'cancellation_sync'])

        again = sync_cancelled_orders(self.session_factory, self.client, limit=10, delay_seconds=0)
        self.assertEqual(again['checked'], 0)

    def test_cancellation_sync_leaves_orders_it_could_not_check(self, message_mock) -> None:
        self._process(ORDER_CREATED, '900001')

        with patch.object(self.client, 'fetch_order', side_effect=UpstreamError('platform down')):
            result = sync_cancelled_orders(self.session_factory, self.client, limit=10, delay_seconds=0)

        self.assertEqual((result['checked'], result['cancelled'], result['failed']), (1, 0, 1))
        self.assertEqual(result['errors'][0]['order_number'], '1001')
        self.db.expire_all()
        self.assertEqual(_order(self.db, '1001').workflow_state, WorkflowState.PENDING_PAYMENT)

    def test_resync_all_rebuilds_every_mirror(self, message_mock) -> None:
        self._process(ORDER_CREATED, '900001')
        self._process(ORDER_PAID, '900002')
        self.client.add_order(
            RemoteOrder(
                remote_id='900001',
                order_number='1001',
                total=Decimal('15000'),
                line_items=[RemoteLineItem('P-100', 'V-1', 'Remera basica', 2, Decimal('7500'))],
            )
        )
        pauses = []

        result = resync_all_orders(self.session_factory, self.client, limit=10, delay_seconds=0.2, sleep=pauses.append)

        self.assertEqual((result['total'], result['synced'], result['failed']), (2, 2, 0))
        self.assertEqual(pauses, [0.2])
        self.db.expire_all()
        self.assertEqual(_line_items(self.db, '1001'), {('P-100', 'V-1'): 2})
        self.assertEqual(_order(self.db, '1001').declared_total, Decimal('15000'))

    def test_resync_all_respects_the_limit(self, message_mock) -> None:
        self._process(ORDER_CREATED, '900001')
        self._process(ORDER_PAID, '900002')

        result = resync_all_orders(self.session_factory, self.client, limit=1, delay_seconds=0)

        self.assertEqual(result['total'], 1)

    def test_mass_resync_fixes_inconsistent_orders(self, message_mock) -> None:
        self._process(ORDER_CREATED, '900001')
        self.db.add(Inconsistency(order_number='1001', type=InconsistencyType.EXTRA, detail={}))
        self.db.commit()

        result = resync_inconsistent_orders(self.session_factory, self.client, limit=10)

        self.assertEqual((result['total'], result['synced'], result['failed']), (1, 1, 0))
        self.db.expire_all()
        self.assertEqual(list_open_inconsistencies(self.db, '1001'), [])


if __name__ == '__main__':
    unittest.main()
