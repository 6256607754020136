from __future__ import annotations

import unittest
from datetime import datetime, timedelta

from sqlalchemy import select

from reconciliation.models import QueueStatus, SyncQueueItem
from reconciliation.services.sync_queue_service import (
    backoff_delay,
    cleanup_old_items,
    dequeue_next,
    enqueue,
    get_sync_state,
    mark_completed,
    mark_failed,
    queue_stats,
    reclaim_stale_items,
    update_sync_state,
)
from tests.db_support import make_session_factory

# SQLite hands datetimes back without tzinfo
NOW = datetime(2026, 1, 10, 12, 0, 0)


class SyncQueueServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()

    def tearDown(self) -> None:
        self.db.close()

    def test_backoff_doubles_from_one_minute(self) -> None:
        self.assertEqual([backoff_delay(n) for n in (1, 2, 3, 4)], [timedelta(minutes=m) for m in (1, 2, 4, 8)])

    def test_enqueue_refreshes_active_item_instead_of_duplicating(self) -> None:
        first = enqueue(self.db, item_type='order_paid', resource_id='900001', payload={'v': 1}, now=NOW)
        second = enqueue(self.db, item_type='order_paid', resource_id='900001', payload={'v': 2}, now=NOW)

        self.assertEqual(first.id, second.id)
        self.assertEqual(second.payload, {'v': 2})
        self.assertEqual(len(self.db.execute(select(SyncQueueItem)).scalars().all()), 1)

    def test_completed_work_can_be_queued_again(self) -> None:
        item = enqueue(self.db, item_type='order_paid', resource_id='900001', now=NOW)
        dequeue_next(self.db, now=NOW)
        mark_completed(self.db, item, now=NOW)

        again = enqueue(self.db, item_type='order_paid', resource_id='900001', now=NOW)

        self.assertNotEqual(item.id, again.id)

    def test_dequeue_is_fifo_and_skips_future_retries(self) -> None:
        later = enqueue(self.db, item_type='order_created', resource_id='2', now=NOW)
        earlier = enqueue(self.db, item_type='order_created', resource_id='1', now=NOW - timedelta(minutes=5))
        later.next_retry_at = NOW + timedelta(minutes=1)
        self.db.flush()

        item = dequeue_next(self.db, now=NOW)

        self.assertEqual(item.id, earlier.id)
        self.assertEqual(item.status, QueueStatus.PROCESSING)
        self.assertEqual(item.attempts, 1)
        self.assertIsNone(dequeue_next(self.db, now=NOW))

    def test_failures_back_off_then_fail_permanently(self) -> None:
        enqueue(self.db, item_type='order_paid', resource_id='900001', max_attempts=5, now=NOW)
        moment = NOW
        delays = []
        for _attempt in range(4):
            item = dequeue_next(self.db, now=moment)
            mark_failed(self.db, item, 'platform down', now=moment)
            delays.append(item.next_retry_at - moment)
            self.assertIsNone(dequeue_next(self.db, now=moment))
            moment = item.next_retry_at

        self.assertEqual(delays, [timedelta(minutes=m) for m in (1, 2, 4, 8)])

        item = dequeue_next(self.db, now=moment)
        mark_failed(self.db, item, 'platform down', now=moment)

        self.assertEqual(item.status, QueueStatus.FAILED)
        self.assertEqual(item.attempts, 5)
        self.assertIsNone(dequeue_next(self.db, now=moment + timedelta(days=1)))

    def test_item_abandoned_mid_processing_is_picked_up_again(self) -> None:
        enqueue(self.db, item_type='order_paid', resource_id='900001', payload={'v': 1}, now=NOW)
        claimed = dequeue_next(self.db, now=NOW)
        self.db.commit()

        # the worker died here; new events for the same order keep arriving
        again = enqueue(self.db, item_type='order_paid', resource_id='900001', payload={'v': 2}, now=NOW)
        self.assertEqual(again.id, claimed.id)
        self.assertIsNone(dequeue_next(self.db, now=NOW + timedelta(minutes=5)))

        item = dequeue_next(self.db, now=NOW + timedelta(minutes=11))

        self.assertIsNotNone(item)
        self.assertEqual(item.id, claimed.id)
        self.assertEqual(item.status, QueueStatus.PROCESSING)
        self.assertEqual(item.attempts, 2)
        self.assertEqual(item.payload, {'v': 2})
        mark_completed(self.db, item, now=NOW + timedelta(minutes=11))
        self.assertIsNone(item.claimed_at)

    def test_abandoned_item_without_attempts_left_fails(self) -> None:
        enqueue(self.db, item_type='order_paid', resource_id='900001', max_attempts=1, now=NOW)
        item = dequeue_next(self.db, now=NOW)

        released = reclaim_stale_items(self.db, lease_seconds=60, now=NOW + timedelta(minutes=2))

        self.assertEqual(released, 1)
        self.assertEqual(item.status, QueueStatus.FAILED)
        self.assertIsNone(item.next_retry_at)
        self.assertIn('claim expired', item.last_error)
        fresh = enqueue(self.db, item_type='order_paid', resource_id='900001', now=NOW + timedelta(minutes=2))
        self.assertNotEqual(fresh.id, item.id)

    def test_cleanup_releases_stale_claims(self) -> None:
        enqueue(self.db, item_type='order_paid', resource_id='900001', now=NOW)
        item = dequeue_next(self.db, now=NOW)

        cleanup_old_items(self.db, now=NOW + timedelta(hours=1))

        self.assertEqual(item.status, QueueStatus.PENDING)
        self.assertEqual(item.next_retry_at, NOW + timedelta(hours=1))

    def test_cleanup_removes_only_old_completed_items(self) -> None:
        old = enqueue(self.db, item_type='order_paid', resource_id='1', now=NOW - timedelta(days=10))
        recent = enqueue(self.db, item_type='order_paid', resource_id='2', now=NOW)
        pending = enqueue(self.db, item_type='order_paid', resource_id='3', now=NOW - timedelta(days=10))
        mark_completed(self.db, old, now=NOW - timedelta(days=9))
        mark_completed(self.db, recent, now=NOW)

        removed = cleanup_old_items(self.db, retention_days=7, now=NOW)

        self.assertEqual(removed, 1)
        remaining = {row.resource_id for row in self.db.execute(select(SyncQueueItem)).scalars().all()}
        self.assertEqual(remaining, {recent.resource_id, pending.resource_id})

    def test_stats_count_recent_items_by_status(self) -> None:
        enqueue(self.db, item_type='order_paid', resource_id='1', now=NOW)
        done = enqueue(self.db, item_type='order_paid', resource_id='2', now=NOW)
        enqueue(self.db, item_type='order_paid', resource_id='3', now=NOW - timedelta(days=3))
        mark_completed(self.db, done, now=NOW)

        stats = queue_stats(self.db, window_hours=24, now=NOW)

        self.assertEqual(stats['pending'], 1)
        self.assertEqual(stats['completed'], 1)
        self.assertEqual(stats['failed'], 0)
        self.assertEqual(stats['total'], 2)

    def test_sync_state_round_trip(self) -> None:
        self.assertIsNone(get_sync_state(self.db, 'last_order_sync'))
        update_sync_state(self.db, 'last_order_sync', {'orders_checked': 3})
        update_sync_state(self.db, 'last_order_sync', {'orders_checked': 4})

        self.assertEqual(get_sync_state(self.db, 'last_order_sync'), {'orders_checked': 4})


if __name__ == '__main__':
    unittest.main()
