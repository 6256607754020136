from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from reconciliation.config import settings
from reconciliation.errors import NotFoundError, UpstreamError
from reconciliation.models import Order, OrderLineItem, PaymentState, SyncQueueItem, WorkflowState
from reconciliation.services.audit_service import log_activity
from reconciliation.services.consistency_service import (
    orders_with_open_inconsistencies,
    resolve_inconsistencies,
    verify_order_consistency,
)
from reconciliation.services.messaging_service import send_order_created_message
from reconciliation.services.payment_state_service import (
    record_platform_payment,
    recompute_order_payment,
    update_declared_total,
)
from reconciliation.services.platform_provider import PlatformProvider, RemoteLineItem, RemoteOrder
from reconciliation.services.sync_queue_service import (
    cleanup_old_items,
    dequeue_next,
    enqueue,
    mark_completed,
    mark_failed,
    update_sync_state,
)

logger = logging.getLogger(__name__)

ORDER_CREATED = 'order_created'
ORDER_PAID = 'order_paid'
ORDER_UPDATED = 'order_updated'
ORDER_CANCELLED = 'order_cancelled'
LAST_ORDER_SYNC_KEY = 'last_order_sync'


@dataclass(frozen=True)
class LineItemSyncResult:
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: bool = False
    resolved_inconsistencies: int = 0


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def get_order(db: Session, order_number: str) -> Order | None:
    return db.execute(select(Order).where(Order.order_number == order_number)).scalar_one_or_none()


def upsert_remote_order(db: Session, remote: RemoteOrder) -> tuple[Order, bool]:
    """Create the local order from platform data, or refresh the platform-owned fields of an existing one.

    The declared total of an existing order is left alone; changing it goes through
    ``update_declared_total`` so the balance is recomputed under the order lock.
    """
    if not remote.order_number:
        raise UpstreamError(f'Platform order {remote.remote_id} has no order number')

    order = get_order(db, remote.order_number)
    created = order is None
    if created:
        order = Order(
            order_number=remote.order_number,
            declared_total=remote.total,
            amount_paid=Decimal('0'),
            balance=remote.total,
            currency=remote.currency or 'ARS',
            payment_state=PaymentState.PENDING,
            workflow_state=WorkflowState.PENDING_PAYMENT,
        )
        db.add(order)

    order.remote_id = remote.remote_id or order.remote_id
    order.customer_name = remote.customer_name or order.customer_name
    order.customer_email = remote.customer_email or order.customer_email
    order.customer_phone = remote.customer_phone or order.customer_phone
    order.remote_payment_status = remote.payment_status
    order.remote_shipping_status = remote.shipping_status
    order.remote_created_at = order.remote_created_at or remote.created_at
    order.updated_at = _now()
    db.flush()
    return order, created


def _merge_remote_items(items: list[RemoteLineItem]) -> dict[tuple[str, str], RemoteLineItem]:
    merged: dict[tuple[str, str], RemoteLineItem] = {}
    for item in items:
        existing = merged.get(item.key)
        if existing:
            item = RemoteLineItem(
                product_id=existing.product_id,
                variant_id=existing.variant_id,
                name=existing.name,
                quantity=existing.quantity + item.quantity,
                unit_price=existing.unit_price,
                sku=existing.sku,
                variant_label=existing.variant_label,
            )
        merged[item.key] = item
    return merged


def save_line_items(db: Session, order_number: str, items: list[RemoteLineItem]) -> LineItemSyncResult:
    """Make the local line items of an order match the platform's list exactly.

    An empty list from the platform leaves the mirror untouched. Repeated keys
    are folded into one row with the summed quantity.
    """
    if not items:
        logger.warning('Order %s came back without line items, keeping the local copy', order_number)
        return LineItemSyncResult(skipped=True)

    remote_by_key = _merge_remote_items(items)
    current = db.execute(select(OrderLineItem).where(OrderLineItem.order_number == order_number)).scalars().all()

    deleted = 0
    updated = 0
    current_by_key: dict[tuple[str, str], OrderLineItem] = {}
    for row in current:
        key = (row.product_id, row.variant_id)
        if key not in remote_by_key:
            db.delete(row)
            deleted += 1
            continue
        current_by_key[key] = row

    inserted = 0
    now = _now()
    for key, item in remote_by_key.items():
        row = current_by_key.get(key)
        if row is None:
            db.add(
                OrderLineItem(
                    order_number=order_number,
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    name=item.name,
                    variant_label=item.variant_label,
                    sku=item.sku,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    updated_at=now,
                )
            )
            inserted += 1
            continue
        values = {
            'name': item.name,
            'variant_label': item.variant_label,
            'sku': item.sku,
            'quantity': item.quantity,
            'unit_price': item.unit_price,
        }
        changed = False
        for attr, value in values.items():
            if getattr(row, attr) != value:
                setattr(row, attr, value)
                changed = True
        if changed:
            row.updated_at = now
            updated += 1

    db.flush()
    resolved = resolve_inconsistencies(db, order_number)
    if deleted:
        logger.info('Removed %s line items no longer on order %s', deleted, order_number)
    if resolved:
        logger.info('Auto-resolved %s inconsistencies for order %s', resolved, order_number)
    return LineItemSyncResult(inserted=inserted, updated=updated, deleted=deleted, resolved_inconsistencies=resolved)


def _format_amount(value) -> str:
    return f'{Decimal(value):,.0f}'.replace(',', '.')


def build_order_change_message(
    previous: list[OrderLineItem] | list[RemoteLineItem],
    current: list[RemoteLineItem],
    new_total,
) -> str:
    """Human readable summary of line-item changes; the last line is always the new total."""
    old_by_key = {(line.product_id, line.variant_id or ''): line for line in previous}
    new_by_key = _merge_remote_items(current)
    lines: list[str] = []

    for key, old in old_by_key.items():
        if key not in new_by_key:
            lines.append(f'{old.name}: removed -{old.quantity}')
    for key, new in new_by_key.items():
        old = old_by_key.get(key)
        if old is None:
            lines.append(f'{new.name}: added +{new.quantity}')
        elif new.quantity > old.quantity:
            lines.append(f'{new.name}: added +{new.quantity - old.quantity}')
        elif new.quantity < old.quantity:
            lines.append(f'{new.name}: reduced -{old.quantity - new.quantity}')

    lines.append(f'New total: ${_format_amount(new_total)}')
    return '\n'.join(lines)


def _remote_id_for(item: SyncQueueItem) -> str:
    payload = item.payload or {}
    return str(payload.get('order_id') or item.resource_id)


def process_order_created(db: Session, client: PlatformProvider, item: SyncQueueItem) -> None:
    remote = client.fetch_order(_remote_id_for(item))
    order, created = upsert_remote_order(db, remote)
    save_line_items(db, order.order_number, remote.line_items)
    verify_order_consistency(db, order.order_number, remote.line_items)
    if created:
        log_activity(db, action='order_created', order_number=order.order_number, origin='sync')
    item.order_number = order.order_number

    if created and (item.payload or {}).get('source') == 'webhook':
        try:
            send_order_created_message(
                phone=order.customer_phone,
                customer_name=order.customer_name,
                order_number=order.order_number,
                total=order.declared_total,
            )
        except Exception:
            logger.exception('Could not send the order created message for order %s', order.order_number)


def process_order_paid(db: Session, client: PlatformProvider, item: SyncQueueItem) -> None:
    remote = client.fetch_order(_remote_id_for(item))
    order, created = upsert_remote_order(db, remote)
    if created:
        save_line_items(db, order.order_number, remote.line_items)
    if record_platform_payment(db, order_number=order.order_number, amount=remote.total):
        log_activity(db, action='payment_synced', order_number=order.order_number, origin='sync')
    recompute_order_payment(db, order.order_number)
    item.order_number = order.order_number


def process_order_updated(db: Session, client: PlatformProvider, item: SyncQueueItem) -> None:
    remote = client.fetch_order(_remote_id_for(item))
    order = get_order(db, remote.order_number)
    if order is None:
        logger.info('Ignoring update for order %s, it is not tracked locally', remote.order_number)
        return

    previous_lines = db.execute(
        select(OrderLineItem).where(OrderLineItem.order_number == order.order_number)
    ).scalars().all()
    message = build_order_change_message(list(previous_lines), remote.line_items, remote.total)
    total_changed = Decimal(order.declared_total) != remote.total

    upsert_remote_order(db, remote)
    save_line_items(db, order.order_number, remote.line_items)
    verify_order_consistency(db, order.order_number, remote.line_items)
    item.order_number = order.order_number

    if total_changed:
        update_declared_total(db, order.order_number, remote.total)
    if total_changed or len(message.splitlines()) > 1:
        logger.info('Order %s changed on the platform:\n%s', order.order_number, message)
        log_activity(
            db,
            action='order_updated',
            order_number=order.order_number,
            origin='platform_webhook',
            metadata={'summary': message, 'total_changed': total_changed},
        )


def cancel_order(db: Session, order: Order, *, origin: str) -> bool:
    """Mark an order cancelled on the platform as cancelled locally; False when it already was."""
    if order.workflow_state == WorkflowState.CANCELLED:
        return False
    order.workflow_state = WorkflowState.CANCELLED
    order.updated_at = _now()
    log_activity(db, action='order_cancelled', order_number=order.order_number, origin=origin)
    logger.info('Order %s cancelled on the platform', order.order_number)
    return True


def process_order_cancelled(db: Session, client: PlatformProvider, item: SyncQueueItem) -> None:
    order_number = item.order_number or (item.payload or {}).get('order_number')
    if not order_number:
        order_number = client.fetch_order(_remote_id_for(item)).order_number
    order = get_order(db, str(order_number))
    if order is None:
        logger.info('Ignoring cancellation of order %s, it is not tracked locally', order_number)
        return
    cancel_order(db, order, origin='platform_webhook')
    item.order_number = order.order_number


QUEUE_HANDLERS: dict[str, Callable[[Session, PlatformProvider, SyncQueueItem], None]] = {
    ORDER_CREATED: process_order_created,
    ORDER_PAID: process_order_paid,
    ORDER_UPDATED: process_order_updated,
    ORDER_CANCELLED: process_order_cancelled,
}


def poll_for_missing_orders(db: Session, client: PlatformProvider, *, now: datetime | None = None) -> dict:
    moment = now or _now()
    remote_orders = client.search_orders(
        created_since=moment - timedelta(hours=settings.poll_window_hours),
        per_page=settings.poll_page_size,
    )
    numbers = [order.order_number for order in remote_orders if order.order_number]
    existing = set()
    if numbers:
        existing = set(db.execute(select(Order.order_number).where(Order.order_number.in_(numbers))).scalars().all())

    queued = 0
    for remote in remote_orders:
        if not remote.order_number or remote.order_number in existing:
            continue
        enqueue(
            db,
            item_type=ORDER_PAID if remote.is_paid else ORDER_CREATED,
            resource_id=remote.remote_id,
            order_number=remote.order_number,
            payload={'order_id': remote.remote_id, 'order_number': remote.order_number, 'source': 'poll'},
        )
        queued += 1

    update_sync_state(
        db,
        LAST_ORDER_SYNC_KEY,
        {'last_synced_at': moment.isoformat(), 'orders_checked': len(remote_orders), 'orders_queued': queued},
    )
    logger.info('Polling checked %s platform orders, queued %s', len(remote_orders), queued)
    return {'checked': len(remote_orders), 'queued': queued}


def process_next_item(db: Session, client: PlatformProvider) -> dict | None:
    item = dequeue_next(db)
    if item is None:
        return None
    db.commit()

    handler = QUEUE_HANDLERS.get(item.type)
    try:
        if handler is None:
            logger.warning('No handler for sync item type %s', item.type)
        else:
            handler(db, client, item)
        mark_completed(db, item)
        db.commit()
        return {'id': item.id, 'type': item.type, 'success': True}
    except Exception as exc:
        db.rollback()
        logger.exception('Sync item %s (%s) failed', item.id, item.type)
        failed = db.get(SyncQueueItem, item.id)
        mark_failed(db, failed, str(exc))
        db.commit()
        return {'id': item.id, 'type': item.type, 'success': False, 'error': str(exc)}


def run_worker(
    session_factory: Callable[[], Session],
    client: PlatformProvider,
    *,
    max_items: int | None = None,
    delay_seconds: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict:
    limit = settings.worker_batch_size if max_items is None else max_items
    pause = settings.worker_item_delay_seconds if delay_seconds is None else delay_seconds
    processed = 0
    errors = 0

    while processed < limit:
        with session_factory() as db:
            result = process_next_item(db, client)
        if result is None:
            break
        processed += 1
        if not result['success']:
            errors += 1
        if pause > 0:
            sleep(pause)

    if processed:
        logger.info('Sync worker finished: %s processed, %s errors', processed, errors)
    return {'processed': processed, 'errors': errors}


def run_sync_job(
    session_factory: Callable[[], Session],
    client: PlatformProvider,
    *,
    max_items: int | None = None,
    delay_seconds: float | None = None,
) -> dict:
    started = time.monotonic()
    with session_factory() as db:
        polling = poll_for_missing_orders(db, client)
        db.commit()

    worker = run_worker(session_factory, client, max_items=max_items, delay_seconds=delay_seconds)

    with session_factory() as db:
        removed = cleanup_old_items(db)
        db.commit()

    return {
        'polling': polling,
        'worker': worker,
        'cleaned_up': removed,
        'duration_seconds': round(time.monotonic() - started, 2),
    }


def find_remote_order(client: PlatformProvider, order_number: str) -> RemoteOrder | None:
    number = str(order_number).strip().lstrip('#')
    for remote in client.search_orders(query=number):
        if remote.order_number == number:
            return remote
    return None


def resync_order(db: Session, client: PlatformProvider, order_number: str) -> LineItemSyncResult:
    order = get_order(db, order_number)
    if order is None:
        raise NotFoundError(f'Order {order_number} not found')

    if order.remote_id:
        remote = client.fetch_order(order.remote_id)
    else:
        found = find_remote_order(client, order_number)
        if found is None:
            raise NotFoundError(f'Order {order_number} not found on the platform')
        # search results may omit line items
        remote = client.fetch_order(found.remote_id) if found.remote_id else found

    upsert_remote_order(db, remote)
    result = save_line_items(db, order_number, remote.line_items)
    if Decimal(order.declared_total) != remote.total:
        update_declared_total(db, order_number, remote.total)
    log_activity(
        db,
        action='order_resynced',
        order_number=order_number,
        origin='operator',
        metadata={'inserted': result.inserted, 'updated': result.updated, 'deleted': result.deleted},
    )
    return result


def _resync_each(
    session_factory: Callable[[], Session],
    client: PlatformProvider,
    order_numbers: list[str],
    *,
    pause: float = 0,
    sleep: Callable[[float], None] = time.sleep,
) -> dict:
    synced = 0
    failed: list[dict] = []
    for index, order_number in enumerate(order_numbers):
        with session_factory() as db:
            try:
                resync_order(db, client, order_number)
                db.commit()
                synced += 1
            except Exception as exc:
                db.rollback()
                logger.exception('Resync of order %s failed', order_number)
                failed.append({'order_number': order_number, 'error': str(exc)})
        if pause > 0 and index < len(order_numbers) - 1:
            sleep(pause)

    logger.info('Mass resync finished: %s synced, %s failed', synced, len(failed))
    return {'total': len(order_numbers), 'synced': synced, 'failed': len(failed), 'errors': failed}


def resync_inconsistent_orders(
    session_factory: Callable[[], Session],
    client: PlatformProvider,
    *,
    limit: int = 50,
) -> dict:
    with session_factory() as db:
        order_numbers = orders_with_open_inconsistencies(db, limit)
    return _resync_each(session_factory, client, order_numbers)


def _orders_with_remote_id(db: Session, limit: int, *, exclude_cancelled: bool = False) -> list[str]:
    query = select(Order.order_number).where(Order.remote_id.is_not(None))
    if exclude_cancelled:
        query = query.where(Order.workflow_state != WorkflowState.CANCELLED)
    return list(db.execute(query.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit)).scalars().all())


def resync_all_orders(
    session_factory: Callable[[], Session],
    client: PlatformProvider,
    *,
    limit: int = 500,
    delay_seconds: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict:
    """Rebuild the line-item mirror of the newest ``limit`` orders known to the platform."""
    pause = settings.worker_item_delay_seconds if delay_seconds is None else delay_seconds
    with session_factory() as db:
        order_numbers = _orders_with_remote_id(db, limit)
    logger.info('Resyncing %s orders from the platform', len(order_numbers))
    return _resync_each(session_factory, client, order_numbers, pause=pause, sleep=sleep)


def sync_cancelled_orders(
    session_factory: Callable[[], Session],
    client: PlatformProvider,
    *,
    limit: int = 500,
    delay_seconds: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict:
    """Cancel local orders the platform reports as cancelled or no longer has.

    Covers cancellation webhooks that were never delivered. Orders the platform
    could not be asked about are reported and left as they are.
    """
    pause = settings.worker_item_delay_seconds if delay_seconds is None else delay_seconds
    with session_factory() as db:
        order_numbers = _orders_with_remote_id(db, limit, exclude_cancelled=True)

    cancelled: list[str] = []
    failed: list[dict] = []
    for index, order_number in enumerate(order_numbers):
        with session_factory() as db:
            order = get_order(db, order_number)
            try:
                remote = client.fetch_order(order.remote_id)
                gone = remote.is_cancelled
            except NotFoundError:
                # deleted on the platform
                gone = True
            except Exception as exc:
                logger.warning('Could not check order %s on the platform: %s', order_number, exc)
                failed.append({'order_number': order_number, 'error': str(exc)})
                gone = False
            if gone and cancel_order(db, order, origin='cancellation_sync'):
                db.commit()
                cancelled.append(order_number)
        if pause > 0 and index < len(order_numbers) - 1:
            sleep(pause)

    logger.info(
        'Cancellation sync checked %s orders: %s cancelled, %s failed',
        len(order_numbers),
        len(cancelled),
        len(failed),
    )
    return {
        'checked': len(order_numbers),
        'cancelled': len(cancelled),
        'cancelled_orders': cancelled,
        'failed': len(failed),
        'errors': failed,
    }
