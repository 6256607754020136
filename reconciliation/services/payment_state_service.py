from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from reconciliation.config import settings
from reconciliation.errors import NotFoundError, ValidationError
from reconciliation.models import (
    CashPayment,
    Order,
    PaymentSource,
    PaymentState,
    Receipt,
    ReceiptState,
    WorkflowState,
)
from reconciliation.services.audit_service import log_activity
from reconciliation.services.debounce import RequestDebouncer, receipt_action_debouncer

logger = logging.getLogger(__name__)


class AccountState(str, Enum):
    OK = 'OK'
    OWES = 'OWES'
    CREDIT = 'CREDIT'


MONEY_RECEIVED_STATES = frozenset(
    {PaymentState.PARTIALLY_CONFIRMED, PaymentState.FULLY_CONFIRMED, PaymentState.CREDIT}
)
FULLY_PAID_STATES = frozenset({PaymentState.FULLY_CONFIRMED, PaymentState.CREDIT})

WORKFLOW_RANK = {
    WorkflowState.PENDING_PAYMENT: 0,
    WorkflowState.READY_TO_PRINT: 1,
    WorkflowState.LABEL_PRINTED: 2,
    WorkflowState.PACKED: 3,
    # alternative final stages; an order leaves the warehouse through exactly one
    WorkflowState.PICKED_UP: 4,
    WorkflowState.IN_TRANSIT: 4,
    WorkflowState.SHIPPED: 4,
}
SHIPPING_STATES = frozenset({WorkflowState.PICKED_UP, WorkflowState.IN_TRANSIT, WorkflowState.SHIPPED})
WORKFLOW_ACTIONS = {
    WorkflowState.LABEL_PRINTED: 'label_printed',
    WorkflowState.PACKED: 'order_packed',
    WorkflowState.PICKED_UP: 'order_picked_up',
    WorkflowState.IN_TRANSIT: 'order_in_transit',
    WorkflowState.SHIPPED: 'order_shipped',
    WorkflowState.CANCELLED: 'order_cancelled',
}


@dataclass(frozen=True)
class PaymentSnapshot:
    order_number: str
    declared_total: Decimal
    amount_paid: Decimal
    balance: Decimal
    account_state: AccountState
    payment_state: PaymentState
    workflow_state: WorkflowState
    previous_workflow_state: WorkflowState

    def as_dict(self) -> dict:
        return {
            'order_number': self.order_number,
            'declared_total': str(self.declared_total),
            'amount_paid': str(self.amount_paid),
            'balance': str(self.balance),
            'account_state': self.account_state.value,
            'payment_state': self.payment_state.value,
            'workflow_state': self.workflow_state.value,
        }


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def to_decimal(value) -> Decimal:
    if value is None:
        return Decimal('0')
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def account_state(paid, declared, tolerance=None) -> tuple[AccountState, Decimal]:
    """Compare what was paid with what was declared.

    Returns the account state and ``balance = round(declared - paid)``;
    a balance within +/- tolerance counts as settled.
    """
    limit = to_decimal(settings.payment_tolerance if tolerance is None else tolerance)
    balance = (to_decimal(declared) - to_decimal(paid)).quantize(Decimal('1'), rounding=ROUND_HALF_UP)
    if abs(balance) <= limit:
        return AccountState.OK, balance
    if balance > 0:
        return AccountState.OWES, balance
    return AccountState.CREDIT, balance


def derive_payment_state(
    paid,
    declared,
    *,
    tolerance=None,
    has_pending_receipts: bool = False,
    has_rejected_receipts: bool = False,
) -> PaymentState:
    paid_value = to_decimal(paid)
    if paid_value <= 0:
        if has_pending_receipts:
            return PaymentState.AWAITING_CONFIRMATION
        if has_rejected_receipts:
            return PaymentState.REJECTED
        return PaymentState.PENDING

    state, _balance = account_state(paid_value, declared, tolerance)
    if state == AccountState.OWES:
        return PaymentState.PARTIALLY_CONFIRMED
    if state == AccountState.CREDIT:
        return PaymentState.CREDIT
    return PaymentState.FULLY_CONFIRMED


def next_workflow_state(payment_state: PaymentState, current: WorkflowState) -> WorkflowState:
    # only the initial state advances automatically; everything later is an explicit action
    if current != WorkflowState.PENDING_PAYMENT:
        return current
    if payment_state in MONEY_RECEIVED_STATES:
        return WorkflowState.READY_TO_PRINT
    return WorkflowState.PENDING_PAYMENT


def lock_order(db: Session, order_number: str) -> Order:
    order = db.execute(
        select(Order).where(Order.order_number == order_number).with_for_update()
    ).scalar_one_or_none()
    if not order:
        raise NotFoundError(f'Order {order_number} not found')
    return order


def total_paid(db: Session, order_number: str) -> Decimal:
    confirmed = db.execute(
        select(func.coalesce(func.sum(Receipt.detected_amount), 0)).where(
            Receipt.order_number == order_number,
            Receipt.state == ReceiptState.CONFIRMED,
        )
    ).scalar_one()
    payments = db.execute(
        select(func.coalesce(func.sum(CashPayment.amount), 0)).where(CashPayment.order_number == order_number)
    ).scalar_one()
    return to_decimal(confirmed) + to_decimal(payments)


def _receipt_state_flags(db: Session, order_number: str) -> tuple[bool, bool]:
    states = set(
        db.execute(select(Receipt.state).where(Receipt.order_number == order_number).distinct()).scalars().all()
    )
    return ReceiptState.AWAITING_CONFIRMATION in states, ReceiptState.REJECTED in states


def _apply_payment_state(db: Session, order: Order) -> PaymentSnapshot:
    paid = total_paid(db, order.order_number)
    declared = to_decimal(order.declared_total)
    has_pending, has_rejected = _receipt_state_flags(db, order.order_number)
    state, _rounded = account_state(paid, declared)
    payment_state = derive_payment_state(
        paid,
        declared,
        has_pending_receipts=has_pending,
        has_rejected_receipts=has_rejected,
    )
    previous_workflow = order.workflow_state
    workflow = previous_workflow
    if previous_workflow != WorkflowState.CANCELLED:
        workflow = next_workflow_state(payment_state, previous_workflow)

    order.amount_paid = paid
    order.balance = declared - paid
    order.payment_state = payment_state
    order.workflow_state = workflow
    order.updated_at = _now()
    db.flush()

    if workflow != previous_workflow:
        logger.info('Order %s workflow %s -> %s', order.order_number, previous_workflow.value, workflow.value)
    return PaymentSnapshot(
        order_number=order.order_number,
        declared_total=declared,
        amount_paid=paid,
        balance=declared - paid,
        account_state=state,
        payment_state=payment_state,
        workflow_state=workflow,
        previous_workflow_state=previous_workflow,
    )


def recompute_order_payment(db: Session, order_number: str) -> PaymentSnapshot:
    """Recompute paid amount, balance and states for one order under a row lock.

    Everything is read and written in the caller's transaction, so a payment
    confirmation and a declared-total change can never interleave.
    """
    order = lock_order(db, order_number)
    return _apply_payment_state(db, order)


def update_declared_total(db: Session, order_number: str, declared_total) -> PaymentSnapshot:
    order = lock_order(db, order_number)
    order.declared_total = to_decimal(declared_total)
    return _apply_payment_state(db, order)


def change_workflow_state(
    db: Session,
    *,
    order_number: str,
    target: WorkflowState,
    actor: str | None = None,
) -> Order:
    order = lock_order(db, order_number)
    current = order.workflow_state

    if current == WorkflowState.CANCELLED:
        raise ValidationError('Cancelled orders cannot change state')
    if target == WorkflowState.CANCELLED:
        order.workflow_state = WorkflowState.CANCELLED
    else:
        if target in (WorkflowState.PENDING_PAYMENT, WorkflowState.READY_TO_PRINT):
            raise ValidationError(f'{target.value} is set automatically from the payment state')
        if WORKFLOW_RANK[target] <= WORKFLOW_RANK[current]:
            raise ValidationError(f'Cannot move order from {current.value} to {target.value}')
        if target in SHIPPING_STATES and order.payment_state not in FULLY_PAID_STATES:
            raise ValidationError('Orders cannot leave the warehouse without full payment')
        if order.payment_state not in MONEY_RECEIVED_STATES:
            raise ValidationError('Orders without a confirmed payment cannot be prepared')

        now = _now()
        if target == WorkflowState.LABEL_PRINTED and order.printed_at is None:
            order.printed_at = now
        elif target == WorkflowState.PACKED and order.packed_at is None:
            order.packed_at = now
        elif target in SHIPPING_STATES and order.shipped_at is None:
            order.shipped_at = now
        order.workflow_state = target

    order.updated_at = _now()
    log_activity(
        db,
        action=WORKFLOW_ACTIONS[target],
        order_number=order_number,
        origin='logistics',
        actor=actor,
        metadata={'from': current.value, 'to': target.value},
    )
    db.flush()
    logger.info('Order %s workflow %s -> %s by %s', order_number, current.value, target.value, actor or 'system')
    return order


def parse_amount(value) -> Decimal:
    try:
        amount = to_decimal(value)
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError('Invalid amount') from exc
    if not amount.is_finite() or amount <= 0:
        raise ValidationError('Amount must be greater than zero')
    return amount.quantize(Decimal('1'), rounding=ROUND_HALF_UP)


def record_cash_payment(
    db: Session,
    *,
    order_number: str,
    amount,
    recorded_by: str | None = None,
    notes: str | None = None,
) -> tuple[CashPayment, PaymentSnapshot]:
    if not order_number or not str(order_number).strip():
        raise ValidationError('Order number is required')
    value = parse_amount(amount)
    lock_order(db, order_number)

    payment = CashPayment(
        order_number=order_number,
        amount=value,
        source=PaymentSource.CASH,
        recorded_by=recorded_by or 'system',
        notes=notes,
    )
    db.add(payment)
    db.flush()
    log_activity(
        db,
        action='cash_payment_recorded',
        order_number=order_number,
        origin='operator',
        actor=recorded_by,
        metadata={'amount': str(value), 'payment_id': payment.id},
    )
    snapshot = recompute_order_payment(db, order_number)
    logger.info('Cash payment of %s recorded for order %s', value, order_number)
    return payment, snapshot


def record_platform_payment(db: Session, *, order_number: str, amount) -> bool:
    """Record the platform marking an order paid. Returns False if it was already recorded."""
    lock_order(db, order_number)
    existing = db.execute(
        select(CashPayment.id).where(
            CashPayment.order_number == order_number,
            CashPayment.source == PaymentSource.PLATFORM,
        )
    ).first()
    if existing:
        return False
    value = to_decimal(amount)
    if value <= 0:
        return False
    db.add(
        CashPayment(
            order_number=order_number,
            amount=value,
            source=PaymentSource.PLATFORM,
            recorded_by='platform',
            notes='Paid on the store platform',
        )
    )
    db.flush()
    log_activity(db, action='platform_payment_recorded', order_number=order_number, metadata={'amount': str(value)})
    return True


def _get_receipt_for_update(db: Session, receipt_id: int) -> Receipt:
    receipt = db.execute(select(Receipt).where(Receipt.id == receipt_id).with_for_update()).scalar_one_or_none()
    if not receipt:
        raise NotFoundError(f'Receipt {receipt_id} not found')
    if receipt.state != ReceiptState.AWAITING_CONFIRMATION:
        raise ValidationError('This receipt was already processed')
    return receipt


def confirm_receipt(
    db: Session,
    *,
    receipt_id: int,
    actor: str | None = None,
    debouncer: RequestDebouncer | None = None,
) -> PaymentSnapshot:
    (debouncer or receipt_action_debouncer).check(f'confirm:{receipt_id}')
    receipt = _get_receipt_for_update(db, receipt_id)
    receipt.state = ReceiptState.CONFIRMED
    receipt.decided_by = actor
    receipt.decided_at = _now()
    db.flush()
    log_activity(
        db,
        action='receipt_confirmed',
        order_number=receipt.order_number,
        receipt_id=receipt.id,
        origin='operator',
        actor=actor,
    )
    snapshot = recompute_order_payment(db, receipt.order_number)
    logger.info('Receipt %s confirmed for order %s', receipt.id, receipt.order_number)
    return snapshot


def reject_receipt(
    db: Session,
    *,
    receipt_id: int,
    reason: str | None = None,
    actor: str | None = None,
    debouncer: RequestDebouncer | None = None,
) -> PaymentSnapshot:
    (debouncer or receipt_action_debouncer).check(f'reject:{receipt_id}')
    receipt = _get_receipt_for_update(db, receipt_id)
    receipt.state = ReceiptState.REJECTED
    receipt.rejection_reason = (reason or '').strip() or None
    receipt.decided_by = actor
    receipt.decided_at = _now()
    db.flush()
    log_activity(
        db,
        action='receipt_rejected',
        order_number=receipt.order_number,
        receipt_id=receipt.id,
        origin='operator',
        actor=actor,
        metadata={'reason': receipt.rejection_reason} if receipt.rejection_reason else None,
    )
    snapshot = recompute_order_payment(db, receipt.order_number)
    logger.info('Receipt %s rejected for order %s', receipt.id, receipt.order_number)
    return snapshot
