from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from reconciliation.errors import DuplicateError, NotFoundError, ValidationError
from reconciliation.models import Order, Receipt, ReceiptState
from reconciliation.services.amount_extractor import extract_amount
from reconciliation.services.audit_service import log_activity
from reconciliation.services.destination_extractor import extract_destination
from reconciliation.services.destination_validator import detect_entity_by_keywords, list_active_entities, validate_destination
from reconciliation.services.duplicate_detector import duplicate_error, ensure_not_duplicate, find_receipt_by_hash
from reconciliation.services.messaging_service import send_payment_message
from reconciliation.services.ocr_service import TextExtractor, assert_receipt_text
from reconciliation.services.order_sync_service import find_remote_order, save_line_items, upsert_remote_order
from reconciliation.services.payment_state_service import AccountState, account_state, recompute_order_payment, to_decimal
from reconciliation.services.platform_provider import PlatformProvider
from reconciliation.services.storage_service import upload_receipt_file

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024


@dataclass(frozen=True)
class ReceiptSubmission:
    receipt_id: int
    order_number: str
    detected_amount: Decimal | None
    declared_total: Decimal
    projected_balance: Decimal
    account_state: AccountState
    matched_entity_id: int | None
    matched_by: str | None
    file_url: str | None

    def as_dict(self) -> dict:
        return {
            'receipt_id': self.receipt_id,
            'order_number': self.order_number,
            'detected_amount': str(self.detected_amount) if self.detected_amount is not None else None,
            'declared_total': str(self.declared_total),
            'projected_balance': str(self.projected_balance),
            'account_state': self.account_state.value,
            'matched_entity_id': self.matched_entity_id,
            'matched_by': self.matched_by,
            'file_url': self.file_url,
        }


def normalize_order_number(order_number: str | None) -> str:
    value = (order_number or '').strip().lstrip('#').strip()
    if not value:
        raise ValidationError('Order number is required')
    return value


def validate_order(db: Session, client: PlatformProvider, order_number: str | None) -> Order:
    """Check the order exists on the platform and make sure it is mirrored locally."""
    number = normalize_order_number(order_number)
    remote = find_remote_order(client, number)
    if remote is None:
        raise NotFoundError(f'Order {number} does not exist')

    order, created = upsert_remote_order(db, remote)
    if created:
        save_line_items(db, number, remote.line_items)
    return order


def submit_receipt(
    db: Session,
    *,
    client: PlatformProvider,
    extractor: TextExtractor,
    order_number: str | None,
    content: bytes,
    filename: str | None = None,
) -> ReceiptSubmission:
    """Run an uploaded receipt through OCR and the checks, then store it awaiting confirmation.

    Commits on success. A duplicate is committed to the activity log before
    ``DuplicateError`` propagates. Storage upload and the customer message run
    after the commit and only log their failures.
    """
    if not content:
        raise ValidationError('A receipt file is required')
    if len(content) > MAX_UPLOAD_BYTES:
        raise ValidationError('The receipt file is too large')

    order = validate_order(db, client, order_number)
    number = order.order_number

    raw_text = extractor.extract_text(content, filename=filename)
    assert_receipt_text(raw_text)

    match = validate_destination(db, extract_destination(raw_text), raw_text)

    try:
        digest = ensure_not_duplicate(db, raw_text=raw_text, order_number=number)
    except DuplicateError:
        db.commit()
        raise

    amount = extract_amount(raw_text)
    declared = to_decimal(order.declared_total)
    previously_paid = to_decimal(order.amount_paid)
    state, projected_balance = account_state(previously_paid + (amount or Decimal('0')), declared)

    receipt = Receipt(
        order_number=number,
        content_hash=digest,
        raw_text=raw_text,
        detected_amount=amount,
        declared_total_at_upload=declared,
        balance_at_upload=projected_balance,
        state=ReceiptState.AWAITING_CONFIRMATION,
        financial_entity_id=match.entity.id if match.entity is not None else None,
    )
    try:
        with db.begin_nested():
            db.add(receipt)
    except IntegrityError:
        # another upload of the same text was stored after the duplicate check
        existing = find_receipt_by_hash(db, digest)
        if existing is None:
            raise
        error = duplicate_error(db, digest=digest, order_number=number, existing=existing)
        db.commit()
        raise error from None
    log_activity(
        db,
        action='receipt_uploaded',
        order_number=number,
        receipt_id=receipt.id,
        origin='customer',
        metadata={'amount': str(amount) if amount is not None else None, 'matched_by': match.matched_by},
    )
    recompute_order_payment(db, number)
    db.commit()
    logger.info('Receipt %s stored for order %s (amount %s)', receipt.id, number, amount)

    file_url = None
    try:
        file_url = upload_receipt_file(content, filename or f'receipt-{receipt.id}')
        if file_url:
            receipt.file_url = file_url
            db.commit()
    except Exception:
        db.rollback()
        logger.exception('Could not store the file for receipt %s', receipt.id)

    try:
        send_payment_message(
            db,
            phone=order.customer_phone,
            customer_name=order.customer_name,
            order_number=number,
            amount_paid=amount or Decimal('0'),
            balance=projected_balance,
            settled=state != AccountState.OWES,
        )
    except Exception:
        logger.exception('Could not send the payment message for order %s', number)

    return ReceiptSubmission(
        receipt_id=receipt.id,
        order_number=number,
        detected_amount=amount,
        declared_total=declared,
        projected_balance=projected_balance,
        account_state=state,
        matched_entity_id=match.entity.id if match.entity is not None else None,
        matched_by=match.matched_by,
        file_url=file_url,
    )


def backfill_receipt_entities(db: Session, *, limit: int = 500) -> dict:
    """Assign the financial entity to stored receipts that lack one, when exactly one entity's keywords match."""
    entities = list_active_entities(db)
    receipts = db.execute(
        select(Receipt).where(Receipt.financial_entity_id.is_(None)).order_by(Receipt.id).limit(limit)
    ).scalars().all()

    assigned = 0
    for receipt in receipts:
        entity = detect_entity_by_keywords(entities, receipt.raw_text)
        if entity is None:
            continue
        receipt.financial_entity_id = entity.id
        assigned += 1
    db.flush()
    logger.info('Backfilled financial entity on %s of %s receipts', assigned, len(receipts))
    return {'checked': len(receipts), 'assigned': assigned}
