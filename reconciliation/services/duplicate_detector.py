from __future__ import annotations

import hashlib
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from reconciliation.errors import DuplicateError
from reconciliation.models import Receipt
from reconciliation.services.audit_service import log_activity

logger = logging.getLogger(__name__)


def content_hash(raw_text: str) -> str:
    # exact text, not the normalized form
    return hashlib.sha256(raw_text.encode('utf-8')).hexdigest()


def find_receipt_by_hash(db: Session, digest: str) -> Receipt | None:
    return db.execute(select(Receipt).where(Receipt.content_hash == digest)).scalar_one_or_none()


def duplicate_error(
    db: Session,
    *,
    digest: str,
    order_number: str,
    existing: Receipt | None,
    origin: str = 'customer',
) -> DuplicateError:
    """Log the duplicate attempt on the caller's session and build the error to raise."""
    existing_id = existing.id if existing is not None else None
    logger.info('Duplicate receipt for order %s matches receipt %s', order_number, existing_id)
    log_activity(
        db,
        action='receipt_duplicate',
        order_number=order_number,
        receipt_id=existing_id,
        origin=origin,
        metadata={
            'hash': digest,
            'original_order_number': existing.order_number if existing is not None else None,
        },
    )
    return DuplicateError('This receipt was already submitted', reason='duplicate_receipt', existing_id=existing_id)


def ensure_not_duplicate(db: Session, *, raw_text: str, order_number: str, origin: str = 'customer') -> str:
    """Return the content hash of ``raw_text`` or raise ``DuplicateError`` when it was already submitted.

    The duplicate attempt is written to the activity log on the caller's session;
    the caller decides whether to commit it before surfacing the error.
    """
    digest = content_hash(raw_text)
    existing = find_receipt_by_hash(db, digest)
    if existing is None:
        return digest
    raise duplicate_error(db, digest=digest, order_number=order_number, existing=existing, origin=origin)
