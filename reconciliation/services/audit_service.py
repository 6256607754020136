from __future__ import annotations

from sqlalchemy.orm import Session

from reconciliation.models import ActivityLog


def log_activity(
    db: Session,
    *,
    action: str,
    order_number: str | None = None,
    receipt_id: int | None = None,
    origin: str = 'system',
    actor: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        ActivityLog(
            action=action,
            order_number=order_number,
            receipt_id=receipt_id,
            origin=origin,
            actor=actor,
            meta=metadata or {},
        )
    )
