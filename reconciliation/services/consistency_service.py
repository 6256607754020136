from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from reconciliation.errors import ConsistencyCheckError
from reconciliation.models import Inconsistency, InconsistencyType, OrderLineItem
from reconciliation.services.platform_provider import RemoteLineItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LineSummary:
    product_id: str
    variant_id: str
    name: str
    quantity: int


@dataclass(frozen=True)
class Finding:
    type: InconsistencyType
    detail: dict


@dataclass(frozen=True)
class ConsistencyResult:
    order_number: str
    is_consistent: bool
    findings: list[Finding] = field(default_factory=list)
    error: str | None = None


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _index(lines: Iterable[LineSummary]) -> dict[tuple[str, str], LineSummary]:
    indexed: dict[tuple[str, str], LineSummary] = {}
    for line in lines:
        key = (line.product_id, line.variant_id or '')
        existing = indexed.get(key)
        if existing:
            line = LineSummary(line.product_id, line.variant_id, existing.name, existing.quantity + line.quantity)
        indexed[key] = line
    return indexed


def diff_line_items(local: Iterable[LineSummary], remote: Iterable[LineSummary]) -> list[Finding]:
    """Compare the local mirror with the platform's line items for one order."""
    local_lines = list(local)
    remote_lines = list(remote)
    local_by_key = _index(local_lines)
    remote_by_key = _index(remote_lines)
    findings: list[Finding] = []

    for key, line in remote_by_key.items():
        if key not in local_by_key:
            findings.append(
                Finding(
                    InconsistencyType.MISSING,
                    {
                        'product_id': line.product_id,
                        'variant_id': line.variant_id,
                        'name': line.name,
                        'expected_quantity': line.quantity,
                    },
                )
            )

    for key, line in local_by_key.items():
        remote_line = remote_by_key.get(key)
        if remote_line is None:
            findings.append(
                Finding(
                    InconsistencyType.EXTRA,
                    {
                        'product_id': line.product_id,
                        'variant_id': line.variant_id,
                        'name': line.name,
                        'local_quantity': line.quantity,
                    },
                )
            )
        elif remote_line.quantity != line.quantity:
            findings.append(
                Finding(
                    InconsistencyType.QUANTITY_MISMATCH,
                    {
                        'product_id': line.product_id,
                        'variant_id': line.variant_id,
                        'name': line.name,
                        'local_quantity': line.quantity,
                        'remote_quantity': remote_line.quantity,
                    },
                )
            )

    local_total = sum(line.quantity for line in local_lines)
    remote_total = sum(line.quantity for line in remote_lines)
    if local_total != remote_total:
        findings.append(
            Finding(
                InconsistencyType.TOTAL_MISMATCH,
                {'local_total': local_total, 'remote_total': remote_total, 'difference': remote_total - local_total},
            )
        )
    return findings


def local_line_summaries(db: Session, order_number: str) -> list[LineSummary]:
    rows = db.execute(select(OrderLineItem).where(OrderLineItem.order_number == order_number)).scalars().all()
    return [LineSummary(row.product_id, row.variant_id, row.name, row.quantity) for row in rows]


def remote_line_summaries(items: Iterable[RemoteLineItem]) -> list[LineSummary]:
    return [LineSummary(item.product_id, item.variant_id, item.name, item.quantity) for item in items]


def resolve_inconsistencies(db: Session, order_number: str) -> int:
    result = db.execute(
        update(Inconsistency)
        .where(Inconsistency.order_number == order_number, Inconsistency.resolved.is_(False))
        .values(resolved=True, resolved_at=_now())
    )
    return result.rowcount or 0


def _store_findings(db: Session, order_number: str, findings: list[Finding]) -> None:
    try:
        with db.begin_nested():
            resolve_inconsistencies(db, order_number)
            for finding in findings:
                db.add(Inconsistency(order_number=order_number, type=finding.type, detail=finding.detail))
    except SQLAlchemyError as exc:
        raise ConsistencyCheckError(f'Could not store inconsistencies for order {order_number}') from exc


def verify_order_consistency(db: Session, order_number: str, remote_items: Iterable[RemoteLineItem]) -> ConsistencyResult:
    """Record discrepancies between the mirror and the platform.

    Never raises: a failed check is logged and reported as consistent so the
    sync that called it can carry on.
    """
    try:
        findings = diff_line_items(local_line_summaries(db, order_number), remote_line_summaries(remote_items))
        if findings:
            _store_findings(db, order_number, findings)
            logger.warning('Order %s has %s inconsistencies with the platform', order_number, len(findings))
        return ConsistencyResult(order_number=order_number, is_consistent=not findings, findings=findings)
    except Exception as exc:
        logger.exception('Consistency check failed for order %s', order_number)
        return ConsistencyResult(order_number=order_number, is_consistent=True, error=str(exc))


def list_open_inconsistencies(db: Session, order_number: str | None = None) -> list[Inconsistency]:
    stmt = select(Inconsistency).where(Inconsistency.resolved.is_(False))
    if order_number:
        stmt = stmt.where(Inconsistency.order_number == order_number)
    return db.execute(stmt.order_by(Inconsistency.detected_at.desc(), Inconsistency.id.desc())).scalars().all()


def orders_with_open_inconsistencies(db: Session, limit: int) -> list[str]:
    return db.execute(
        select(Inconsistency.order_number)
        .where(Inconsistency.resolved.is_(False))
        .group_by(Inconsistency.order_number)
        .order_by(Inconsistency.order_number)
        .limit(limit)
    ).scalars().all()
