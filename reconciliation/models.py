from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer, 'sqlite')


class Base(DeclarativeBase):
    pass


class PaymentState(str, Enum):
    PENDING = 'PENDING'
    AWAITING_CONFIRMATION = 'AWAITING_CONFIRMATION'
    PARTIALLY_CONFIRMED = 'PARTIALLY_CONFIRMED'
    FULLY_CONFIRMED = 'FULLY_CONFIRMED'
    CREDIT = 'CREDIT'
    REJECTED = 'REJECTED'


class WorkflowState(str, Enum):
    PENDING_PAYMENT = 'PENDING_PAYMENT'
    READY_TO_PRINT = 'READY_TO_PRINT'
    LABEL_PRINTED = 'LABEL_PRINTED'
    PACKED = 'PACKED'
    PICKED_UP = 'PICKED_UP'
    IN_TRANSIT = 'IN_TRANSIT'
    SHIPPED = 'SHIPPED'
    CANCELLED = 'CANCELLED'


class ReceiptState(str, Enum):
    AWAITING_CONFIRMATION = 'AWAITING_CONFIRMATION'
    CONFIRMED = 'CONFIRMED'
    REJECTED = 'REJECTED'


class PaymentSource(str, Enum):
    CASH = 'CASH'
    PLATFORM = 'PLATFORM'


class QueueStatus(str, Enum):
    PENDING = 'PENDING'
    PROCESSING = 'PROCESSING'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'


class InconsistencyType(str, Enum):
    MISSING = 'MISSING'
    EXTRA = 'EXTRA'
    QUANTITY_MISMATCH = 'QUANTITY_MISMATCH'
    TOTAL_MISMATCH = 'TOTAL_MISMATCH'


class Order(Base):
    __tablename__ = 'orders'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    remote_id: Mapped[str | None] = mapped_column(Text)
    declared_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'), server_default='0')
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'), server_default='0')
    balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'), server_default='0')
    currency: Mapped[str] = mapped_column(Text, nullable=False, default='ARS', server_default='ARS')
    payment_state: Mapped[PaymentState] = mapped_column(
        SQLEnum(PaymentState, name='payment_state'),
        nullable=False,
        default=PaymentState.PENDING,
        server_default='PENDING',
    )
    workflow_state: Mapped[WorkflowState] = mapped_column(
        SQLEnum(WorkflowState, name='workflow_state'),
        nullable=False,
        default=WorkflowState.PENDING_PAYMENT,
        server_default='PENDING_PAYMENT',
    )
    customer_name: Mapped[str | None] = mapped_column(Text)
    customer_email: Mapped[str | None] = mapped_column(Text)
    customer_phone: Mapped[str | None] = mapped_column(Text)
    remote_payment_status: Mapped[str | None] = mapped_column(Text)
    remote_shipping_status: Mapped[str | None] = mapped_column(Text)
    remote_created_at: Mapped[str | None] = mapped_column(Text)
    printed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    packed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class OrderLineItem(Base):
    __tablename__ = 'order_line_items'
    __table_args__ = (
        UniqueConstraint('order_number', 'product_id', 'variant_id', name='uq_order_line_items_key'),
        CheckConstraint('quantity >= 0', name='ck_order_line_items_quantity_non_negative'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_number: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(Text, nullable=False)
    variant_id: Mapped[str] = mapped_column(Text, nullable=False, default='', server_default='')
    name: Mapped[str] = mapped_column(Text, nullable=False, default='', server_default='')
    variant_label: Mapped[str | None] = mapped_column(Text)
    sku: Mapped[str | None] = mapped_column(Text)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    unit_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'), server_default='0')
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class FinancialEntity(Base):
    __tablename__ = 'financial_entities'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    alias: Mapped[str | None] = mapped_column(Text)
    account_number: Mapped[str | None] = mapped_column(Text)
    holder_name: Mapped[str | None] = mapped_column(Text)
    keywords: Mapped[list] = mapped_column(JSON, nullable=False, default=list, server_default='[]')
    transfer_details: Mapped[str | None] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Receipt(Base):
    __tablename__ = 'receipts'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_number: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    content_hash: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    raw_text: Mapped[str] = mapped_column(Text, nullable=False)
    detected_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    declared_total_at_upload: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    balance_at_upload: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    state: Mapped[ReceiptState] = mapped_column(
        SQLEnum(ReceiptState, name='receipt_state'),
        nullable=False,
        default=ReceiptState.AWAITING_CONFIRMATION,
        server_default='AWAITING_CONFIRMATION',
    )
    financial_entity_id: Mapped[int | None] = mapped_column(BigInteger)
    file_url: Mapped[str | None] = mapped_column(Text)
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    decided_by: Mapped[str | None] = mapped_column(Text)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class CashPayment(Base):
    __tablename__ = 'cash_payments'
    __table_args__ = (CheckConstraint('amount > 0', name='ck_cash_payments_amount_positive'),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_number: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    source: Mapped[PaymentSource] = mapped_column(
        SQLEnum(PaymentSource, name='payment_source'),
        nullable=False,
        default=PaymentSource.CASH,
        server_default='CASH',
    )
    recorded_by: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class SyncQueueItem(Base):
    __tablename__ = 'sync_queue'
    __table_args__ = (
        Index(
            'uq_sync_queue_active_work',
            'type',
            'resource_id',
            'status',
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'PROCESSING')"),
            sqlite_where=text("status IN ('PENDING', 'PROCESSING')"),
        ),
        Index('ix_sync_queue_status_retry', 'status', 'next_retry_at'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    resource_id: Mapped[str] = mapped_column(Text, nullable=False)
    order_number: Mapped[str | None] = mapped_column(Text)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict, server_default='{}')
    status: Mapped[QueueStatus] = mapped_column(
        SQLEnum(QueueStatus, name='sync_queue_status'),
        nullable=False,
        default=QueueStatus.PENDING,
        server_default='PENDING',
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5, server_default='5')
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class Inconsistency(Base):
    __tablename__ = 'order_inconsistencies'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_number: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    type: Mapped[InconsistencyType] = mapped_column(SQLEnum(InconsistencyType, name='inconsistency_type'), nullable=False)
    detail: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict, server_default='{}')
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class SyncState(Base):
    __tablename__ = 'sync_state'

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict, server_default='{}')
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ActivityLog(Base):
    __tablename__ = 'activity_log'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    receipt_id: Mapped[int | None] = mapped_column(BigInteger)
    order_number: Mapped[str | None] = mapped_column(Text, index=True)
    origin: Mapped[str] = mapped_column(Text, nullable=False, default='system', server_default='system')
    actor: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict, server_default='{}')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
