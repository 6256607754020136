from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Protocol


@dataclass(frozen=True)
class RemoteLineItem:
    product_id: str
    variant_id: str
    name: str
    quantity: int
    unit_price: Decimal
    sku: str | None = None
    variant_label: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return self.product_id, self.variant_id


@dataclass(frozen=True)
class RemoteOrder:
    remote_id: str
    order_number: str
    total: Decimal
    currency: str = 'ARS'
    payment_status: str | None = None
    shipping_status: str | None = None
    status: str | None = None
    created_at: str | None = None
    customer_name: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    line_items: list[RemoteLineItem] = field(default_factory=list)

    @property
    def is_paid(self) -> bool:
        return (self.payment_status or '').lower() == 'paid'

    @property
    def is_cancelled(self) -> bool:
        return (self.status or '').lower() == 'cancelled'


class PlatformProvider(Protocol):
    def fetch_order(self, remote_id: str) -> RemoteOrder: ...

    def search_orders(
        self,
        *,
        query: str | None = None,
        created_since: datetime | None = None,
        per_page: int = 50,
    ) -> list[RemoteOrder]: ...


def _text(value) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _decimal(value) -> Decimal:
    if value in (None, ''):
        return Decimal('0')
    return Decimal(str(value))


def parse_line_item(payload: dict) -> RemoteLineItem:
    variant_values = payload.get('variant_values') or []
    return RemoteLineItem(
        product_id=str(payload.get('product_id') or ''),
        variant_id=str(payload.get('variant_id') or ''),
        name=(payload.get('name') or '').strip(),
        quantity=int(payload.get('quantity') or 0),
        unit_price=_decimal(payload.get('price')),
        sku=_text(payload.get('sku')),
        variant_label=' / '.join(str(value) for value in variant_values) or None,
    )


def parse_order(payload: dict) -> RemoteOrder:
    customer = payload.get('customer') or {}
    shipping_address = payload.get('shipping_address') or {}
    default_address = customer.get('default_address') or {}
    phone = (
        payload.get('contact_phone')
        or customer.get('phone')
        or shipping_address.get('phone')
        or default_address.get('phone')
    )
    return RemoteOrder(
        remote_id=str(payload.get('id') or ''),
        order_number=str(payload.get('number') or ''),
        total=_decimal(payload.get('total')),
        currency=payload.get('currency') or 'ARS',
        payment_status=_text(payload.get('payment_status')),
        shipping_status=_text(payload.get('shipping_status')),
        status=_text(payload.get('status')),
        created_at=_text(payload.get('created_at')),
        customer_name=_text(customer.get('name') or payload.get('contact_name')),
        customer_email=_text(customer.get('email') or payload.get('contact_email')),
        customer_phone=_text(phone),
        line_items=[parse_line_item(item) for item in payload.get('products') or []],
    )
