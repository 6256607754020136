from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from reconciliation.errors import NotFoundError
from reconciliation.services.platform_provider import RemoteLineItem, RemoteOrder


class MockPlatformProvider:
    def __init__(self, orders: list[RemoteOrder] | None = None) -> None:
        if orders is None:
            orders = [
                RemoteOrder(
                    remote_id='900001',
                    order_number='1001',
                    total=Decimal('25000'),
                    payment_status='pending',
                    customer_name='Lucia Fernandez',
                    customer_phone='5491122334455',
                    line_items=[
                        RemoteLineItem('P-100', 'V-1', 'Remera basica', 2, Decimal('7500')),
                        RemoteLineItem('P-200', '', 'Gorra', 1, Decimal('10000')),
                    ],
                ),
                RemoteOrder(
                    remote_id='900002',
                    order_number='1002',
                    total=Decimal('48000'),
                    payment_status='paid',
                    customer_name='Martin Gomez',
                    line_items=[RemoteLineItem('P-300', 'V-7', 'Campera', 1, Decimal('48000'))],
                ),
            ]
        self.orders = {order.remote_id: order for order in orders}
        self.calls: list[tuple] = []

    def add_order(self, order: RemoteOrder) -> None:
        self.orders[order.remote_id] = order

    def fetch_order(self, remote_id: str) -> RemoteOrder:
        self.calls.append(('fetch_order', remote_id))
        order = self.orders.get(str(remote_id))
        if order is None:
            raise NotFoundError(f'Platform resource not found on /orders/{remote_id}')
        return order

    def search_orders(
        self,
        *,
        query: str | None = None,
        created_since: datetime | None = None,
        per_page: int = 50,
    ) -> list[RemoteOrder]:
        self.calls.append(('search_orders', query))
        orders = list(self.orders.values())
        if query:
            orders = [order for order in orders if order.order_number == str(query).strip().lstrip('#')]
        return orders[:per_page]
