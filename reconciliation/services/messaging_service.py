from __future__ import annotations

import json
import logging
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from sqlalchemy import select
from sqlalchemy.orm import Session

from reconciliation.config import settings
from reconciliation.errors import UpstreamError
from reconciliation.models import FinancialEntity

logger = logging.getLogger(__name__)

TRANSFER_DETAILS_VARIABLE = '4'


def _post(path: str, payload: dict) -> dict:
    req = Request(
        url=f"{settings.messaging_base_url.rstrip('/')}{path}",
        data=json.dumps(payload).encode('utf-8'),
        headers={'access-token': settings.messaging_access_token or '', 'Content-Type': 'application/json'},
        method='POST',
    )
    try:
        with urlopen(req, timeout=settings.messaging_timeout_seconds) as response:
            body = response.read().decode('utf-8')
    except HTTPError as exc:
        body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
        raise UpstreamError(f'Messaging API error {exc.code} on {path}: {body}', status_code=exc.code) from exc
    except URLError as exc:
        raise UpstreamError(f'Messaging API network error on {path}: {exc.reason}') from exc
    return json.loads(body) if body else {}


def messaging_enabled() -> bool:
    return bool(settings.messaging_base_url and settings.messaging_access_token and settings.messaging_channel_id)


def default_transfer_details(db: Session) -> str | None:
    entity = db.execute(
        select(FinancialEntity)
        .where(FinancialEntity.is_default.is_(True), FinancialEntity.active.is_(True))
        .order_by(FinancialEntity.id)
        .limit(1)
    ).scalar_one_or_none()
    return entity.transfer_details if entity else None


def send_template(*, phone: str | None, template: str, variables: dict[str, str]) -> bool:
    if not phone:
        logger.info('Skipping %s message: no phone number', template)
        return False
    if not messaging_enabled():
        logger.info('Skipping %s message: messaging is not configured', template)
        return False
    _post(
        '/chats-actions/trigger-intent',
        {
            'chat': {'channelId': settings.messaging_channel_id, 'contactId': phone.replace('+', '').strip()},
            'intentIdOrName': template,
            'variables': variables,
        },
    )
    logger.info('Sent %s message to %s', template, phone)
    return True


def send_payment_message(
    db: Session,
    *,
    phone: str | None,
    customer_name: str | None,
    order_number: str,
    amount_paid,
    balance,
    settled: bool,
) -> bool:
    """Tell the customer their receipt arrived; when money is still owed include where to transfer it."""
    template = 'payment_complete' if settled else 'payment_partial'
    variables = {
        '1': customer_name or 'Customer',
        '2': order_number,
        '3': f'${amount_paid}' if settled else f'${balance}',
    }
    if not settled:
        details = default_transfer_details(db)
        if details:
            variables[TRANSFER_DETAILS_VARIABLE] = details
    return send_template(phone=phone, template=template, variables=variables)


def send_order_created_message(*, phone: str | None, customer_name: str | None, order_number: str, total) -> bool:
    return send_template(
        phone=phone,
        template='order_created',
        variables={'1': customer_name or 'Customer', '2': order_number, '3': f'${total}'},
    )
