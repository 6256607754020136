from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from reconciliation.config import settings
from reconciliation.errors import UpstreamError

logger = logging.getLogger(__name__)

_UNSAFE_NAME_RE = re.compile(r'[^A-Za-z0-9._-]+')

CONTENT_TYPES = {
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.png': 'image/png',
    '.webp': 'image/webp',
    '.pdf': 'application/pdf',
}


def storage_enabled() -> bool:
    return bool(settings.storage_base_url and settings.storage_api_key)


def object_path(filename: str, *, now: datetime | None = None) -> str:
    moment = now or datetime.now(tz=timezone.utc)
    safe_name = _UNSAFE_NAME_RE.sub('_', filename or 'receipt').strip('._') or 'receipt'
    return f"pending/{moment.strftime('%Y%m%d%H%M%S%f')}-{safe_name}"


def content_type_for(filename: str) -> str:
    lowered = (filename or '').lower()
    for suffix, content_type in CONTENT_TYPES.items():
        if lowered.endswith(suffix):
            return content_type
    return 'application/octet-stream'


def upload_receipt_file(content: bytes, filename: str) -> str | None:
    """Store the receipt image and return its public URL, or None when storage is not configured."""
    if not storage_enabled():
        logger.info('Skipping receipt upload: storage is not configured')
        return None

    base_url = settings.storage_base_url.rstrip('/')
    path = object_path(filename)
    req = Request(
        url=f'{base_url}/object/{settings.storage_bucket}/{quote(path)}',
        data=content,
        headers={
            'Authorization': f'Bearer {settings.storage_api_key}',
            'Content-Type': content_type_for(filename),
        },
        method='POST',
    )
    try:
        with urlopen(req, timeout=settings.storage_timeout_seconds) as response:
            response.read()
    except HTTPError as exc:
        body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
        raise UpstreamError(f'Storage API error {exc.code}: {body}', status_code=exc.code) from exc
    except URLError as exc:
        raise UpstreamError(f'Storage API network error: {exc.reason}') from exc

    return f'{base_url}/object/public/{settings.storage_bucket}/{quote(path)}'
