from __future__ import annotations

import json
import logging
import threading
import time
from datetime import datetime, timezone
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from reconciliation.config import settings
from reconciliation.errors import NotFoundError, UpstreamError
from reconciliation.services.platform_provider import RemoteOrder, parse_order

logger = logging.getLogger(__name__)


class TiendaNubePlatformProvider:
    def __init__(self) -> None:
        if not settings.platform_access_token or not settings.platform_store_id:
            raise ValueError('PLATFORM_ACCESS_TOKEN and PLATFORM_STORE_ID are required when PLATFORM_PROVIDER=tiendanube')

        self.base_url = f"{settings.platform_api_base_url.rstrip('/')}/{settings.platform_store_id}"
        self.headers = {
            'Authentication': f'bearer {settings.platform_access_token}',
            'User-Agent': settings.platform_user_agent,
            'Content-Type': 'application/json',
        }
        self.min_interval = settings.platform_min_call_interval_seconds
        self._throttle_lock = threading.Lock()
        self._last_call_at = 0.0

    def _throttle(self) -> None:
        with self._throttle_lock:
            wait = self.min_interval - (time.monotonic() - self._last_call_at)
            if wait > 0:
                time.sleep(wait)
            self._last_call_at = time.monotonic()

    def _get(self, path: str, params: dict | None = None):
        self._throttle()
        query = f'?{urlencode(params)}' if params else ''
        req = Request(url=f'{self.base_url}{path}{query}', headers=self.headers, method='GET')
        try:
            with urlopen(req, timeout=settings.platform_timeout_seconds) as response:
                return json.loads(response.read().decode('utf-8'))
        except HTTPError as exc:
            body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
            if exc.code == 404:
                raise NotFoundError(f'Platform resource not found on {path}') from exc
            raise UpstreamError(f'Platform API error {exc.code} on {path}: {body}', status_code=exc.code) from exc
        except URLError as exc:
            raise UpstreamError(f'Platform API network error on {path}: {exc.reason}') from exc

    def fetch_order(self, remote_id: str) -> RemoteOrder:
        payload = self._get(f'/orders/{remote_id}')
        if not isinstance(payload, dict) or not payload.get('id'):
            raise UpstreamError(f'Platform returned an unexpected payload for order {remote_id}')
        return parse_order(payload)

    def search_orders(
        self,
        *,
        query: str | None = None,
        created_since: datetime | None = None,
        per_page: int = 50,
    ) -> list[RemoteOrder]:
        params: dict = {'per_page': per_page}
        if query:
            params['q'] = query
        if created_since:
            params['created_at_min'] = created_since.astimezone(timezone.utc).isoformat()
        try:
            payload = self._get('/orders', params)
        except NotFoundError:
            # the platform answers 404 when a search has no results
            return []
        # errors come back as an object instead of a list
        if not isinstance(payload, list):
            logger.warning('Platform order search returned a non-list payload: %s', payload)
            return []
        return [parse_order(item) for item in payload]
