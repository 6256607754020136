from __future__ import annotations

import base64
import json
import logging
import re
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from reconciliation.config import settings
from reconciliation.errors import UpstreamError, ValidationError

logger = logging.getLogger(__name__)

RECEIPT_KEYWORDS = (
    'transferencia',
    'comprobante',
    'pago',
    'importe',
    'total',
    'fecha',
    'operacion',
    'referencia',
    'cbu',
    'cvu',
    'alias',
)
MIN_RECEIPT_TEXT_LENGTH = 30
NOT_A_RECEIPT_MESSAGE = 'The file does not look like a payment receipt. Contact us and we will help you.'


class TextExtractor(Protocol):
    def extract_text(self, content: bytes, *, filename: str | None = None) -> str: ...


class PlainTextExtractor:
    """Reads text already produced upstream, e.g. by a device-side OCR step."""

    def extract_text(self, content: bytes, *, filename: str | None = None) -> str:
        return content.decode('utf-8', errors='ignore')


def assert_receipt_text(raw_text: str | None) -> None:
    if not raw_text:
        raise ValidationError(NOT_A_RECEIPT_MESSAGE)
    text = re.sub(r'\s+', ' ', raw_text.lower())
    if len(text) < MIN_RECEIPT_TEXT_LENGTH or not any(keyword in text for keyword in RECEIPT_KEYWORDS):
        logger.info('Rejected upload whose text does not look like a receipt (%s chars)', len(text))
        raise ValidationError(NOT_A_RECEIPT_MESSAGE)


class VisionTextExtractor:
    def __init__(self) -> None:
        if not settings.ocr_api_key:
            raise ValueError('OCR_API_KEY is required when OCR_PROVIDER=vision')
        self.url = f"{settings.ocr_api_url.rstrip('/')}/images:annotate?key={settings.ocr_api_key}"

    def extract_text(self, content: bytes, *, filename: str | None = None) -> str:
        payload = {
            'requests': [
                {
                    'image': {'content': base64.b64encode(content).decode('ascii')},
                    'features': [{'type': 'DOCUMENT_TEXT_DETECTION'}],
                }
            ]
        }
        req = Request(
            url=self.url,
            data=json.dumps(payload).encode('utf-8'),
            headers={'Content-Type': 'application/json'},
            method='POST',
        )
        try:
            with urlopen(req, timeout=settings.ocr_timeout_seconds) as response:
                parsed = json.loads(response.read().decode('utf-8'))
        except HTTPError as exc:
            body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
            raise UpstreamError(f'OCR API error {exc.code}: {body}', status_code=exc.code) from exc
        except URLError as exc:
            raise UpstreamError(f'OCR API network error: {exc.reason}') from exc

        responses = parsed.get('responses') or [{}]
        if responses[0].get('error'):
            raise UpstreamError(f"OCR API returned an error: {responses[0]['error']}")
        return (responses[0].get('fullTextAnnotation') or {}).get('text', '')
