from __future__ import annotations

from functools import lru_cache

from reconciliation.config import settings
from reconciliation.services.mock_platform_provider import MockPlatformProvider
from reconciliation.services.ocr_service import PlainTextExtractor, VisionTextExtractor
from reconciliation.services.tiendanube_platform_provider import TiendaNubePlatformProvider


@lru_cache(maxsize=1)
def get_platform_provider():
    provider = settings.platform_provider.strip().lower()
    if provider == 'tiendanube':
        return TiendaNubePlatformProvider()
    return MockPlatformProvider()


@lru_cache(maxsize=1)
def get_text_extractor():
    provider = settings.ocr_provider.strip().lower()
    if provider == 'vision':
        return VisionTextExtractor()
    return PlainTextExtractor()
