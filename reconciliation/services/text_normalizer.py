from __future__ import annotations

import re
import unicodedata

_WHITESPACE_RE = re.compile(r'\s+')


def strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize('NFD', value)
    return ''.join(char for char in decomposed if not unicodedata.combining(char))


def normalize_text(value: str | None) -> str:
    """Lowercase, accent-free, single-spaced form of OCR text used for matching."""
    if not value:
        return ''
    return _WHITESPACE_RE.sub(' ', strip_accents(value).lower()).strip()
