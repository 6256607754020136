from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from reconciliation.config import settings
from reconciliation.services.text_normalizer import normalize_text

AMOUNT_RE = re.compile(r'\$?\s?\d{1,3}(?:\.\d{3})*(?:,\d{2})?')
STRONG_KEYWORDS = ('importe', 'monto', 'total', '$', 'ars', 'pesos')
TRAP_KEYWORDS = ('cbu', 'cvu', 'cuit', 'cuil', 'operacion', 'referencia', 'codigo', 'alias')
CONTEXT_RADIUS = 50
LEADING_SECTION_RATIO = 0.3


@dataclass(frozen=True)
class AmountCandidate:
    raw: str
    value: Decimal
    position: int
    score: int


def parse_amount_token(token: str) -> Decimal | None:
    cleaned = token.replace('$', '').strip().replace('.', '').replace(',', '.')
    if not cleaned:
        return None
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def _score(text: str, token: str, position: int) -> int:
    context = text[max(0, position - CONTEXT_RADIUS) : position + CONTEXT_RADIUS]
    score = 0
    if '$' in token:
        score += 2
    if any(keyword in context for keyword in STRONG_KEYWORDS):
        score += 3
    if not any(keyword in context for keyword in TRAP_KEYWORDS):
        score += 2
    if position < len(text) * LEADING_SECTION_RATIO:
        score += 1
    return score


def amount_candidates(raw_text: str | None, *, min_amount: Decimal | None = None) -> list[AmountCandidate]:
    text = normalize_text(raw_text).encode('ascii', errors='ignore').decode('ascii')
    if not text:
        return []
    floor = min_amount if min_amount is not None else Decimal(settings.receipt_min_amount)

    candidates: list[AmountCandidate] = []
    for match in AMOUNT_RE.finditer(text):
        token = match.group(0)
        # grouped thousands are required; bare digit runs are ids or account fragments
        if '.' not in token:
            continue
        value = parse_amount_token(token)
        if value is None or value < floor:
            continue
        candidates.append(
            AmountCandidate(raw=token, value=value, position=match.start(), score=_score(text, token, match.start()))
        )
    return candidates


def extract_amount(raw_text: str | None, *, min_amount: Decimal | None = None) -> Decimal | None:
    best: AmountCandidate | None = None
    for candidate in amount_candidates(raw_text, min_amount=min_amount):
        if best is None or candidate.score > best.score:
            best = candidate
    return best.value if best else None
