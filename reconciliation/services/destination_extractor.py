from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DESTINATION_KEYWORDS = (
    'destinatario',
    'destino',
    'beneficiario',
    'receptor',
    'titular',
    'para',
    'cuenta destino',
    'transferiste a',
    'enviaste a',
    'le enviaste',
)
# only honored once a destination section is open; cuit is absent because it follows the holder name
SECTION_END_KEYWORDS = (
    'origen',
    'desde',
    'remitente',
    'ordenante',
    'monto',
    'importe',
    'fecha',
    'concepto',
    'motivo',
    'banco',
)
ACCOUNT_TOKENS = ('cbu', 'cvu', 'alias')
BANK_NAMES = ('banco', 'santander', 'nacion', 'galicia')
SECTION_WINDOW_LINES = 6

_DESTINATION_RE = re.compile(r'\b(?:' + '|'.join(re.escape(k) for k in DESTINATION_KEYWORDS) + r')\b')
_SECTION_END_RE = re.compile(r'\b(?:' + '|'.join(re.escape(k) for k in SECTION_END_KEYWORDS) + r')\b')
_NAME_RE = re.compile(r'^[A-Za-zÁÉÍÓÚÑáéíóúñ\s]{5,60}$')
_UPPERCASE_NAME_RE = re.compile(r'^[A-ZÁÉÍÓÚÑ][A-ZÁÉÍÓÚÑ\s]{5,50}$')
_ALIAS_RE = re.compile(r'\b([A-Za-z0-9]+\.[A-Za-z0-9]+\.[A-Za-z0-9]+)\b')
_ACCOUNT_RE = re.compile(r'(?<!\d)(\d{22})(?!\d)')
_ACCOUNT_SEPARATORS_RE = re.compile(r'[\s\-.]')


@dataclass
class ExtractedDestination:
    alias: str | None = None
    cbu: str | None = None
    cvu: str | None = None
    holder_name: str | None = None
    alternate_holder_names: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.alias or self.cbu or self.cvu or self.holder_name or self.alternate_holder_names)

    def as_dict(self) -> dict:
        return {
            'alias': self.alias,
            'cbu': self.cbu,
            'cvu': self.cvu,
            'holder_name': self.holder_name,
            'alternate_holder_names': list(self.alternate_holder_names),
        }


def looks_like_holder_name(line: str) -> bool:
    value = line.strip()
    if not _NAME_RE.match(value):
        return False
    if len(value.split()) < 2:
        return False
    lowered = value.lower()
    return not any(token in lowered for token in ACCOUNT_TOKENS)


def find_alias(line: str) -> str | None:
    for match in _ALIAS_RE.finditer(line):
        candidate = match.group(1)
        # 1.234.567 is an amount, not an alias
        if any(char.isalpha() for char in candidate):
            return candidate.upper()
    return None


def find_account_number(line: str) -> str | None:
    match = _ACCOUNT_RE.search(line)
    if match:
        return match.group(1)
    compact = _ACCOUNT_SEPARATORS_RE.sub('', line.split(':', 1)[-1])
    if len(compact) == 22 and compact.isdigit():
        return compact
    return None


def _assign_account(result: ExtractedDestination, number: str) -> None:
    if number.startswith('000'):
        result.cvu = number
    else:
        result.cbu = number


def _fallback_holder_names(lines: list[str]) -> list[str]:
    excluded = DESTINATION_KEYWORDS + SECTION_END_KEYWORDS + ACCOUNT_TOKENS + BANK_NAMES
    names: list[str] = []
    for line in lines:
        if not _UPPERCASE_NAME_RE.match(line) or ' ' not in line:
            continue
        lowered = line.lower()
        if any(keyword in lowered for keyword in excluded):
            continue
        names.append(line)
    return names


def extract_destination(raw_text: str | None) -> ExtractedDestination:
    """Pull the receiving account out of a transfer receipt.

    Only lines inside a destination section (opened by a recipient anchor and
    closed by an origin or generic-field anchor, at most six lines long) are
    searched for account numbers, so the sender's own CBU/CVU is never taken.
    """
    result = ExtractedDestination()
    if not raw_text:
        return result

    text = raw_text.replace('\r', '\n')
    lines = [line.strip() for line in text.split('\n') if line.strip()]

    in_section = False
    lines_in_section = 0

    for line in lines:
        lowered = line.lower()
        if in_section and _SECTION_END_RE.search(lowered):
            in_section = False

        if _DESTINATION_RE.search(lowered):
            in_section = True
            lines_in_section = 0
            if ':' in line:
                tail = line.split(':', 1)[1].strip()
                if not result.holder_name and looks_like_holder_name(tail):
                    result.holder_name = tail
                if not result.alias:
                    result.alias = find_alias(tail)
                if not (result.cbu or result.cvu):
                    number = find_account_number(tail)
                    if number:
                        _assign_account(result, number)
            continue

        if not in_section or lines_in_section >= SECTION_WINDOW_LINES:
            continue
        lines_in_section += 1

        if not result.holder_name and looks_like_holder_name(line):
            result.holder_name = line
        if not result.alias:
            result.alias = find_alias(line)
        if not (result.cbu or result.cvu):
            number = find_account_number(line)
            if number:
                _assign_account(result, number)

    if not result.alias:
        result.alias = find_alias(text)

    if not result.holder_name:
        result.alternate_holder_names = _fallback_holder_names(lines)
        if result.alternate_holder_names:
            result.holder_name = result.alternate_holder_names[0]

    if not (result.cbu or result.cvu):
        logger.debug('No destination account number found inside a destination section')
    return result
