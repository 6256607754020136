from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from reconciliation.errors import DestinationRejectedError
from reconciliation.models import FinancialEntity
from reconciliation.services.destination_extractor import ExtractedDestination
from reconciliation.services.text_normalizer import normalize_text

logger = logging.getLogger(__name__)

# (entity, extracted, normalized full text) -> match label or None
DestinationMatcher = Callable[[FinancialEntity, ExtractedDestination, str], str | None]


@dataclass(frozen=True)
class DestinationMatch:
    valid: bool
    entity: FinancialEntity | None = None
    matched_by: str | None = None
    reason: str | None = None


def _significant_words(value: str) -> list[str]:
    return [word for word in normalize_text(value).split(' ') if len(word) > 2]


def match_alias(entity: FinancialEntity, extracted: ExtractedDestination, text: str) -> str | None:
    if extracted.alias and entity.alias and normalize_text(extracted.alias) == normalize_text(entity.alias):
        return 'alias'
    return None


def match_cbu(entity: FinancialEntity, extracted: ExtractedDestination, text: str) -> str | None:
    if extracted.cbu and entity.account_number and extracted.cbu == entity.account_number.strip():
        return 'cbu'
    return None


def match_cvu(entity: FinancialEntity, extracted: ExtractedDestination, text: str) -> str | None:
    if extracted.cvu and entity.account_number and extracted.cvu == entity.account_number.strip():
        return 'cvu'
    return None


def match_holder_name(entity: FinancialEntity, extracted: ExtractedDestination, text: str) -> str | None:
    if not entity.holder_name:
        return None
    words = _significant_words(entity.holder_name)
    if not words:
        return None

    if extracted.holder_name:
        candidate = normalize_text(extracted.holder_name)
        if all(word in candidate for word in words):
            return 'holder_name'
    for alternate in extracted.alternate_holder_names:
        candidate = normalize_text(alternate)
        if all(word in candidate for word in words):
            return 'alternate_holder_name'
    if all(word in text for word in words):
        return 'holder_name_in_text'
    return None


def match_keyword(entity: FinancialEntity, extracted: ExtractedDestination, text: str) -> str | None:
    for keyword in entity.keywords or []:
        normalized = normalize_text(keyword)
        if normalized and normalized in text:
            return 'keyword'
    return None


def match_alias_in_text(entity: FinancialEntity, extracted: ExtractedDestination, text: str) -> str | None:
    if entity.alias:
        normalized = normalize_text(entity.alias)
        if normalized and normalized in text:
            return 'alias_in_text'
    return None


MATCHERS: tuple[DestinationMatcher, ...] = (
    match_alias,
    match_cbu,
    match_cvu,
    match_holder_name,
    match_keyword,
    match_alias_in_text,
)


def list_active_entities(db: Session) -> list[FinancialEntity]:
    return db.execute(
        select(FinancialEntity).where(FinancialEntity.active.is_(True)).order_by(FinancialEntity.id)
    ).scalars().all()


def match_destination(
    entities: Sequence[FinancialEntity],
    extracted: ExtractedDestination,
    raw_text: str | None,
    *,
    matchers: Sequence[DestinationMatcher] = MATCHERS,
) -> DestinationMatch:
    if not entities:
        return DestinationMatch(valid=True, reason='no_entities_configured')

    text = normalize_text(raw_text)
    # a higher priority strategy wins over any entity matched by a lower one
    for matcher in matchers:
        for entity in entities:
            label = matcher(entity, extracted, text)
            if label:
                return DestinationMatch(valid=True, entity=entity, matched_by=label)
    return DestinationMatch(valid=False, reason='destination_not_registered')


def validate_destination(db: Session, extracted: ExtractedDestination, raw_text: str | None) -> DestinationMatch:
    result = match_destination(list_active_entities(db), extracted, raw_text)
    if not result.valid:
        logger.warning('Receipt destination not registered: %s', extracted.as_dict())
        raise DestinationRejectedError(
            'The destination account on the receipt is not one of our registered accounts',
            extracted=extracted.as_dict(),
        )
    if result.entity is not None:
        logger.info('Receipt destination matched entity %s by %s', result.entity.id, result.matched_by)
    return result


def detect_entity_by_keywords(entities: Sequence[FinancialEntity], raw_text: str | None) -> FinancialEntity | None:
    """Return the single entity whose keywords appear in the text; ambiguous or no match gives None."""
    text = normalize_text(raw_text)
    if not text:
        return None
    matches = [entity for entity in entities if match_keyword(entity, ExtractedDestination(), text)]
    if len(matches) > 1:
        logger.info('Ambiguous entity keywords matched: %s', ', '.join(entity.name for entity in matches))
    return matches[0] if len(matches) == 1 else None
