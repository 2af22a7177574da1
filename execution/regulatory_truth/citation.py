"""
Citation Authority Resolution and Formatting

Orders candidate sources into a deterministic primary/supporting citation
block. The order is total:

1. Authority rank (LAW < REGULATION < GUIDANCE < PRACTICE, unknown last)
2. Effective date, newest first (missing date counts as oldest)
3. Confidence, highest first
4. Source id, ascending

Consumers must not re-sort the returned order.
"""

import logging
from datetime import date, datetime
from enum import Enum
from typing import Optional
from dataclasses import dataclass, field

from .language_patterns import LABELS

logger = logging.getLogger(__name__)


class AuthorityLevel(str, Enum):
    LAW = "LAW"
    REGULATION = "REGULATION"
    GUIDANCE = "GUIDANCE"
    PRACTICE = "PRACTICE"


AUTHORITY_RANK = {
    AuthorityLevel.LAW.value: 1,
    AuthorityLevel.REGULATION.value: 2,
    AuthorityLevel.GUIDANCE.value: 3,
    AuthorityLevel.PRACTICE.value: 4,
}
UNKNOWN_AUTHORITY_RANK = 99


def _coerce_date(value) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        logger.warning(f"Unparseable effective date {value!r}; treating as missing")
        return None


@dataclass(frozen=True)
class SourceCard:
    """A read-only candidate source for citation."""
    id: str
    authority: str
    confidence: float = 0.0
    effective_from: Optional[date] = None
    title: str = ""
    reference: str = ""
    quote: str = ""
    url: Optional[str] = None
    status: str = "active"

    def __post_init__(self):
        # Frozen dataclass: normalize through object.__setattr__
        object.__setattr__(self, "authority", str(getattr(self.authority, "value", self.authority)).upper())
        object.__setattr__(self, "effective_from", _coerce_date(self.effective_from))
        object.__setattr__(self, "confidence", float(self.confidence or 0.0))

    @property
    def authority_rank(self) -> int:
        return AUTHORITY_RANK.get(self.authority, UNKNOWN_AUTHORITY_RANK)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "authority": self.authority,
            "confidence": self.confidence,
            "effective_from": self.effective_from.isoformat() if self.effective_from else None,
            "title": self.title,
            "reference": self.reference,
            "quote": self.quote,
            "url": self.url,
        }


def citation_sort_key(card: SourceCard) -> tuple:
    missing_date = card.effective_from is None
    date_key = 0 if missing_date else -card.effective_from.toordinal()
    return (card.authority_rank, missing_date, date_key, -card.confidence, card.id)


def order_citations(cards) -> list[SourceCard]:
    """Return cards in authoritative citation order. Pure and input-order independent."""
    return sorted(cards, key=citation_sort_key)


@dataclass
class CitationBlock:
    """Primary citation plus supporting citations, already ordered."""
    primary: Optional[SourceCard] = None
    supporting: list[SourceCard] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.primary is None

    def ordered(self) -> list[SourceCard]:
        return ([self.primary] if self.primary else []) + list(self.supporting)

    def to_dict(self) -> dict:
        return {
            "primary": self.primary.to_dict() if self.primary else None,
            "supporting": [c.to_dict() for c in self.supporting],
        }


def build_citation_block(cards) -> CitationBlock:
    ordered = order_citations(cards)
    if not ordered:
        return CitationBlock()
    return CitationBlock(primary=ordered[0], supporting=ordered[1:])


def format_citation(card: SourceCard, language: str = "hr") -> str:
    """Short inline citation format: [title, reference, effective date]."""
    labels = LABELS.get(language, LABELS["hr"])
    parts = [card.title or card.id]
    if card.reference:
        parts.append(card.reference)
    if card.effective_from:
        parts.append(f"{labels['effective_from']} {card.effective_from.isoformat()}")
    return f"[{', '.join(parts)}]"


def authority_distribution(cards) -> dict:
    """Count of cards per authority level, in rank order."""
    counts: dict[str, int] = {}
    for card in order_citations(cards):
        counts[card.authority] = counts.get(card.authority, 0) + 1
    return counts
