"""
Tests for execution/regulatory_truth/citation.py

Covers: SourceCard normalization, the total citation order (authority,
        date, confidence, id), permutation independence, CitationBlock,
        short citation formatting, and authority distribution.
"""

import itertools
from datetime import date

import pytest


def _card(id, authority, confidence=0.0, effective_from=None, **kwargs):
    from execution.regulatory_truth.citation import SourceCard
    return SourceCard(id=id, authority=authority, confidence=confidence, effective_from=effective_from, **kwargs)


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------

class TestOrderCitations:
    """Deterministic authority-first ordering."""

    def test_law_guidance_scenario(self):
        from execution.regulatory_truth.citation import order_citations
        cards = [
            _card("b", "GUIDANCE", 0.9),
            _card("a", "LAW", 0.5),
            _card("c", "LAW", 0.8, "2023-01-01"),
        ]
        assert [c.id for c in order_citations(cards)] == ["c", "a", "b"]

    def test_order_is_permutation_independent(self):
        from execution.regulatory_truth.citation import order_citations
        cards = [
            _card("b", "GUIDANCE", 0.9),
            _card("a", "LAW", 0.5),
            _card("c", "LAW", 0.8, "2023-01-01"),
            _card("d", "REGULATION", 0.7, "2025-06-01"),
            _card("e", "PRACTICE", 1.0),
        ]
        expected = [c.id for c in order_citations(cards)]
        for permutation in itertools.permutations(cards):
            assert [c.id for c in order_citations(list(permutation))] == expected

    def test_older_law_outranks_newer_guidance(self):
        from execution.regulatory_truth.citation import order_citations
        ordered = order_citations([
            _card("guidance-2025", "GUIDANCE", 1.0, "2025-01-01"),
            _card("law-2024", "LAW", 0.1, "2024-01-01"),
        ])
        assert ordered[0].id == "law-2024"

    def test_newer_date_first_within_authority(self):
        from execution.regulatory_truth.citation import order_citations
        ordered = order_citations([
            _card("old", "LAW", 0.9, "2019-01-01"),
            _card("new", "LAW", 0.1, "2024-07-01"),
        ])
        assert [c.id for c in ordered] == ["new", "old"]

    def test_confidence_then_id_break_ties(self):
        from execution.regulatory_truth.citation import order_citations
        ordered = order_citations([
            _card("z", "REGULATION", 0.5, "2024-01-01"),
            _card("y", "REGULATION", 0.9, "2024-01-01"),
            _card("x", "REGULATION", 0.5, "2024-01-01"),
        ])
        assert [c.id for c in ordered] == ["y", "x", "z"]

    def test_unknown_authority_sorts_last(self):
        from execution.regulatory_truth.citation import order_citations
        ordered = order_citations([_card("blog", "BLOG", 1.0), _card("p", "practice", 0.1)])
        assert [c.id for c in ordered] == ["p", "blog"]

    def test_empty_input(self):
        from execution.regulatory_truth.citation import order_citations
        assert order_citations([]) == []


# ---------------------------------------------------------------------------
# SourceCard
# ---------------------------------------------------------------------------

class TestSourceCard:
    """Field normalization on construction."""

    def test_authority_normalized(self):
        from execution.regulatory_truth.citation import AuthorityLevel
        assert _card("a", "law").authority == "LAW"
        assert _card("b", AuthorityLevel.GUIDANCE).authority == "GUIDANCE"

    def test_date_coercion(self):
        from datetime import datetime
        assert _card("a", "LAW", effective_from="2024-03-01").effective_from == date(2024, 3, 1)
        assert _card("b", "LAW", effective_from=datetime(2024, 3, 1, 12)).effective_from == date(2024, 3, 1)
        assert _card("c", "LAW", effective_from="not a date").effective_from is None

    def test_to_dict(self):
        data = _card("a", "LAW", 0.5, "2024-03-01", title="Zakon").to_dict()
        assert data["effective_from"] == "2024-03-01"
        assert data["authority"] == "LAW"


# ---------------------------------------------------------------------------
# Citation block and formatting
# ---------------------------------------------------------------------------

class TestCitationBlock:
    """Primary / supporting split and formatting."""

    def test_primary_is_first_in_order(self, source_cards):
        from execution.regulatory_truth.citation import build_citation_block
        block = build_citation_block(source_cards)
        assert block.primary.id == "law-pdv-38"
        assert [c.id for c in block.supporting] == ["guid-pdv-stope", "old-pdv-memo"]
        assert [c.id for c in block.ordered()] == ["law-pdv-38", "guid-pdv-stope", "old-pdv-memo"]

    def test_empty_block(self):
        from execution.regulatory_truth.citation import build_citation_block
        block = build_citation_block([])
        assert block.is_empty
        assert block.to_dict() == {"primary": None, "supporting": []}

    def test_format_citation_croatian(self, source_cards):
        from execution.regulatory_truth.citation import format_citation
        law = next(c for c in source_cards if c.id == "law-pdv-38")
        assert format_citation(law) == "[Zakon o PDV-u, čl. 38, st. 1, na snazi od 2024-01-01]"

    def test_format_citation_english_without_date(self):
        from execution.regulatory_truth.citation import format_citation
        card = _card("x", "LAW", title="VAT Act")
        assert format_citation(card, "en") == "[VAT Act]"

    def test_authority_distribution(self, source_cards):
        from execution.regulatory_truth.citation import authority_distribution
        assert authority_distribution(source_cards) == {"LAW": 1, "GUIDANCE": 1, "PRACTICE": 1}
