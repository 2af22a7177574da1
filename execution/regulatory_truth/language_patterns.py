"""
Multilingual Pattern Definitions for Regulatory Gazette Processing

All regex patterns, prompt templates, and citation labels organized by language.
Modules import from here instead of defining patterns inline.
"""

import re

# =============================================================================
# Provision Boundary Patterns (for structural parsing)
# =============================================================================

# Each pattern matches at a line start in normalized clean text.
# Group 1 is the provision ordinal.
PROVISION_PATTERNS = {
    "hr": {
        "article": re.compile(r"^(?:Članak|ČLANAK|Clanak)\s+(\d+[a-z]?)\.?[ \t]*$", re.MULTILINE),
        "paragraph": re.compile(r"^\((\d+)\)[ \t]"),
        "point": re.compile(r"^(?:(\d+)\.|([a-zčćđšž])\)|\(([a-zčćđšž])\))[ \t]"),
    },
    "en": {
        "article": re.compile(r"^(?:Article|ARTICLE)\s+(\d+[a-z]?)\.?[ \t]*$", re.MULTILINE),
        "paragraph": re.compile(r"^\((\d+)\)[ \t]"),
        "point": re.compile(r"^(?:(\d+)\.|([a-z])\)|\(([a-z])\))[ \t]"),
    },
}

# =============================================================================
# Document Type Detection Patterns (checked against the title, in order)
# =============================================================================

DOCTYPE_PATTERNS = {
    "hr": [
        ("zakon", r"(?i)\bzakon\w*\b"),
        ("pravilnik", r"(?i)\bpravilnik\w*\b"),
        ("uredba", r"(?i)\buredb\w*\b"),
        ("odluka", r"(?i)\bodluk\w*\b"),
    ],
    "en": [
        ("law", r"(?i)\b(?:act|law|statute)\b"),
        ("regulation", r"(?i)\b(?:regulation|ordinance|rulebook)\b"),
        ("decree", r"(?i)\bdecree\b"),
        ("decision", r"(?i)\bdecision\b"),
    ],
}

# =============================================================================
# Query Context Patterns (for reasoning context resolution)
# =============================================================================

DOMAIN_PATTERNS = [
    ("vat", r"pdv|vat|porez"),
    ("pausalni", r"pausal|paušal|obrt"),
    ("contributions", r"doprinos|mirovin|zdravstv"),
    ("fiscalization", r"fiskali"),
]

RISK_TIER_PATTERNS = [
    ("T0", r"stopa|rate|postotak|threshold|prag"),
    ("T1", r"rok|deadline|frist"),
]

LANGUAGE_HINTS = {
    "hr": r"[šđčćž]|\b(?:koliko|kako|gdje|što|koji|koja|je li)\b",
}

# =============================================================================
# Citation Labels
# =============================================================================

LABELS = {
    "hr": {
        "article": "čl.",
        "paragraph": "st.",
        "point": "t.",
        "document": "dokument",
        "effective_from": "na snazi od",
        "no_sources": "Nema pouzdanih izvora za ovo pitanje.",
        "fallback_answer": "Prema izvoru {reference}: {quote}",
    },
    "en": {
        "article": "Art.",
        "paragraph": "para.",
        "point": "pt.",
        "document": "document",
        "effective_from": "effective",
        "no_sources": "No citable sources were found for this question.",
        "fallback_answer": "According to {reference}: {quote}",
    },
}

# =============================================================================
# Agent Prompt Templates
# =============================================================================

AGENT_PROMPTS = {
    "SENTINEL": """ROLE: You are the Sentinel Agent for Croatian regulatory compliance monitoring.
Your job is to analyze official regulatory sources and detect changes.

INPUT: A source URL, the fetched content and the previous content hash (if any).

OUTPUT FORMAT:
{"source_url": "...", "content_hash": "...", "has_changed": true/false,
 "change_summary": "...", "sections_changed": ["..."]}

CONSTRAINTS:
- Always preserve exact text, never paraphrase
- Flag if source structure changed significantly""",

    "EXTRACTOR": """ROLE: You are the Extractor Agent. You parse regulatory provisions and
extract structured assertions with exact quotes.

INPUT: One provision of an official gazette document with its node path.

ASSERTION TYPES: THRESHOLD, RATE, DEADLINE, OBLIGATION, PROHIBITION,
PROCEDURE, DEFINITION, EXCEPTION, REFERENCE

OUTPUT FORMAT:
{"assertions": [{"type": "...", "subject": "...", "value": "...",
 "exact_quote": "verbatim text from the provision", "confidence": 0.0-1.0}]}

CONSTRAINTS:
- exact_quote MUST appear verbatim in the input text
- Never infer values that are not stated
- Return an empty list when the provision states no facts""",

    "COMPOSER": """ROLE: You are the Composer Agent for Croatian regulatory compliance.
You turn extracted assertions into draft rules.

INPUT: One or more source pointers with citations and values.

OUTPUT FORMAT:
{"draft_rule": {"concept_slug": "...", "title": "...", "value": "...",
 "applies_when": "...", "source_pointer_ids": ["..."], "confidence": 0.0-1.0}}

CONSTRAINTS:
- Every rule MUST cite at least one source pointer
- Conflicting pointers are reported, never merged""",

    "REVIEWER": """ROLE: You are the Reviewer Agent. You validate draft rules for accuracy
against their linked source pointers and evidence.

OUTPUT FORMAT:
{"decision": "APPROVE" | "REJECT" | "ESCALATE", "issues": ["..."], "confidence": 0.0-1.0}""",

    "RELEASER": """ROLE: You are the Releaser Agent. You create versioned release bundles
from approved rules.

OUTPUT FORMAT:
{"version": "semver", "changelog": ["..."], "rule_ids": ["..."]}""",

    "ARBITER": """ROLE: You are the Arbiter Agent. You resolve conflicts between sources
using the authority hierarchy: LAW > REGULATION > GUIDANCE > PRACTICE.

OUTPUT FORMAT:
{"resolution": "...", "winning_source_id": "...", "rationale": "...", "escalate": true/false}""",

    "CONTENT_CLASSIFIER": """ROLE: You classify regulatory content before extraction.

OUTPUT FORMAT:
{"content_class": "LOGIC" | "PROCESS" | "REFERENCE" | "TRANSITIONAL" | "UNKNOWN",
 "confidence": 0.0-1.0}""",

    "QUERY_ANSWER": """ROLE: You are a Croatian regulatory research assistant. Answer the
question based ONLY on the provided sources, which are ordered by legal authority.

RULES:
- Cite sources inline using [N] notation, where N is the source position
- The first source is the primary authority and wins on conflict
- If the sources do not answer the question, say so
- Answer in the language of the question, in plain prose""",
}

GENERIC_AGENT_PROMPT = """ROLE: You are an automated regulatory processing agent.
Process the input below and respond with a single JSON object.
Never invent facts that are not present in the input."""
