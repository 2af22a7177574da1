"""
Structural Gazette Parser - Converts official gazette text into a provision tree

Normalizes HTML, markdown, or plain text into a clean-text buffer while
recording where every clean character came from in the original input.
Detects article / paragraph / point boundaries and builds an immutable tree
whose offsets re-extract verbatim from the clean text.

The parser fails closed: a tree that violates offset integrity is never
returned, a ParseIntegrityError carrying the structured violations is raised
instead.
"""

import re
import json
import bisect
import hashlib
import logging
from dataclasses import dataclass, field, asdict, replace
from typing import Iterator, Optional

from bs4 import BeautifulSoup
from bs4.element import (
    CData,
    Comment,
    Declaration,
    Doctype,
    NavigableString,
    ProcessingInstruction,
    Tag,
)

from .language_config import LanguageConfig
from .language_patterns import PROVISION_PATTERNS, DOCTYPE_PATTERNS, LABELS

logger = logging.getLogger(__name__)

PARSER_ID = "gazette-structural-parser"
PARSER_VERSION = "1.2.0"

CONTENT_CLASSES = ("html", "markdown", "text")

LEVEL_ARTICLE = "article"
LEVEL_PARAGRAPH = "paragraph"
LEVEL_POINT = "point"

BLOCK_TAGS = frozenset({
    "p", "div", "li", "ul", "ol", "table", "tr", "td", "th",
    "h1", "h2", "h3", "h4", "h5", "h6", "section", "article", "blockquote",
})
SKIP_TAGS = frozenset({"script", "style", "head", "noscript", "template"})
_NON_TEXT_STRINGS = (Comment, CData, Declaration, Doctype, ProcessingInstruction)

# Whitespace other than newline that collapses to a single space
_INLINE_SPACE = frozenset(" \t\xa0\u2000\u2001\u2002\u2003\u2009\u200a\u202f\u3000\f\v")

# Markdown syntax stripped during normalization. Patterns without groups drop
# the whole match, patterns with groups drop only the grouped markers.
_MARKDOWN_DROP_PATTERNS = [
    re.compile(r"^[ \t]*#+[ \t]*"),                 # Headers
    re.compile(r"!\[[^\]]*\]\([^)]*\)"),            # Images
    re.compile(r"(\[)[^\]]+(\]\([^)]*\))"),         # Links
    re.compile(r"(\*\*)[^*]+(\*\*)"),               # Bold
    re.compile(r"(\*)[^*]+(\*)"),                   # Italic
    re.compile(r"(`)[^`]+(`)"),                     # Code
    re.compile(r"<!--.*?-->"),                      # HTML comments
]


# =============================================================================
# Errors
# =============================================================================

@dataclass
class IntegrityViolation:
    """A single offset-integrity defect found in a provision tree."""
    code: str  # OFFSET_MISMATCH, EMPTY_SPAN, CHILD_OUTSIDE_PARENT, SIBLING_OVERLAP
    path: str
    message: str
    expected: Optional[str] = None
    actual: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "path": self.path,
            "message": self.message,
            "expected": self.expected,
            "actual": self.actual,
        }


class ParseIntegrityError(Exception):
    """Raised when a parsed tree fails offset validation.

    This is a parser or configuration defect for the given document version
    and must not be retried.
    """

    def __init__(self, violations: list[IntegrityViolation]):
        self.violations = violations
        codes = sorted({v.code for v in violations})
        super().__init__(
            f"Provision tree failed integrity validation: "
            f"{len(violations)} violation(s) ({', '.join(codes)})"
        )


# =============================================================================
# Data Model
# =============================================================================

@dataclass(frozen=True)
class ParseConfig:
    """Options that influence parser output. Hashed into parse_config_hash."""
    language: str = "hr"
    detect_paragraphs: bool = True
    detect_points: bool = True
    max_blank_lines: int = 1

    def config_hash(self) -> str:
        canonical = json.dumps(asdict(self), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ProvisionNode:
    """One article, paragraph, or point with offsets into the clean text."""
    path: str
    level: str
    ordinal: str
    start_offset: int
    end_offset: int
    raw_text: str
    label: str
    children: tuple = ()

    def iter_nodes(self) -> Iterator["ProvisionNode"]:
        """Pre-order traversal of this node and its descendants."""
        yield self
        for child in self.children:
            yield from child.iter_nodes()

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "level": self.level,
            "ordinal": self.ordinal,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "raw_text": self.raw_text,
            "label": self.label,
            "children": [c.to_dict() for c in self.children],
        }


@dataclass(frozen=True)
class OffsetMap:
    """Maps clean-text offsets back into the original input.

    Each segment is ``(clean_start, original_start, length)`` and covers a run
    of clean characters copied from consecutive original characters.
    """
    segments: tuple
    clean_length: int
    original_length: int

    def to_original(self, clean_offset: int) -> int:
        if clean_offset < 0 or clean_offset > self.clean_length:
            raise IndexError(f"clean offset {clean_offset} outside 0..{self.clean_length}")
        if not self.segments:
            return 0
        if clean_offset == self.clean_length:
            clean_start, original_start, length = self.segments[-1]
            return original_start + length
        starts = [s[0] for s in self.segments]
        idx = bisect.bisect_right(starts, clean_offset) - 1
        clean_start, original_start, length = self.segments[idx]
        return original_start + min(clean_offset - clean_start, length - 1)

    def original_span(self, start: int, end: int) -> tuple[int, int]:
        """Map a clean ``[start, end)`` span to the original input."""
        if end <= start:
            pos = self.to_original(start)
            return pos, pos
        return self.to_original(start), self.to_original(end - 1) + 1


@dataclass
class GazetteMetadata:
    """Descriptive metadata derived from the clean text."""
    title: str
    document_type: str  # zakon, pravilnik, uredba, odluka, law, regulation, ... or unknown
    language: str

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "document_type": self.document_type,
            "language": self.language,
        }


@dataclass
class ParsedGazette:
    """Complete parse result for one document version."""
    content_class: str
    clean_text: str
    nodes: tuple
    offset_map: OffsetMap
    parser_id: str
    parser_version: str
    parse_config_hash: str
    clean_text_hash: str
    metadata: GazetteMetadata
    stats: dict = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def iter_nodes(self) -> Iterator[ProvisionNode]:
        for node in self.nodes:
            yield from node.iter_nodes()

    @property
    def node_count(self) -> int:
        return sum(1 for _ in self.iter_nodes())

    def find(self, path: str) -> Optional[ProvisionNode]:
        for node in self.iter_nodes():
            if node.path == path:
                return node
        return None

    def identity(self) -> dict:
        return {
            "parser_id": self.parser_id,
            "parser_version": self.parser_version,
            "parse_config_hash": self.parse_config_hash,
        }

    def to_dict(self) -> dict:
        return {
            "content_class": self.content_class,
            "clean_text": self.clean_text,
            "clean_text_hash": self.clean_text_hash,
            "nodes": [n.to_dict() for n in self.nodes],
            "metadata": self.metadata.to_dict(),
            "stats": self.stats,
            "warnings": self.warnings,
            **self.identity(),
        }


# =============================================================================
# Validation
# =============================================================================

def validate_provision_tree(clean_text: str, nodes) -> list[IntegrityViolation]:
    """Check every node re-extracts verbatim and nests inside its parent.

    Returns an empty list for a valid tree.
    """
    violations: list[IntegrityViolation] = []

    def check_siblings(siblings, parent: Optional[ProvisionNode]):
        previous = None
        for node in siblings:
            if node.start_offset >= node.end_offset:
                violations.append(IntegrityViolation(
                    code="EMPTY_SPAN",
                    path=node.path,
                    message=f"span [{node.start_offset}, {node.end_offset}) is empty",
                ))
            actual = clean_text[node.start_offset:node.end_offset]
            if actual != node.raw_text:
                violations.append(IntegrityViolation(
                    code="OFFSET_MISMATCH",
                    path=node.path,
                    message="offsets do not re-extract raw_text",
                    expected=node.raw_text[:80],
                    actual=actual[:80],
                ))
            if parent is not None and (
                node.start_offset < parent.start_offset or node.end_offset > parent.end_offset
            ):
                violations.append(IntegrityViolation(
                    code="CHILD_OUTSIDE_PARENT",
                    path=node.path,
                    message=(
                        f"[{node.start_offset}, {node.end_offset}) outside parent "
                        f"{parent.path} [{parent.start_offset}, {parent.end_offset})"
                    ),
                ))
            if previous is not None and node.start_offset < previous.end_offset:
                violations.append(IntegrityViolation(
                    code="SIBLING_OVERLAP",
                    path=node.path,
                    message=f"starts at {node.start_offset} before {previous.path} ends at {previous.end_offset}",
                ))
            previous = node
            check_siblings(node.children, node)

    check_siblings(nodes, None)
    return violations


# =============================================================================
# Normalization
# =============================================================================

def _build_offset_map(origins: list[int], original_length: int) -> OffsetMap:
    segments = []
    run_start = 0
    for i in range(1, len(origins) + 1):
        if i == len(origins) or origins[i] != origins[i - 1] + 1:
            segments.append((run_start, origins[run_start], i - run_start))
            run_start = i
    if not origins:
        segments = []
    return OffsetMap(
        segments=tuple(segments),
        clean_length=len(origins),
        original_length=original_length,
    )


class _Normalizer:
    """Produces ``(clean_text, origins)`` where origins[i] is the original offset."""

    def __init__(self, max_blank_lines: int = 1):
        self._max_blank_lines = max_blank_lines

    def normalize(self, raw: str, content_class: str) -> tuple[str, list[int]]:
        if content_class == "html":
            stream = self._html_stream(raw)
        elif content_class == "markdown":
            stream = self._markdown_stream(raw)
        else:
            stream = list(zip(raw, range(len(raw))))
        return self._clean_whitespace(stream)

    def _markdown_stream(self, raw: str) -> list[tuple[str, int]]:
        stream = []
        line_start = 0
        for line in raw.split("\n"):
            dropped = set()
            for pattern in _MARKDOWN_DROP_PATTERNS:
                for match in pattern.finditer(line):
                    if pattern.groups:
                        for g in range(1, pattern.groups + 1):
                            dropped.update(range(match.start(g), match.end(g)))
                    else:
                        dropped.update(range(match.start(), match.end()))
            for i, ch in enumerate(line):
                if i not in dropped:
                    stream.append((ch, line_start + i))
            stream.append(("\n", line_start + len(line)))
            line_start += len(line) + 1
        # The final split element has no trailing newline in the input
        if stream:
            stream.pop()
        return stream

    def _html_stream(self, raw: str) -> list[tuple[str, int]]:
        soup = BeautifulSoup(raw, "html.parser")
        stream: list[tuple[str, int]] = []
        cursor = 0

        def emit_break():
            stream.append(("\n", cursor))

        def emit_text(text: str):
            nonlocal cursor
            positions = self._locate(raw, text, cursor)
            stream.extend(zip(text, positions))
            located = [p for p in positions if p >= cursor]
            if located:
                cursor = max(located) + 1

        def walk(node):
            for child in node.children:
                if isinstance(child, _NON_TEXT_STRINGS):
                    continue
                if isinstance(child, NavigableString):
                    emit_text(str(child))
                elif isinstance(child, Tag):
                    if child.name in SKIP_TAGS:
                        continue
                    if child.name == "br":
                        emit_break()
                    elif child.name in BLOCK_TAGS:
                        emit_break()
                        walk(child)
                        emit_break()
                    else:
                        walk(child)

        walk(soup)
        return stream

    @staticmethod
    def _locate(raw: str, text: str, cursor: int) -> list[int]:
        """Find original positions for a text node, tolerating entity encoding.

        Exact when the node appears verbatim in the markup; tokens that were
        entity-encoded map to the nearest preceding located position.
        """
        pos = raw.find(text, cursor)
        if pos >= 0:
            return list(range(pos, pos + len(text)))

        positions = [cursor] * len(text)
        search_from = cursor
        for match in re.finditer(r"\S+", text):
            token_pos = raw.find(match.group(), search_from)
            if token_pos < 0:
                continue
            for i in range(len(match.group())):
                positions[match.start() + i] = token_pos + i
            search_from = token_pos + len(match.group())
        return positions

    def _clean_whitespace(self, stream: list[tuple[str, int]]) -> tuple[str, list[int]]:
        # Split into lines, treating CR and CRLF as line breaks
        lines: list[list[tuple[str, int]]] = [[]]
        breaks: list[int] = []
        prev_cr = False
        for ch, pos in stream:
            if ch == "\n" and prev_cr:
                prev_cr = False
                continue
            prev_cr = ch == "\r"
            if ch in ("\n", "\r"):
                breaks.append(pos)
                lines.append([])
            else:
                lines[-1].append((ch, pos))

        cleaned_lines = []
        for line in lines:
            out: list[tuple[str, int]] = []
            for ch, pos in line:
                if ch in _INLINE_SPACE:
                    if out and out[-1][0] != " ":
                        out.append((" ", pos))
                else:
                    out.append((ch, pos))
            while out and out[-1][0] == " ":
                out.pop()
            cleaned_lines.append(out)

        chars: list[str] = []
        origins: list[int] = []
        blank_run = 0
        started = False
        for idx, line in enumerate(cleaned_lines):
            if not line:
                if started:
                    blank_run += 1
                continue
            if started:
                newline_count = 1 + min(blank_run, self._max_blank_lines)
                newline_pos = breaks[idx - 1] if idx > 0 else line[0][1]
                for _ in range(newline_count):
                    chars.append("\n")
                    origins.append(newline_pos)
            for ch, pos in line:
                chars.append(ch)
                origins.append(pos)
            started = True
            blank_run = 0
        return "".join(chars), origins


# =============================================================================
# Parser
# =============================================================================

@dataclass
class _Marker:
    level: str
    ordinal: str
    start: int


class StructuralParser:
    """
    Parses official gazette documents into an offset-exact provision tree.

    Detects articles, paragraphs and points using language-specific markers,
    validates offset integrity before returning, and exposes a versioned
    identity so output changes are attributable.
    """

    def __init__(
        self,
        config: Optional[ParseConfig] = None,
        language_config: Optional[LanguageConfig] = None,
    ):
        """
        Initialize the parser.

        Args:
            config: Parse options. Defaults to Croatian with all levels enabled.
            language_config: Optional language configuration; its language
                overrides the config language when given.
        """
        self.config = config or ParseConfig()
        if language_config is not None and language_config.language != self.config.language:
            self.config = replace(self.config, language=language_config.language)
        self._lang = self.config.language
        self._patterns = PROVISION_PATTERNS.get(self._lang, PROVISION_PATTERNS["hr"])
        self._doctype_patterns = DOCTYPE_PATTERNS.get(self._lang, DOCTYPE_PATTERNS["hr"])
        self._labels = LABELS.get(self._lang, LABELS["hr"])
        self._normalizer = _Normalizer(max_blank_lines=self.config.max_blank_lines)

    @property
    def parser_id(self) -> str:
        return PARSER_ID

    @property
    def parser_version(self) -> str:
        return PARSER_VERSION

    @property
    def parse_config_hash(self) -> str:
        return self.config.config_hash()

    def parse(self, raw: str, content_class: str = "text") -> ParsedGazette:
        """
        Parse a document version into clean text and a provision tree.

        Args:
            raw: Original document content
            content_class: One of "html", "markdown", "text"

        Returns:
            ParsedGazette with validated nodes

        Raises:
            ValueError: unknown content class
            ParseIntegrityError: the built tree failed offset validation
        """
        if content_class not in CONTENT_CLASSES:
            raise ValueError(f"Unknown content class: {content_class!r} (expected one of {CONTENT_CLASSES})")

        clean_text, origins = self._normalizer.normalize(raw, content_class)
        offset_map = _build_offset_map(origins, len(raw))

        markers = self._detect_markers(clean_text)
        nodes = self._build_tree(clean_text, markers)

        violations = validate_provision_tree(clean_text, nodes)
        if violations:
            for v in violations[:10]:
                logger.error(f"Integrity violation {v.code} at {v.path}: {v.message}")
            raise ParseIntegrityError(violations)

        warnings = []
        if not nodes:
            warnings.append("NO_STRUCTURE")
            logger.warning("No article markers found; document has no provision structure")

        parsed = ParsedGazette(
            content_class=content_class,
            clean_text=clean_text,
            nodes=nodes,
            offset_map=offset_map,
            parser_id=self.parser_id,
            parser_version=self.parser_version,
            parse_config_hash=self.parse_config_hash,
            clean_text_hash=hashlib.sha256(clean_text.encode("utf-8")).hexdigest(),
            metadata=self._extract_metadata(clean_text, nodes),
            warnings=warnings,
        )
        parsed.stats = self._compute_stats(parsed)
        logger.info(
            f"Parsed {content_class} document: {len(nodes)} articles, "
            f"{parsed.stats['node_count']} nodes, {parsed.stats['coverage_percent']}% coverage"
        )
        return parsed

    # -------------------------------------------------------------------------
    # Boundary detection
    # -------------------------------------------------------------------------

    def _detect_markers(self, clean_text: str) -> list[_Marker]:
        markers = []
        in_article = False
        offset = 0
        for line in clean_text.split("\n"):
            match = self._patterns["article"].match(line)
            if match:
                markers.append(_Marker(LEVEL_ARTICLE, match.group(1), offset))
                in_article = True
            elif in_article:
                para = self._patterns["paragraph"].match(line) if self.config.detect_paragraphs else None
                point = self._patterns["point"].match(line) if self.config.detect_points else None
                if para:
                    markers.append(_Marker(LEVEL_PARAGRAPH, para.group(1), offset))
                elif point:
                    ordinal = next(g for g in point.groups() if g is not None)
                    markers.append(_Marker(LEVEL_POINT, ordinal, offset))
            offset += len(line) + 1
        return markers

    # -------------------------------------------------------------------------
    # Tree building
    # -------------------------------------------------------------------------

    def _build_tree(self, clean_text: str, markers: list[_Marker]) -> tuple:
        articles = []
        article_markers = [i for i, m in enumerate(markers) if m.level == LEVEL_ARTICLE]
        seen_paths: dict[str, int] = {}

        for n, idx in enumerate(article_markers):
            marker = markers[idx]
            next_idx = article_markers[n + 1] if n + 1 < len(article_markers) else len(markers)
            end = markers[next_idx].start if next_idx < len(markers) else len(clean_text)
            inner = markers[idx + 1:next_idx]
            articles.append(self._build_node(
                clean_text, marker, end, inner, parent_path="", parent_label=(), seen_paths=seen_paths,
            ))
        return tuple(articles)

    def _build_node(
        self,
        clean_text: str,
        marker: _Marker,
        end: int,
        inner: list[_Marker],
        parent_path: str,
        parent_label: tuple,
        seen_paths: dict,
    ) -> ProvisionNode:
        path = self._unique_path(f"{parent_path}/{marker.level}:{marker.ordinal}", seen_paths)
        label_parts = parent_label + (f"{self._labels[marker.level]} {marker.ordinal}",)

        # Direct children: paragraphs under an article, and points that are
        # not inside any paragraph. Points inside a paragraph nest under it.
        children_markers = []
        for i, m in enumerate(inner):
            if marker.level == LEVEL_ARTICLE and m.level == LEVEL_PARAGRAPH:
                children_markers.append(i)
            elif m.level == LEVEL_POINT and not any(
                p.level == LEVEL_PARAGRAPH for p in inner[:i]
            ):
                children_markers.append(i)

        children = []
        for n, i in enumerate(children_markers):
            child = inner[i]
            next_i = children_markers[n + 1] if n + 1 < len(children_markers) else len(inner)
            child_end = inner[next_i].start if next_i < len(inner) else end
            grand = inner[i + 1:next_i] if child.level == LEVEL_PARAGRAPH else []
            children.append(self._build_node(
                clean_text, child, child_end, grand, path, label_parts, seen_paths,
            ))

        start = marker.start
        trimmed_end = end
        while trimmed_end > start and clean_text[trimmed_end - 1].isspace():
            trimmed_end -= 1

        return ProvisionNode(
            path=path,
            level=marker.level,
            ordinal=marker.ordinal,
            start_offset=start,
            end_offset=trimmed_end,
            raw_text=clean_text[start:trimmed_end],
            label=", ".join(label_parts),
            children=tuple(children),
        )

    @staticmethod
    def _unique_path(path: str, seen_paths: dict) -> str:
        count = seen_paths.get(path, 0) + 1
        seen_paths[path] = count
        return path if count == 1 else f"{path}~{count}"

    # -------------------------------------------------------------------------
    # Metadata and statistics
    # -------------------------------------------------------------------------

    def _extract_metadata(self, clean_text: str, nodes: tuple) -> GazetteMetadata:
        preamble = clean_text[:nodes[0].start_offset] if nodes else clean_text[:2000]
        title = ""
        for line in preamble.split("\n")[:10]:
            line = line.strip()
            if 3 <= len(line) <= 300:
                title = line
                break

        document_type = "unknown"
        for doc_type, pattern in self._doctype_patterns:
            if re.search(pattern, title):
                document_type = doc_type
                break

        return GazetteMetadata(title=title, document_type=document_type, language=self._lang)

    def _compute_stats(self, parsed: ParsedGazette) -> dict:
        by_level = {LEVEL_ARTICLE: 0, LEVEL_PARAGRAPH: 0, LEVEL_POINT: 0}
        max_depth = 0

        def visit(node: ProvisionNode, depth: int):
            nonlocal max_depth
            by_level[node.level] += 1
            max_depth = max(max_depth, depth)
            for child in node.children:
                visit(child, depth + 1)

        for node in parsed.nodes:
            visit(node, 1)

        covered = sum(n.end_offset - n.start_offset for n in parsed.nodes)
        coverage = (covered / len(parsed.clean_text) * 100) if parsed.clean_text else 0.0
        return {
            "node_count": sum(by_level.values()),
            "by_level": by_level,
            "max_depth": max_depth,
            "clean_text_chars": len(parsed.clean_text),
            "coverage_percent": round(coverage, 1),
        }


# CLI for testing
if __name__ == "__main__":
    import sys
    from pathlib import Path

    logging.basicConfig(level=logging.INFO)

    if len(sys.argv) < 2:
        print("Usage: python -m execution.regulatory_truth.document_parser <file> [html|markdown|text]")
        sys.exit(1)

    source = Path(sys.argv[1])
    content_class = sys.argv[2] if len(sys.argv) > 2 else (
        "html" if source.suffix in (".html", ".htm") else "text"
    )
    result = StructuralParser().parse(source.read_text(encoding="utf-8"), content_class)

    print(f"\nTitle: {result.metadata.title}")
    print(f"Type: {result.metadata.document_type}")
    print(f"Config hash: {result.parse_config_hash[:16]}...")
    print(f"Stats: {result.stats}")
    for node in result.iter_nodes():
        indent = "  " * (node.path.count("/") - 1)
        print(f"{indent}{node.path} [{node.start_offset}:{node.end_offset}] {node.label}")
