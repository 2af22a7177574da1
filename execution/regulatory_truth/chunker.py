"""
Structure-Aware Chunk Planner

Walks a provision tree and partitions it into bounded extraction jobs.

Split policy (document order, purely structural):
- An article that fits the byte budget becomes one job
- An oversized provision recurses into its paragraphs / points
- An oversized leaf is split into sentence windows ({path}/window:{i})
- A document without articles becomes /document (or its windows)

Planning is a pure function of the document content. Re-planning the same
document yields the same jobs, which downstream extraction deduplicates by
(document_id, node_path).
"""

import os
import re
import logging
from dataclasses import dataclass, field
from typing import Optional

from .document_parser import LEVEL_ARTICLE, ParsedGazette, ProvisionNode, ParseConfig, StructuralParser
from .language_config import LanguageConfig

logger = logging.getLogger(__name__)

LEVEL_DOCUMENT = "document"
LEVEL_WINDOW = "window"

SIZE_BUCKETS = [
    ("<1KB", 1024),
    ("1-2KB", 2048),
    ("2-4KB", 4096),
    ("4-8KB", 8192),
]
SIZE_BUCKET_OVERFLOW = ">=8KB"


@dataclass(frozen=True)
class ExtractionJob:
    """One bounded unit of extraction work, tied to a provision path."""
    document_id: str
    node_path: str
    level: str  # document, article, paragraph, point, window
    text: str
    size_bytes: int
    start_offset: int
    end_offset: int

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.document_id, self.node_path)

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "node_path": self.node_path,
            "level": self.level,
            "text": self.text,
            "size_bytes": self.size_bytes,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
        }


@dataclass
class ChunkPlanConfig:
    """Configuration for planning limits."""
    max_chunk_bytes: int = 8000
    max_jobs_per_document: int = 200
    language: str = "hr"

    @classmethod
    def from_env(cls) -> "ChunkPlanConfig":
        return cls(
            max_chunk_bytes=int(os.getenv("MAX_CHUNK_BYTES", "8000")),
            max_jobs_per_document=int(os.getenv("MAX_JOBS_PER_DOCUMENT", "200")),
            language=os.getenv("GAZETTE_LANGUAGE", "hr"),
        )


@dataclass
class ChunkPlanSummary:
    """Aggregate figures for one planning run."""
    job_count: int = 0
    total_bytes: int = 0
    estimated_tokens: int = 0
    levels: dict = field(default_factory=dict)
    size_histogram: dict = field(default_factory=dict)
    oversize_jobs: int = 0
    truncated: bool = False

    @property
    def avg_job_bytes(self) -> int:
        if self.job_count == 0:
            return 0
        return round(self.total_bytes / self.job_count)

    def to_dict(self) -> dict:
        return {
            "job_count": self.job_count,
            "total_bytes": self.total_bytes,
            "avg_job_bytes": self.avg_job_bytes,
            "estimated_tokens": self.estimated_tokens,
            "levels": self.levels,
            "size_histogram": self.size_histogram,
            "oversize_jobs": self.oversize_jobs,
            "truncated": self.truncated,
        }


@dataclass
class ChunkPlan:
    """Ordered jobs plus their summary."""
    document_id: str
    jobs: list[ExtractionJob]
    summary: ChunkPlanSummary

    def dedup_keys(self) -> list[tuple[str, str]]:
        return [job.dedup_key for job in self.jobs]

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "jobs": [j.to_dict() for j in self.jobs],
            "summary": self.summary.to_dict(),
        }


def _size_bucket(size_bytes: int) -> str:
    for label, limit in SIZE_BUCKETS:
        if size_bytes < limit:
            return label
    return SIZE_BUCKET_OVERFLOW


def _utf8_size(text: str) -> int:
    return len(text.encode("utf-8"))


class ChunkPlanner:
    """
    Plans extraction jobs from a parsed gazette.

    Splits only at provision boundaries, falling back to sentence windows
    for leaves larger than the byte budget.
    """

    def __init__(
        self,
        config: Optional[ChunkPlanConfig] = None,
        language_config: Optional[LanguageConfig] = None,
        parser: Optional[StructuralParser] = None,
    ):
        """Initialize planner with optional configuration and language support."""
        self.config = config or ChunkPlanConfig()
        self._language_config = language_config or LanguageConfig.for_language(self.config.language)
        self._sentence_boundary = re.compile(self._language_config.sentence_boundary_regex)
        self._parser = parser or StructuralParser(
            ParseConfig(language=self._language_config.language),
        )

    @property
    def parser(self) -> StructuralParser:
        return self._parser

    def plan_content(self, document_id: str, raw: str, content_class: str = "text") -> ChunkPlan:
        """Parse raw content, then plan it."""
        return self.plan(document_id, self._parser.parse(raw, content_class))

    def plan(self, document_id: str, parsed: ParsedGazette) -> ChunkPlan:
        """
        Plan extraction jobs for a parsed document.

        Args:
            document_id: Stable document identifier used in dedup keys
            parsed: Output of StructuralParser.parse

        Returns:
            ChunkPlan with jobs in document order
        """
        jobs: list[ExtractionJob] = []
        oversize = [0]

        if parsed.nodes:
            for article in parsed.nodes:
                self._plan_node(document_id, article, parsed.clean_text, jobs, oversize)
        else:
            text = parsed.clean_text
            if text:
                self._plan_span(
                    document_id, "/document", LEVEL_DOCUMENT, parsed.clean_text,
                    0, len(text), jobs, oversize,
                )

        truncated = False
        if len(jobs) > self.config.max_jobs_per_document:
            logger.warning(
                f"Plan for {document_id} truncated: {len(jobs)} jobs exceeds "
                f"limit {self.config.max_jobs_per_document}"
            )
            jobs = jobs[:self.config.max_jobs_per_document]
            truncated = True

        summary = self._summarize(jobs, oversize[0], truncated)
        logger.info(
            f"Planned {summary.job_count} jobs for {document_id} "
            f"({summary.total_bytes} bytes, avg {summary.avg_job_bytes})"
        )
        return ChunkPlan(document_id=document_id, jobs=jobs, summary=summary)

    # -------------------------------------------------------------------------
    # Structural recursion
    # -------------------------------------------------------------------------

    def _plan_node(
        self,
        document_id: str,
        node: ProvisionNode,
        clean_text: str,
        jobs: list,
        oversize: list,
    ) -> None:
        if _utf8_size(node.raw_text) <= self.config.max_chunk_bytes:
            jobs.append(self._job(document_id, node.path, node.level, clean_text, node.start_offset, node.end_offset))
            return

        if not node.children:
            self._plan_span(
                document_id, node.path, node.level, clean_text,
                node.start_offset, node.end_offset, jobs, oversize,
            )
            return

        # Lead-in text before the first child. An article header line alone
        # carries no facts, so an article intro needs body text after it.
        intro_end = node.children[0].start_offset
        while intro_end > node.start_offset and clean_text[intro_end - 1].isspace():
            intro_end -= 1
        intro = clean_text[node.start_offset:intro_end]
        if node.level == LEVEL_ARTICLE:
            has_body = "\n" in intro and bool(intro.split("\n", 1)[1].strip())
        else:
            has_body = bool(intro.strip())
        if has_body:
            self._plan_span(
                document_id, f"{node.path}/intro", node.level, clean_text,
                node.start_offset, intro_end, jobs, oversize,
            )

        for child in node.children:
            self._plan_node(document_id, child, clean_text, jobs, oversize)

    def _plan_span(
        self,
        document_id: str,
        path: str,
        level: str,
        clean_text: str,
        start: int,
        end: int,
        jobs: list,
        oversize: list,
    ) -> None:
        """Emit one job for the span, or sentence windows when it is too large."""
        if _utf8_size(clean_text[start:end]) <= self.config.max_chunk_bytes:
            jobs.append(self._job(document_id, path, level, clean_text, start, end))
            return

        for i, (w_start, w_end) in enumerate(self._windows(clean_text, start, end)):
            job = self._job(document_id, f"{path}/window:{i}", LEVEL_WINDOW, clean_text, w_start, w_end)
            if job.size_bytes > self.config.max_chunk_bytes:
                oversize[0] += 1
                logger.warning(
                    f"{document_id}{job.node_path}: single sentence of {job.size_bytes} bytes "
                    f"exceeds limit {self.config.max_chunk_bytes}"
                )
            jobs.append(job)

    def _windows(self, clean_text: str, start: int, end: int) -> list[tuple[int, int]]:
        """Greedily pack whole sentences into windows within the byte budget."""
        sentences = self._sentence_spans(clean_text, start, end)
        windows = []
        w_start: Optional[int] = None
        w_end = start
        for s_start, s_end in sentences:
            if w_start is None:
                w_start, w_end = s_start, s_end
                continue
            if _utf8_size(clean_text[w_start:s_end]) <= self.config.max_chunk_bytes:
                w_end = s_end
            else:
                windows.append((w_start, w_end))
                w_start, w_end = s_start, s_end
        if w_start is not None:
            windows.append((w_start, w_end))
        return windows

    def _sentence_spans(self, clean_text: str, start: int, end: int) -> list[tuple[int, int]]:
        text = clean_text[start:end]
        spans = []
        cursor = 0
        for match in self._sentence_boundary.finditer(text):
            if match.start() > cursor:
                spans.append((start + cursor, start + match.start()))
            cursor = match.end()
        if cursor < len(text):
            spans.append((start + cursor, end))
        return spans

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _job(document_id: str, path: str, level: str, clean_text: str, start: int, end: int) -> ExtractionJob:
        text = clean_text[start:end]
        return ExtractionJob(
            document_id=document_id,
            node_path=path,
            level=level,
            text=text,
            size_bytes=_utf8_size(text),
            start_offset=start,
            end_offset=end,
        )

    def _summarize(self, jobs: list[ExtractionJob], oversize_jobs: int, truncated: bool) -> ChunkPlanSummary:
        summary = ChunkPlanSummary(oversize_jobs=oversize_jobs, truncated=truncated)
        summary.size_histogram = {label: 0 for label, _ in SIZE_BUCKETS}
        summary.size_histogram[SIZE_BUCKET_OVERFLOW] = 0
        for job in jobs:
            summary.job_count += 1
            summary.total_bytes += job.size_bytes
            summary.estimated_tokens += self._language_config.estimate_tokens(job.text)
            summary.levels[job.level] = summary.levels.get(job.level, 0) + 1
            summary.size_histogram[_size_bucket(job.size_bytes)] += 1
        return summary
