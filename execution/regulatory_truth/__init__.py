"""
Regulatory Truth - extraction and cited answers over official gazettes

This module provides:
- Offset-exact structural parsing of gazette documents (articles, paragraphs, points)
- Deterministic chunk planning into extraction jobs
- Prompt provenance (template id, version, hash) for every model call
- Durable stage coordination for the daily batch pipelines
- A streaming reasoning pipeline that answers with ordered citations
"""

from .document_parser import StructuralParser, ParseConfig, ParseIntegrityError
from .chunker import ChunkPlanner, ChunkPlanConfig, ExtractionJob
from .prompt_registry import PromptRegistry, AgentRunRecorder
from .extractor import ChunkedExtractor
from .stage_coordinator import StageCoordinator, CoordinatorConfig, PIPELINES
from .citation import SourceCard, order_citations, build_citation_block
from .circuit_breaker import CircuitBreaker
from .reasoning import ReasoningPipeline, ReasoningEvent, AnswerPayload, ErrorPayload
from .sinks import SinkRegistry, SinkFanout, SinkMode

__all__ = [
    "StructuralParser",
    "ParseConfig",
    "ParseIntegrityError",
    "ChunkPlanner",
    "ChunkPlanConfig",
    "ExtractionJob",
    "PromptRegistry",
    "AgentRunRecorder",
    "ChunkedExtractor",
    "StageCoordinator",
    "CoordinatorConfig",
    "PIPELINES",
    "SourceCard",
    "order_citations",
    "build_citation_block",
    "CircuitBreaker",
    "ReasoningPipeline",
    "ReasoningEvent",
    "AnswerPayload",
    "ErrorPayload",
    "SinkRegistry",
    "SinkFanout",
    "SinkMode",
]

__version__ = "0.1.0"
