"""
Reasoning / Query Pipeline

Answers a regulatory question as an ordered stream of ReasoningEvents that
ends in exactly one terminal payload (an answer or a structured error).

Phases run in sequence within one request:

    CONTEXT_RESOLUTION -> SOURCES -> RETRIEVAL -> ANALYSIS -> CONFIDENCE -> ANSWER

Each phase emits ``started`` then ``complete`` (or ``error``). The first
event is always CONTEXT_RESOLUTION/started and the last is always the
terminal ANSWER or ERROR event. Exceptions never escape the stream: a phase
failure becomes an ``error`` event followed by an ERROR terminal payload.
Every external call is bounded by the circuit breaker's timeout.
"""

import os
import re
import time
import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Union
from dataclasses import dataclass, field

from .citation import (
    CitationBlock,
    SourceCard,
    authority_distribution,
    build_citation_block,
    format_citation,
)
from .circuit_breaker import CircuitBreaker, CircuitOpenError
from .language_patterns import DOMAIN_PATTERNS, RISK_TIER_PATTERNS, LANGUAGE_HINTS, LABELS
from .sinks import EventSink, SinkFanout, SinkRegistry, CriticalDeliveryError, SEVERITY_CRITICAL

logger = logging.getLogger(__name__)

REASONING_EVENT_VERSION = 1

SURFACES = ("APP", "MARKETING")


class ReasoningStage(str, Enum):
    CONTEXT_RESOLUTION = "CONTEXT_RESOLUTION"
    SOURCES = "SOURCES"
    RETRIEVAL = "RETRIEVAL"
    ANALYSIS = "ANALYSIS"
    CONFIDENCE = "CONFIDENCE"
    ANSWER = "ANSWER"
    ERROR = "ERROR"


TERMINAL_STAGES = frozenset({ReasoningStage.ANSWER.value, ReasoningStage.ERROR.value})

STATUS_STARTED = "started"
STATUS_PROGRESS = "progress"
STATUS_COMPLETE = "complete"
STATUS_ERROR = "error"

SEVERITY_INFO = "info"


# =============================================================================
# Events and Terminal Payloads
# =============================================================================

@dataclass(frozen=True)
class ReasoningEvent:
    """One progress event. Ordered by seq within a request, starting at 0."""
    schema_version: int
    id: str
    request_id: str
    seq: int
    timestamp: str
    stage: str
    status: str
    severity: Optional[str] = None
    message: Optional[str] = None
    data: Optional[dict] = None

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES and self.status == STATUS_COMPLETE

    def to_dict(self) -> dict:
        result = {
            "schema_version": self.schema_version,
            "id": self.id,
            "request_id": self.request_id,
            "seq": self.seq,
            "timestamp": self.timestamp,
            "stage": self.stage,
            "status": self.status,
        }
        if self.severity is not None:
            result["severity"] = self.severity
        if self.message is not None:
            result["message"] = self.message
        if self.data is not None:
            result["data"] = self.data
        return result


@dataclass(frozen=True)
class AnswerPayload:
    answer_text: str
    citations: CitationBlock
    confidence: float = 0.0
    degraded: bool = False
    outcome: str = "ANSWER"

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome,
            "answer_text": self.answer_text,
            "citations": self.citations.to_dict(),
            "confidence": round(self.confidence, 3),
            "degraded": self.degraded,
        }


@dataclass(frozen=True)
class ErrorPayload:
    code: str
    message: str
    retriable: bool
    outcome: str = "ERROR"

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome,
            "code": self.code,
            "message": self.message,
            "retriable": self.retriable,
        }


TerminalPayload = Union[AnswerPayload, ErrorPayload]


# =============================================================================
# Configuration and per-run state
# =============================================================================

@dataclass
class ReasoningConfig:
    """Bounds and thresholds for reasoning runs."""
    phase_timeout_seconds: float = 20.0
    min_confidence: float = 0.3
    max_sources: int = 20
    max_keywords: int = 8

    @classmethod
    def from_env(cls) -> "ReasoningConfig":
        return cls(
            phase_timeout_seconds=float(os.getenv("REASONING_PHASE_TIMEOUT_SECONDS", "20")),
            min_confidence=float(os.getenv("REASONING_MIN_CONFIDENCE", "0.3")),
            max_sources=int(os.getenv("REASONING_MAX_SOURCES", "20")),
        )


@dataclass
class _RunState:
    request_id: str
    query: str
    surface: str
    language: str = "hr"
    context: dict = field(default_factory=dict)
    keywords: list[str] = field(default_factory=list)
    cards: list[SourceCard] = field(default_factory=list)
    eligible: list[SourceCard] = field(default_factory=list)
    block: CitationBlock = field(default_factory=CitationBlock)
    confidence: dict = field(default_factory=dict)


@dataclass
class _PhaseResult:
    data: dict = field(default_factory=dict)
    progress: list = field(default_factory=list)  # (message, data) pairs
    terminal: Optional[Any] = None


def _error_code(stage: str, exc: Exception) -> str:
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return f"PHASE_TIMEOUT:{stage}"
    if isinstance(exc, CircuitOpenError):
        return f"DEPENDENCY_UNAVAILABLE:{stage}"
    return f"PHASE_FAILED:{stage}"


def compute_confidence(source_count: int, rule_confidence: float, coverage: float) -> dict:
    """Weighted confidence: sources 0.2, primary rule 0.5, keyword coverage 0.3."""
    source_confidence = min(source_count * 0.2, 1.0)
    overall = source_confidence * 0.2 + rule_confidence * 0.5 + coverage * 0.3
    if overall >= 0.75:
        label = "HIGH"
    elif overall >= 0.5:
        label = "MEDIUM"
    else:
        label = "LOW"
    return {
        "overall": round(overall, 3),
        "source_confidence": round(source_confidence, 3),
        "rule_confidence": round(rule_confidence, 3),
        "coverage_confidence": round(coverage, 3),
        "label": label,
    }


# =============================================================================
# Run handle
# =============================================================================

class ReasoningRun:
    """
    Producer/result pair for one request.

    Iterate with ``async for event in run``; once the stream is exhausted
    ``run.terminal`` holds the terminal payload. ``await run.aclose()``
    cancels a run the consumer no longer needs.
    """

    def __init__(self, request_id: str, query: str, surface: str, sinks: SinkRegistry):
        self.request_id = request_id
        self.query = query
        self.surface = surface
        self.sinks = sinks
        self.terminal: Optional[TerminalPayload] = None
        self._seq = 0
        self._gen = None

    def _next_seq(self) -> int:
        seq = self._seq
        self._seq += 1
        return seq

    def __aiter__(self):
        return self

    async def __anext__(self) -> ReasoningEvent:
        return await self._gen.__anext__()

    async def aclose(self) -> None:
        await self._gen.aclose()

    async def collect(self) -> tuple[list[ReasoningEvent], TerminalPayload]:
        """Drain the run; convenient for batch callers and tests."""
        events = [event async for event in self]
        return events, self.terminal


# =============================================================================
# Pipeline
# =============================================================================

class ReasoningPipeline:
    """
    Builds reasoning runs over a source repository.

    Usage:
        pipeline = ReasoningPipeline(store, synthesizer=LLMAnswerSynthesizer(client, model))
        run = pipeline.start("req-1", "Koja je stopa PDV-a?", "APP")
        async for event in run:
            ...
        payload = run.terminal
    """

    def __init__(
        self,
        source_repository,
        synthesizer=None,
        sink_factories: Optional[dict[str, Callable[[], EventSink]]] = None,
        breaker: Optional[CircuitBreaker] = None,
        config: Optional[ReasoningConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        metrics=None,
    ):
        """
        Initialize the pipeline.

        Args:
            source_repository: Object with find_source_cards(keywords, domain, limit)
            synthesizer: Object with synthesize(query, block, language) -> str.
                None answers from the primary source quote.
            sink_factories: name -> factory; each run gets fresh sink instances
            breaker: Circuit breaker shared by external calls
            config: Timeouts and thresholds
            clock: Returns the current UTC time (injectable for tests)
            metrics: Optional PipelineMetrics
        """
        self._sources = source_repository
        self._synthesizer = synthesizer
        self._sink_factories = dict(sink_factories or {})
        self._breaker = breaker or CircuitBreaker()
        self.config = config or ReasoningConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._metrics = metrics
        self._phases = [
            (ReasoningStage.CONTEXT_RESOLUTION.value, self._resolve_context),
            (ReasoningStage.SOURCES.value, self._discover_sources),
            (ReasoningStage.RETRIEVAL.value, self._retrieve),
            (ReasoningStage.ANALYSIS.value, self._analyze),
            (ReasoningStage.CONFIDENCE.value, self._assess_confidence),
            (ReasoningStage.ANSWER.value, self._synthesize),
        ]

    def start(
        self,
        request_id: str,
        query: str,
        surface: str = "APP",
        extra_sinks: Optional[list[EventSink]] = None,
    ) -> ReasoningRun:
        """Create a run. Nothing executes until the consumer pulls the first event."""
        registry = SinkRegistry()
        for name, factory in self._sink_factories.items():
            registry.get_or_create(name, factory)
        for sink in extra_sinks or []:
            registry.register(sink)

        run = ReasoningRun(request_id, query, surface, registry)
        run._gen = self._produce(run)
        return run

    # -------------------------------------------------------------------------
    # Producer
    # -------------------------------------------------------------------------

    def _event(self, run: ReasoningRun, stage: str, status: str, **kwargs) -> ReasoningEvent:
        seq = run._next_seq()
        return ReasoningEvent(
            schema_version=REASONING_EVENT_VERSION,
            id=f"{run.request_id}_{seq:04d}",
            request_id=run.request_id,
            seq=seq,
            timestamp=self._clock().isoformat(),
            stage=stage,
            status=status,
            **kwargs,
        )

    async def _produce(self, run: ReasoningRun):
        state = _RunState(request_id=run.request_id, query=run.query, surface=run.surface)
        fanout = SinkFanout(run.sinks)
        started = time.perf_counter()
        terminal: Optional[TerminalPayload] = None

        try:
            try:
                for stage, phase in self._phases:
                    event = self._event(run, stage, STATUS_STARTED)
                    await fanout.emit(event)
                    yield event

                    try:
                        result = await phase(state)
                    except Exception as e:
                        code = _error_code(stage, e)
                        message = str(e) or type(e).__name__
                        logger.warning(f"[{run.request_id}] {stage} failed ({code}): {message}")
                        event = self._event(
                            run, stage, STATUS_ERROR,
                            severity=SEVERITY_CRITICAL, message=message, data={"code": code},
                        )
                        terminal = ErrorPayload(code=code, message=message, retriable=True)
                        try:
                            await fanout.emit(event)
                        except CriticalDeliveryError as delivery_error:
                            terminal = ErrorPayload(
                                code="CRITICAL_DELIVERY_FAILED",
                                message=str(delivery_error),
                                retriable=True,
                            )
                        yield event
                        break

                    for message, data in result.progress:
                        event = self._event(run, stage, STATUS_PROGRESS, message=message, data=data)
                        await fanout.emit(event)
                        yield event

                    if result.terminal is not None:
                        terminal = result.terminal
                        if isinstance(terminal, AnswerPayload):
                            break
                        event = self._event(run, stage, STATUS_COMPLETE, data=result.data)
                        await fanout.emit(event)
                        yield event
                        break

                    event = self._event(run, stage, STATUS_COMPLETE, data=result.data)
                    await fanout.emit(event)
                    yield event
            except Exception as e:
                logger.exception(f"[{run.request_id}] reasoning run failed unexpectedly")
                terminal = ErrorPayload(code="INTERNAL", message=str(e) or type(e).__name__, retriable=True)

            if terminal is None:
                terminal = ErrorPayload(code="INTERNAL", message="run ended without a result", retriable=True)

            final = self._terminal_event(run, terminal)
            try:
                await fanout.emit(final)
            except CriticalDeliveryError as e:
                logger.error(f"[{run.request_id}] terminal event not durably recorded: {e}")
                terminal = ErrorPayload(code="CRITICAL_DELIVERY_FAILED", message=str(e), retriable=True)
                final = self._terminal_event(run, terminal)
                try:
                    await fanout.emit(final)
                except CriticalDeliveryError as retry_error:
                    logger.error(f"[{run.request_id}] delivery failure not recorded either: {retry_error}")
            run.terminal = terminal
            await fanout.flush()

            if self._metrics:
                self._metrics.record_reasoning(terminal.outcome, (time.perf_counter() - started) * 1000)
            yield final
        finally:
            if not fanout.flushed:
                logger.info(f"[{run.request_id}] consumer stopped before terminal; draining sinks")
                await fanout.flush()

    def _terminal_event(self, run: ReasoningRun, terminal: TerminalPayload) -> ReasoningEvent:
        if isinstance(terminal, AnswerPayload):
            return self._event(
                run, ReasoningStage.ANSWER.value, STATUS_COMPLETE,
                severity=SEVERITY_INFO, data=terminal.to_dict(),
            )
        return self._event(
            run, ReasoningStage.ERROR.value, STATUS_COMPLETE,
            severity=SEVERITY_CRITICAL, message=terminal.message, data=terminal.to_dict(),
        )

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    async def _resolve_context(self, state: _RunState) -> _PhaseResult:
        normalized = " ".join(state.query.split()).lower()
        if not normalized:
            raise ValueError("Query is empty")
        if state.surface not in SURFACES:
            raise ValueError(f"Unknown surface {state.surface!r}")

        state.language = "hr" if re.search(LANGUAGE_HINTS["hr"], normalized) else "en"
        domain = next((name for name, p in DOMAIN_PATTERNS if re.search(p, normalized)), "general")
        risk_tier = next((tier for tier, p in RISK_TIER_PATTERNS if re.search(p, normalized)), "T2")

        keywords = []
        for word in re.findall(r"\w{3,}", normalized):
            if word not in keywords:
                keywords.append(word)
        state.keywords = keywords[:self.config.max_keywords]

        state.context = {
            "normalized_query": normalized,
            "language": state.language,
            "domain": domain,
            "jurisdiction": "HR",
            "risk_tier": risk_tier,
            "surface": state.surface,
            "keywords": state.keywords,
            "confidence": 0.85,
        }
        return _PhaseResult(data=state.context)

    async def _discover_sources(self, state: _RunState) -> _PhaseResult:
        domain = state.context.get("domain")
        cards = await self._breaker.call(
            "sources",
            self._sources.find_source_cards,
            state.keywords,
            None if domain == "general" else domain,
            self.config.max_sources,
            timeout=self.config.phase_timeout_seconds,
        )
        state.cards = list(cards or [])
        progress = [
            (f"Found: {card.title or card.id}", {"id": card.id, "authority": card.authority})
            for card in state.cards
        ]
        return _PhaseResult(data={"count": len(state.cards)}, progress=progress)

    async def _retrieve(self, state: _RunState) -> _PhaseResult:
        state.eligible = [
            c for c in state.cards
            if c.status == "active" and c.confidence >= self.config.min_confidence
        ]
        data = {"eligible": len(state.eligible), "discarded": len(state.cards) - len(state.eligible)}
        if not state.eligible:
            labels = LABELS.get(state.language, LABELS["hr"])
            return _PhaseResult(
                data=data,
                terminal=ErrorPayload(code="NO_CITABLE_SOURCES", message=labels["no_sources"], retriable=False),
            )
        return _PhaseResult(data=data)

    async def _analyze(self, state: _RunState) -> _PhaseResult:
        state.block = build_citation_block(state.eligible)
        return _PhaseResult(data={
            "primary_id": state.block.primary.id,
            "ordered_ids": [c.id for c in state.block.ordered()],
            "authority_distribution": authority_distribution(state.eligible),
        })

    async def _assess_confidence(self, state: _RunState) -> _PhaseResult:
        ordered = state.block.ordered()
        haystack = " ".join(f"{c.title} {c.quote}" for c in ordered).lower()
        covered = sum(1 for k in state.keywords if k in haystack)
        coverage = covered / len(state.keywords) if state.keywords else 0.0
        state.confidence = compute_confidence(len(ordered), state.block.primary.confidence, coverage)
        return _PhaseResult(data=state.confidence)

    async def _synthesize(self, state: _RunState) -> _PhaseResult:
        degraded = False
        answer = None
        if self._synthesizer is not None:
            try:
                answer = await self._breaker.call(
                    "llm",
                    self._synthesizer.synthesize,
                    state.query,
                    state.block,
                    state.language,
                    timeout=self.config.phase_timeout_seconds,
                )
            except Exception as e:
                logger.warning(f"[{state.request_id}] answer synthesis degraded: {type(e).__name__}: {e}")
                degraded = True
        if not answer:
            answer = self._fallback_answer(state)

        return _PhaseResult(terminal=AnswerPayload(
            answer_text=answer,
            citations=state.block,
            confidence=state.confidence.get("overall", 0.0),
            degraded=degraded,
        ))

    @staticmethod
    def _fallback_answer(state: _RunState) -> str:
        labels = LABELS.get(state.language, LABELS["hr"])
        primary = state.block.primary
        return labels["fallback_answer"].format(
            reference=format_citation(primary, state.language),
            quote=primary.quote or primary.title or primary.id,
        )


# =============================================================================
# Answer Synthesis
# =============================================================================

class LLMAnswerSynthesizer:
    """
    Answers from ordered citations with an OpenAI-compatible chat model.

    The prompt is built through the prompt registry so each answer carries
    an AgentRunRecord with its template id and prompt hash.
    """

    def __init__(self, client, model: str, recorder=None, max_tokens: int = 1500, temperature: float = 0.2):
        self._client = client
        self._model = model
        self._recorder = recorder
        self._max_tokens = max_tokens
        self._temperature = temperature

    def build_input(self, query: str, block: CitationBlock, language: str) -> dict:
        return {
            "question": query,
            "language": language,
            "sources": [
                {
                    "n": i + 1,
                    "citation": format_citation(card, language),
                    "authority": card.authority,
                    "quote": card.quote,
                }
                for i, card in enumerate(block.ordered())
            ],
        }

    def synthesize(self, query: str, block: CitationBlock, language: str) -> str:
        payload = self.build_input(query, block, language)
        record = self._recorder.start("QUERY_ANSWER", payload) if self._recorder else None
        prompt = (
            self._recorder.registry.build_prompt("QUERY_ANSWER", payload)
            if self._recorder else str(payload)
        )
        try:
            response = self._client.chat.completions.create(
                model=self._model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=self._max_tokens,
                temperature=self._temperature,
            )
            answer = (response.choices[0].message.content or "").strip()
        except Exception as e:
            if record:
                self._recorder.finish(record, "failed", f"{type(e).__name__}: {e}")
            raise
        if record:
            self._recorder.finish(record, "completed", "ANSWER" if answer else "EMPTY")
        return answer
