"""
Application context.

Owns every long-lived service (store, registry, coordinators, breaker,
reasoning pipeline, model client, metrics). Entry points build one with
``AppContext.from_env()`` and release it with ``close()``; nothing is cached
at module level.
"""

import os
import logging
from typing import Optional
from dataclasses import dataclass, field

from .circuit_breaker import CircuitBreaker
from .extractor import ChunkedExtractor, openai_model_fn
from .metrics import PipelineMetrics
from .prompt_registry import AgentRunRecorder, PromptRegistry
from .reasoning import LLMAnswerSynthesizer, ReasoningConfig, ReasoningPipeline
from .sinks import AuditLogSink, LoggingSink
from .stage_coordinator import PIPELINES, CoordinatorConfig, StageCoordinator
from .storage import PipelineStore

logger = logging.getLogger(__name__)

DEFAULT_LLM_BASE_URL = "https://integrate.api.nvidia.com/v1"
DEFAULT_LLM_MODEL = "qwen/qwen3-235b-a22b"


@dataclass
class AppContext:
    store: object
    registry: PromptRegistry
    recorder: AgentRunRecorder
    coordinators: dict
    breaker: CircuitBreaker
    reasoning: ReasoningPipeline
    metrics: PipelineMetrics
    llm_client: Optional[object] = None
    llm_model: str = DEFAULT_LLM_MODEL
    heartbeat_seconds: float = 15.0
    _closed: bool = field(default=False, repr=False)

    @classmethod
    def build(
        cls,
        store,
        llm_client=None,
        llm_model: str = DEFAULT_LLM_MODEL,
        coordinator_config: Optional[CoordinatorConfig] = None,
        reasoning_config: Optional[ReasoningConfig] = None,
        breaker: Optional[CircuitBreaker] = None,
        heartbeat_seconds: float = 15.0,
        **coordinator_kwargs,
    ) -> "AppContext":
        """Wire services around an already connected store."""
        metrics = PipelineMetrics()
        registry = PromptRegistry.default()
        recorder = AgentRunRecorder(registry, store)
        breaker = breaker or CircuitBreaker()

        coordinators = {
            name: StageCoordinator(
                store, pipeline, config=coordinator_config, metrics=metrics, **coordinator_kwargs,
            )
            for name, pipeline in PIPELINES.items()
        }

        synthesizer = LLMAnswerSynthesizer(llm_client, llm_model, recorder) if llm_client else None
        reasoning = ReasoningPipeline(
            store,
            synthesizer=synthesizer,
            sink_factories={
                "log": LoggingSink,
                "audit": lambda: AuditLogSink(store),
            },
            breaker=breaker,
            config=reasoning_config,
            metrics=metrics,
        )
        return cls(
            store=store,
            registry=registry,
            recorder=recorder,
            coordinators=coordinators,
            breaker=breaker,
            reasoning=reasoning,
            metrics=metrics,
            llm_client=llm_client,
            llm_model=llm_model,
            heartbeat_seconds=heartbeat_seconds,
        )

    @classmethod
    def from_env(cls) -> "AppContext":
        """Connect to Postgres and create the model client from environment variables."""
        store = PipelineStore()
        store.connect()
        store.initialize_schema()

        llm_client = None
        api_key = os.getenv("LLM_API_KEY") or os.getenv("NVIDIA_API_KEY")
        if api_key:
            from openai import OpenAI
            llm_client = OpenAI(
                base_url=os.getenv("LLM_BASE_URL", DEFAULT_LLM_BASE_URL),
                api_key=api_key,
                timeout=float(os.getenv("LLM_TIMEOUT_SECONDS", "120")),
            )
        else:
            logger.warning("No LLM API key configured; answers fall back to primary source quotes")

        return cls.build(
            store,
            llm_client=llm_client,
            llm_model=os.getenv("LLM_MODEL", DEFAULT_LLM_MODEL),
            coordinator_config=CoordinatorConfig.from_env(),
            reasoning_config=ReasoningConfig.from_env(),
            heartbeat_seconds=float(os.getenv("REASONING_HEARTBEAT_SECONDS", "15")),
        )

    def coordinator(self, pipeline: str) -> StageCoordinator:
        """
        Raises:
            KeyError: unknown pipeline name
        """
        return self.coordinators[pipeline]

    def extractor(self) -> ChunkedExtractor:
        """Extractor bound to this context's model client."""
        if self.llm_client is None:
            raise RuntimeError("Extraction needs LLM_API_KEY or NVIDIA_API_KEY")
        return ChunkedExtractor(
            openai_model_fn(self.llm_client, self.llm_model), self.recorder, metrics=self.metrics,
        )

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        close = getattr(self.store, "close", None)
        if close:
            close()
        llm_close = getattr(self.llm_client, "close", None)
        if llm_close:
            llm_close()
        logger.info("Application context closed")
