"""
Prompt and Provenance Registry

Binds every automated extraction or answer to the exact prompt text that
produced it. Prompts are built deterministically from (agent_type, input),
so the same pair always yields the same hash and template identity.

Template ids are never reused for different instructions; changing a
template means registering a new id, which keeps historical agent runs
interpretable.
"""

import json
import uuid
import hashlib
import logging
from dataclasses import dataclass, replace
from typing import Any, Optional

from .language_patterns import AGENT_PROMPTS, GENERIC_AGENT_PROMPT

logger = logging.getLogger(__name__)

AGENT_TYPES = (
    "SENTINEL",
    "EXTRACTOR",
    "COMPOSER",
    "REVIEWER",
    "RELEASER",
    "ARBITER",
    "CONTENT_CLASSIFIER",
    "QUERY_ANSWER",
)

FALLBACK_VERSION = "0.0.0"

RUN_STATUS_RUNNING = "running"
RUN_TERMINAL_STATUSES = frozenset({"completed", "failed"})


class PromptRegistryError(Exception):
    """Raised when a template id would be reused for different instructions."""

    def __init__(self, template_id: str, message: str):
        self.template_id = template_id
        super().__init__(message)


def canonical_json(value: Any) -> str:
    """Stable JSON text: sorted keys, compact separators, UTF-8 kept."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def compute_hash(prompt_text: str) -> str:
    """SHA-256 hex digest of prompt text."""
    return hashlib.sha256(prompt_text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class PromptTemplate:
    """A versioned instruction block for one agent type."""
    agent_type: str
    template_id: str
    version: str
    text: str


@dataclass(frozen=True)
class PromptProvenance:
    """Identity of the prompt behind one agent run."""
    template_id: str
    version: str
    prompt_hash: str

    def to_dict(self) -> dict:
        return {
            "template_id": self.template_id,
            "version": self.version,
            "prompt_hash": self.prompt_hash,
        }


class PromptRegistry:
    """
    Maps agent types to prompt templates.

    Usage:
        registry = PromptRegistry.default()
        prompt = registry.build_prompt("EXTRACTOR", {"text": "..."})
        provenance = registry.get_provenance("EXTRACTOR", {"text": "..."})
    """

    def __init__(self):
        self._by_agent: dict[str, PromptTemplate] = {}
        self._by_id: dict[str, PromptTemplate] = {}

    @classmethod
    def default(cls) -> "PromptRegistry":
        registry = cls()
        for agent_type in AGENT_TYPES:
            registry.register(PromptTemplate(
                agent_type=agent_type,
                template_id=f"{agent_type.lower().replace('_', '-')}-v1",
                version="1.0.0",
                text=AGENT_PROMPTS[agent_type],
            ))
        return registry

    def register(self, template: PromptTemplate) -> None:
        """
        Register a template as the active one for its agent type.

        Raises:
            PromptRegistryError: the id already names different instructions
        """
        existing = self._by_id.get(template.template_id)
        if existing is not None and (existing.text != template.text or existing.version != template.version):
            raise PromptRegistryError(
                template.template_id,
                f"Template id {template.template_id!r} already registered with different "
                f"instructions; register the change under a new id",
            )
        self._by_id[template.template_id] = template
        self._by_agent[template.agent_type] = template

    def template_for(self, agent_type: str) -> PromptTemplate:
        """Return the active template, or a derived fallback for unknown types."""
        template = self._by_agent.get(agent_type)
        if template is not None:
            return template
        logger.warning(f"No prompt template registered for agent type {agent_type!r}; using fallback")
        return PromptTemplate(
            agent_type=agent_type,
            template_id=f"{str(agent_type).lower()}-unregistered",
            version=FALLBACK_VERSION,
            text=GENERIC_AGENT_PROMPT,
        )

    def get_template(self, template_id: str) -> Optional[PromptTemplate]:
        return self._by_id.get(template_id)

    def build_prompt(self, agent_type: str, input: Any) -> str:
        template = self.template_for(agent_type)
        return f"{template.text}\n\nINPUT:\n{canonical_json(input)}"

    def compute_hash(self, prompt_text: str) -> str:
        return compute_hash(prompt_text)

    def get_provenance(self, agent_type: str, input: Any) -> PromptProvenance:
        template = self.template_for(agent_type)
        prompt = self.build_prompt(agent_type, input)
        return PromptProvenance(
            template_id=template.template_id,
            version=template.version,
            prompt_hash=compute_hash(prompt),
        )


# =============================================================================
# Agent Run Records
# =============================================================================

@dataclass(frozen=True)
class AgentRunRecord:
    """One extraction or answer attempt, stamped with its prompt provenance."""
    id: str
    agent_type: str
    template_id: str
    prompt_version: str
    prompt_hash: str
    input_chars: int
    status: str = RUN_STATUS_RUNNING
    outcome: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in RUN_TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "agent_type": self.agent_type,
            "template_id": self.template_id,
            "prompt_version": self.prompt_version,
            "prompt_hash": self.prompt_hash,
            "input_chars": self.input_chars,
            "status": self.status,
            "outcome": self.outcome,
        }


class AgentRunRecorder:
    """
    Creates and finalizes AgentRunRecords.

    Persistence is best-effort: a failing store is logged and never blocks
    the run it describes.
    """

    def __init__(self, registry: PromptRegistry, store=None):
        self.registry = registry
        self._store = store

    def start(self, agent_type: str, input: Any) -> AgentRunRecord:
        provenance = self.registry.get_provenance(agent_type, input)
        record = AgentRunRecord(
            id=str(uuid.uuid4()),
            agent_type=agent_type,
            template_id=provenance.template_id,
            prompt_version=provenance.version,
            prompt_hash=provenance.prompt_hash,
            input_chars=len(canonical_json(input)),
        )
        self._persist(record, "start")
        return record

    def finish(self, record: AgentRunRecord, status: str, outcome: Optional[str] = None) -> AgentRunRecord:
        """Return the terminal copy of a running record."""
        if status not in RUN_TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {status!r}")
        if record.is_terminal:
            raise ValueError(f"Agent run {record.id} already finished as {record.status}")
        finished = replace(record, status=status, outcome=outcome)
        self._persist(finished, "finish")
        return finished

    def _persist(self, record: AgentRunRecord, label: str) -> None:
        if self._store is None:
            return
        try:
            self._store.save_agent_run(record)
        except Exception as e:
            logger.warning(f"Agent run {label} not persisted for {record.id}: {e}")
