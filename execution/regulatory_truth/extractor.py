"""
Chunked Extractor

Runs ExtractionJobs through the EXTRACTOR prompt and keeps only assertions
whose exact quote appears verbatim in the job text. Every call is stamped
with an AgentRunRecord carrying the prompt template id, version and hash.
"""

import re
import json
import logging
from typing import Callable, Optional
from dataclasses import dataclass, field

from .chunker import ExtractionJob
from .prompt_registry import AgentRunRecorder

logger = logging.getLogger(__name__)

ASSERTION_TYPES = (
    "THRESHOLD", "RATE", "DEADLINE", "OBLIGATION", "PROHIBITION",
    "PROCEDURE", "DEFINITION", "EXCEPTION", "REFERENCE",
)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


class ModelOutputError(Exception):
    """Model output was not valid JSON or did not have the expected shape."""

    def __init__(self, job_key: str, message: str):
        self.job_key = job_key
        super().__init__(f"{job_key}: {message}")


@dataclass
class ExtractedAssertion:
    document_id: str
    node_path: str
    assertion_type: str
    subject: str
    value: str
    exact_quote: str
    confidence: float
    agent_run_id: str

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "node_path": self.node_path,
            "type": self.assertion_type,
            "subject": self.subject,
            "value": self.value,
            "exact_quote": self.exact_quote,
            "confidence": self.confidence,
            "agent_run_id": self.agent_run_id,
        }


@dataclass
class ExtractionSummary:
    """Outcome of one extraction batch."""
    jobs_completed: int = 0
    jobs_failed: int = 0
    assertions: list[ExtractedAssertion] = field(default_factory=list)
    rejected_quotes: int = 0
    truncated_chunks: int = 0
    capped_documents: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "jobs_completed": self.jobs_completed,
            "jobs_failed": self.jobs_failed,
            "assertion_count": len(self.assertions),
            "rejected_quotes": self.rejected_quotes,
            "truncated_chunks": self.truncated_chunks,
            "capped_documents": self.capped_documents,
            "errors": self.errors,
        }


def openai_model_fn(client, model: str, max_tokens: int = 4096, temperature: float = 0.1) -> Callable[[str], str]:
    """Adapt an OpenAI-compatible client to a prompt -> text function."""

    def call(prompt: str) -> str:
        response = client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=max_tokens,
            temperature=temperature,
        )
        return response.choices[0].message.content or ""

    return call


class ChunkedExtractor:
    """
    Extracts assertions from planned jobs.

    Usage:
        extractor = ChunkedExtractor(openai_model_fn(client, model), recorder)
        summary = extractor.extract(plan.jobs)
    """

    def __init__(
        self,
        model_fn: Callable[[str], str],
        recorder: AgentRunRecorder,
        max_assertions_per_chunk: int = 50,
        max_assertions_per_document: int = 2000,
        metrics=None,
    ):
        self._model_fn = model_fn
        self._recorder = recorder
        self.max_assertions_per_chunk = max_assertions_per_chunk
        self.max_assertions_per_document = max_assertions_per_document
        self._metrics = metrics

    def extract(self, jobs: list[ExtractionJob]) -> ExtractionSummary:
        summary = ExtractionSummary()
        for job in jobs:
            self._extract_job(job, summary)
        logger.info(
            f"Extraction finished: {summary.jobs_completed} completed, {summary.jobs_failed} failed, "
            f"{len(summary.assertions)} assertions, {summary.rejected_quotes} quotes rejected"
        )
        return summary

    def _extract_job(self, job: ExtractionJob, summary: ExtractionSummary) -> None:
        job_key = f"{job.document_id}:{job.node_path}"
        payload = {"document_id": job.document_id, "node_path": job.node_path, "text": job.text}
        record = self._recorder.start("EXTRACTOR", payload)
        prompt = self._recorder.registry.build_prompt("EXTRACTOR", payload)

        try:
            raw = self._model_fn(prompt)
            items = self.parse_output(job_key, raw)
        except Exception as e:
            logger.warning(f"Extraction failed for {job_key}: {type(e).__name__}: {e}")
            self._recorder.finish(record, "failed", f"{type(e).__name__}: {e}")
            summary.jobs_failed += 1
            summary.errors.append(f"{job_key}: {e}")
            if self._metrics:
                self._metrics.record_extraction(0, 0, failed=True)
            return

        accepted, rejected = [], 0
        for item in items:
            assertion = self._validate(job, item, record.id)
            if assertion is None:
                rejected += 1
            else:
                accepted.append(assertion)

        if len(accepted) > self.max_assertions_per_chunk:
            logger.warning(
                f"{job_key}: {len(accepted)} assertions, keeping first {self.max_assertions_per_chunk}"
            )
            accepted = accepted[:self.max_assertions_per_chunk]
            summary.truncated_chunks += 1

        kept = sum(1 for a in summary.assertions if a.document_id == job.document_id)
        remaining = max(self.max_assertions_per_document - kept, 0)
        if len(accepted) > remaining:
            logger.warning(
                f"{job.document_id}: document limit of {self.max_assertions_per_document} assertions reached"
            )
            accepted = accepted[:remaining]
            if job.document_id not in summary.capped_documents:
                summary.capped_documents.append(job.document_id)

        summary.assertions.extend(accepted)
        summary.rejected_quotes += rejected
        summary.jobs_completed += 1
        self._recorder.finish(record, "completed", f"{len(accepted)} accepted, {rejected} rejected")
        if self._metrics:
            self._metrics.record_extraction(len(accepted), rejected)

    @staticmethod
    def parse_output(job_key: str, raw: str) -> list:
        """Parse model output into a list of assertion dicts."""
        text = _CODE_FENCE.sub("", (raw or "").strip())
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ModelOutputError(job_key, f"invalid JSON ({e.msg})")
        if isinstance(data, list):
            return data
        if not isinstance(data, dict) or not isinstance(data.get("assertions"), list):
            raise ModelOutputError(job_key, "expected an object with an 'assertions' list")
        return data["assertions"]

    @staticmethod
    def _validate(job: ExtractionJob, item, agent_run_id: str) -> Optional[ExtractedAssertion]:
        if not isinstance(item, dict):
            return None
        quote = str(item.get("exact_quote") or "").strip()
        # Deterministic quote check: the quote must occur verbatim in the provision.
        if not quote or quote not in job.text:
            return None
        assertion_type = str(item.get("type") or "").upper()
        if assertion_type not in ASSERTION_TYPES:
            return None
        try:
            confidence = min(max(float(item.get("confidence", 0.0)), 0.0), 1.0)
        except (TypeError, ValueError):
            confidence = 0.0
        return ExtractedAssertion(
            document_id=job.document_id,
            node_path=job.node_path,
            assertion_type=assertion_type,
            subject=str(item.get("subject") or ""),
            value=str(item.get("value") or ""),
            exact_quote=quote,
            confidence=confidence,
            agent_run_id=agent_run_id,
        )
