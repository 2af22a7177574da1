"""
Pipeline Stage Coordinator

Gates dependent batch stages (fetch-classify -> review -> publish, or
sentinel -> extract -> compose -> review -> release) so a stage only starts
once its upstream stage has durably completed for the same run date.

The durable stage record is the only coordination primitive. Each
(stage, run_date) moves absent -> running -> completed | failed exactly
once; the atomic insert-if-absent in try_start is the sole contention point.
"""

import os
import time
import uuid
import logging
from datetime import date, datetime, timezone
from enum import Enum
from typing import Callable, Optional, Protocol
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class StageStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StageTransitionError(Exception):
    """Raised when completing or failing a run that is not running."""

    def __init__(self, run_id: str, action: str):
        self.run_id = run_id
        self.action = action
        super().__init__(f"Cannot {action} stage run {run_id}: not found or no longer running")


@dataclass
class PipelineStageRun:
    """Durable record of one stage for one run date."""
    id: str
    run_date: date
    stage: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    summary: dict = field(default_factory=dict)
    errors: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "run_date": self.run_date.isoformat(),
            "stage": self.stage,
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "summary": self.summary,
            "errors": self.errors,
        }


@dataclass
class StageStartResult:
    """Answer to a scheduler asking whether a stage may run."""
    can_proceed: bool
    reason: Optional[str] = None
    run_id: Optional[str] = None

    def to_dict(self) -> dict:
        result = {"canProceed": self.can_proceed}
        if self.reason is not None:
            result["reason"] = self.reason
        if self.run_id is not None:
            result["runId"] = self.run_id
        return result


class StageRunStore(Protocol):
    """Read/write contract for durable stage records."""

    def get_stage_run(self, stage: str, run_date: date) -> Optional[PipelineStageRun]: ...

    def insert_stage_run_if_absent(self, run: PipelineStageRun) -> bool: ...

    def transition_stage_run(
        self,
        run_id: str,
        to_status: str,
        completed_at: datetime,
        summary: dict,
        errors: list,
    ) -> bool: ...


# =============================================================================
# Pipeline Definitions
# =============================================================================

@dataclass(frozen=True)
class PipelineDefinition:
    """An ordered chain of stages; each stage depends on the one before it."""
    name: str
    stages: tuple

    def dependency_of(self, stage: str) -> Optional[str]:
        self.validate_stage(stage)
        idx = self.stages.index(stage)
        return self.stages[idx - 1] if idx > 0 else None

    def validate_stage(self, stage: str) -> None:
        if stage not in self.stages:
            raise ValueError(f"Unknown stage {stage!r} for pipeline {self.name!r} (expected one of {self.stages})")

    def stage_key(self, stage: str) -> str:
        """Record key; pipelines share stage names such as 'review'."""
        return f"{self.name}.{stage}"


NEWS_PIPELINE = PipelineDefinition("news", ("fetch-classify", "review", "publish"))
REGULATORY_PIPELINE = PipelineDefinition("regulatory", ("sentinel", "extract", "compose", "review", "release"))

PIPELINES = {p.name: p for p in (NEWS_PIPELINE, REGULATORY_PIPELINE)}


@dataclass
class CoordinatorConfig:
    """Polling bounds for dependency waits."""
    poll_interval_seconds: float = 30.0
    max_wait_seconds: float = 1800.0
    stale_after_seconds: float = 3600.0

    @classmethod
    def from_env(cls) -> "CoordinatorConfig":
        return cls(
            poll_interval_seconds=float(os.getenv("STAGE_POLL_INTERVAL_SECONDS", "30")),
            max_wait_seconds=float(os.getenv("STAGE_MAX_WAIT_SECONDS", "1800")),
            stale_after_seconds=float(os.getenv("STAGE_STALE_AFTER_SECONDS", "3600")),
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StageCoordinator:
    """
    Decides whether a pipeline stage may start for a run date.

    Usage:
        coordinator = StageCoordinator(store, REGULATORY_PIPELINE)
        result = coordinator.try_start("extract", date.today())
        if result.can_proceed:
            try:
                ... do the work ...
                coordinator.complete(result.run_id, {"processed": 12})
            except Exception as e:
                coordinator.fail(result.run_id, [str(e)])
                raise
    """

    def __init__(
        self,
        store: StageRunStore,
        pipeline: PipelineDefinition,
        config: Optional[CoordinatorConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], None]] = None,
        metrics=None,
    ):
        """
        Initialize the coordinator.

        Args:
            store: Durable stage record store
            pipeline: Stage chain to enforce
            config: Polling bounds. Defaults to CoordinatorConfig()
            clock: Returns the current UTC time (injectable for tests)
            sleep: Blocks for the given seconds (injectable for tests)
            metrics: Optional PipelineMetrics for counters
        """
        self._store = store
        self.pipeline = pipeline
        self.config = config or CoordinatorConfig()
        self._clock = clock or _utcnow
        self._sleep = sleep or time.sleep
        self._metrics = metrics

    def current_run_date(self) -> date:
        """Run date used when a caller does not name one (UTC)."""
        return self._clock().date()

    def try_start(self, stage: str, run_date: Optional[date] = None) -> StageStartResult:
        """
        Claim a stage for a run date if it is allowed to start.

        Refusals (already completed / running / failed, dependency timeout)
        are returned as reasons, never raised.

        Raises:
            ValueError: stage is not part of this pipeline
        """
        dependency = self.pipeline.dependency_of(stage)
        run_date = run_date or self.current_run_date()
        key = self.pipeline.stage_key(stage)

        existing = self._store.get_stage_run(key, run_date)
        if existing is not None:
            if existing.status == StageStatus.COMPLETED.value:
                return self._refuse(stage, f"{stage} already completed for {run_date}")
            if existing.status == StageStatus.RUNNING.value:
                return self._refuse(stage, f"{stage} already running for {run_date} (run {existing.id})")
            return self._refuse(stage, f"{stage} already failed for {run_date}; failed runs are not reopened")

        if dependency is not None:
            reason = self._await_dependency(stage, dependency, run_date)
            if reason is not None:
                if self._metrics:
                    self._metrics.record_stage_event("timeouts")
                return self._refuse(stage, reason)

        run = PipelineStageRun(
            id=str(uuid.uuid4()),
            run_date=run_date,
            stage=key,
            status=StageStatus.RUNNING.value,
            started_at=self._clock(),
        )
        if not self._store.insert_stage_run_if_absent(run):
            return self._refuse(stage, f"{stage} already running for {run_date} (lost start race)")

        logger.info(f"Stage {key} started for {run_date} (run {run.id})")
        if self._metrics:
            self._metrics.record_stage_event("starts")
        return StageStartResult(can_proceed=True, run_id=run.id)

    def complete(self, run_id: str, summary: Optional[dict] = None) -> None:
        """Mark a running stage completed. The stage reports this itself."""
        if not self._store.transition_stage_run(
            run_id, StageStatus.COMPLETED.value, self._clock(), summary or {}, [],
        ):
            raise StageTransitionError(run_id, "complete")
        logger.info(f"Stage run {run_id} completed: {summary or {}}")
        if self._metrics:
            self._metrics.record_stage_event("completions")

    def fail(self, run_id: str, errors=None) -> None:
        """Mark a running stage failed."""
        if isinstance(errors, str):
            errors = [errors]
        if not self._store.transition_stage_run(
            run_id, StageStatus.FAILED.value, self._clock(), {}, list(errors or []),
        ):
            raise StageTransitionError(run_id, "fail")
        logger.error(f"Stage run {run_id} failed: {errors}")
        if self._metrics:
            self._metrics.record_stage_event("failures")

    def pipeline_status(self, run_date: date) -> dict:
        """Status of every stage in the pipeline for a run date (None = absent)."""
        status = {}
        for stage in self.pipeline.stages:
            run = self._store.get_stage_run(self.pipeline.stage_key(stage), run_date)
            status[stage] = run.status if run else None
        return status

    # -------------------------------------------------------------------------
    # Dependency polling
    # -------------------------------------------------------------------------

    def _await_dependency(self, stage: str, dependency: str, run_date: date) -> Optional[str]:
        """Poll until the dependency completes. Returns a timeout reason, or None."""
        dep_key = self.pipeline.stage_key(dependency)
        started = self._clock()
        while True:
            dep_run = self._store.get_stage_run(dep_key, run_date)
            if dep_run is not None and dep_run.status == StageStatus.COMPLETED.value:
                return None

            elapsed = (self._clock() - started).total_seconds()
            remaining = self.config.max_wait_seconds - elapsed
            if remaining <= 0:
                return self._timeout_reason(dependency, run_date, dep_run)

            state = dep_run.status if dep_run else "not started"
            logger.info(
                f"{stage} waiting for {dependency} ({state}) for {run_date}, "
                f"{elapsed:.0f}s of {self.config.max_wait_seconds:.0f}s elapsed"
            )
            self._sleep(min(self.config.poll_interval_seconds, remaining))

    def _timeout_reason(self, dependency: str, run_date: date, dep_run: Optional[PipelineStageRun]) -> str:
        prefix = f"Timed out after {self.config.max_wait_seconds:.0f}s waiting for {dependency}"
        if dep_run is None:
            return f"{prefix}: not started for {run_date}"
        if dep_run.status == StageStatus.FAILED.value:
            return f"{prefix}: failed for {run_date}"
        age = (self._clock() - dep_run.started_at).total_seconds()
        since = dep_run.started_at.isoformat()
        if age > self.config.stale_after_seconds:
            logger.warning(f"{dependency} running for {age:.0f}s since {since}; possibly stalled")
            return f"{prefix}: running since {since}, possibly stalled"
        return f"{prefix}: running since {since}"

    def _refuse(self, stage: str, reason: str) -> StageStartResult:
        logger.info(f"Stage {self.pipeline.stage_key(stage)} refused: {reason}")
        if self._metrics:
            self._metrics.record_stage_event("refusals")
        return StageStartResult(can_proceed=False, reason=reason)
