"""
Pipeline Store with PostgreSQL

Durable records for the regulatory pipeline: stage runs (keyed by
stage + run date), agent runs, the reasoning audit trail, and the source
cards consulted by the assistant.

Stage records are claimed with INSERT ... ON CONFLICT DO NOTHING and only
ever leave the running state through a conditional UPDATE, so concurrent
schedulers cannot create duplicates or reopen a finished run.
"""

import os
import json
import logging
from datetime import date, datetime
from typing import Optional
from dataclasses import dataclass
from contextlib import contextmanager

from .citation import SourceCard
from .stage_coordinator import PipelineStageRun, StageStatus

try:
    import psycopg2
    import psycopg2.extras
    import psycopg2.pool
except ImportError:
    psycopg2 = None  # Will be caught at connect() time

logger = logging.getLogger(__name__)


@dataclass
class PipelineStoreConfig:
    """Configuration for the pipeline store."""
    connection_string: Optional[str] = None
    pool_min_connections: int = 1
    pool_max_connections: int = 10


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pipeline_stage_runs (
    id UUID PRIMARY KEY,
    run_date DATE NOT NULL,
    stage TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('running', 'completed', 'failed')),
    started_at TIMESTAMPTZ NOT NULL,
    completed_at TIMESTAMPTZ,
    summary JSONB DEFAULT '{}',
    errors JSONB DEFAULT '[]',
    UNIQUE (stage, run_date)
);

CREATE TABLE IF NOT EXISTS agent_runs (
    id UUID PRIMARY KEY,
    agent_type TEXT NOT NULL,
    template_id TEXT NOT NULL,
    prompt_version TEXT NOT NULL,
    prompt_hash CHAR(64) NOT NULL,
    input_chars INT NOT NULL,
    status TEXT NOT NULL,
    outcome TEXT,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_agent_runs_prompt_hash ON agent_runs(prompt_hash);

CREATE TABLE IF NOT EXISTS reasoning_events (
    id TEXT PRIMARY KEY,
    request_id TEXT NOT NULL,
    seq INT NOT NULL,
    stage TEXT NOT NULL,
    status TEXT NOT NULL,
    severity TEXT,
    payload JSONB NOT NULL,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    UNIQUE (request_id, seq)
);

CREATE TABLE IF NOT EXISTS source_cards (
    id TEXT PRIMARY KEY,
    authority TEXT NOT NULL,
    title TEXT,
    reference TEXT,
    quote TEXT,
    url TEXT,
    effective_from DATE,
    confidence REAL DEFAULT 0,
    status TEXT DEFAULT 'active',
    domain TEXT,
    search_text TEXT
);
CREATE INDEX IF NOT EXISTS idx_source_cards_domain ON source_cards(domain);
"""


class PipelineStore:
    """
    PostgreSQL store for stage runs, agent runs, reasoning events and sources.

    All operations go through a threaded connection pool with one retry on a
    stale connection.
    """

    def __init__(self, config: Optional[PipelineStoreConfig] = None):
        """
        Initialize the store.

        Args:
            config: Optional configuration. Uses env vars if not provided.
        """
        self.config = config or PipelineStoreConfig()
        self._pool = None
        self._connection_string = (
            self.config.connection_string or
            os.getenv("POSTGRES_URL") or
            os.getenv("DATABASE_URL") or
            "postgresql://localhost:5432/regulatory_truth"
        )

    def connect(self) -> None:
        """Create the connection pool."""
        if psycopg2 is None:
            raise ImportError("psycopg2 not installed. Run: pip install psycopg2-binary")
        try:
            if self._pool:
                self._pool.closeall()
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=self.config.pool_min_connections,
                maxconn=self.config.pool_max_connections,
                dsn=self._connection_string,
                cursor_factory=psycopg2.extras.RealDictCursor,
            )
            logger.info(
                f"Connection pool initialized (min={self.config.pool_min_connections}, "
                f"max={self.config.pool_max_connections})"
            )
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    def _get_connection(self):
        if self._pool is None:
            self.connect()
        return self._pool.getconn()

    def _release_connection(self, conn):
        if self._pool and conn:
            self._pool.putconn(conn)

    @contextmanager
    def get_connection(self):
        """
        Context manager for getting a database connection.

        Usage:
            with store.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
        """
        conn = self._get_connection()
        try:
            yield conn
        finally:
            self._release_connection(conn)

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            pass

    def _execute_with_retry(self, operation, label="db_operation"):
        """Execute a DB operation with one retry on stale connection.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.

        Returns:
            Whatever ``operation`` returns.
        """
        for attempt in range(2):
            conn = self._get_connection()
            try:
                result = operation(conn)
                self._release_connection(conn)
                return result
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                self._pool.putconn(conn, close=True)
                if attempt == 0:
                    logger.warning(f"{label}: stale conn, reconnecting: {e}")
                    self.connect()
                    continue
                raise
            except Exception:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise

    def close(self) -> None:
        """Close database connections."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")

    def ping(self) -> bool:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                return cur.fetchone()["ok"] == 1
        return self._execute_with_retry(_op, "ping")

    def initialize_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
            conn.commit()
        self._execute_with_retry(_op, "initialize_schema")
        logger.info("Pipeline schema initialized")

    # =========================================================================
    # Stage Runs
    # =========================================================================

    @staticmethod
    def _row_to_stage_run(row: dict) -> PipelineStageRun:
        return PipelineStageRun(
            id=str(row["id"]),
            run_date=row["run_date"],
            stage=row["stage"],
            status=row["status"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            summary=row["summary"] or {},
            errors=row["errors"] or [],
        )

    def get_stage_run(self, stage: str, run_date: date) -> Optional[PipelineStageRun]:
        sql = """
        SELECT id, run_date, stage, status, started_at, completed_at, summary, errors
        FROM pipeline_stage_runs
        WHERE stage = %s AND run_date = %s
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (stage, run_date))
                row = cur.fetchone()
            conn.commit()
            return self._row_to_stage_run(row) if row else None

        return self._execute_with_retry(_op, "get_stage_run")

    def insert_stage_run_if_absent(self, run: PipelineStageRun) -> bool:
        """Atomically claim (stage, run_date). Returns False if a record exists."""
        sql = """
        INSERT INTO pipeline_stage_runs (id, run_date, stage, status, started_at)
        VALUES (%s::uuid, %s, %s, %s, %s)
        ON CONFLICT (stage, run_date) DO NOTHING
        RETURNING id
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (run.id, run.run_date, run.stage, run.status, run.started_at))
                inserted = cur.fetchone() is not None
            conn.commit()
            return inserted

        return self._execute_with_retry(_op, "insert_stage_run_if_absent")

    def transition_stage_run(
        self,
        run_id: str,
        to_status: str,
        completed_at: datetime,
        summary: dict,
        errors: list,
    ) -> bool:
        """Move a running record to a terminal status. Returns False if not running."""
        sql = """
        UPDATE pipeline_stage_runs
        SET status = %s, completed_at = %s, summary = %s, errors = %s
        WHERE id = %s::uuid AND status = %s
        RETURNING id
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (
                    to_status,
                    completed_at,
                    json.dumps(summary, default=str),
                    json.dumps(errors, default=str),
                    run_id,
                    StageStatus.RUNNING.value,
                ))
                updated = cur.fetchone() is not None
            conn.commit()
            return updated

        return self._execute_with_retry(_op, "transition_stage_run")

    # =========================================================================
    # Agent Runs
    # =========================================================================

    def save_agent_run(self, record) -> None:
        """Insert or finalize an AgentRunRecord."""
        sql = """
        INSERT INTO agent_runs
            (id, agent_type, template_id, prompt_version, prompt_hash, input_chars, status, outcome)
        VALUES (%s::uuid, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (id) DO UPDATE
            SET status = EXCLUDED.status, outcome = EXCLUDED.outcome, updated_at = NOW()
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (
                    record.id,
                    record.agent_type,
                    record.template_id,
                    record.prompt_version,
                    record.prompt_hash,
                    record.input_chars,
                    record.status,
                    record.outcome,
                ))
            conn.commit()

        self._execute_with_retry(_op, "save_agent_run")

    # =========================================================================
    # Reasoning Audit Trail
    # =========================================================================

    def log_reasoning_events(self, events: list[dict]) -> None:
        """Persist reasoning events. Failures propagate to the caller."""
        if not events:
            return
        sql = """
        INSERT INTO reasoning_events (id, request_id, seq, stage, status, severity, payload)
        VALUES %s
        ON CONFLICT (request_id, seq) DO NOTHING
        """
        rows = [
            (
                e["id"], e["request_id"], e["seq"], e["stage"], e["status"],
                e.get("severity"), json.dumps(e, ensure_ascii=False, default=str),
            )
            for e in events
        ]

        def _op(conn):
            with conn.cursor() as cur:
                psycopg2.extras.execute_values(cur, sql, rows)
            conn.commit()

        self._execute_with_retry(_op, "log_reasoning_events")

    # =========================================================================
    # Source Cards
    # =========================================================================

    def find_source_cards(
        self,
        keywords: list[str],
        domain: Optional[str] = None,
        limit: int = 20,
    ) -> list[SourceCard]:
        """Active source cards whose search text matches any keyword."""
        if not keywords:
            return []
        sql = """
        SELECT id, authority, title, reference, quote, url, effective_from, confidence, status
        FROM source_cards
        WHERE status = 'active'
          AND (%s::text IS NULL OR domain = %s OR domain IS NULL)
          AND search_text ILIKE ANY(%s)
        ORDER BY id
        LIMIT %s
        """
        patterns = [f"%{k}%" for k in keywords]

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (domain, domain, patterns, limit))
                rows = cur.fetchall()
            conn.commit()
            return [
                SourceCard(
                    id=row["id"],
                    authority=row["authority"],
                    confidence=row["confidence"] or 0.0,
                    effective_from=row["effective_from"],
                    title=row["title"] or "",
                    reference=row["reference"] or "",
                    quote=row["quote"] or "",
                    url=row["url"],
                    status=row["status"],
                )
                for row in rows
            ]

        return self._execute_with_retry(_op, "find_source_cards")
