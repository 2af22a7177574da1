"""
FastAPI Backend for the Regulatory Truth pipeline

Stage entry points for the batch schedulers and the streaming reasoning
endpoint for the assistant.

Run with: uvicorn execution.regulatory_truth.api:app --host 0.0.0.0 --port 8000
"""

import os
import uuid
import logging
from datetime import date
from typing import Callable, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from . import __version__
from .api_models import (
    HealthResponse,
    PipelineStatusResponse,
    ReasonRequest,
    StageCompleteRequest,
    StageFailRequest,
    StageStartRequest,
    StageStartResponse,
    StageTransitionResponse,
)
from .context import AppContext
from .sse import SSE_HEADERS, stream_reasoning_frames
from .stage_coordinator import StageCoordinator, StageStatus, StageTransitionError

load_dotenv()

logger = logging.getLogger(__name__)


def create_app(context_factory: Callable[[], AppContext] = AppContext.from_env) -> FastAPI:
    """Build the app. The lifespan owns the AppContext and closes it on shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.context = context_factory()
        logger.info("Application context ready")
        try:
            yield
        finally:
            app.state.context.close()

    app = FastAPI(
        title="Regulatory Truth API",
        description="Stage coordination and cited regulatory answers",
        version=__version__,
        lifespan=lifespan,
    )

    # Configure CORS: use CORS_ORIGINS env var (comma-separated) or default to localhost
    _cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in _cors_origins],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_routes(app)
    return app


def _context(request: Request) -> AppContext:
    return request.app.state.context


def _coordinator(ctx: AppContext, pipeline: str) -> StageCoordinator:
    try:
        return ctx.coordinator(pipeline)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown pipeline: {pipeline}")


# =============================================================================
# Endpoints
# =============================================================================

def _register_routes(app: FastAPI) -> None:

    @app.get("/api/v1/health", response_model=HealthResponse)
    def health_check(request: Request):
        """Health check endpoint."""
        ctx = _context(request)
        try:
            db_status = "connected" if ctx.store.ping() else "degraded"
        except Exception as e:
            logger.warning(f"Health check: database disconnected: {e}")
            db_status = "disconnected"

        return HealthResponse(
            status="ok",
            version=__version__,
            database=db_status,
            circuits=ctx.breaker.to_dict(),
            metrics=ctx.metrics.to_dict(),
        )

    # Plain def: try_start may block while polling for the upstream stage,
    # so FastAPI runs it in the threadpool.
    @app.post(
        "/api/v1/pipelines/{pipeline}/stages/{stage}/start",
        response_model=StageStartResponse,
        responses={409: {"model": StageStartResponse}},
    )
    def start_stage(pipeline: str, stage: str, request: Request, body: Optional[StageStartRequest] = None):
        coordinator = _coordinator(_context(request), pipeline)
        run_date = body.run_date if body else None
        try:
            result = coordinator.try_start(stage, run_date)
        except ValueError as e:
            raise HTTPException(status_code=404, detail=str(e))

        if not result.can_proceed:
            return JSONResponse(status_code=409, content=result.to_dict())
        return result.to_dict()

    @app.post("/api/v1/pipelines/runs/{run_id}/complete", response_model=StageTransitionResponse)
    def complete_stage(run_id: str, body: StageCompleteRequest, request: Request):
        coordinator = _coordinator(_context(request), body.pipeline)
        try:
            coordinator.complete(run_id, body.summary)
        except StageTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return StageTransitionResponse(run_id=run_id, status=StageStatus.COMPLETED.value)

    @app.post("/api/v1/pipelines/runs/{run_id}/fail", response_model=StageTransitionResponse)
    def fail_stage(run_id: str, body: StageFailRequest, request: Request):
        coordinator = _coordinator(_context(request), body.pipeline)
        try:
            coordinator.fail(run_id, body.errors)
        except StageTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return StageTransitionResponse(run_id=run_id, status=StageStatus.FAILED.value)

    @app.get("/api/v1/pipelines/{pipeline}/status", response_model=PipelineStatusResponse)
    def pipeline_status(pipeline: str, request: Request, run_date: Optional[date] = None):
        coordinator = _coordinator(_context(request), pipeline)
        run_date = run_date or coordinator.current_run_date()
        return PipelineStatusResponse(
            pipeline=pipeline,
            run_date=run_date,
            stages=coordinator.pipeline_status(run_date),
        )

    @app.post("/api/v1/assistant/reason")
    async def reason(body: ReasonRequest, request: Request):
        """Stream reasoning events as SSE; the last data frame is the terminal payload."""
        ctx = _context(request)
        request_id = body.request_id or f"req_{uuid.uuid4().hex[:16]}"
        run = ctx.reasoning.start(request_id, body.query, body.surface)
        logger.info(f"[{request_id}] reasoning stream opened ({body.surface})")

        return StreamingResponse(
            stream_reasoning_frames(run, heartbeat_seconds=ctx.heartbeat_seconds),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )


app = create_app()
