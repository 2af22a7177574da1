"""
Pydantic models for the Regulatory Truth FastAPI backend.
"""

from typing import Optional
from datetime import date
from pydantic import BaseModel, Field


class StageStartRequest(BaseModel):
    """Request body for a stage entry point. run_date defaults to today (UTC)."""
    run_date: Optional[date] = None


class StageStartResponse(BaseModel):
    canProceed: bool
    reason: Optional[str] = None
    runId: Optional[str] = None


class StageCompleteRequest(BaseModel):
    pipeline: str
    summary: dict = Field(default_factory=dict)


class StageFailRequest(BaseModel):
    pipeline: str
    errors: list[str] = Field(default_factory=list)


class StageTransitionResponse(BaseModel):
    run_id: str
    status: str


class PipelineStatusResponse(BaseModel):
    pipeline: str
    run_date: date
    stages: dict[str, Optional[str]]


class ReasonRequest(BaseModel):
    """Request body for the reasoning stream."""
    query: str = Field(..., min_length=1, max_length=2000)
    surface: str = Field(default="APP", pattern="^(APP|MARKETING)$")
    request_id: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    circuits: dict = Field(default_factory=dict)
    metrics: dict = Field(default_factory=dict)
