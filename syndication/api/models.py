"""Pydantic models for API requests and responses."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class RunStatusEnum(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"


class RequeueStateEnum(str, Enum):
    FAILED = "failed"
    PENDING = "pending"
    UPLOADING = "uploading"
    AWAITING_PUBLISH = "awaiting_publish"


# Request Models
class RequeueRequest(BaseModel):
    state: RequeueStateEnum = RequeueStateEnum.FAILED
    platform: Optional[str] = None
    record_id: Optional[str] = None


# Response Models
class ErrorSampleResponse(BaseModel):
    key: str
    kind: Optional[str] = None
    message: str
    state: str
    updated_at: str


class StatusResponse(BaseModel):
    run_name: str
    status: RunStatusEnum
    paused: bool
    stop_requested: bool = False
    cursor: Optional[str] = None
    pages_completed: int = 0
    counts: Dict[str, Dict[str, int]] = Field(default_factory=dict)
    total_keys: int = 0
    totals: Dict[str, int] = Field(default_factory=dict)
    recent_errors: List[ErrorSampleResponse] = Field(default_factory=list)
    rate_budgets: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    last_error: Optional[str] = None


class ControlResponse(BaseModel):
    run_name: str
    status: str


class RequeueResponse(BaseModel):
    run_name: str
    requeued: int
