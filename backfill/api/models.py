"""Pydantic models for API requests and responses."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from enum import Enum
from datetime import datetime


class RunStatusEnum(str, Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    RESOLVING = "resolving"
    TRANSFORMING = "transforming"
    WRITING = "writing"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Request Models
class RunCreate(BaseModel):
    job: str
    provider_id: int
    page_size: Optional[int] = Field(default=None, gt=0)
    chunk_size: Optional[int] = Field(default=None, gt=0)
    dry_run: bool = False
    max_pages: Optional[int] = Field(default=None, gt=0)


# Response Models
class FieldInfo(BaseModel):
    name: str
    type: str
    null_policy: str
    column_type: str


class JobInfo(BaseModel):
    name: str
    table_prefix: str
    description: str = ""
    order_by: List[str]
    fields: List[FieldInfo] = Field(default_factory=list)


class JobListResponse(BaseModel):
    jobs: List[JobInfo]
    total: int


class CheckpointResponse(BaseModel):
    job_key: str
    last_migrated_id: int
    updated_at: datetime


class ErrorDetailResponse(BaseModel):
    context: str
    message: str
    record_id: Optional[Any] = None
    error_type: str = "error"
    occurred_at: Optional[datetime] = None


class RunResponse(BaseModel):
    id: str
    job: str
    provider_id: int
    job_key: str
    status: RunStatusEnum
    dry_run: bool
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    start_watermark: int = 0
    final_watermark: int = 0
    total_records: Optional[int] = None
    pages: int = 0
    migrated: int = 0
    errors: int = 0
    error_details: List[ErrorDetailResponse] = Field(default_factory=list)
    fatal_error: Optional[str] = None
    success: bool = False


class RunListResponse(BaseModel):
    runs: List[RunResponse]
    total: int


class RunActionResponse(BaseModel):
    id: str
    status: str
    detail: Dict[str, Any] = Field(default_factory=dict)
