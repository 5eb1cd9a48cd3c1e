from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

PRINT_PHOTO_TASK = "print-photo"


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PrintTaskSpec(BaseModel):
    type: str = PRINT_PHOTO_TASK
    storage_key: str = Field(min_length=1)
    photo_id: Optional[str] = None
    location_name: str = ""


class PrintTaskRequest(PrintTaskSpec):
    priority: Optional[int] = None
    max_attempts: Optional[int] = Field(default=None, ge=1)


class TaskSummary(BaseModel):
    id: str
    type: str
    storage_key: str
    photo_id: Optional[str] = None
    status: TaskStatus
    priority: int
    attempts: int
    max_attempts: int
    created_at: datetime
    updated_at: datetime


class TaskDetail(TaskSummary):
    location_name: str = ""
    available_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_error: Optional[str] = None


class EnqueueResult(BaseModel):
    task: TaskDetail
    created: bool


class ProcessingResponse(BaseModel):
    status: str = "processing"
    task_id: str
    retry_after: int
