from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
import uuid

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}


class Job(BaseModel):
    id: str
    user_id: str
    project_id: str
    operation: str                     # e.g. "imagen4", "remove_background"
    status: JobStatus = JobStatus.QUEUED
    payload: Dict[str, Any] = Field(default_factory=dict)
    input_image_url: Optional[str] = None
    result_url: Optional[str] = None  # signed reference to the stored artifact
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class Project(BaseModel):
    id: str
    user_id: str
    name: str = "Untitled"
    original_image_url: Optional[str] = None
    output_image_url: Optional[str] = None
    thumbnail_url: Optional[str] = None


class ProjectEdit(BaseModel):
    """Append-only history entry written for every completed job."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    project_id: str
    edit_name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    input_image_url: Optional[str] = None
    output_image_url: Optional[str] = None
    credit_cost: int = 0
    status: JobStatus = JobStatus.COMPLETED
    created_at: Optional[datetime] = None
