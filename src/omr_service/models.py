from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobSummary(WireModel):
    job_id: str
    status: JobStatus
    filename: str
    input_path: str
    output_path: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class ConversionResult(WireModel):
    status: str = "success"
    musicxml: str
    job_id: str


class AsyncSubmission(WireModel):
    job_id: str
    status: JobStatus


class StatusResponse(WireModel):
    status: str
    job_id: str
    musicxml: Optional[str] = None
    message: Optional[str] = None


class HealthStatus(BaseModel):
    status: str
    service: str
    version: str
