from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    RETRIED = "retried"
    DEAD = "dead"
    WATERMARKED = "watermarked"


class JobKind(str, Enum):
    IMAGE = "image"
    WATERMARK = "watermark"


class WireModel(BaseModel):
    """Base for payloads that travel over the broker or the HTTP API in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class JobDescriptor(WireModel):
    """Message body of the main, retry and dead queues."""

    job_id: str
    content_reference: str
    filename: str
    original_name: str
    retries: int = Field(default=0, ge=0)
    created_at: datetime
    kind: JobKind = JobKind.IMAGE
    source_filename: Optional[str] = None
    error: Optional[str] = None
    failed_at: Optional[datetime] = None
    worker_id: Optional[str] = None


class StatusEvent(WireModel):
    """Message body of the fanout topic."""

    job_id: str
    filename: str
    original_name: Optional[str] = None
    status: JobStatus
    retries: int = Field(default=0, ge=0)
    worker_id: Optional[str] = None
    duration: Optional[float] = None
    error: Optional[str] = None
    timestamp: datetime


class JobRecord(WireModel):
    id: str
    filename: Optional[str] = None
    original_name: Optional[str] = None
    status: JobStatus
    retries: int = 0
    kind: Optional[JobKind] = None
    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    duration: Optional[float] = None
    error: Optional[str] = None
    worker_id: Optional[str] = None
    processed_filename: Optional[str] = None
    watermarked_filename: Optional[str] = None


class OutputItem(WireModel):
    url: str
    filename: str
    original_name: str
    status: Optional[JobStatus] = None
    retries: int = 0


class DispatchResult(WireModel):
    message: str
    queued: List[JobRecord] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)


class ResetResult(WireModel):
    message: str
    removed: int = 0
