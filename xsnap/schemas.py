"""Pydantic DTOs shared across endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class CaptureCreateRequest(BaseModel):
    """Payload clients submit to queue one or more captures."""

    urls: str = Field(description="URLs separated by newlines, commas, or whitespace")


class InvalidEntry(BaseModel):
    input: str
    reason: str


class CaptureCreateResponse(BaseModel):
    """Admission outcome for a submission."""

    created: list[str] = Field(default_factory=list, description="Ids of newly queued jobs")
    duplicates: list[str] = Field(default_factory=list, description="Inputs that already have an active job")
    invalid: list[InvalidEntry] = Field(default_factory=list)
    error: str | None = None


class CaptureResponse(BaseModel):
    """Persisted view of one capture job."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    url: str
    target: str
    status: str
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    attempt_count: int = Field(ge=0)
    last_error: str | None = None
    retry_scheduled: bool = False
    retry_at: datetime | None = None
    artifact_location: str
    result_digests: dict[str, str] | None = None


class CaptureListResponse(BaseModel):
    data: list[CaptureResponse]
    total: int = Field(ge=0)
    limit: int = Field(ge=0)
    offset: int = Field(ge=0)


class WorkerStatusResponse(BaseModel):
    """Scheduler health for operators polling the service."""

    running: bool
    active: int = Field(ge=0)
    concurrency_limit: int = Field(ge=1)
    in_flight: list[str] = Field(default_factory=list)
    counts: dict[str, int] = Field(default_factory=dict)
