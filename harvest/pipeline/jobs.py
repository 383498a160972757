"""Job records: lifecycle state and progress counters for a scraping job."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from harvest.config.settings import JobSettings


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED}


class JobTotals(BaseModel):
    """Page counters. Updated by the orchestrator only, under its lock."""

    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex[:12]}"


class Job(BaseModel):
    """A scraping job: target URLs, optional instructions, status and counters."""

    id: str = Field(default_factory=new_job_id)
    name: str = ""
    target_urls: list[str]
    instructions: str | None = None
    status: JobStatus = JobStatus.PENDING
    totals: JobTotals = Field(default_factory=JobTotals)
    settings: JobSettings = Field(default_factory=JobSettings)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None

    def touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)


class PageErrorLog(BaseModel):
    """A per-page (or job-level) failure record."""

    job_id: str
    page_url: str
    status: str = "failed"
    error_message: str
    elapsed_ms: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
