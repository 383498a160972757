"""Signal type definitions for the Harvest observability system."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SignalType(str, Enum):
    """All signal types emitted during a job."""

    JOB_STARTED = "JOB_STARTED"
    PHASE_TRANSITION = "PHASE_TRANSITION"
    LLM_INVOKED = "LLM_INVOKED"
    LLM_RESPONDED = "LLM_RESPONDED"
    PAGE_COMPLETE = "PAGE_COMPLETE"
    PAGE_FAILED = "PAGE_FAILED"
    JOB_PROGRESS = "JOB_PROGRESS"
    JOB_COMPLETE = "JOB_COMPLETE"
    JOB_FAILED = "JOB_FAILED"


class Signal(BaseModel):
    """An immutable signal emitted during a job.

    Signals are append-only and cannot be modified after emission.
    """

    sequence: int = Field(description="Monotonic sequence number within the job")
    signal_type: SignalType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    job_id: str
    payload: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}
