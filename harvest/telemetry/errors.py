"""Structured error telemetry helpers."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Canonical error codes for operational telemetry."""

    AI_INITIALIZATION_FAILED = "AI_INITIALIZATION_FAILED"
    RULE_FAILED = "RULE_FAILED"
    PARSE_FAILED = "PARSE_FAILED"
    FETCH_FAILED = "FETCH_FAILED"
    COMPLETION_FAILED = "COMPLETION_FAILED"
    CONTENT_CLEANING_FAILED = "CONTENT_CLEANING_FAILED"
    SUMMARY_FAILED = "SUMMARY_FAILED"
    PAGINATION_FAILED = "PAGINATION_FAILED"
    PERSISTENCE_FAILED = "PERSISTENCE_FAILED"
    PAGE_FAILED = "PAGE_FAILED"
    JOB_FAILED = "JOB_FAILED"
    SIGNAL_SUBSCRIBER_FAILURE = "SIGNAL_SUBSCRIBER_FAILURE"
    SIGNAL_EMIT_FAILED = "SIGNAL_EMIT_FAILED"


def emit_structured_error(
    logger: logging.Logger,
    *,
    code: ErrorCode,
    message: str,
    suppressed: bool,
    job_id: str | None = None,
    phase: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    """Emit a structured telemetry event via logging."""
    logger.error(
        "harvest_error",
        extra={
            "error_code": code,
            "error_message": message,
            "suppressed": suppressed,
            "job_id": job_id,
            "phase": phase,
            "details": details or {},
        },
    )
