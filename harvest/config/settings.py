"""Harvest configuration settings."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
)


class VertexConfig(BaseModel):
    """Vertex AI configuration."""

    project_id: str = Field(default_factory=lambda: os.getenv("VERTEX_PROJECT_ID", ""))
    location: str = Field(default_factory=lambda: os.getenv("VERTEX_LOCATION", "us-central1"))
    credentials_path: str = Field(
        default_factory=lambda: os.getenv("GOOGLE_APPLICATION_CREDENTIALS", "")
    )
    flash_model: str = "gemini-2.5-flash"


class TimeoutConfig(BaseModel):
    """Timeout budgets for every outbound call."""

    fetch_timeout_s: int = 30
    ai_timeout_s: int = 60


class BrowserConfig(BaseModel):
    """Browser layer configuration."""

    headless: bool = True
    viewport_width: int = 1280
    viewport_height: int = 720
    user_agent: str | None = DEFAULT_USER_AGENT
    locale: str = "en-US"


class PipelineConfig(BaseModel):
    """Data pipeline configuration."""

    data_dir: Path = Field(default_factory=lambda: Path(os.getenv("HARVEST_DATA_DIR", "./data")))


class JobSettings(BaseModel):
    """Per-job scraping settings.

    ``heuristic_selectors`` maps field name -> CSS selector. Selectors are kept as
    documentation; matching is text based. When non-empty the mapping replaces the
    detected category rule set.
    """

    max_pages: int = 10
    inter_batch_delay_ms: int = 1000
    timeout_ms: int = 30000
    follow_pagination: bool = False
    heuristic_selectors: dict[str, str] = Field(default_factory=dict)

    @field_validator("max_pages", "timeout_ms")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @field_validator("inter_batch_delay_ms")
    @classmethod
    def _validate_delay(cls, value: int) -> int:
        if value < 0:
            raise ValueError("inter_batch_delay_ms must be >= 0")
        return value


class HarvestConfig(BaseModel):
    """Root configuration for a Harvest process."""

    vertex: VertexConfig = Field(default_factory=VertexConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    default_job_settings: JobSettings = Field(default_factory=JobSettings)
