"""Extraction data models — page extracts, outcomes and merged results with provenance."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

# Field name -> str | list[str] | number. Absent data is an absent key, never None.
FieldMap = dict[str, Any]

PROVENANCE_KEY = "_extraction_sources"


class ExtractionSource(str, Enum):
    PARSER = "parser"
    LLM = "llm"
    HYBRID = "hybrid"
    FAILED = "failed"


class PageExtract(BaseModel):
    """Text-level view of a fetched page, as returned by a page fetcher."""

    url: str
    text: str = ""
    headings: list[str] = Field(default_factory=list)
    links: list[str] = Field(default_factory=list)
    images: list[str] = Field(default_factory=list)
    markdown: str = ""
    title_meta: str | None = None
    description_meta: str | None = None

    model_config = {"frozen": True}

    @property
    def raw_content(self) -> str:
        """Markdown and plain text joined, the input handed to the LLM extractor."""
        return f"{self.markdown}\n\n{self.text}"


class PageMetadata(BaseModel):
    """Page-level metadata kept alongside (not inside) the field map."""

    url: str
    title: str | None = None
    description: str | None = None
    extracted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ParseOutcome(BaseModel):
    """Result of one rule-based pass over a page.

    Created once per URL and never mutated; ``success`` is derived from confidence.
    """

    success: bool
    fields: FieldMap = Field(default_factory=dict)
    confidence: float = Field(ge=0.0, le=1.0)
    context_snippets: list[str] = Field(default_factory=list)
    errors: list[str] | None = None
    elapsed_ms: int = 0
    category: str = ""
    metadata: PageMetadata | None = None

    model_config = {"frozen": True}

    @classmethod
    def failed(cls, errors: list[str], elapsed_ms: int = 0) -> ParseOutcome:
        return cls(success=False, fields={}, confidence=0.0, errors=errors, elapsed_ms=elapsed_ms)


class LLMOutcome(BaseModel):
    """Result of one LLM-assisted extraction pass."""

    success: bool
    fields: FieldMap = Field(default_factory=dict)
    confidence: float = Field(ge=0.0, le=1.0)
    explanation: str = ""
    elapsed_ms: int = 0
    errors: list[str] | None = None
    data_quality: Literal["high", "medium", "low"] | None = None
    missing_fields: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class MergedResult(BaseModel):
    """Terminal per-URL artifact handed to persistence.

    ``fields`` carries the ``_extraction_sources`` provenance map
    ({parser, llm, hybrid} -> field names) unless the page failed.
    """

    url: str
    fields: FieldMap = Field(default_factory=dict)
    source: ExtractionSource
    explanation: str | None = None
    elapsed_ms: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    context_snippets: list[str] = Field(default_factory=list)

    @property
    def provenance(self) -> dict[str, list[str]]:
        return self.fields.get(PROVENANCE_KEY, {})
