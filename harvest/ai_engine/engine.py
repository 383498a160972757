"""AI Engine — LLM-assisted extraction over an injected completion client.

The AI Engine provides intelligence without authority. It builds prompts, calls the
completion client, and turns every failure into a typed LLMOutcome. It never raises
to its caller and never decides which extraction path a page takes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator

from harvest.pipeline.extraction import FieldMap, LLMOutcome
from harvest.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)

EXTRACTION_CONTENT_LIMIT = 6000
CLEANING_CONTENT_LIMIT = 8000
CLEANING_MAX_TOKENS = 2000
SUMMARY_MAX_TOKENS = 200

# Fallback (cleaned-content) extraction runs below this primary confidence.
FALLBACK_CONFIDENCE_THRESHOLD = 0.5
CLEANED_CONTENT_MARKER = " (Used cleaned content for better extraction)"
DATA_QUALITY_LEVELS = ("high", "medium", "low")


class CompletionError(Exception):
    """Raised by a completion client on quota, timeout or malformed responses."""


class CompletionClient(Protocol):
    """Language-model capability injected into the extractor."""

    async def complete(self, prompt: str, result_schema: dict[str, Any]) -> dict[str, Any]:
        """Return an object shaped by ``result_schema``."""
        ...

    async def generate_text(self, prompt: str, max_tokens: int) -> str:
        """Return free text of at most ``max_tokens`` tokens."""
        ...


EXTRACTION_RESULT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "extractedData": {
            "type": "object",
            "description": "The extracted data as key-value pairs",
        },
        "confidence": {"type": "number", "description": "Confidence score from 0 to 1"},
        "explanation": {
            "type": "string",
            "description": "Brief explanation of the extraction process",
        },
        "dataQuality": {
            "type": "string",
            "enum": list(DATA_QUALITY_LEVELS),
            "description": "Assessment of data quality",
        },
        "missingFields": {
            "type": "array",
            "items": {"type": "string"},
            "description": "List of fields that could not be extracted",
        },
    },
    "required": ["extractedData", "confidence", "explanation"],
}


class CompletionExtraction(BaseModel):
    """Parsed structured-completion response for an extraction prompt."""

    model_config = ConfigDict(populate_by_name=True)

    extracted_data: dict[str, Any] = Field(default_factory=dict, alias="extractedData")
    confidence: float = 0.0
    explanation: str = ""
    data_quality: Literal["high", "medium", "low"] | None = Field(
        default=None, alias="dataQuality"
    )
    missing_fields: list[str] = Field(default_factory=list, alias="missingFields")

    # Optional tags never invalidate an otherwise usable extraction.
    @field_validator("data_quality", mode="before")
    @classmethod
    def _normalize_quality(cls, value: Any) -> str | None:
        if isinstance(value, str) and value.strip().lower() in DATA_QUALITY_LEVELS:
            return value.strip().lower()
        return None

    @field_validator("missing_fields", mode="before")
    @classmethod
    def _normalize_missing(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            return [value] if value.strip() else []
        if not isinstance(value, (list, tuple)):
            return []
        return [str(item) for item in value if item is not None]


def _excerpt(content: str, limit: int, marker: str) -> str:
    if len(content) > limit:
        return content[:limit] + marker
    return content


def _clamp_confidence(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def _drop_nulls(data: dict[str, Any]) -> FieldMap:
    return {key: value for key, value in data.items() if value is not None}


def build_extraction_prompt(content: str, instructions: str, url: str) -> str:
    excerpt = _excerpt(content, EXTRACTION_CONTENT_LIMIT, "\n...(content truncated)")
    return (
        "You are an expert web data extractor. Extract structured data from the "
        "following web page content.\n\n"
        f"URL: {url}\n\n"
        f"Extraction Instructions: {instructions}\n\n"
        f"Web Page Content:\n{excerpt}\n\n"
        "Extract the requested data and return it as a structured object. "
        "Follow these guidelines:\n"
        "  1. Extract only factual information present in the content.\n"
        "  2. Use consistent field names (camelCase).\n"
        "  3. Convert prices to numbers when possible.\n"
        "  4. Extract dates in ISO format when possible.\n"
        "  5. For lists/arrays, extract all relevant items.\n"
        "  6. Ignore navigation, ads, and boilerplate content.\n"
        "  7. If a field is not found, omit it rather than guessing.\n\n"
        "Provide a confidence score (0-1) based on how clearly the data was present, "
        "how well it matches the instructions, and how complete it is. Include a "
        "brief explanation of what was extracted and any challenges encountered."
    )


def build_cleaning_prompt(content: str, url: str) -> str:
    excerpt = _excerpt(content, CLEANING_CONTENT_LIMIT, " ...")
    return (
        "Analyze this web page content and extract only the main, relevant "
        "information while removing noise like ads, navigation, footers, and "
        "boilerplate content.\n\n"
        f"URL: {url}\n\n"
        f"Content:\n{excerpt}\n\n"
        "Return only the cleaned, main content that would be useful for data "
        "extraction. Focus on product information (e-commerce), property details "
        "(real estate), travel information, healthcare data, or main article "
        "content.\n\n"
        "Remove navigation menus, advertisements, footer content, cookie notices, "
        "social media widgets, and related articles/products unless specifically "
        "relevant."
    )


def build_summary_prompt(fields: FieldMap, instructions: str, url: str) -> str:
    return (
        "Generate a brief summary of this data extraction:\n\n"
        f"URL: {url}\n"
        f"Instructions: {instructions}\n"
        f"Extracted Data: {json.dumps(fields, indent=2, default=str)}\n\n"
        "Provide a 1-2 sentence summary of what was successfully extracted and any "
        "notable findings."
    )


class LLMExtractor:
    """LLM-assisted extractor with a cleaned-content fallback pass.

    Stateless apart from its client; every completion call is bounded by
    ``timeout_s``.
    """

    def __init__(self, client: CompletionClient, timeout_s: float = 60) -> None:
        self._client = client
        self._timeout_s = timeout_s

    async def extract_from_content(
        self, content: str, instructions: str, url: str
    ) -> LLMOutcome:
        """Primary structured extraction. Failures become a zero-confidence outcome."""
        start = time.monotonic()
        try:
            data = await asyncio.wait_for(
                self._client.complete(
                    build_extraction_prompt(content, instructions, url),
                    EXTRACTION_RESULT_SCHEMA,
                ),
                timeout=self._timeout_s,
            )
            parsed = CompletionExtraction.model_validate(data)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            emit_structured_error(
                logger,
                code=ErrorCode.COMPLETION_FAILED,
                message=message,
                suppressed=True,
                details={"url": url},
            )
            return LLMOutcome(
                success=False,
                fields={},
                confidence=0.0,
                explanation="LLM extraction failed",
                elapsed_ms=_elapsed_ms(start),
                errors=[message],
            )

        return LLMOutcome(
            success=True,
            fields=_drop_nulls(parsed.extracted_data),
            confidence=_clamp_confidence(parsed.confidence),
            explanation=parsed.explanation or "Data extracted using LLM analysis",
            elapsed_ms=_elapsed_ms(start),
            data_quality=parsed.data_quality,
            missing_fields=parsed.missing_fields,
        )

    async def clean_content(self, content: str, url: str) -> str:
        """Strip boilerplate via text completion; the original content on failure."""
        try:
            return await asyncio.wait_for(
                self._client.generate_text(
                    build_cleaning_prompt(content, url), CLEANING_MAX_TOKENS
                ),
                timeout=self._timeout_s,
            )
        except Exception as exc:
            emit_structured_error(
                logger,
                code=ErrorCode.CONTENT_CLEANING_FAILED,
                message=str(exc) or type(exc).__name__,
                suppressed=True,
                details={"url": url},
            )
            return content

    async def extract_with_fallback(
        self, content: str, instructions: str, url: str
    ) -> LLMOutcome:
        """Primary extraction, retried on cleaned content when confidence is low.

        The higher-confidence outcome wins. Fallback failures leave the primary
        outcome in place.
        """
        result = await self.extract_from_content(content, instructions, url)

        if result.confidence < FALLBACK_CONFIDENCE_THRESHOLD:
            cleaned = await self.clean_content(content, url)
            fallback = await self.extract_from_content(cleaned, instructions, url)

            if fallback.confidence > result.confidence:
                result = fallback.model_copy(
                    update={"explanation": fallback.explanation + CLEANED_CONTENT_MARKER}
                )

        return result

    async def generate_summary(self, fields: FieldMap, instructions: str, url: str) -> str:
        """Best-effort 1-2 sentence synopsis of the extracted fields."""
        try:
            return await asyncio.wait_for(
                self._client.generate_text(
                    build_summary_prompt(fields, instructions, url), SUMMARY_MAX_TOKENS
                ),
                timeout=self._timeout_s,
            )
        except Exception as exc:
            emit_structured_error(
                logger,
                code=ErrorCode.SUMMARY_FAILED,
                message=str(exc) or type(exc).__name__,
                suppressed=True,
                details={"url": url},
            )
            return f"Extracted {len(fields)} fields from {url}"


def _elapsed_ms(start: float) -> int:
    return round((time.monotonic() - start) * 1000)
