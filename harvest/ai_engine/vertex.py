"""Vertex AI Gemini completion client.

Implements the CompletionClient capability used by the LLM extractor. The SDK is
imported lazily in ``initialize`` so the rest of the system runs (and tests) without
Vertex credentials.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from harvest.ai_engine.engine import CompletionError
from harvest.config.settings import TimeoutConfig, VertexConfig
from harvest.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)


class VertexCompletionClient:
    """Structured and free-text completion backed by Gemini on Vertex AI."""

    def __init__(self, config: VertexConfig, timeouts: TimeoutConfig | None = None) -> None:
        self._config = config
        self._timeouts = timeouts or TimeoutConfig()
        self._model: Any = None
        self._initialized = False

    async def initialize(self) -> bool:
        """Initialize the Vertex AI client.

        Returns True if initialization succeeds, False otherwise.
        """
        if not self._config.project_id:
            return False

        try:
            import vertexai
            from vertexai.generative_models import GenerativeModel

            vertexai.init(
                project=self._config.project_id,
                location=self._config.location,
            )
            self._model = GenerativeModel(self._config.flash_model)
            self._initialized = True
            return True
        except Exception as exc:
            emit_structured_error(
                logger,
                code=ErrorCode.AI_INITIALIZATION_FAILED,
                message=str(exc),
                suppressed=True,
            )
            self._initialized = False
            return False

    @property
    def is_available(self) -> bool:
        return self._initialized and self._model is not None

    async def complete(self, prompt: str, result_schema: dict[str, Any]) -> dict[str, Any]:
        """Request a JSON object matching ``result_schema``.

        The schema is stated in the prompt and the response is constrained to JSON;
        open-ended object properties are not expressible as a Vertex response schema.
        """
        self._require_model()
        from vertexai.generative_models import GenerationConfig

        full_prompt = (
            f"{prompt}\n\n"
            "Respond with a single JSON object matching this JSON schema:\n"
            f"{json.dumps(result_schema)}"
        )
        text = await self._generate(
            full_prompt,
            GenerationConfig(response_mime_type="application/json"),
        )
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise CompletionError(f"Malformed JSON response: {exc}") from exc
        if not isinstance(data, dict):
            raise CompletionError("Structured completion did not return an object")
        return data

    async def generate_text(self, prompt: str, max_tokens: int) -> str:
        self._require_model()
        from vertexai.generative_models import GenerationConfig

        return await self._generate(prompt, GenerationConfig(max_output_tokens=max_tokens))

    def _require_model(self) -> None:
        if not self.is_available:
            raise CompletionError("Vertex AI client is not initialized")

    async def _generate(self, prompt: str, generation_config: Any) -> str:
        try:
            response = await asyncio.wait_for(
                self._model.generate_content_async(
                    prompt, generation_config=generation_config
                ),
                timeout=self._timeouts.ai_timeout_s,
            )
            return response.text
        except asyncio.TimeoutError as exc:
            raise CompletionError(
                f"Completion timed out after {self._timeouts.ai_timeout_s}s"
            ) from exc
        except Exception as exc:
            raise CompletionError(str(exc)) from exc
