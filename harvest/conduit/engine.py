"""The Conduit — per-URL extraction lifecycle controller.

The Conduit is a finite state machine. It does not contain extraction logic and it
does not talk to a language model directly. It moves one page from fetch to persisted
result with explicit, validated phase transitions:

    START -> PARSED -> [HYBRID_EXTRACT | LLM_EXTRACT] -> MERGED -> PERSISTED
                                                          (any) -> FAILED

Path policy, evaluated after the rule-based pass:
- LLM needed and instructions present: hybrid extraction. Any internal failure
  degrades to the parser result (source=parser).
- Parser succeeded with confidence above PARSER_ACCEPT_THRESHOLD: parser only.
- Otherwise: LLM-only extraction. A failure here has nothing to degrade to and
  fails the page (source=failed).
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from harvest.ai_engine.engine import LLMExtractor
from harvest.browser.layer import FetchError, PageFetcher
from harvest.conduit.phases import TERMINAL_PHASES, VALID_TRANSITIONS, Phase
from harvest.pipeline.extraction import (
    PROVENANCE_KEY,
    ExtractionSource,
    LLMOutcome,
    MergedResult,
    PageExtract,
    ParseOutcome,
)
from harvest.pipeline.heuristic import parse_page
from harvest.pipeline.jobs import Job
from harvest.pipeline.manager import JobStore
from harvest.pipeline.merge import merge_results, with_provenance
from harvest.pipeline.rules import rules_from_selectors
from harvest.pipeline.scoring import PARSER_ACCEPT_THRESHOLD, should_use_llm
from harvest.signals.emitter import SignalEmitter
from harvest.signals.types import SignalType
from harvest.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTIONS = "Extract all relevant data"
HYBRID_FAILURE_NOTE = "Hybrid extraction failed, using parser results"


class ConduitError(Exception):
    """Raised on an invalid phase transition."""


class LLMExtractionError(Exception):
    """Raised when LLM-only extraction produced nothing usable."""


class Conduit:
    """Drives a single URL of a job through the extraction pipeline."""

    def __init__(
        self,
        url: str,
        job: Job,
        fetcher: PageFetcher,
        llm: LLMExtractor,
        store: JobStore,
        signals: SignalEmitter | None = None,
    ) -> None:
        self._url = url
        self._job = job
        self._fetcher = fetcher
        self._llm = llm
        self._store = store
        self._signals = signals or SignalEmitter(job_id=job.id)
        self._phase = Phase.START
        self._start_time: float | None = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def phase(self) -> Phase:
        return self._phase

    # --- Phase Transition ---

    async def _transition(self, to_phase: Phase, context: dict[str, Any] | None = None) -> None:
        """Transition to a new phase with guard validation and signal emission."""
        if to_phase not in VALID_TRANSITIONS.get(self._phase, set()):
            raise ConduitError(
                f"Invalid transition: {self._phase.value} -> {to_phase.value}"
            )

        from_phase = self._phase
        self._phase = to_phase

        await self._signals.emit_phase_transition(
            url=self._url,
            from_phase=from_phase.value,
            to_phase=to_phase.value,
            context=context or {},
        )

    # --- Main Run ---

    async def run(self) -> MergedResult:
        """Process the URL. Never raises; a failed page yields source=failed."""
        self._start_time = time.monotonic()

        try:
            page = await self._phase_fetch()
            outcome = await self._phase_parse(page)
            result = await self._phase_extract(page, outcome)
            await self._transition(Phase.MERGED, {"source": result.source.value})
            await self._phase_persist(result)
            return result
        except Exception as exc:
            return await self._fail(str(exc) or type(exc).__name__)

    # --- Phase Implementations ---

    async def _phase_fetch(self) -> PageExtract:
        """START: fetch the page within the job's timeout budget."""
        timeout_s = self._job.settings.timeout_ms / 1000
        try:
            return await asyncio.wait_for(self._fetcher.fetch(self._url), timeout=timeout_s)
        except asyncio.TimeoutError as exc:
            message = f"Timed out fetching {self._url} after {timeout_s}s"
            self._report_fetch_failure(message)
            raise FetchError(message) from exc
        except Exception as exc:
            self._report_fetch_failure(str(exc) or type(exc).__name__)
            raise

    def _report_fetch_failure(self, message: str) -> None:
        emit_structured_error(
            logger,
            code=ErrorCode.FETCH_FAILED,
            message=message,
            suppressed=False,
            job_id=self._job.id,
            phase=self._phase.value,
            details={"url": self._url},
        )

    async def _phase_parse(self, page: PageExtract) -> ParseOutcome:
        """START -> PARSED: rule-based pass, honoring job-supplied selectors."""
        selectors = self._job.settings.heuristic_selectors
        rules = rules_from_selectors(selectors) if selectors else None
        outcome = parse_page(page, rules)

        await self._transition(
            Phase.PARSED,
            {
                "category": outcome.category,
                "confidence": outcome.confidence,
                "fields_count": len(outcome.fields),
            },
        )
        return outcome

    async def _phase_extract(self, page: PageExtract, outcome: ParseOutcome) -> MergedResult:
        """Choose hybrid, parser-only or LLM-only extraction."""
        instructions = self._job.instructions

        if should_use_llm(outcome, instructions) and instructions:
            await self._transition(Phase.HYBRID_EXTRACT, {"confidence": outcome.confidence})
            return await self._extract_hybrid(page, outcome, instructions)

        if outcome.success and outcome.confidence > PARSER_ACCEPT_THRESHOLD:
            return self._result(
                fields=with_provenance(outcome.fields, outcome.fields.keys(), []),
                source=ExtractionSource.PARSER,
                context_snippets=outcome.context_snippets,
            )

        await self._transition(Phase.LLM_EXTRACT, {"confidence": outcome.confidence})
        return await self._extract_llm_only(page, instructions or DEFAULT_INSTRUCTIONS)

    async def _extract_hybrid(
        self, page: PageExtract, outcome: ParseOutcome, instructions: str
    ) -> MergedResult:
        """Parser fields enriched by the LLM; degrades to parser-only on failure."""
        try:
            llm_outcome = await self._invoke_llm(page, instructions, "hybrid")
            if not llm_outcome.success:
                raise LLMExtractionError(
                    "; ".join(llm_outcome.errors or []) or llm_outcome.explanation
                )

            merged = merge_results(outcome.fields, llm_outcome.fields)
            summary_fields = {k: v for k, v in merged.items() if k != PROVENANCE_KEY}
            summary = await self._llm.generate_summary(summary_fields, instructions, self._url)

            return self._result(
                fields=merged,
                source=ExtractionSource.HYBRID,
                explanation=f"Hybrid extraction: {summary}",
                context_snippets=outcome.context_snippets,
            )
        except Exception as exc:
            emit_structured_error(
                logger,
                code=ErrorCode.COMPLETION_FAILED,
                message=str(exc),
                suppressed=True,
                job_id=self._job.id,
                phase=self._phase.value,
                details={"url": self._url},
            )
            return self._result(
                fields=with_provenance(outcome.fields, outcome.fields.keys(), []),
                source=ExtractionSource.PARSER,
                explanation=HYBRID_FAILURE_NOTE,
                context_snippets=outcome.context_snippets,
            )

    async def _extract_llm_only(self, page: PageExtract, instructions: str) -> MergedResult:
        """LLM-only extraction. Failure propagates; there is no parser result to keep."""
        llm_outcome = await self._invoke_llm(page, instructions, "llm_only")
        if not llm_outcome.success:
            reason = "; ".join(llm_outcome.errors or []) or llm_outcome.explanation
            raise LLMExtractionError(f"LLM extraction failed: {reason}")

        return self._result(
            fields=with_provenance(llm_outcome.fields, [], llm_outcome.fields.keys()),
            source=ExtractionSource.LLM,
            explanation=llm_outcome.explanation,
        )

    async def _invoke_llm(self, page: PageExtract, instructions: str, mode: str) -> LLMOutcome:
        await self._signals.emit(
            SignalType.LLM_INVOKED,
            {"url": self._url, "mode": mode, "content_size": len(page.raw_content)},
        )
        llm_outcome = await self._llm.extract_with_fallback(
            page.raw_content, instructions, self._url
        )
        await self._signals.emit(
            SignalType.LLM_RESPONDED,
            {
                "url": self._url,
                "mode": mode,
                "success": llm_outcome.success,
                "confidence": llm_outcome.confidence,
                "latency_ms": llm_outcome.elapsed_ms,
            },
        )
        return llm_outcome

    async def _phase_persist(self, result: MergedResult) -> None:
        """MERGED -> PERSISTED. A store failure is logged; the page still succeeds."""
        stored = True
        try:
            self._store.create_extraction_result(self._job.id, result)
        except Exception as exc:
            stored = False
            emit_structured_error(
                logger,
                code=ErrorCode.PERSISTENCE_FAILED,
                message=str(exc),
                suppressed=True,
                job_id=self._job.id,
                phase=self._phase.value,
                details={"url": self._url, "operation": "create_extraction_result"},
            )

        await self._transition(Phase.PERSISTED, {"stored": stored})
        await self._signals.emit(
            SignalType.PAGE_COMPLETE,
            {
                "url": self._url,
                "source": result.source.value,
                "fields_count": len(result.fields),
                "elapsed_ms": result.elapsed_ms,
            },
        )

    # --- Helpers ---

    def _elapsed_ms(self) -> int:
        if self._start_time is None:
            return 0
        return round((time.monotonic() - self._start_time) * 1000)

    def _result(
        self,
        fields: dict[str, Any],
        source: ExtractionSource,
        explanation: str | None = None,
        context_snippets: list[str] | None = None,
    ) -> MergedResult:
        return MergedResult(
            url=self._url,
            fields=fields,
            source=source,
            explanation=explanation,
            elapsed_ms=self._elapsed_ms(),
            context_snippets=context_snippets or [],
        )

    # --- Failure Handling ---

    async def _fail(self, reason: str) -> MergedResult:
        """Enter FAILED and return the failed result for this page."""
        current_phase = self._phase

        if current_phase not in TERMINAL_PHASES:
            self._phase = Phase.FAILED
            await self._signals.emit(
                SignalType.PAGE_FAILED,
                {
                    "url": self._url,
                    "failure_reason": reason,
                    "phase_at_failure": current_phase.value,
                },
            )

        return self._result(fields={}, source=ExtractionSource.FAILED, explanation=reason)
