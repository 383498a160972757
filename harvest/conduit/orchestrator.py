"""Job orchestrator. Expands a job's URLs and drives each through a Conduit.

URLs are processed in fixed-size batches. Every URL in a batch runs concurrently and
the batch drains completely before the next starts; the configured delay is awaited
between batches only. A failed URL never stops its siblings; only an exception in the
orchestration loop itself fails the job.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

from harvest.ai_engine.engine import LLMExtractor
from harvest.ai_engine.vertex import VertexCompletionClient
from harvest.browser.layer import BrowserLayer, PageFetcher
from harvest.conduit.engine import Conduit
from harvest.config.settings import HarvestConfig, JobSettings
from harvest.pipeline.extraction import ExtractionSource
from harvest.pipeline.heuristic import find_pagination_links
from harvest.pipeline.jobs import Job, JobStatus, JobTotals, PageErrorLog
from harvest.pipeline.manager import JobStore
from harvest.signals.emitter import SignalEmitter
from harvest.signals.types import SignalType
from harvest.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)

BATCH_SIZE = 3
JOB_LEVEL_URL = "job-level"


class JobOrchestrator:
    """Runs scraping jobs against injected fetch, completion and storage backends."""

    def __init__(
        self,
        fetcher: PageFetcher,
        llm: LLMExtractor,
        store: JobStore,
        config: HarvestConfig | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._llm = llm
        self._store = store
        self._config = config or HarvestConfig()
        self._tasks: dict[str, asyncio.Task] = {}
        self._emitters: dict[str, SignalEmitter] = {}
        self._browser: BrowserLayer | None = None

    @classmethod
    async def from_config(cls, config: HarvestConfig) -> JobOrchestrator:
        """Build and start the Playwright, Vertex and file-store backends from ``config``.

        The returned orchestrator owns its browser; call ``close`` when done. Without a
        usable Vertex project, LLM calls fail and pages degrade per the path policy.
        """
        client = VertexCompletionClient(config.vertex, config.timeouts)
        if not await client.initialize():
            logger.warning("Vertex AI unavailable, LLM-assisted extraction will fail")

        browser = BrowserLayer(config.browser, timeout_s=config.timeouts.fetch_timeout_s)
        await browser.start()

        orchestrator = cls(
            browser,
            LLMExtractor(client, timeout_s=config.timeouts.ai_timeout_s),
            JobStore(data_dir=config.pipeline.data_dir),
            config,
        )
        orchestrator._browser = browser
        return orchestrator

    async def close(self) -> None:
        """Stop the browser started by ``from_config``."""
        if self._browser is not None:
            await self._browser.stop()
            self._browser = None

    # --- Job start ---

    async def create_and_start_job(
        self,
        target_urls: list[str],
        instructions: str | None = None,
        settings: JobSettings | None = None,
        name: str = "",
    ) -> str:
        """Create a pending job, start processing in the background, return its id."""
        job = Job(
            name=name,
            target_urls=list(target_urls),
            instructions=instructions or None,
            settings=settings or self._config.default_job_settings.model_copy(deep=True),
        )
        self._persist(job.id, "create_job", self._store.create_job, job)
        self.signal_emitter(job.id)

        task = asyncio.create_task(self.process_job(job))
        self._tasks[job.id] = task
        task.add_done_callback(lambda _: self._release(job.id))
        return job.id

    def _release(self, job_id: str) -> None:
        # the ledger on disk keeps the job's signals once it finishes
        self._tasks.pop(job_id, None)
        self._emitters.pop(job_id, None)

    async def wait_for_job(self, job_id: str) -> Job | None:
        """Await a background job (if still running) and return its final snapshot."""
        task = self._tasks.get(job_id)
        if task is not None:
            return await task
        return self._store.load_job(job_id)

    def signal_emitter(self, job_id: str) -> SignalEmitter:
        """The job's signal stream; subscribe here for real-time events."""
        emitter = self._emitters.get(job_id)
        if emitter is None:
            emitter = SignalEmitter(
                job_id=job_id,
                ledger_path=self._store.job_dir(job_id) / "signals.jsonl",
            )
            self._emitters[job_id] = emitter
        return emitter

    # --- Job processing ---

    async def process_job(self, job: Job) -> Job:
        """Process every URL of ``job``. Returns the job in a terminal status."""
        signals = self.signal_emitter(job.id)
        counter_lock = asyncio.Lock()
        start = time.monotonic()

        try:
            job.status = JobStatus.RUNNING
            self._persist(job.id, "update_job_status", self._store.update_job_status, job)
            await signals.emit(
                SignalType.JOB_STARTED,
                {"target_urls": job.target_urls, "instructions": job.instructions},
            )

            urls = await self.expand_urls(job)
            job.totals = JobTotals(total=len(urls))
            self._persist(job.id, "update_job_progress", self._store.update_job_progress, job)

            delay_s = job.settings.inter_batch_delay_ms / 1000
            for index in range(0, len(urls), BATCH_SIZE):
                batch = urls[index : index + BATCH_SIZE]
                outcomes = await asyncio.gather(
                    *(self._process_url(url, job, signals, counter_lock) for url in batch),
                    return_exceptions=True,
                )
                for url, outcome in zip(batch, outcomes):
                    if isinstance(outcome, Exception):
                        emit_structured_error(
                            logger,
                            code=ErrorCode.PAGE_FAILED,
                            message=str(outcome) or type(outcome).__name__,
                            suppressed=True,
                            job_id=job.id,
                            details={"url": url},
                        )
                if index + BATCH_SIZE < len(urls) and delay_s > 0:
                    await asyncio.sleep(delay_s)

            job.status = JobStatus.COMPLETED
            self._persist(job.id, "update_job_status", self._store.update_job_status, job)
            await signals.emit_job_complete(
                total_pages=job.totals.total,
                succeeded=job.totals.succeeded,
                failed=job.totals.failed,
                total_duration_s=round(time.monotonic() - start, 3),
            )
        except Exception as exc:
            await self._fail_job(job, signals, exc, start)

        return job

    async def _process_url(
        self, url: str, job: Job, signals: SignalEmitter, counter_lock: asyncio.Lock
    ) -> None:
        start = time.monotonic()
        conduit = Conduit(url, job, self._fetcher, self._llm, self._store, signals)

        error: str | None = None
        try:
            result = await conduit.run()
            if result.source == ExtractionSource.FAILED:
                error = result.explanation or "Page processing failed"
        except Exception as exc:
            error = str(exc) or type(exc).__name__

        async with counter_lock:
            job.totals.processed += 1
            if error is None:
                job.totals.succeeded += 1
            else:
                job.totals.failed += 1
            totals = job.totals.model_copy()
            self._persist(job.id, "update_job_progress", self._store.update_job_progress, job)

        if error is not None:
            emit_structured_error(
                logger,
                code=ErrorCode.PAGE_FAILED,
                message=error,
                suppressed=True,
                job_id=job.id,
                details={"url": url},
            )
            entry = PageErrorLog(
                job_id=job.id,
                page_url=url,
                error_message=error,
                elapsed_ms=round((time.monotonic() - start) * 1000),
            )
            self._persist(job.id, "create_page_error_log", self._store.create_page_error_log, entry)

        try:
            await signals.emit_job_progress(
                total=totals.total,
                processed=totals.processed,
                succeeded=totals.succeeded,
                failed=totals.failed,
            )
        except Exception as exc:
            emit_structured_error(
                logger,
                code=ErrorCode.SIGNAL_EMIT_FAILED,
                message=str(exc) or type(exc).__name__,
                suppressed=True,
                job_id=job.id,
                details={"url": url, "signal_type": SignalType.JOB_PROGRESS.value},
            )

    async def _fail_job(
        self, job: Job, signals: SignalEmitter, exc: Exception, start: float
    ) -> None:
        reason = str(exc) or type(exc).__name__
        emit_structured_error(
            logger,
            code=ErrorCode.JOB_FAILED,
            message=reason,
            suppressed=True,
            job_id=job.id,
        )
        job.status = JobStatus.FAILED
        self._persist(job.id, "update_job_status", self._store.update_job_status, job)
        entry = PageErrorLog(
            job_id=job.id,
            page_url=JOB_LEVEL_URL,
            error_message=reason,
            elapsed_ms=round((time.monotonic() - start) * 1000),
        )
        self._persist(job.id, "create_page_error_log", self._store.create_page_error_log, entry)
        await signals.emit_job_failed(failure_reason=reason, processed=job.totals.processed)

    # --- URL expansion ---

    async def expand_urls(self, job: Job) -> list[str]:
        """Target URLs plus discovered pagination, de-duplicated, capped at max_pages."""
        max_pages = job.settings.max_pages
        urls: list[str] = []
        for url in job.target_urls:
            if job.settings.follow_pagination:
                urls.extend(await self.handle_pagination(url, max_pages, job))
            else:
                urls.append(url)

        return list(dict.fromkeys(urls))[:max_pages]

    async def handle_pagination(self, url: str, max_pages: int, job: Job) -> list[str]:
        """``url`` followed by up to ``max_pages - 1`` pagination links found on it."""
        urls = [url]
        try:
            page = await asyncio.wait_for(
                self._fetcher.fetch(url), timeout=job.settings.timeout_ms / 1000
            )
            urls.extend(find_pagination_links(page.links, max_pages))
        except Exception as exc:
            emit_structured_error(
                logger,
                code=ErrorCode.PAGINATION_FAILED,
                message=str(exc) or type(exc).__name__,
                suppressed=True,
                job_id=job.id,
                details={"url": url},
            )
        return urls

    # --- Persistence guard ---

    def _persist(self, job_id: str, operation: str, func: Callable[..., Any], *args: Any) -> None:
        """Call a store operation; failures are logged and processing continues."""
        try:
            func(*args)
        except Exception as exc:
            emit_structured_error(
                logger,
                code=ErrorCode.PERSISTENCE_FAILED,
                message=str(exc),
                suppressed=True,
                job_id=job_id,
                details={"operation": operation},
            )
