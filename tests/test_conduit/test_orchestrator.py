"""Tests for the job orchestrator: batching, counters, pagination and job failure."""

import asyncio

import pytest

from harvest.ai_engine.engine import LLMExtractor
from harvest.ai_engine.vertex import VertexCompletionClient
from harvest.browser.layer import BrowserLayer, FetchError
from harvest.conduit import orchestrator as orchestrator_module
from harvest.conduit.orchestrator import BATCH_SIZE, JOB_LEVEL_URL, JobOrchestrator
from harvest.config.settings import (
    BrowserConfig,
    HarvestConfig,
    JobSettings,
    PipelineConfig,
    TimeoutConfig,
    VertexConfig,
)
from harvest.pipeline.extraction import ExtractionSource, PageExtract
from harvest.pipeline.jobs import Job, JobStatus
from harvest.pipeline.manager import JobStore
from harvest.signals.emitter import SignalEmitter
from harvest.signals.types import SignalType


def _product_page(url, links=()):
    return PageExtract(
        url=url,
        text="Widget Pro\nNow $49.99\nRated 4.5 out of 5",
        headings=["Widget Pro"],
        images=[f"{url}/img.png"],
        links=list(links),
    )


class StubFetcher:
    """Serves product pages for every URL except those listed in ``failures``."""

    def __init__(self, failures=(), links=None):
        self.failures = set(failures)
        self.links = links or {}
        self.calls = []
        self.active = 0
        self.max_active = 0

    async def fetch(self, url):
        self.calls.append(url)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0.01)
            if url in self.failures:
                raise FetchError(f"HTTP 500 for {url}")
            return _product_page(url, self.links.get(url, ()))
        finally:
            self.active -= 1


class NoCompletionClient:
    async def complete(self, prompt, result_schema):
        raise AssertionError("completion client should not be called")

    async def generate_text(self, prompt, max_tokens):
        raise AssertionError("completion client should not be called")


@pytest.fixture
def store(tmp_path):
    return JobStore(data_dir=tmp_path / "data")


def _orchestrator(store, fetcher):
    return JobOrchestrator(fetcher, LLMExtractor(NoCompletionClient()), store, HarvestConfig())


def _job(urls, **settings):
    settings.setdefault("inter_batch_delay_ms", 0)
    return Job(target_urls=urls, settings=JobSettings(**settings))


class TestBatchProcessing:
    @pytest.mark.asyncio
    async def test_one_failure_in_batch(self, store):
        urls = [f"https://shop.example.com/p{i}" for i in range(1, 4)]
        fetcher = StubFetcher(failures={urls[1]})
        job = _job(urls)

        finished = await _orchestrator(store, fetcher).process_job(job)

        assert finished.status == JobStatus.COMPLETED
        assert finished.totals.total == 3
        assert finished.totals.processed == 3
        assert finished.totals.succeeded == 2
        assert finished.totals.failed == 1

        errors = store.load_page_errors(job.id)
        assert [e.page_url for e in errors] == [urls[1]]
        assert "HTTP 500" in errors[0].error_message

        results = store.load_results(job.id)
        assert sorted(r.url for r in results) == [urls[0], urls[2]]
        assert all(r.source == ExtractionSource.PARSER for r in results)

        persisted = store.load_job(job.id)
        assert persisted.status == JobStatus.COMPLETED
        assert persisted.totals.failed == 1
        assert persisted.completed_at is not None

    @pytest.mark.asyncio
    async def test_batches_bound_concurrency(self, store):
        urls = [f"https://shop.example.com/p{i}" for i in range(7)]
        fetcher = StubFetcher()

        await _orchestrator(store, fetcher).process_job(_job(urls))

        assert fetcher.max_active == BATCH_SIZE
        assert sorted(fetcher.calls) == sorted(urls)

    @pytest.mark.asyncio
    async def test_delay_only_between_batches(self, store, monkeypatch):
        delays = []
        real_sleep = asyncio.sleep

        async def recording_sleep(seconds, *args, **kwargs):
            if seconds >= 0.5:
                delays.append(seconds)
                return None
            return await real_sleep(seconds, *args, **kwargs)

        monkeypatch.setattr(orchestrator_module.asyncio, "sleep", recording_sleep)
        urls = [f"https://shop.example.com/p{i}" for i in range(7)]

        await _orchestrator(store, StubFetcher()).process_job(
            _job(urls, inter_batch_delay_ms=1500)
        )

        # 7 URLs -> 3 batches -> 2 gaps
        assert delays == [1.5, 1.5]

    @pytest.mark.asyncio
    async def test_progress_signals(self, store):
        urls = [f"https://shop.example.com/p{i}" for i in range(3)]
        orchestrator = _orchestrator(store, StubFetcher())
        job = _job(urls)

        await orchestrator.process_job(job)

        signals = orchestrator.signal_emitter(job.id).signals
        progress = [s for s in signals if s.signal_type == SignalType.JOB_PROGRESS]
        assert [s.payload["processed"] for s in progress] == [1, 2, 3]
        assert signals[0].signal_type == SignalType.JOB_STARTED
        assert signals[-1].signal_type == SignalType.JOB_COMPLETE
        assert (store.job_dir(job.id) / "signals.jsonl").exists()


class TestBatchResilience:
    @pytest.mark.asyncio
    async def test_progress_signal_failure_does_not_fail_job(self, store, monkeypatch):
        urls = [f"https://shop.example.com/p{i}" for i in range(3)]
        orchestrator = _orchestrator(store, StubFetcher())
        job = _job(urls)
        reported = []

        async def flaky_progress(**totals):
            reported.append(totals["processed"])
            if len(reported) == 1:
                raise OSError("ledger unavailable")

        monkeypatch.setattr(orchestrator.signal_emitter(job.id), "emit_job_progress", flaky_progress)

        finished = await orchestrator.process_job(job)

        assert finished.status == JobStatus.COMPLETED
        assert finished.totals.processed == 3
        assert finished.totals.succeeded == 3
        assert sorted(reported) == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_unexpected_url_error_still_drains_batch(self, store, monkeypatch):
        urls = [f"https://shop.example.com/p{i}" for i in range(3)]
        orchestrator = _orchestrator(store, StubFetcher())
        real_process_url = orchestrator._process_url
        drained = []

        async def process_url(url, job, signals, counter_lock):
            if url == urls[0]:
                raise RuntimeError("counter update crashed")
            await real_process_url(url, job, signals, counter_lock)
            drained.append(url)

        monkeypatch.setattr(orchestrator, "_process_url", process_url)

        finished = await orchestrator.process_job(_job(urls))

        assert finished.status == JobStatus.COMPLETED
        assert sorted(drained) == urls[1:]
        assert finished.totals.succeeded == 2


class TestUrlExpansion:
    @pytest.mark.asyncio
    async def test_without_pagination(self, store):
        urls = [f"https://shop.example.com/p{i}" for i in range(5)] + ["https://shop.example.com/p0"]
        job = _job(urls, max_pages=3)
        expanded = await _orchestrator(store, StubFetcher()).expand_urls(job)
        assert expanded == urls[:3]

    @pytest.mark.asyncio
    async def test_with_pagination(self, store):
        origin = "https://shop.example.com/list"
        fetcher = StubFetcher(
            links={
                origin: [
                    "https://shop.example.com/about",
                    "https://shop.example.com/list?page=2",
                    "https://shop.example.com/list?page=3",
                    "https://shop.example.com/list?page=4",
                ]
            }
        )
        job = _job([origin], max_pages=3, follow_pagination=True)

        expanded = await _orchestrator(store, fetcher).expand_urls(job)

        assert expanded == [
            origin,
            "https://shop.example.com/list?page=2",
            "https://shop.example.com/list?page=3",
        ]

    @pytest.mark.asyncio
    async def test_pagination_fetch_failure_keeps_origin(self, store):
        origin = "https://shop.example.com/list"
        job = _job([origin], follow_pagination=True)
        expanded = await _orchestrator(store, StubFetcher(failures={origin})).expand_urls(job)
        assert expanded == [origin]


class TestJobLevelFailure:
    @pytest.mark.asyncio
    async def test_orchestration_crash_fails_job(self, store, monkeypatch):
        orchestrator = _orchestrator(store, StubFetcher())

        async def explode(job):
            raise RuntimeError("expansion crashed")

        monkeypatch.setattr(orchestrator, "expand_urls", explode)
        job = _job(["https://shop.example.com/p1"])

        finished = await orchestrator.process_job(job)

        assert finished.status == JobStatus.FAILED
        errors = store.load_page_errors(job.id)
        assert errors[-1].page_url == JOB_LEVEL_URL
        assert errors[-1].error_message == "expansion crashed"
        assert store.load_job(job.id).status == JobStatus.FAILED
        signals = orchestrator.signal_emitter(job.id).signals
        assert signals[-1].signal_type == SignalType.JOB_FAILED


class TestCreateAndStartJob:
    @pytest.mark.asyncio
    async def test_fire_and_forget(self, store):
        orchestrator = _orchestrator(store, StubFetcher())

        job_id = await orchestrator.create_and_start_job(
            ["https://shop.example.com/p1", "https://shop.example.com/p2"],
            settings=JobSettings(inter_batch_delay_ms=0),
            name="widgets",
        )
        assert store.load_job(job_id) is not None

        finished = await orchestrator.wait_for_job(job_id)

        assert finished.status == JobStatus.COMPLETED
        assert finished.totals.succeeded == 2
        assert store.load_job(job_id).name == "widgets"

    @pytest.mark.asyncio
    async def test_finished_job_releases_emitter(self, store):
        orchestrator = _orchestrator(store, StubFetcher())

        job_id = await orchestrator.create_and_start_job(
            ["https://shop.example.com/p1"], settings=JobSettings(inter_batch_delay_ms=0)
        )
        await orchestrator.wait_for_job(job_id)
        await asyncio.sleep(0)

        assert job_id not in orchestrator._emitters
        assert job_id not in orchestrator._tasks
        ledger = SignalEmitter.load_ledger(store.job_dir(job_id) / "signals.jsonl")
        assert ledger[-1].signal_type == SignalType.JOB_COMPLETE

    @pytest.mark.asyncio
    async def test_default_settings_come_from_config(self, store):
        config = HarvestConfig(
            default_job_settings=JobSettings(max_pages=1, inter_batch_delay_ms=0),
        )
        orchestrator = JobOrchestrator(
            StubFetcher(), LLMExtractor(NoCompletionClient()), store, config
        )

        job_id = await orchestrator.create_and_start_job(
            ["https://shop.example.com/p1", "https://shop.example.com/p2"]
        )
        finished = await orchestrator.wait_for_job(job_id)

        assert finished.settings.max_pages == 1
        assert finished.totals.total == 1


class TestFromConfig:
    @pytest.fixture
    def browser_calls(self, monkeypatch):
        calls = []

        async def fake_start(self):
            calls.append(("start", self))

        async def fake_stop(self):
            calls.append(("stop", self))

        monkeypatch.setattr(BrowserLayer, "start", fake_start)
        monkeypatch.setattr(BrowserLayer, "stop", fake_stop)
        return calls

    @pytest.fixture
    def config(self, tmp_path):
        return HarvestConfig(
            vertex=VertexConfig(project_id=""),
            timeouts=TimeoutConfig(fetch_timeout_s=12, ai_timeout_s=34),
            browser=BrowserConfig(headless=False),
            pipeline=PipelineConfig(data_dir=tmp_path / "harvest-data"),
            default_job_settings=JobSettings(inter_batch_delay_ms=0),
        )

    @pytest.mark.asyncio
    async def test_backends_wired_from_config(self, config, browser_calls, tmp_path):
        orchestrator = await JobOrchestrator.from_config(config)

        assert orchestrator._store.data_dir == tmp_path / "harvest-data"
        browser = orchestrator._fetcher
        assert isinstance(browser, BrowserLayer)
        assert browser._timeout_s == 12
        assert browser._config.headless is False
        assert browser_calls == [("start", browser)]

        assert orchestrator._llm._timeout_s == 34
        client = orchestrator._llm._client
        assert isinstance(client, VertexCompletionClient)
        assert client._timeouts.ai_timeout_s == 34
        assert client.is_available is False

        await orchestrator.close()
        await orchestrator.close()
        assert browser_calls == [("start", browser), ("stop", browser)]

    @pytest.mark.asyncio
    async def test_jobs_persist_under_configured_data_dir(self, config, browser_calls, tmp_path):
        orchestrator = await JobOrchestrator.from_config(config)

        job_id = await orchestrator.create_and_start_job(["https://shop.example.com/p1"])
        finished = await orchestrator.wait_for_job(job_id)
        await orchestrator.close()

        # the stubbed browser never opened a context, so the fetch fails
        assert finished.totals.failed == 1
        reloaded = JobStore(data_dir=tmp_path / "harvest-data").load_job(job_id)
        assert reloaded.status == JobStatus.COMPLETED
        assert reloaded.totals.failed == 1
