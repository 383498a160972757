"""Tests for extraction data models and the job store."""

import json

import pytest

from harvest.config.settings import JobSettings
from harvest.pipeline.extraction import (
    PROVENANCE_KEY,
    ExtractionSource,
    LLMOutcome,
    MergedResult,
    PageExtract,
    ParseOutcome,
)
from harvest.pipeline.jobs import Job, JobStatus, PageErrorLog
from harvest.pipeline.manager import JobStore
from harvest.pipeline.merge import merge_results


class TestOutcomeModels:
    def test_confidence_bounds(self):
        with pytest.raises(Exception):
            ParseOutcome(success=True, confidence=1.5)
        with pytest.raises(Exception):
            LLMOutcome(success=True, confidence=-0.1)

    def test_outcomes_are_frozen(self):
        outcome = ParseOutcome(success=True, fields={"a": "b"}, confidence=0.9)
        with pytest.raises(Exception):
            outcome.confidence = 0.1

    def test_failed_parse_outcome(self):
        outcome = ParseOutcome.failed(["boom"], elapsed_ms=5)
        assert outcome.success is False
        assert outcome.confidence == 0.0
        assert outcome.errors == ["boom"]
        assert outcome.elapsed_ms == 5


class TestPageExtract:
    def test_raw_content_joins_markdown_and_text(self):
        page = PageExtract(url="https://example.com", markdown="# Title", text="Body")
        assert page.raw_content == "# Title\n\nBody"


class TestMergedResult:
    def test_provenance_property(self):
        fields = merge_results({"title": "Hi"}, {"brand": "Acme"})
        result = MergedResult(url="https://example.com", fields=fields, source=ExtractionSource.HYBRID)
        assert result.provenance["hybrid"] == ["title", "brand"]

    def test_failed_result_has_no_provenance(self):
        result = MergedResult(url="https://example.com", source=ExtractionSource.FAILED)
        assert result.provenance == {}

    def test_serialization(self):
        result = MergedResult(
            url="https://example.com",
            fields={"title": "T", PROVENANCE_KEY: {"parser": ["title"], "llm": [], "hybrid": ["title"]}},
            source=ExtractionSource.PARSER,
            elapsed_ms=12,
        )
        data = json.loads(result.model_dump_json())
        assert data["source"] == "parser"
        assert data["fields"]["title"] == "T"
        assert "timestamp" in data


@pytest.fixture
def store(tmp_path):
    return JobStore(data_dir=tmp_path / "data")


@pytest.fixture
def job():
    return Job(
        name="widgets",
        target_urls=["https://shop.example.com/a", "https://shop.example.com/b"],
        instructions="Get the price",
        settings=JobSettings(max_pages=5, inter_batch_delay_ms=0),
    )


class TestJobStore:
    def test_create_and_load_job(self, store, job):
        store.create_job(job)
        loaded = store.load_job(job.id)
        assert loaded is not None
        assert loaded.id == job.id
        assert loaded.status == JobStatus.PENDING
        assert loaded.settings.max_pages == 5

    def test_load_missing_job(self, store):
        assert store.load_job("job_missing") is None

    def test_status_update_sets_completed_at(self, store, job):
        store.create_job(job)
        job.status = JobStatus.COMPLETED
        store.update_job_status(job)
        loaded = store.load_job(job.id)
        assert loaded.status == JobStatus.COMPLETED
        assert loaded.completed_at is not None

    def test_progress_update(self, store, job):
        store.create_job(job)
        job.totals.total = 2
        job.totals.processed = 1
        job.totals.succeeded = 1
        store.update_job_progress(job)
        assert store.load_job(job.id).totals.succeeded == 1

    def test_no_temp_file_left_behind(self, store, job):
        store.create_job(job)
        assert not (store.job_dir(job.id) / "job.tmp").exists()
        assert (store.job_dir(job.id) / "job.json").exists()

    def test_persisted_result_round_trips(self, store, job):
        result = MergedResult(
            url="https://shop.example.com/a",
            fields=merge_results(
                {"title": "Hi", "price": ["$49.99", "$79.99"]},
                {"title": "Widget Pro Deluxe", "rating": 4.5},
            ),
            source=ExtractionSource.HYBRID,
            explanation="Hybrid extraction: two prices found",
            elapsed_ms=42,
            context_snippets=["price: Now $49.99"],
        )
        store.create_extraction_result(job.id, result)

        loaded = store.load_results(job.id)
        assert loaded == [result]

    def test_page_error_log(self, store, job):
        store.create_page_error_log(
            PageErrorLog(job_id=job.id, page_url="https://shop.example.com/b", error_message="HTTP 500")
        )
        store.create_page_error_log(
            PageErrorLog(job_id=job.id, page_url="job-level", error_message="crash")
        )
        errors = store.load_page_errors(job.id)
        assert [e.page_url for e in errors] == ["https://shop.example.com/b", "job-level"]
        assert errors[0].status == "failed"

    def test_empty_loaders(self, store):
        assert store.load_results("job_none") == []
        assert store.load_page_errors("job_none") == []
