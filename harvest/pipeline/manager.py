"""Job store — file-backed persistence for jobs, extraction results and page errors.

Layout per job under ``data_dir``:

    <job_id>/job.json          latest job snapshot (atomic replace)
    <job_id>/results.jsonl     one MergedResult per line, append-only
    <job_id>/page_errors.jsonl one PageErrorLog per line, append-only
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel

from harvest.pipeline.extraction import MergedResult
from harvest.pipeline.jobs import Job, JobStatus, PageErrorLog


class JobStore:
    """Persists job state and per-page artifacts for many jobs.

    Contract: a job snapshot is written atomically (temp file then rename), so a
    reader never sees a half-written job.json.
    """

    def __init__(self, data_dir: Path) -> None:
        self._data_dir = data_dir
        self._data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def job_dir(self, job_id: str) -> Path:
        return self._data_dir / job_id

    # --- Jobs ---

    def create_job(self, job: Job) -> None:
        """Store a new job snapshot."""
        self.job_dir(job.id).mkdir(parents=True, exist_ok=True)
        self._write_job(job)

    def update_job_status(self, job: Job) -> None:
        """Persist the job after a status change."""
        job.touch()
        if job.status == JobStatus.COMPLETED and job.completed_at is None:
            job.completed_at = datetime.now(timezone.utc)
        self._write_job(job)

    def update_job_progress(self, job: Job) -> None:
        """Persist the job after a counter change."""
        job.touch()
        self._write_job(job)

    def _write_job(self, job: Job) -> None:
        job_path = self.job_dir(job.id) / "job.json"
        job_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = job_path.with_suffix(".tmp")
        try:
            temp_path.write_text(job.model_dump_json(indent=2))
            temp_path.replace(job_path)
        except Exception:
            if temp_path.exists():
                temp_path.unlink()
            raise

    def load_job(self, job_id: str) -> Job | None:
        job_path = self.job_dir(job_id) / "job.json"
        if not job_path.exists():
            return None
        return Job.model_validate_json(job_path.read_text())

    # --- Results and error logs ---

    def create_extraction_result(self, job_id: str, result: MergedResult) -> None:
        self._append(self.job_dir(job_id) / "results.jsonl", result)

    def create_page_error_log(self, entry: PageErrorLog) -> None:
        self._append(self.job_dir(entry.job_id) / "page_errors.jsonl", entry)

    def load_results(self, job_id: str) -> list[MergedResult]:
        return [
            MergedResult.model_validate_json(line)
            for line in self._read_lines(self.job_dir(job_id) / "results.jsonl")
        ]

    def load_page_errors(self, job_id: str) -> list[PageErrorLog]:
        return [
            PageErrorLog.model_validate_json(line)
            for line in self._read_lines(self.job_dir(job_id) / "page_errors.jsonl")
        ]

    @staticmethod
    def _append(path: Path, model: BaseModel) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a") as f:
            f.write(model.model_dump_json() + "\n")

    @staticmethod
    def _read_lines(path: Path) -> list[str]:
        lines: list[str] = []
        if path.exists():
            with open(path) as f:
                for line in f:
                    line = line.strip()
                    if line:
                        lines.append(line)
        return lines
