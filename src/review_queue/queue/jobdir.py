"""Per-job directory layout and JSON artifacts (config, summary)."""

from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from review_queue.queue.models import (
    SUMMARY_VERSION,
    JobSummary,
    QueuePhase,
    ReviewQueueConfig,
    ReviewWorkerResult,
    WorkerStatus,
)

CONFIG_FILE = "config.json"
SUMMARY_FILE = "summary.json"
AGGREGATE_FILE = "aggregate.md"
FIX_FILE = "fix.md"
WORKER_OUTPUT_PATTERN = re.compile(r"^worker-(\d+)\.md$")

_JOB_ID_TIME_FORMAT = "%Y%m%d-%H%M%S"


def make_job_id(now: datetime | None = None) -> str:
    """Sortable job id: UTC creation timestamp plus a short random suffix."""

    moment = now or datetime.now(tz=UTC)
    return f"{moment.astimezone(UTC).strftime(_JOB_ID_TIME_FORMAT)}-{uuid4().hex[:8]}"


def parse_job_timestamp(job_id: str) -> datetime | None:
    """Recover the creation time embedded in a job id, or None."""

    prefix = "-".join(job_id.split("-")[:2])
    try:
        return datetime.strptime(prefix, _JOB_ID_TIME_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return None


@dataclass(slots=True)
class WorkerPaths:
    """Artifact paths owned by one worker."""

    output_path: Path
    stdout_path: Path
    stderr_path: Path


@dataclass(slots=True)
class JobDirectory:
    """Materialized job directory; exclusively owned by one run."""

    job_id: str
    path: Path

    @property
    def config_path(self) -> Path:
        return self.path / CONFIG_FILE

    @property
    def summary_path(self) -> Path:
        return self.path / SUMMARY_FILE

    @property
    def aggregate_path(self) -> Path:
        return self.path / AGGREGATE_FILE

    @property
    def fix_path(self) -> Path:
        return self.path / FIX_FILE

    def worker_paths(self, worker_id: int) -> WorkerPaths:
        stem = f"worker-{worker_id:02d}"
        return WorkerPaths(
            output_path=self.path / f"{stem}.md",
            stdout_path=self.path / f"{stem}.stdout.log",
            stderr_path=self.path / f"{stem}.stderr.log",
        )


class JobDirectoryManager:
    """Creates job directories under `<workspace>/<cache_dir>`."""

    def __init__(self, workspace: Path, cache_dir: Path) -> None:
        self.workspace = workspace
        self.root_dir = workspace / cache_dir

    def create(self, *, job_id: str, config: ReviewQueueConfig) -> JobDirectory:
        """Create a fresh directory and persist `config.json` as its first artifact."""

        path = self.root_dir / job_id
        self.root_dir.mkdir(parents=True, exist_ok=True)
        path.mkdir(exist_ok=False)
        job = JobDirectory(job_id=job_id, path=path)
        write_config(job.config_path, config)
        return job

    def open(self, job_id: str) -> JobDirectory:
        path = self.root_dir / job_id
        if not path.is_dir():
            raise FileNotFoundError(f"Job directory not found: {path}")
        return JobDirectory(job_id=job_id, path=path)


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def write_config(path: Path, config: ReviewQueueConfig) -> None:
    write_json(path, asdict(config))


def read_config(path: Path) -> ReviewQueueConfig:
    """Deserialize and validate a persisted queue config."""

    raw = load_json(path)
    prompts = raw.get("review_prompts")
    if not isinstance(prompts, list) or not all(isinstance(item, str) for item in prompts):
        raise TypeError("config.review_prompts must be an array of strings")
    model = raw.get("model")
    if model is not None and not isinstance(model, str):
        raise TypeError("config.model must be a string when provided")
    return ReviewQueueConfig(
        workspace_path=_require_str(raw, "workspace_path", "config"),
        review_prompts=list(prompts),
        aggregate_prompt=_require_str(raw, "aggregate_prompt", "config"),
        fix_prompt=_require_str(raw, "fix_prompt", "config"),
        run_aggregate=_optional_bool(raw, "run_aggregate", default=True),
        run_fix=_optional_bool(raw, "run_fix", default=True),
        model=model,
        full_auto=_optional_bool(raw, "full_auto", default=True),
        skip_git_repo_check=_optional_bool(raw, "skip_git_repo_check", default=False),
        ephemeral=_optional_bool(raw, "ephemeral", default=False),
    )


def summary_to_dict(summary: JobSummary) -> dict[str, Any]:
    return {
        "version": summary.version,
        "job_id": summary.job_id,
        "job_path": summary.job_path,
        "phase": summary.phase.value,
        "created_at": summary.created_at.isoformat(),
        "updated_at": summary.updated_at.isoformat(),
        "worker_count": summary.worker_count,
        "completed_worker_count": summary.completed_worker_count,
        "failed_worker_count": summary.failed_worker_count,
        "workers": [_worker_to_dict(worker) for worker in summary.workers],
        "aggregate_output_path": summary.aggregate_output_path,
        "fix_output_path": summary.fix_output_path,
        "run_aggregate": summary.run_aggregate,
        "run_fix": summary.run_fix,
        "model": summary.model,
    }


def write_summary(path: Path, summary: JobSummary) -> None:
    write_json(path, summary_to_dict(summary))


def read_summary(path: Path) -> JobSummary:
    """Load and validate `summary.json`."""

    raw = load_json(path)
    version = raw.get("version", SUMMARY_VERSION)
    if not isinstance(version, int) or version < 1:
        raise ValueError("summary.version must be an integer >= 1")
    raw_workers = raw.get("workers", [])
    if not isinstance(raw_workers, list):
        raise TypeError("summary.workers must be an array")
    model = raw.get("model")
    if model is not None and not isinstance(model, str):
        raise TypeError("summary.model must be a string when provided")

    return JobSummary(
        version=version,
        job_id=_require_str(raw, "job_id", "summary"),
        job_path=_require_str(raw, "job_path", "summary"),
        phase=QueuePhase(_require_str(raw, "phase", "summary")),
        created_at=datetime.fromisoformat(_require_str(raw, "created_at", "summary")),
        updated_at=datetime.fromisoformat(_require_str(raw, "updated_at", "summary")),
        workers=[_worker_from_dict(item) for item in raw_workers],
        aggregate_output_path=_optional_str(raw, "aggregate_output_path", "summary"),
        fix_output_path=_optional_str(raw, "fix_output_path", "summary"),
        run_aggregate=_optional_bool(raw, "run_aggregate", default=True),
        run_fix=_optional_bool(raw, "run_fix", default=True),
        model=model,
        worker_count=_optional_count(raw, "worker_count"),
        completed_worker_count=_optional_count(raw, "completed_worker_count"),
        failed_worker_count=_optional_count(raw, "failed_worker_count"),
    )


def read_text_or_none(path: Path) -> str | None:
    try:
        return path.read_text("utf-8", errors="replace")
    except OSError:
        return None


def _worker_to_dict(worker: ReviewWorkerResult) -> dict[str, Any]:
    payload = asdict(worker)
    payload["status"] = worker.status.value
    return payload


def _worker_from_dict(raw: object) -> ReviewWorkerResult:
    if not isinstance(raw, dict):
        raise TypeError("summary.workers entry must be an object")
    worker_id = raw.get("id")
    if not isinstance(worker_id, int) or worker_id < 1:
        raise ValueError("summary.workers.id must be an integer >= 1")
    return ReviewWorkerResult(
        id=worker_id,
        prompt=_require_str(raw, "prompt", "summary.workers"),
        status=WorkerStatus(_require_str(raw, "status", "summary.workers")),
        output_path=_optional_str(raw, "output_path", "summary.workers"),
        stdout_path=_optional_str(raw, "stdout_path", "summary.workers"),
        stderr_path=_optional_str(raw, "stderr_path", "summary.workers"),
        error=_optional_str(raw, "error", "summary.workers"),
    )


def _require_str(raw: dict[str, Any], key: str, scope: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str):
        raise TypeError(f"{scope}.{key} must be a string")
    return value


def _optional_str(raw: dict[str, Any], key: str, scope: str) -> str | None:
    value = raw.get(key)
    if value is not None and not isinstance(value, str):
        raise TypeError(f"{scope}.{key} must be a string when provided")
    return value


def _optional_bool(raw: dict[str, Any], key: str, *, default: bool) -> bool:
    value = raw.get(key, default)
    if not isinstance(value, bool):
        raise TypeError(f"{key} must be a boolean")
    return value


def _optional_count(raw: dict[str, Any], key: str) -> int | None:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"summary.{key} must be an integer >= 0")
    return value
