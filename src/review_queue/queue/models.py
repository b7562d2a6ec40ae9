"""Domain models for the multi-session review queue."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

SUMMARY_VERSION = 1


class QueuePhase(str, Enum):
    """Job position in the review -> aggregate -> fix pipeline."""

    IDLE = "idle"
    PREPARING = "preparing"
    REVIEWING = "reviewing"
    AGGREGATING = "aggregating"
    FIXING = "fixing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_PHASES


_TERMINAL_PHASES = frozenset({QueuePhase.COMPLETED, QueuePhase.FAILED, QueuePhase.CANCELLED})


class WorkerStatus(str, Enum):
    """Per-worker lifecycle states, always visited in declaration order."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class ReviewWorkerResult:
    """State of one review worker; `id` is the 1-based prompt position."""

    id: int
    prompt: str
    status: WorkerStatus = WorkerStatus.PENDING
    output_path: str | None = None
    stdout_path: str | None = None
    stderr_path: str | None = None
    error: str | None = None


@dataclass(slots=True)
class ReviewQueueConfig:
    """Input snapshot for one queue run, persisted as `config.json`."""

    workspace_path: str
    review_prompts: list[str]
    aggregate_prompt: str
    fix_prompt: str
    run_aggregate: bool = True
    run_fix: bool = True
    model: str | None = None
    full_auto: bool = True
    skip_git_repo_check: bool = False
    ephemeral: bool = False


@dataclass(slots=True)
class ReviewQueueResult:
    """Synchronous result of a successful queue run."""

    job_id: str
    job_path: str
    workers: list[ReviewWorkerResult]
    aggregate_output_path: str | None
    fix_output_path: str | None
    completed_worker_count: int
    failed_worker_count: int


@dataclass(slots=True)
class JobSummary:
    """Recoverable record of a job, written as `summary.json` on every exit path."""

    job_id: str
    job_path: str
    phase: QueuePhase
    created_at: datetime
    updated_at: datetime
    workers: list[ReviewWorkerResult] = field(default_factory=list)
    aggregate_output_path: str | None = None
    fix_output_path: str | None = None
    run_aggregate: bool = True
    run_fix: bool = True
    model: str | None = None
    version: int = SUMMARY_VERSION
    worker_count: int | None = None
    completed_worker_count: int | None = None
    failed_worker_count: int | None = None

    def __post_init__(self) -> None:
        # counts left unset are derived from `workers`; stored counts are kept as given
        if self.worker_count is None:
            self.worker_count = len(self.workers)
        if self.completed_worker_count is None:
            self.completed_worker_count = sum(
                1 for worker in self.workers if worker.status == WorkerStatus.COMPLETED
            )
        if self.failed_worker_count is None:
            self.failed_worker_count = sum(
                1 for worker in self.workers if worker.status == WorkerStatus.FAILED
            )


@dataclass(slots=True)
class ReviewQueueHistoryItem:
    """One past job as reconstructed from its directory."""

    job_id: str
    job_path: str
    created_at: datetime | None
    phase: QueuePhase
    worker_count: int
    failed_worker_count: int
    completed_worker_count: int
    aggregate_output_path: str | None = None
    fix_output_path: str | None = None
    model: str | None = None
    from_summary: bool = False


@dataclass(slots=True, frozen=True)
class PhaseChanged:
    phase: QueuePhase


@dataclass(slots=True, frozen=True)
class WorkerUpdated:
    worker: ReviewWorkerResult


@dataclass(slots=True, frozen=True)
class AggregateReady:
    path: str


@dataclass(slots=True, frozen=True)
class FixReady:
    path: str


@dataclass(slots=True, frozen=True)
class QueueFailed:
    message: str


ReviewQueueEvent = PhaseChanged | WorkerUpdated | AggregateReady | FixReady | QueueFailed
EventSink = Callable[[ReviewQueueEvent], None]


def max_concurrent_workers(prompt_count: int, cap: int) -> int:
    """Number of workers allowed to run at once for `prompt_count` prompts."""

    if prompt_count <= 0:
        return 0
    return min(prompt_count, cap)
