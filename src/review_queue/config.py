"""Runtime configuration for the review queue and the process engine."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_CACHE_DIR = Path(".runtime-cache") / "review-queue"


@dataclass(slots=True)
class ExecutorSettings:
    """Subprocess supervision settings."""

    graceful_shutdown_seconds: float = 5.0
    detect_timeout_seconds: float = 5.0


@dataclass(slots=True)
class QueueSettings:
    """Review pipeline settings."""

    cli_name: str = "codex"
    cache_dir: Path = DEFAULT_CACHE_DIR
    max_concurrent_workers: int = 8
    worker_timeout_seconds: float = 60 * 20
    aggregate_timeout_seconds: float = 60 * 30
    fix_timeout_seconds: float = 60 * 45


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    log_level: str = "WARNING"
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults suited for local runs."""

        return cls(
            log_level=os.getenv("REVIEW_QUEUE_LOG_LEVEL", "WARNING").strip().upper(),
            executor=ExecutorSettings(
                graceful_shutdown_seconds=float(
                    os.getenv("REVIEW_QUEUE_GRACEFUL_SHUTDOWN_SECONDS", "5"),
                ),
                detect_timeout_seconds=float(
                    os.getenv("REVIEW_QUEUE_DETECT_TIMEOUT_SECONDS", "5"),
                ),
            ),
            queue=QueueSettings(
                cli_name=os.getenv("REVIEW_QUEUE_CLI_NAME", "codex").strip(),
                cache_dir=Path(os.getenv("REVIEW_QUEUE_CACHE_DIR", str(DEFAULT_CACHE_DIR))),
                max_concurrent_workers=int(
                    os.getenv("REVIEW_QUEUE_MAX_CONCURRENT_WORKERS", "8"),
                ),
                worker_timeout_seconds=float(
                    os.getenv("REVIEW_QUEUE_WORKER_TIMEOUT_SECONDS", "1200"),
                ),
                aggregate_timeout_seconds=float(
                    os.getenv("REVIEW_QUEUE_AGGREGATE_TIMEOUT_SECONDS", "1800"),
                ),
                fix_timeout_seconds=float(
                    os.getenv("REVIEW_QUEUE_FIX_TIMEOUT_SECONDS", "2700"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if settings are inconsistent."""

        if not self.queue.cli_name:
            raise ValueError("REVIEW_QUEUE_CLI_NAME must not be empty.")
        if self.queue.cache_dir.is_absolute():
            raise ValueError(
                "REVIEW_QUEUE_CACHE_DIR must be relative to the workspace: "
                f"{str(self.queue.cache_dir)!r}",
            )
        if self.queue.max_concurrent_workers <= 0:
            raise ValueError("REVIEW_QUEUE_MAX_CONCURRENT_WORKERS must be > 0.")
        if self.queue.worker_timeout_seconds <= 0:
            raise ValueError("REVIEW_QUEUE_WORKER_TIMEOUT_SECONDS must be > 0.")
        if not (
            self.queue.worker_timeout_seconds
            < self.queue.aggregate_timeout_seconds
            < self.queue.fix_timeout_seconds
        ):
            raise ValueError(
                "Stage timeouts must increase: worker < aggregate < fix "
                f"(got {self.queue.worker_timeout_seconds:g} / "
                f"{self.queue.aggregate_timeout_seconds:g} / "
                f"{self.queue.fix_timeout_seconds:g}).",
            )
        if self.executor.graceful_shutdown_seconds < 0:
            raise ValueError("REVIEW_QUEUE_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Invalid REVIEW_QUEUE_LOG_LEVEL: {self.log_level!r}")
