"""Controllers for review queue CLI commands."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from review_queue.config import Settings
from review_queue.executor import CancellationToken, CliExecutor
from review_queue.executor.detection import detect_installed_clis
from review_queue.queue.errors import QueueCancelledError, ReviewQueueError
from review_queue.queue.history import load_history
from review_queue.queue.models import (
    AggregateReady,
    FixReady,
    PhaseChanged,
    QueueFailed,
    ReviewQueueConfig,
    ReviewQueueEvent,
    ReviewQueueResult,
    WorkerStatus,
    WorkerUpdated,
)
from review_queue.queue.prompts import resolve_review_prompts
from review_queue.queue.service import ReviewQueueService

LineSink = Callable[[str], None]


@dataclass(slots=True)
class QueueRunCommand:
    """CLI input for one review queue run."""

    workspace: Path
    shared_prompt: str
    worker_count: int
    aggregate_prompt: str
    fix_prompt: str
    custom_prompts: tuple[str, ...] = ()
    run_aggregate: bool = True
    run_fix: bool = True
    model: str | None = None
    full_auto: bool = True
    skip_git_repo_check: bool = False
    ephemeral: bool = False


@dataclass(slots=True)
class QueueRerunCommand:
    """CLI input for re-running the failed workers of a past job."""

    workspace: Path
    job_id: str


@dataclass(slots=True)
class QueueHistoryCommand:
    """CLI input for job history listing."""

    workspace: Path
    limit: int


@dataclass(slots=True)
class QueueRunOutcome:
    """Final state of a run as reported to the terminal."""

    success: bool
    lines: list[str] = field(default_factory=list)
    error: str | None = None


class ReviewQueueCliController:
    """Wires settings, executor and service for CLI commands."""

    def __init__(self, *, settings_factory: Callable[[], Settings] = Settings.from_env) -> None:
        self._settings_factory = settings_factory

    def run(self, command: QueueRunCommand, *, on_line: LineSink) -> QueueRunOutcome:
        config = ReviewQueueConfig(
            workspace_path=str(command.workspace.expanduser().resolve()),
            review_prompts=resolve_review_prompts(
                shared_prompt=command.shared_prompt,
                worker_count=command.worker_count,
                custom_prompts=command.custom_prompts,
            ),
            aggregate_prompt=command.aggregate_prompt.strip(),
            fix_prompt=command.fix_prompt.strip(),
            run_aggregate=command.run_aggregate,
            run_fix=command.run_fix,
            model=(command.model or "").strip() or None,
            full_auto=command.full_auto,
            skip_git_repo_check=command.skip_git_repo_check,
            ephemeral=command.ephemeral,
        )
        return self._execute(config, on_line=on_line)

    def rerun_failed(self, command: QueueRerunCommand, *, on_line: LineSink) -> QueueRunOutcome:
        """Start a new job from the failed worker prompts of `command.job_id`."""

        service = self._service(self._settings())
        workspace = str(command.workspace.expanduser().resolve())
        try:
            config = service.rerun_config(workspace, command.job_id)
        except ReviewQueueError as error:
            return QueueRunOutcome(success=False, error=str(error))
        except (OSError, TypeError, ValueError) as error:
            message = f"Cannot load job {command.job_id}: {error}"
            return QueueRunOutcome(success=False, error=message)
        on_line(f"Re-running {len(config.review_prompts)} failed worker(s) of {command.job_id}")
        return self._execute(config, on_line=on_line, service=service)

    def history(self, command: QueueHistoryCommand) -> list[str]:
        settings = self._settings()
        items = load_history(command.workspace.expanduser().resolve(), settings.queue.cache_dir)
        if not items:
            return ["No review queue jobs found."]

        lines: list[str] = []
        for item in items[: command.limit]:
            created = item.created_at.isoformat() if item.created_at else "-"
            source = "summary" if item.from_summary else "inferred"
            lines.append(
                f"{item.job_id} phase={item.phase.value} workers={item.worker_count} "
                f"ok={item.completed_worker_count} failed={item.failed_worker_count} "
                f"model={item.model or '-'} created={created} source={source}",
            )
            if item.aggregate_output_path:
                lines.append(f"  aggregate: {item.aggregate_output_path}")
            if item.fix_output_path:
                lines.append(f"  fix: {item.fix_output_path}")
        return lines

    def detect(self) -> list[str]:
        """Report which known AI coding CLIs are installed."""

        settings = self._settings()
        detected = asyncio.run(
            detect_installed_clis(
                _executor(settings),
                version_timeout_seconds=settings.executor.detect_timeout_seconds,
            ),
        )
        lines: list[str] = []
        for cli in detected:
            if not cli.installed:
                lines.append(f"{cli.display_name} ({cli.name}): not installed")
                continue
            version = f" [{cli.version}]" if cli.version else ""
            lines.append(f"{cli.display_name} ({cli.name}): {cli.binary_path}{version}")
        return lines

    def _execute(
        self,
        config: ReviewQueueConfig,
        *,
        on_line: LineSink,
        service: ReviewQueueService | None = None,
    ) -> QueueRunOutcome:
        service = service or self._service(self._settings())
        token = CancellationToken()

        def _on_event(event: ReviewQueueEvent) -> None:
            on_line(format_event(event))

        try:
            result = asyncio.run(_run_with_signals(service, config, _on_event, token))
        except QueueCancelledError as error:
            return QueueRunOutcome(success=False, lines=["Run cancelled."], error=str(error))
        except KeyboardInterrupt:
            return QueueRunOutcome(success=False, lines=["Run interrupted."], error="Interrupted.")
        except ReviewQueueError as error:
            return QueueRunOutcome(success=False, error=str(error))
        return QueueRunOutcome(success=True, lines=render_result(result))

    def _settings(self) -> Settings:
        settings = self._settings_factory()
        settings.validate()
        return settings

    def _service(self, settings: Settings) -> ReviewQueueService:
        return ReviewQueueService(executor=_executor(settings), settings=settings.queue)


def _executor(settings: Settings) -> CliExecutor:
    return CliExecutor(graceful_shutdown_seconds=settings.executor.graceful_shutdown_seconds)


async def _run_with_signals(
    service: ReviewQueueService,
    config: ReviewQueueConfig,
    on_event: Callable[[ReviewQueueEvent], None],
    token: CancellationToken,
) -> ReviewQueueResult:
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGTERM, token.cancel)
    try:
        return await service.run_queue(config, on_event, cancellation=token)
    finally:
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.remove_signal_handler(signal.SIGTERM)


def format_event(event: ReviewQueueEvent) -> str:
    """One human-readable progress line per queue event."""

    if isinstance(event, PhaseChanged):
        return f"Phase: {event.phase.value}"
    if isinstance(event, WorkerUpdated):
        worker = event.worker
        line = f"Worker {worker.id}: {worker.status.value}"
        if worker.status == WorkerStatus.FAILED and worker.error:
            line += f" ({worker.error.splitlines()[0]})"
        return line
    if isinstance(event, AggregateReady):
        return f"Aggregate ready: {event.path}"
    if isinstance(event, FixReady):
        return f"Fix ready: {event.path}"
    if isinstance(event, QueueFailed):
        return f"Failed: {event.message}"
    return repr(event)


def render_result(result: ReviewQueueResult) -> list[str]:
    lines = [
        f"Job: {result.job_id}",
        f"Path: {result.job_path}",
        (
            f"Workers: {len(result.workers)} (ok: {result.completed_worker_count}, "
            f"failed: {result.failed_worker_count})"
        ),
    ]
    if result.aggregate_output_path:
        lines.append(f"Aggregate: {result.aggregate_output_path}")
    if result.fix_output_path:
        lines.append(f"Fix: {result.fix_output_path}")
    return lines
