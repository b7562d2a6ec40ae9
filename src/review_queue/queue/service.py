"""Review -> aggregate -> fix pipeline over a bounded pool of CLI workers."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from pathlib import Path

from review_queue.config import QueueSettings
from review_queue.executor import CancellationToken, CliExecutor, ExecutionResult
from review_queue.queue.errors import (
    CliNotInstalledError,
    EmptyPromptsError,
    ExecutionFailedError,
    InvalidStageConfigurationError,
    InvalidWorkspaceError,
    MissingAggregatePromptError,
    MissingFixPromptError,
    QueueCancelledError,
    ReviewQueueError,
)
from review_queue.queue.jobdir import (
    JobDirectory,
    JobDirectoryManager,
    make_job_id,
    read_config,
    read_summary,
    read_text_or_none,
    write_summary,
)
from review_queue.queue.models import (
    AggregateReady,
    EventSink,
    FixReady,
    JobSummary,
    PhaseChanged,
    QueueFailed,
    QueuePhase,
    ReviewQueueConfig,
    ReviewQueueResult,
    ReviewWorkerResult,
    WorkerStatus,
    WorkerUpdated,
    max_concurrent_workers,
)
from review_queue.queue.output_fallback import parse_last_agent_message
from review_queue.queue.prompts import build_aggregate_prompt, build_fix_prompt, normalize_prompts

logger = logging.getLogger(__name__)

NOT_ADMITTED_ERROR = "Not started: the job was cancelled before this worker was admitted."


@dataclass(slots=True)
class _JobState:
    """Mutable state of one run; only the pool driver and stage loop touch it."""

    job: JobDirectory
    config: ReviewQueueConfig
    workers: list[ReviewWorkerResult]
    created_at: datetime
    phase: QueuePhase = QueuePhase.PREPARING
    aggregate_output_path: str | None = None
    fix_output_path: str | None = None
    finalized: bool = False

    @property
    def completed_count(self) -> int:
        return sum(1 for worker in self.workers if worker.status == WorkerStatus.COMPLETED)

    @property
    def failed_count(self) -> int:
        return sum(1 for worker in self.workers if worker.status == WorkerStatus.FAILED)


class ReviewQueueService:
    """Runs multi-session reviews, merges findings and triggers a fix pass.

    Constructed explicitly with its executor and settings; callers own the
    instance and may substitute a fake executor.
    """

    def __init__(self, *, executor: CliExecutor, settings: QueueSettings | None = None) -> None:
        self.executor = executor
        self.settings = settings or QueueSettings()

    def validate(self, config: ReviewQueueConfig) -> list[str]:
        """Check run preconditions and return the normalized review prompts.

        Raises before any job state exists, so a rejected run leaves nothing
        on disk.
        """

        if not Path(config.workspace_path).is_dir():
            raise InvalidWorkspaceError(config.workspace_path)
        if not self.executor.is_cli_installed(self.settings.cli_name):
            raise CliNotInstalledError(self.settings.cli_name)
        prompts = normalize_prompts(config.review_prompts)
        if not prompts:
            raise EmptyPromptsError
        if config.run_fix and not config.run_aggregate:
            raise InvalidStageConfigurationError
        if config.run_aggregate and not config.aggregate_prompt.strip():
            raise MissingAggregatePromptError
        if config.run_fix and not config.fix_prompt.strip():
            raise MissingFixPromptError
        return prompts

    async def run_queue(
        self,
        config: ReviewQueueConfig,
        on_event: EventSink,
        *,
        cancellation: CancellationToken | None = None,
    ) -> ReviewQueueResult:
        """Run the full pipeline; progress is reported only through `on_event`.

        Every exit path (success, stage failure, cancellation) persists
        `summary.json` with the matching terminal phase before returning or
        raising.
        """

        prompts = self.validate(config)
        token = cancellation or CancellationToken()

        on_event(PhaseChanged(QueuePhase.PREPARING))
        job_id = make_job_id()
        manager = JobDirectoryManager(Path(config.workspace_path), self.settings.cache_dir)
        try:
            job = manager.create(job_id=job_id, config=config)
        except OSError as error:
            message = f"Failed to prepare job directory for {job_id}: {error}"
            on_event(PhaseChanged(QueuePhase.FAILED))
            on_event(QueueFailed(message))
            raise ExecutionFailedError(message, job_id=job_id) from error
        logger.info(
            "Review queue job %s created at %s (%d prompts)",
            job_id,
            job.path,
            len(prompts),
        )

        state = _JobState(
            job=job,
            config=config,
            workers=[
                ReviewWorkerResult(id=index, prompt=prompt)
                for index, prompt in enumerate(prompts, start=1)
            ],
            created_at=datetime.now(tz=UTC),
        )

        try:
            result = await self._run_pipeline(state, on_event, token)
        except QueueCancelledError:
            self._finalize(state, QueuePhase.CANCELLED, on_event)
            raise
        except asyncio.CancelledError:
            self._finalize(state, QueuePhase.CANCELLED, on_event)
            raise
        except ReviewQueueError as error:
            self._finalize(state, QueuePhase.FAILED, on_event, message=str(error))
            raise
        except Exception as error:
            self._finalize(state, QueuePhase.FAILED, on_event, message=f"Unexpected error: {error}")
            raise

        self._finalize(state, QueuePhase.COMPLETED, on_event)
        return result

    def rerun_config(self, workspace_path: str, job_id: str) -> ReviewQueueConfig:
        """Config for re-running only the failed workers of a past job."""

        manager = JobDirectoryManager(Path(workspace_path), self.settings.cache_dir)
        job = manager.open(job_id)
        summary = read_summary(job.summary_path)
        original = read_config(job.config_path)
        failed_prompts = [
            worker.prompt for worker in summary.workers if worker.status == WorkerStatus.FAILED
        ]
        if not failed_prompts:
            raise EmptyPromptsError
        return replace(original, workspace_path=workspace_path, review_prompts=failed_prompts)

    async def _run_pipeline(
        self,
        state: _JobState,
        on_event: EventSink,
        token: CancellationToken,
    ) -> ReviewQueueResult:
        config = state.config
        self._raise_if_cancelled(state, token)

        self._set_phase(state, QueuePhase.REVIEWING, on_event)
        for worker in state.workers:
            on_event(WorkerUpdated(replace(worker)))
        await self._run_review_workers(state, on_event, token)
        self._raise_if_cancelled(state, token)

        if state.completed_count == 0:
            if config.run_aggregate or config.run_fix:
                raise ExecutionFailedError(
                    _all_workers_failed_message(state.workers),
                    job_id=state.job.job_id,
                )
            logger.warning(
                "All %d review workers of job %s failed; no downstream stage requested",
                len(state.workers),
                state.job.job_id,
            )

        if config.run_aggregate:
            self._set_phase(state, QueuePhase.AGGREGATING, on_event)
            aggregate_path = state.job.aggregate_path
            await self._run_stage(
                state,
                stage="aggregate",
                prompt=build_aggregate_prompt(
                    aggregate_prompt=config.aggregate_prompt.strip(),
                    workers=state.workers,
                ),
                output_path=aggregate_path,
                timeout=self.settings.aggregate_timeout_seconds,
                token=token,
            )
            state.aggregate_output_path = str(aggregate_path)
            on_event(AggregateReady(str(aggregate_path)))

        self._raise_if_cancelled(state, token)

        if config.run_fix:
            # intake already rejects fix-without-aggregate; re-checked against disk here
            if not config.run_aggregate or state.aggregate_output_path is None:
                raise InvalidStageConfigurationError
            aggregate_content = read_text_or_none(Path(state.aggregate_output_path))
            if aggregate_content is None:
                raise InvalidStageConfigurationError(
                    f"Aggregate output is missing: {state.aggregate_output_path}",
                )
            self._set_phase(state, QueuePhase.FIXING, on_event)
            fix_path = state.job.fix_path
            await self._run_stage(
                state,
                stage="fix",
                prompt=build_fix_prompt(
                    fix_prompt=config.fix_prompt.strip(),
                    aggregate_content=aggregate_content,
                ),
                output_path=fix_path,
                timeout=self.settings.fix_timeout_seconds,
                token=token,
            )
            state.fix_output_path = str(fix_path)
            on_event(FixReady(str(fix_path)))

        return ReviewQueueResult(
            job_id=state.job.job_id,
            job_path=str(state.job.path),
            workers=[replace(worker) for worker in state.workers],
            aggregate_output_path=state.aggregate_output_path,
            fix_output_path=state.fix_output_path,
            completed_worker_count=state.completed_count,
            failed_worker_count=state.failed_count,
        )

    async def _run_review_workers(
        self,
        state: _JobState,
        on_event: EventSink,
        token: CancellationToken,
    ) -> None:
        """Replenishing pool: start up to the cap, admit the next prompt as each one finishes."""

        cap = max_concurrent_workers(len(state.workers), self.settings.max_concurrent_workers)
        queued = deque(range(len(state.workers)))
        in_flight: dict[asyncio.Task[ReviewWorkerResult], int] = {}

        try:
            while queued or in_flight:
                while queued and len(in_flight) < cap and not token.is_cancelled:
                    index = queued.popleft()
                    worker = state.workers[index]
                    worker.status = WorkerStatus.RUNNING
                    on_event(WorkerUpdated(replace(worker)))
                    task = asyncio.create_task(self._execute_review_worker(state, worker, token))
                    in_flight[task] = index
                if not in_flight:
                    break
                done, _pending = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=in_flight.__getitem__):
                    index = in_flight.pop(task)
                    state.workers[index] = task.result()
                    on_event(WorkerUpdated(replace(state.workers[index])))
        finally:
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

        for worker in state.workers:
            if worker.status == WorkerStatus.PENDING:
                worker.error = NOT_ADMITTED_ERROR

    async def _execute_review_worker(
        self,
        state: _JobState,
        worker: ReviewWorkerResult,
        token: CancellationToken,
    ) -> ReviewWorkerResult:
        paths = state.job.worker_paths(worker.id)
        args = [
            *_base_exec_args(state.config),
            "review",
            "--json",
            "--output-last-message",
            str(paths.output_path),
            "-",
        ]
        result = await self.executor.execute_with_input(
            self.settings.cli_name,
            args,
            input_text=worker.prompt,
            cwd=state.config.workspace_path,
            timeout=self.settings.worker_timeout_seconds,
            cancellation=token,
        )

        _write_artifact(paths.stdout_path, result.stdout)
        _write_artifact(paths.stderr_path, result.stderr)
        _ensure_output(paths.output_path, result)

        finished = replace(
            worker,
            output_path=str(paths.output_path),
            stdout_path=str(paths.stdout_path),
            stderr_path=str(paths.stderr_path),
        )
        if result.success:
            finished.status = WorkerStatus.COMPLETED
            finished.error = None
            return finished

        finished.status = WorkerStatus.FAILED
        finished.error = (result.stderr or result.stdout).strip() or (
            f"exited with code {result.exit_code}"
        )
        logger.warning(
            "Review worker %d of job %s failed (exit code %d)",
            worker.id,
            state.job.job_id,
            result.exit_code,
        )
        return finished

    async def _run_stage(  # noqa: PLR0913
        self,
        state: _JobState,
        *,
        stage: str,
        prompt: str,
        output_path: Path,
        timeout: float,
        token: CancellationToken,
    ) -> None:
        args = [
            *_base_exec_args(state.config),
            "--json",
            "--output-last-message",
            str(output_path),
            "-",
        ]
        result = await self.executor.execute_with_input(
            self.settings.cli_name,
            args,
            input_text=prompt,
            cwd=state.config.workspace_path,
            timeout=timeout,
            cancellation=token,
        )
        if result.cancelled:
            raise QueueCancelledError(state.job.job_id)
        if not result.success:
            diagnostic = result.combined_output.strip()
            raise ExecutionFailedError(
                diagnostic or f"{stage} stage exited with code {result.exit_code}",
                output=result.combined_output,
                job_id=state.job.job_id,
            )
        _ensure_output(output_path, result)
        logger.info("Job %s %s stage wrote %s", state.job.job_id, stage, output_path)

    def _set_phase(self, state: _JobState, phase: QueuePhase, on_event: EventSink) -> None:
        state.phase = phase
        logger.info("Job %s phase -> %s", state.job.job_id, phase.value)
        on_event(PhaseChanged(phase))

    def _raise_if_cancelled(self, state: _JobState, token: CancellationToken) -> None:
        if token.is_cancelled:
            raise QueueCancelledError(state.job.job_id)

    def _finalize(
        self,
        state: _JobState,
        phase: QueuePhase,
        on_event: EventSink,
        *,
        message: str | None = None,
    ) -> None:
        if state.finalized:
            return
        state.finalized = True
        self._set_phase(state, phase, on_event)
        if message is not None:
            on_event(QueueFailed(message))
        summary = JobSummary(
            job_id=state.job.job_id,
            job_path=str(state.job.path),
            phase=phase,
            created_at=state.created_at,
            updated_at=datetime.now(tz=UTC),
            workers=[replace(worker) for worker in state.workers],
            aggregate_output_path=state.aggregate_output_path,
            fix_output_path=state.fix_output_path,
            run_aggregate=state.config.run_aggregate,
            run_fix=state.config.run_fix,
            model=_normalized_model(state.config),
        )
        try:
            write_summary(state.job.summary_path, summary)
        except (OSError, TypeError, ValueError):
            logger.exception("Failed to persist summary for job %s", state.job.job_id)


def _base_exec_args(config: ReviewQueueConfig) -> list[str]:
    args = ["exec"]
    model = _normalized_model(config)
    if model:
        args.extend(["--model", model])
    if config.full_auto:
        args.append("--full-auto")
    if config.skip_git_repo_check:
        args.append("--skip-git-repo-check")
    if config.ephemeral:
        args.append("--ephemeral")
    return args


def _normalized_model(config: ReviewQueueConfig) -> str | None:
    if config.model is None:
        return None
    return config.model.strip() or None


def _ensure_output(output_path: Path, result: ExecutionResult) -> None:
    """Fill a missing or empty last-message file from stdout, then raw output."""

    existing = read_text_or_none(output_path)
    if existing is not None and existing.strip():
        return
    fallback = parse_last_agent_message(result.stdout)
    if fallback is None:
        fallback = result.combined_output
    _write_artifact(output_path, fallback)


def _write_artifact(path: Path, content: str) -> None:
    try:
        path.write_text(content, "utf-8")
    except OSError:
        logger.exception("Failed to write %s", path)


def _all_workers_failed_message(workers: list[ReviewWorkerResult]) -> str:
    failures = [f"Worker {worker.id}: {worker.error}" for worker in workers if worker.error]
    if not failures:
        return "All review workers failed."
    return "All review workers failed:\n" + "\n".join(failures)
