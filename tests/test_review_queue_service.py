from __future__ import annotations

import asyncio
import json
from pathlib import Path

import allure
import pytest

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
)
from review_queue.queue.models import (
    AggregateReady,
    FixReady,
    PhaseChanged,
    QueueFailed,
    QueuePhase,
    WorkerStatus,
    WorkerUpdated,
    max_concurrent_workers,
)
from review_queue.queue.service import NOT_ADMITTED_ERROR, ReviewQueueService

pytestmark = [
    allure.epic("Review Queue"),
    allure.feature("Pipeline Orchestration"),
]


def _cache_root(workspace: Path) -> Path:
    return workspace / ".runtime-cache" / "review-queue"


def _summary(job_path: str) -> dict:
    return json.loads((Path(job_path) / "summary.json").read_text("utf-8"))


def _only_job_dir(workspace: Path) -> Path:
    jobs = [path for path in _cache_root(workspace).iterdir() if path.is_dir()]
    assert len(jobs) == 1
    return jobs[0]


class _RecordingExecutor(CliExecutor):
    """Keeps every stdin payload; can drop `aggregate.md` right after the aggregate stage."""

    def __init__(self, *, drop_aggregate_output: bool = False, **kwargs) -> None:
        super().__init__(**kwargs)
        self.drop_aggregate_output = drop_aggregate_output
        self.inputs: list[str] = []

    async def execute_with_input(self, name, args=(), *, input_text, **kwargs) -> ExecutionResult:
        self.inputs.append(input_text)
        result = await super().execute_with_input(name, args, input_text=input_text, **kwargs)
        output_path = Path(args[-2])
        if self.drop_aggregate_output and output_path.name == "aggregate.md":
            output_path.unlink(missing_ok=True)
        return result


def _recording_service(fake_codex, **executor_options) -> ReviewQueueService:
    executor = _RecordingExecutor(binary_resolver=fake_codex.resolver, **executor_options)
    settings = QueueSettings(
        worker_timeout_seconds=30,
        aggregate_timeout_seconds=40,
        fix_timeout_seconds=50,
    )
    return ReviewQueueService(executor=executor, settings=settings)


async def _wait_for_invocations(fake_codex, count: int) -> None:
    for _ in range(400):
        if len(fake_codex.invocations()) >= count:
            return
        await asyncio.sleep(0.05)
    raise AssertionError(f"fake agent was not invoked {count} time(s)")


@pytest.mark.asyncio
async def test_run_queue_reviews_aggregates_and_fixes(
    make_service,
    make_config,
    fake_codex,
) -> None:
    service = make_service()
    config = make_config(["Review the parser", "Review the cache", "Review the CLI"])
    events = []

    result = await service.run_queue(config, events.append)

    job_path = Path(result.job_path)
    assert result.completed_worker_count == 3
    assert result.failed_worker_count == 0
    assert [worker.id for worker in result.workers] == [1, 2, 3]
    assert (job_path / "worker-02.md").read_text("utf-8") == "review result for: Review the cache"
    assert (job_path / "aggregate.md").read_text("utf-8") == "stage result for: Merge the findings"
    assert (job_path / "fix.md").read_text("utf-8") == "stage result for: Fix the findings"
    assert result.aggregate_output_path == str(job_path / "aggregate.md")
    assert result.fix_output_path == str(job_path / "fix.md")

    phases = [event.phase for event in events if isinstance(event, PhaseChanged)]
    assert phases == [
        QueuePhase.PREPARING,
        QueuePhase.REVIEWING,
        QueuePhase.AGGREGATING,
        QueuePhase.FIXING,
        QueuePhase.COMPLETED,
    ]
    assert [type(event) for event in events].index(AggregateReady) < [
        type(event) for event in events
    ].index(FixReady)
    assert not any(isinstance(event, QueueFailed) for event in events)

    summary = _summary(result.job_path)
    assert summary["phase"] == "completed"
    assert summary["worker_count"] == 3
    assert summary["completed_worker_count"] == 3
    assert summary["fix_output_path"] == str(job_path / "fix.md")

    modes = [entry["mode"] for entry in fake_codex.invocations()]
    assert modes.count("review") == 3
    assert modes[-2:] == ["stage", "stage"]


@pytest.mark.asyncio
async def test_worker_events_go_pending_running_then_terminal(make_service, make_config) -> None:
    service = make_service()
    events = []

    await service.run_queue(
        make_config(["Review A", "Review B"], run_aggregate=False, run_fix=False),
        events.append,
    )

    for worker_id in (1, 2):
        statuses = [
            event.worker.status
            for event in events
            if isinstance(event, WorkerUpdated) and event.worker.id == worker_id
        ]
        assert statuses == [WorkerStatus.PENDING, WorkerStatus.RUNNING, WorkerStatus.COMPLETED]


@pytest.mark.asyncio
async def test_partial_worker_failure_still_aggregates(make_config, fake_codex) -> None:
    service = _recording_service(fake_codex)
    config = make_config(
        [
            "Review A",
            "[agent:fail] Review B",
            "Review C",
            "[agent:fail] Review D",
            "Review E",
        ],
    )

    result = await service.run_queue(config, lambda _event: None)

    assert result.completed_worker_count == 3
    assert result.failed_worker_count == 2
    assert [worker.status for worker in result.workers] == [
        WorkerStatus.COMPLETED,
        WorkerStatus.FAILED,
        WorkerStatus.COMPLETED,
        WorkerStatus.FAILED,
        WorkerStatus.COMPLETED,
    ]
    aggregate_input = service.executor.inputs[-2]
    assert aggregate_input.startswith("Merge the findings")
    for worker in result.workers:
        assert f"## Worker {worker.id} ({worker.status.value})" in aggregate_input
        if worker.status == WorkerStatus.FAILED:
            assert f"ERROR: {worker.error}" in aggregate_input
    assert "review result for: Review C" in aggregate_input
    failed = result.workers[1]
    assert failed.status == WorkerStatus.FAILED
    assert "simulated failure for: Review B" in (failed.error or "")
    assert Path(failed.stderr_path or "").read_text("utf-8").strip() == (
        "simulated failure for: Review B"
    )
    assert _summary(result.job_path)["phase"] == "completed"
    assert result.fix_output_path is not None


@pytest.mark.asyncio
async def test_all_workers_failing_fails_the_job(
    make_service,
    make_config,
    fake_codex,
    workspace: Path,
) -> None:
    service = make_service()
    events = []

    with pytest.raises(ExecutionFailedError, match="All review workers failed") as exc_info:
        await service.run_queue(
            make_config(["[agent:fail] one", "[agent:fail] two"]),
            events.append,
        )

    message = str(exc_info.value)
    assert "Worker 1: simulated failure for: one" in message
    assert "Worker 2: simulated failure for: two" in message

    job_dir = _only_job_dir(workspace)
    summary = _summary(str(job_dir))
    assert summary["phase"] == "failed"
    assert summary["failed_worker_count"] == 2
    assert not (job_dir / "aggregate.md").exists()
    assert isinstance(events[-1], QueueFailed)
    assert [entry["mode"] for entry in fake_codex.invocations()] == ["review", "review"]


@pytest.mark.asyncio
async def test_all_workers_failing_without_downstream_stages_completes(
    make_service,
    make_config,
) -> None:
    service = make_service()

    result = await service.run_queue(
        make_config(["[agent:fail] only"], run_aggregate=False, run_fix=False),
        lambda _event: None,
    )

    assert result.failed_worker_count == 1
    assert _summary(result.job_path)["phase"] == "completed"


@pytest.mark.asyncio
async def test_aggregate_only_never_runs_fix(make_service, make_config, fake_codex) -> None:
    service = make_service()

    result = await service.run_queue(
        make_config(["Review A"], run_fix=False),
        lambda _event: None,
    )

    assert result.aggregate_output_path is not None
    assert result.fix_output_path is None
    assert not (Path(result.job_path) / "fix.md").exists()
    assert [entry["mode"] for entry in fake_codex.invocations()] == ["review", "stage"]


@pytest.mark.asyncio
async def test_fix_stage_refuses_to_start_without_aggregate_file(
    make_config,
    fake_codex,
    workspace: Path,
) -> None:
    service = _recording_service(fake_codex, drop_aggregate_output=True)
    events = []

    with pytest.raises(InvalidStageConfigurationError, match="Aggregate output is missing"):
        await service.run_queue(make_config(["Review A"]), events.append)

    assert [entry["mode"] for entry in fake_codex.invocations()] == ["review", "stage"]
    assert QueuePhase.FIXING not in [
        event.phase for event in events if isinstance(event, PhaseChanged)
    ]
    assert isinstance(events[-1], QueueFailed)
    job_dir = _only_job_dir(workspace)
    assert _summary(str(job_dir))["phase"] == "failed"
    assert not (job_dir / "fix.md").exists()


@pytest.mark.asyncio
async def test_pool_never_exceeds_concurrency_cap(make_service, make_config, fake_codex) -> None:
    service = make_service(max_concurrent_workers=2)
    prompts = [f"[agent:sleep=0.4] Review part {index}" for index in range(5)]

    result = await service.run_queue(
        make_config(prompts, run_aggregate=False, run_fix=False),
        lambda _event: None,
    )

    invocations = fake_codex.invocations()
    assert result.completed_worker_count == 5
    assert len(invocations) == 5
    assert max(entry["running"] for entry in invocations) <= 2


def test_max_concurrent_workers_bounds() -> None:
    assert max_concurrent_workers(0, 8) == 0
    assert max_concurrent_workers(3, 8) == 3
    assert max_concurrent_workers(20, 8) == 8


@pytest.mark.asyncio
async def test_cli_arguments_follow_config(make_service, make_config, fake_codex) -> None:
    service = make_service()
    config = make_config(
        ["Review A"],
        run_aggregate=False,
        run_fix=False,
        model="  gpt-5-codex ",
        full_auto=False,
        skip_git_repo_check=True,
        ephemeral=True,
    )

    result = await service.run_queue(config, lambda _event: None)

    [entry] = fake_codex.invocations()
    assert entry["model"] == "gpt-5-codex"
    assert entry["full_auto"] is False
    assert entry["skip_git_repo_check"] is True
    assert entry["ephemeral"] is True
    assert entry["output_last_message"] == str(Path(result.job_path) / "worker-01.md")
    assert _summary(result.job_path)["model"] == "gpt-5-codex"


@pytest.mark.asyncio
async def test_missing_output_file_is_recovered_from_jsonl_stdout(
    make_service,
    make_config,
) -> None:
    service = make_service()

    result = await service.run_queue(
        make_config(["[agent:stdout-only] Review A"], run_aggregate=False, run_fix=False),
        lambda _event: None,
    )

    output = Path(result.workers[0].output_path or "").read_text("utf-8")
    assert output == "review result for: Review A"
    stdout_log = Path(result.workers[0].stdout_path or "").read_text("utf-8")
    assert '"type": "thread.started"' in stdout_log


@pytest.mark.asyncio
async def test_cancellation_persists_cancelled_summary(
    make_service,
    make_config,
    fake_codex,
) -> None:
    service = make_service(graceful_shutdown_seconds=0.5)
    token = CancellationToken()
    events = []
    config = make_config(["[agent:sleep=30] A", "[agent:sleep=30] B"])

    task = asyncio.create_task(service.run_queue(config, events.append, cancellation=token))
    await _wait_for_invocations(fake_codex, 2)
    token.cancel()

    with pytest.raises(QueueCancelledError):
        await asyncio.wait_for(task, timeout=15)

    job_dir = _only_job_dir(Path(config.workspace_path))
    summary = _summary(str(job_dir))
    assert summary["phase"] == "cancelled"
    assert summary["worker_count"] == 2
    assert all(worker["status"] == "failed" for worker in summary["workers"])
    assert isinstance(events[-1], PhaseChanged)
    assert events[-1].phase == QueuePhase.CANCELLED
    assert not (job_dir / "aggregate.md").exists()


@pytest.mark.asyncio
async def test_cancellation_leaves_unadmitted_prompts_pending(
    make_service,
    make_config,
    fake_codex,
) -> None:
    service = make_service(max_concurrent_workers=1, graceful_shutdown_seconds=0.5)
    token = CancellationToken()
    config = make_config(["[agent:sleep=30] A", "B", "C"])

    task = asyncio.create_task(service.run_queue(config, lambda _event: None, cancellation=token))
    await _wait_for_invocations(fake_codex, 1)
    token.cancel()

    with pytest.raises(QueueCancelledError):
        await asyncio.wait_for(task, timeout=15)

    workers = _summary(str(_only_job_dir(Path(config.workspace_path))))["workers"]
    assert [worker["status"] for worker in workers] == ["failed", "pending", "pending"]
    assert workers[1]["error"] == NOT_ADMITTED_ERROR
    assert len(fake_codex.invocations()) == 1


@pytest.mark.asyncio
async def test_task_cancellation_is_recorded_as_cancelled(
    make_service,
    make_config,
    fake_codex,
) -> None:
    service = make_service(graceful_shutdown_seconds=0.5)
    config = make_config(["[agent:sleep=30] A"])

    task = asyncio.create_task(service.run_queue(config, lambda _event: None))
    await _wait_for_invocations(fake_codex, 1)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert _summary(str(_only_job_dir(Path(config.workspace_path))))["phase"] == "cancelled"


@pytest.mark.asyncio
async def test_failing_aggregate_stage_fails_job_with_diagnostics(
    make_service,
    make_config,
) -> None:
    service = make_service()
    config = make_config(["Review A"], aggregate_prompt="[agent:fail] Merge")

    with pytest.raises(ExecutionFailedError) as exc_info:
        await service.run_queue(config, lambda _event: None)

    assert "simulated failure for: Merge" in (exc_info.value.output or "")
    assert _summary(str(_only_job_dir(Path(config.workspace_path))))["phase"] == "failed"


@pytest.mark.asyncio
async def test_stage_timeout_is_reported_as_failure(make_service, make_config) -> None:
    service = make_service(
        worker_timeout_seconds=20,
        aggregate_timeout_seconds=1,
        fix_timeout_seconds=30,
        graceful_shutdown_seconds=0.5,
    )
    config = make_config(["Review A"], aggregate_prompt="[agent:sleep=30] Merge")

    with pytest.raises(ExecutionFailedError, match="timed out"):
        await service.run_queue(config, lambda _event: None)


@pytest.mark.parametrize(
    ("overrides", "error_type"),
    [
        ({"prompts": ["  ", ""]}, EmptyPromptsError),
        ({"run_aggregate": False, "run_fix": True}, InvalidStageConfigurationError),
        ({"aggregate_prompt": "  "}, MissingAggregatePromptError),
        ({"fix_prompt": ""}, MissingFixPromptError),
    ],
)
def test_validate_rejects_bad_config(make_service, make_config, workspace, overrides, error_type):
    service = make_service()
    prompts = overrides.pop("prompts", ["Review A"])

    with pytest.raises(error_type):
        service.validate(make_config(prompts, **overrides))

    assert not (workspace / ".runtime-cache").exists()


def test_validate_rejects_missing_workspace(make_service, make_config, tmp_path: Path) -> None:
    config = make_config(["Review A"])
    config.workspace_path = str(tmp_path / "missing")

    with pytest.raises(InvalidWorkspaceError):
        make_service().validate(config)


def test_validate_rejects_uninstalled_cli(make_service, make_config) -> None:
    service = make_service(cli_name="not-a-real-agent")

    with pytest.raises(CliNotInstalledError, match="not-a-real-agent"):
        service.validate(make_config(["Review A"]))


def test_validate_normalizes_prompts(make_service, make_config) -> None:
    prompts = make_service().validate(make_config(["  Review A  ", "", "Review B"]))

    assert prompts == ["Review A", "Review B"]


@pytest.mark.asyncio
async def test_rerun_config_selects_failed_prompts(make_service, make_config) -> None:
    service = make_service()
    config = make_config(
        ["Review A", "[agent:fail] Review B"],
        run_aggregate=False,
        run_fix=False,
        model="gpt-5",
    )
    result = await service.run_queue(config, lambda _event: None)

    rerun = service.rerun_config(config.workspace_path, result.job_id)

    assert rerun.review_prompts == ["[agent:fail] Review B"]
    assert rerun.model == "gpt-5"
    assert rerun.run_aggregate is False


@pytest.mark.asyncio
async def test_rerun_config_without_failures_is_rejected(make_service, make_config) -> None:
    service = make_service()
    config = make_config(["Review A"], run_aggregate=False, run_fix=False)
    result = await service.run_queue(config, lambda _event: None)

    with pytest.raises(EmptyPromptsError):
        service.rerun_config(config.workspace_path, result.job_id)
