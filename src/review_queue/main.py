"""CLI entrypoint for review-queue."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from review_queue import __version__
from review_queue.config import Settings
from review_queue.queue.controllers import (
    QueueHistoryCommand,
    QueueRerunCommand,
    QueueRunCommand,
    QueueRunOutcome,
    ReviewQueueCliController,
)
from review_queue.queue.errors import ReviewQueueError
from review_queue.queue.prompts import (
    DEFAULT_AGGREGATE_PROMPT,
    DEFAULT_FIX_PROMPT,
    DEFAULT_REVIEW_PROMPT,
    DEFAULT_WORKER_COUNT,
)

_T = TypeVar("_T")

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = ReviewQueueCliController()

_WORKSPACE_OPTION = click.option(
    "--workspace",
    type=click.Path(path_type=Path, file_okay=False),
    default=Path("."),
    show_default=True,
    help="Project directory the agents review. Job files go under its cache dir.",
)


@click.group()
@click.version_option(version=__version__, prog_name="review-queue")
def review_queue() -> None:
    """Run parallel code reviews with a CLI agent, merge the findings, apply fixes."""

    try:
        settings = Settings.from_env()
    except ValueError as error:
        raise click.ClickException(f"Invalid configuration: {error}") from error
    level = logging.getLevelName(settings.log_level)
    logging.basicConfig(
        level=level if isinstance(level, int) else logging.WARNING,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@review_queue.command("run")
@_WORKSPACE_OPTION
@click.option(
    "--prompt",
    "prompts",
    multiple=True,
    help="Review prompt for one worker. Can be repeated; overrides --shared-prompt/--workers.",
)
@click.option(
    "--shared-prompt",
    default=DEFAULT_REVIEW_PROMPT,
    show_default=True,
    help="Prompt given to every worker when no --prompt is passed.",
)
@click.option(
    "--workers",
    "worker_count",
    type=click.IntRange(min=1, max=64),
    default=DEFAULT_WORKER_COUNT,
    show_default=True,
    help="How many workers run the shared prompt.",
)
@click.option(
    "--aggregate-prompt",
    default=DEFAULT_AGGREGATE_PROMPT,
    show_default=True,
    help="Instruction for the aggregation stage.",
)
@click.option(
    "--fix-prompt",
    default=DEFAULT_FIX_PROMPT,
    show_default=True,
    help="Instruction for the fix stage.",
)
@click.option(
    "--aggregate/--no-aggregate",
    "run_aggregate",
    default=True,
    show_default=True,
    help="Merge worker findings into one validated list.",
)
@click.option(
    "--fix/--no-fix",
    "run_fix",
    default=True,
    show_default=True,
    help="Apply fixes for the aggregated list. Requires --aggregate.",
)
@click.option("--model", default=None, help="Model passed to the agent CLI.")
@click.option(
    "--full-auto/--no-full-auto",
    default=True,
    show_default=True,
    help="Let the agent run without approval prompts.",
)
@click.option(
    "--skip-git-repo-check",
    is_flag=True,
    default=False,
    help="Allow running outside a git repository.",
)
@click.option(
    "--ephemeral",
    is_flag=True,
    default=False,
    help="Do not persist agent sessions.",
)
def run(  # noqa: PLR0913
    workspace: Path,
    prompts: tuple[str, ...],
    shared_prompt: str,
    worker_count: int,
    aggregate_prompt: str,
    fix_prompt: str,
    run_aggregate: bool,
    run_fix: bool,
    model: str | None,
    full_auto: bool,
    skip_git_repo_check: bool,
    ephemeral: bool,
) -> None:
    """Start a review -> aggregate -> fix job and stream its progress."""

    outcome = _guarded(
        lambda: QUEUE_CONTROLLER.run(
            QueueRunCommand(
                workspace=workspace,
                shared_prompt=shared_prompt,
                worker_count=worker_count,
                aggregate_prompt=aggregate_prompt,
                fix_prompt=fix_prompt,
                custom_prompts=prompts,
                run_aggregate=run_aggregate,
                run_fix=run_fix,
                model=model,
                full_auto=full_auto,
                skip_git_repo_check=skip_git_repo_check,
                ephemeral=ephemeral,
            ),
            on_line=click.echo,
        ),
    )
    _finish(outcome)


@review_queue.command("rerun-failed")
@_WORKSPACE_OPTION
@click.argument("job_id")
def rerun_failed(workspace: Path, job_id: str) -> None:
    """Run the failed workers of a past job again as a new job."""

    outcome = _guarded(
        lambda: QUEUE_CONTROLLER.rerun_failed(
            QueueRerunCommand(workspace=workspace, job_id=job_id),
            on_line=click.echo,
        ),
    )
    _finish(outcome)


@review_queue.command("history")
@_WORKSPACE_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Max number of jobs to print, newest first.",
)
def history(workspace: Path, limit: int) -> None:
    """List past jobs of a workspace."""

    _emit_lines(
        _guarded(lambda: QUEUE_CONTROLLER.history(QueueHistoryCommand(workspace, limit))),
    )


@review_queue.command("detect")
def detect() -> None:
    """Show which AI coding CLIs are installed and where."""

    _emit_lines(_guarded(QUEUE_CONTROLLER.detect))


def _guarded(action: Callable[[], _T]) -> _T:
    try:
        return action()
    except (ReviewQueueError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _finish(outcome: QueueRunOutcome) -> None:
    _emit_lines(outcome.lines)
    if not outcome.success:
        raise click.ClickException(outcome.error or "Review queue run failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    review_queue()
