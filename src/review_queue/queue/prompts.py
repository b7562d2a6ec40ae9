"""Prompt defaults and builders for the review, aggregate and fix stages."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

from review_queue.queue.jobdir import read_text_or_none
from review_queue.queue.models import ReviewWorkerResult, WorkerStatus

DEFAULT_REVIEW_PROMPT = "Please perform a deep and comprehensive code review."
DEFAULT_AGGREGATE_PROMPT = (
    "Please review and verify whether these issues actually exist. For the ones that do, "
    "deduplicate them and give me the most complete issue list."
)
DEFAULT_FIX_PROMPT = "Please fix all of these issues."
DEFAULT_WORKER_COUNT = 3


def resolve_review_prompts(
    *,
    shared_prompt: str,
    worker_count: int,
    custom_prompts: Sequence[str] = (),
) -> list[str]:
    """Expand UI-style prompt input into one prompt per worker.

    Custom prompts win when given (blank entries dropped); otherwise the shared
    prompt is repeated once per worker.
    """

    if custom_prompts:
        return [prompt.strip() for prompt in custom_prompts if prompt.strip()]
    prompt = shared_prompt.strip()
    if not prompt:
        return []
    return [prompt] * max(1, worker_count)


def normalize_prompts(prompts: Sequence[str]) -> list[str]:
    return [prompt.strip() for prompt in prompts if prompt.strip()]


def build_aggregate_prompt(*, aggregate_prompt: str, workers: Sequence[ReviewWorkerResult]) -> str:
    sections = "\n\n".join(_worker_section(worker) for worker in workers)
    return (
        f"{aggregate_prompt}\n"
        f"\n"
        f"Please validate, deduplicate, and provide one complete issue list.\n"
        f"\n"
        f"{sections}\n"
    )


def build_fix_prompt(*, fix_prompt: str, aggregate_content: str) -> str:
    return (
        f"{fix_prompt}\n"
        f"\n"
        f"Use this validated issue list as the source of truth:\n"
        f"{aggregate_content}\n"
    )


def _worker_section(worker: ReviewWorkerResult) -> str:
    body: str | None = None
    if worker.status == WorkerStatus.FAILED and worker.error:
        body = f"ERROR: {worker.error}"
    elif worker.output_path:
        body = read_text_or_none(Path(worker.output_path))
    if body is None:
        body = "No output captured."
    return (
        f"## Worker {worker.id} ({worker.status.value})\n"
        f"Prompt:\n"
        f"{worker.prompt}\n"
        f"\n"
        f"Output:\n"
        f"{body}"
    )
