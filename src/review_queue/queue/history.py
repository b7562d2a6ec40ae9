"""Read-only reconstruction of past jobs from a workspace's job cache."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from review_queue.config import DEFAULT_CACHE_DIR
from review_queue.queue.jobdir import (
    AGGREGATE_FILE,
    CONFIG_FILE,
    FIX_FILE,
    SUMMARY_FILE,
    WORKER_OUTPUT_PATTERN,
    parse_job_timestamp,
    read_config,
    read_summary,
    read_text_or_none,
)
from review_queue.queue.models import JobSummary, QueuePhase, ReviewQueueHistoryItem

logger = logging.getLogger(__name__)


def load_history(
    workspace: Path,
    cache_dir: Path = DEFAULT_CACHE_DIR,
) -> list[ReviewQueueHistoryItem]:
    """List jobs under `<workspace>/<cache_dir>`, newest first.

    A parseable `summary.json` is trusted as written. Jobs that crashed before
    writing one are inferred from the artifacts present on disk.
    """

    base = workspace / cache_dir
    try:
        entries = sorted(base.iterdir())
    except OSError:
        return []

    items: list[ReviewQueueHistoryItem] = []
    for entry in entries:
        if entry.name.startswith(".") or not entry.is_dir():
            continue
        items.append(reconcile_job(entry))
    return sort_history(items)


def reconcile_job(job_path: Path) -> ReviewQueueHistoryItem:
    """Build one history item from a job directory without modifying it."""

    summary_path = job_path / SUMMARY_FILE
    if summary_path.is_file():
        try:
            return _item_from_summary(read_summary(summary_path))
        except (OSError, TypeError, ValueError) as error:
            logger.warning("Ignoring unreadable %s: %s", summary_path, error)
    return _infer_item(job_path)


def sort_history(items: list[ReviewQueueHistoryItem]) -> list[ReviewQueueHistoryItem]:
    """Newest first by the id's embedded timestamp; unparseable ids after, by id descending."""

    dated: list[tuple[datetime, ReviewQueueHistoryItem]] = []
    undated: list[ReviewQueueHistoryItem] = []
    for item in items:
        timestamp = parse_job_timestamp(item.job_id)
        if timestamp is None:
            undated.append(item)
        else:
            dated.append((timestamp, item))
    dated.sort(key=lambda pair: (pair[0], pair[1].job_id), reverse=True)
    undated.sort(key=lambda item: item.job_id, reverse=True)
    return [item for _timestamp, item in dated] + undated


def _item_from_summary(summary: JobSummary) -> ReviewQueueHistoryItem:
    return ReviewQueueHistoryItem(
        job_id=summary.job_id,
        job_path=summary.job_path,
        created_at=summary.created_at,
        phase=summary.phase,
        worker_count=summary.worker_count,
        failed_worker_count=summary.failed_worker_count,
        completed_worker_count=summary.completed_worker_count,
        aggregate_output_path=summary.aggregate_output_path,
        fix_output_path=summary.fix_output_path,
        model=summary.model,
        from_summary=True,
    )


def _infer_item(job_path: Path) -> ReviewQueueHistoryItem:
    job_id = job_path.name
    try:
        worker_outputs = sorted(
            path for path in job_path.iterdir() if WORKER_OUTPUT_PATTERN.match(path.name)
        )
    except OSError as error:
        logger.warning("Cannot list %s: %s", job_path, error)
        worker_outputs = []
    failed = sum(1 for path in worker_outputs if _worker_failed(path))

    aggregate_path = job_path / AGGREGATE_FILE
    fix_path = job_path / FIX_FILE
    has_aggregate = aggregate_path.is_file()
    has_fix = fix_path.is_file()

    model: str | None = None
    fix_requested = True
    config_path = job_path / CONFIG_FILE
    if config_path.is_file():
        try:
            config = read_config(config_path)
        except (OSError, TypeError, ValueError) as error:
            logger.warning("Ignoring unreadable %s: %s", config_path, error)
        else:
            model = config.model
            fix_requested = config.run_fix

    if has_fix or (has_aggregate and not fix_requested):
        phase = QueuePhase.COMPLETED
    elif worker_outputs and failed == len(worker_outputs):
        phase = QueuePhase.FAILED
    elif has_aggregate:
        phase = QueuePhase.AGGREGATING
    else:
        phase = QueuePhase.REVIEWING

    return ReviewQueueHistoryItem(
        job_id=job_id,
        job_path=str(job_path),
        created_at=parse_job_timestamp(job_id),
        phase=phase,
        worker_count=len(worker_outputs),
        failed_worker_count=failed,
        completed_worker_count=len(worker_outputs) - failed,
        aggregate_output_path=str(aggregate_path) if has_aggregate else None,
        fix_output_path=str(fix_path) if has_fix else None,
        model=model,
    )


def _worker_failed(output_path: Path) -> bool:
    stderr_path = output_path.with_name(output_path.name.removesuffix(".md") + ".stderr.log")
    stderr = read_text_or_none(stderr_path)
    return bool(stderr and stderr.strip())
