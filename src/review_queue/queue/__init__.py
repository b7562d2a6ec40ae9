"""Review queue: parallel review workers, aggregation and a fix pass.

Each run owns one job directory under the workspace cache dir. Every file a
worker or stage produces lives there, and `summary.json` is written on every
exit path so `history` can reconstruct past jobs even after a crash.
"""

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
from review_queue.queue.history import load_history
from review_queue.queue.models import (
    AggregateReady,
    EventSink,
    FixReady,
    PhaseChanged,
    QueueFailed,
    QueuePhase,
    ReviewQueueConfig,
    ReviewQueueEvent,
    ReviewQueueHistoryItem,
    ReviewQueueResult,
    ReviewWorkerResult,
    WorkerStatus,
    WorkerUpdated,
    max_concurrent_workers,
)
from review_queue.queue.output_fallback import parse_last_agent_message
from review_queue.queue.service import ReviewQueueService

__all__ = [
    "AggregateReady",
    "CliNotInstalledError",
    "EmptyPromptsError",
    "EventSink",
    "ExecutionFailedError",
    "FixReady",
    "InvalidStageConfigurationError",
    "InvalidWorkspaceError",
    "MissingAggregatePromptError",
    "MissingFixPromptError",
    "PhaseChanged",
    "QueueCancelledError",
    "QueueFailed",
    "QueuePhase",
    "ReviewQueueConfig",
    "ReviewQueueError",
    "ReviewQueueEvent",
    "ReviewQueueHistoryItem",
    "ReviewQueueResult",
    "ReviewQueueService",
    "ReviewWorkerResult",
    "WorkerStatus",
    "WorkerUpdated",
    "load_history",
    "max_concurrent_workers",
    "parse_last_agent_message",
]
