"""Process execution engine for external CLI tools."""

from review_queue.executor.base import (
    CANCELLED_EXIT_CODE,
    LAUNCH_FAILED_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    CancellationToken,
    ExecutionResult,
)
from review_queue.executor.locator import find_binary, is_cli_installed
from review_queue.executor.process import CliExecutor, terminate_process

__all__ = [
    "CANCELLED_EXIT_CODE",
    "LAUNCH_FAILED_EXIT_CODE",
    "TIMEOUT_EXIT_CODE",
    "CancellationToken",
    "CliExecutor",
    "ExecutionResult",
    "find_binary",
    "is_cli_installed",
    "terminate_process",
]
