"""Error taxonomy for queue preconditions and execution outcomes."""

from __future__ import annotations


class ReviewQueueError(RuntimeError):
    """Base class for review queue failures surfaced to callers."""


class InvalidWorkspaceError(ReviewQueueError):
    """Workspace path does not exist or is not a directory."""

    def __init__(self, workspace_path: str) -> None:
        super().__init__(f"Workspace does not exist or is not a directory: {workspace_path}")
        self.workspace_path = workspace_path


class CliNotInstalledError(ReviewQueueError):
    """Review CLI could not be located by the execution engine."""

    def __init__(self, cli_name: str) -> None:
        super().__init__(f"CLI '{cli_name}' is not installed or not discoverable.")
        self.cli_name = cli_name


class EmptyPromptsError(ReviewQueueError):
    """No non-empty review prompt was supplied."""

    def __init__(self) -> None:
        super().__init__("At least one non-empty review prompt is required.")


class InvalidStageConfigurationError(ReviewQueueError):
    """Stage flags or stage prompts are inconsistent."""

    def __init__(self, message: str = "The fix stage requires the aggregate stage.") -> None:
        super().__init__(message)


class MissingAggregatePromptError(InvalidStageConfigurationError):
    """Aggregate stage enabled with an empty prompt."""

    def __init__(self) -> None:
        super().__init__("Aggregate prompt must not be empty when aggregation is enabled.")


class MissingFixPromptError(InvalidStageConfigurationError):
    """Fix stage enabled with an empty prompt."""

    def __init__(self) -> None:
        super().__init__("Fix prompt must not be empty when the fix stage is enabled.")


class QueueCancelledError(ReviewQueueError):
    """Run stopped because its cancellation token was tripped."""

    def __init__(self, job_id: str | None = None) -> None:
        super().__init__("Review queue run was cancelled.")
        self.job_id = job_id


class ExecutionFailedError(ReviewQueueError):
    """A pipeline stage failed; `output` carries CLI diagnostics when available."""

    def __init__(
        self,
        message: str,
        *,
        output: str | None = None,
        job_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.output = output
        self.job_id = job_id
