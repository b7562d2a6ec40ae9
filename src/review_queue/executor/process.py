"""Asyncio subprocess runner with continuous output capture."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import enum
import logging
import os
import threading
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

from review_queue.executor.base import (
    CANCELLED_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    CancellationToken,
    ExecutionResult,
)
from review_queue.executor.locator import find_binary

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 64 * 1024
_STDOUT = "stdout"
_STDERR = "stderr"


class _WaitOutcome(enum.Enum):
    EXITED = "exited"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class _OutputCapture:
    """Per-process stdout/stderr accumulator.

    Both reader tasks append here while the process runs; snapshots may be
    taken from other threads, so every access goes through the lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._chunks: dict[str, list[str]] = {_STDOUT: [], _STDERR: []}
        self._decoders = {
            _STDOUT: codecs.getincrementaldecoder("utf-8")(errors="replace"),
            _STDERR: codecs.getincrementaldecoder("utf-8")(errors="replace"),
        }

    def append(self, stream: str, data: bytes, *, final: bool = False) -> None:
        with self._lock:
            text = self._decoders[stream].decode(data, final=final)
            if text:
                self._chunks[stream].append(text)

    def text(self, stream: str) -> str:
        with self._lock:
            return "".join(self._chunks[stream])


class CliExecutor:
    """Locate and run external CLI binaries under timeout and cancellation.

    Never raises for slow or failing children: every run ends in an
    `ExecutionResult`, with timeout, cancellation and launch failure reported
    through distinct exit codes.
    """

    def __init__(
        self,
        *,
        graceful_shutdown_seconds: float = 5.0,
        binary_resolver: Callable[[str], str | None] = find_binary,
    ) -> None:
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self._binary_resolver = binary_resolver

    def find_binary(self, name: str) -> str | None:
        return self._binary_resolver(name)

    def is_cli_installed(self, name: str) -> bool:
        return self.find_binary(name) is not None

    async def execute(  # noqa: PLR0913
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | Path | None = None,
        timeout: float = 30.0,
        cancellation: CancellationToken | None = None,
    ) -> ExecutionResult:
        """Run `command` with stdin detached and return captured output."""

        return await self._run(
            command,
            args,
            input_text=None,
            env=env,
            cwd=cwd,
            timeout=timeout,
            cancellation=cancellation,
        )

    async def execute_cli(  # noqa: PLR0913
        self,
        name: str,
        args: Sequence[str] = (),
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | Path | None = None,
        timeout: float = 30.0,
        cancellation: CancellationToken | None = None,
    ) -> ExecutionResult:
        """Resolve CLI `name` via `find_binary` and run it."""

        binary = self.find_binary(name)
        if binary is None:
            return ExecutionResult.launch_failed(f"CLI '{name}' not found")
        return await self.execute(
            binary,
            args,
            env=env,
            cwd=cwd,
            timeout=timeout,
            cancellation=cancellation,
        )

    async def execute_with_input(  # noqa: PLR0913
        self,
        name: str,
        args: Sequence[str] = (),
        *,
        input_text: str,
        cwd: str | Path | None = None,
        timeout: float = 30.0,
        env: Mapping[str, str] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> ExecutionResult:
        """Resolve CLI `name`, feed `input_text` on stdin and capture output.

        stdout and stderr are drained while the child runs, so a chatty child
        can never stall on a full pipe buffer.
        """

        binary = self.find_binary(name)
        if binary is None:
            return ExecutionResult.launch_failed(f"CLI '{name}' not found")
        return await self._run(
            binary,
            args,
            input_text=input_text,
            env=env,
            cwd=cwd,
            timeout=timeout,
            cancellation=cancellation,
        )

    async def _run(  # noqa: PLR0913
        self,
        executable: str,
        args: Sequence[str],
        *,
        input_text: str | None,
        env: Mapping[str, str] | None,
        cwd: str | Path | None,
        timeout: float,
        cancellation: CancellationToken | None,
    ) -> ExecutionResult:
        if cancellation is not None and cancellation.is_cancelled:
            return _cancelled_result(stdout="", stderr="")

        stdin = asyncio.subprocess.DEVNULL if input_text is None else asyncio.subprocess.PIPE
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd is not None else None,
                env=_merged_env(env),
            )
        except OSError as error:
            logger.warning("Failed to start %s: %s", executable, error)
            return ExecutionResult.launch_failed(f"Failed to start {executable}: {error}")

        logger.debug("Started pid=%s: %s %s", process.pid, executable, " ".join(args))
        capture = _OutputCapture()
        background: list[asyncio.Task[None]] = [
            asyncio.create_task(_drain(process.stdout, _STDOUT, capture)),
            asyncio.create_task(_drain(process.stderr, _STDERR, capture)),
        ]
        if input_text is not None:
            background.append(asyncio.create_task(_feed_stdin(process, input_text)))

        try:
            outcome = await _wait_for_exit(process, timeout=timeout, cancellation=cancellation)
            if outcome is not _WaitOutcome.EXITED:
                await terminate_process(process, self.graceful_shutdown_seconds)
            await _join(background, grace_seconds=max(1.0, self.graceful_shutdown_seconds))
        except asyncio.CancelledError:
            await terminate_process(process, self.graceful_shutdown_seconds)
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            raise

        stdout = capture.text(_STDOUT)
        stderr = capture.text(_STDERR)
        if outcome is _WaitOutcome.TIMED_OUT:
            timeout_text = _format_seconds(timeout)
            logger.warning("Timed out after %ss: %s", timeout_text, executable)
            return ExecutionResult(
                stdout=stdout,
                stderr=_append_line(stderr, f"Command timed out after {timeout_text} seconds"),
                exit_code=TIMEOUT_EXIT_CODE,
                success=False,
                timed_out=True,
            )
        if outcome is _WaitOutcome.CANCELLED:
            logger.info("Cancelled: %s", executable)
            return _cancelled_result(stdout=stdout, stderr=stderr)

        returncode = process.returncode if process.returncode is not None else 1
        return ExecutionResult(
            stdout=stdout,
            stderr=stderr,
            exit_code=returncode,
            success=returncode == 0,
        )


async def terminate_process(process: asyncio.subprocess.Process, grace_seconds: float) -> None:
    """SIGTERM, wait `grace_seconds`, then SIGKILL. No-op once the process exited."""

    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=max(0.0, grace_seconds))
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()


async def _wait_for_exit(
    process: asyncio.subprocess.Process,
    *,
    timeout: float,
    cancellation: CancellationToken | None,
) -> _WaitOutcome:
    exit_task = asyncio.create_task(process.wait())
    waiters: set[asyncio.Task[object]] = {exit_task}
    cancel_task: asyncio.Task[None] | None = None
    if cancellation is not None:
        cancel_task = asyncio.create_task(cancellation.wait())
        waiters.add(cancel_task)

    try:
        done, _pending = await asyncio.wait(
            waiters,
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        for task in waiters:
            if not task.done():
                task.cancel()

    if exit_task in done:
        return _WaitOutcome.EXITED
    if cancel_task is not None and cancel_task in done:
        return _WaitOutcome.CANCELLED
    return _WaitOutcome.TIMED_OUT


async def _drain(stream: asyncio.StreamReader | None, name: str, capture: _OutputCapture) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            break
        capture.append(name, chunk)
    capture.append(name, b"", final=True)


async def _feed_stdin(process: asyncio.subprocess.Process, input_text: str) -> None:
    stdin = process.stdin
    if stdin is None:
        return
    try:
        stdin.write(input_text.encode("utf-8"))
        await stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        logger.debug("Child pid=%s closed stdin before reading all input", process.pid)
    finally:
        stdin.close()
        with contextlib.suppress(BrokenPipeError, ConnectionResetError):
            await stdin.wait_closed()


async def _join(tasks: list[asyncio.Task[None]], *, grace_seconds: float) -> None:
    """Wait for reader/writer tasks; abandon ones kept alive by orphaned grandchildren."""

    done, pending = await asyncio.wait(tasks, timeout=grace_seconds)
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
    for task in done:
        if task.cancelled():
            continue
        error = task.exception()
        if error is not None:
            logger.warning("Process I/O task failed: %s", error)


def _cancelled_result(*, stdout: str, stderr: str) -> ExecutionResult:
    return ExecutionResult(
        stdout=stdout,
        stderr=_append_line(stderr, "Command cancelled"),
        exit_code=CANCELLED_EXIT_CODE,
        success=False,
        cancelled=True,
    )


def _merged_env(overrides: Mapping[str, str] | None) -> dict[str, str] | None:
    if overrides is None:
        return None
    env = os.environ.copy()
    env.update(overrides)
    return env


def _append_line(text: str, line: str) -> str:
    if not text:
        return line
    if text.endswith("\n"):
        return text + line
    return text + "\n" + line


def _format_seconds(value: float) -> str:
    return f"{value:g}"
