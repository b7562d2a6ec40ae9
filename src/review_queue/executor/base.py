"""Result and cancellation primitives shared by the process engine."""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass

TIMEOUT_EXIT_CODE = 124
LAUNCH_FAILED_EXIT_CODE = 127
CANCELLED_EXIT_CODE = 130


@dataclass(slots=True)
class ExecutionResult:
    """Captured outcome of one external process run."""

    stdout: str
    stderr: str
    exit_code: int
    success: bool
    timed_out: bool = False
    cancelled: bool = False

    @property
    def combined_output(self) -> str:
        if not self.stderr:
            return self.stdout
        if not self.stdout:
            return self.stderr
        return self.stdout + "\n" + self.stderr

    @classmethod
    def launch_failed(cls, message: str) -> ExecutionResult:
        return cls(stdout="", stderr=message, exit_code=LAUNCH_FAILED_EXIT_CODE, success=False)


class CancellationToken:
    """Cooperative cancellation flag for one job run.

    ``cancel()`` may be called from any thread (for example a signal handler or
    a UI thread); coroutines blocked in ``wait()`` are woken on their own loop.
    """

    def __init__(self) -> None:
        self._flag = threading.Event()
        self._lock = threading.Lock()
        self._waiters: set[tuple[asyncio.AbstractEventLoop, asyncio.Event]] = set()

    @property
    def is_cancelled(self) -> bool:
        return self._flag.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._flag.is_set():
                return
            self._flag.set()
            waiters = list(self._waiters)
        for loop, event in waiters:
            if loop.is_closed():
                continue
            loop.call_soon_threadsafe(event.set)

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""

        loop = asyncio.get_running_loop()
        event = asyncio.Event()
        waiter = (loop, event)
        with self._lock:
            if self._flag.is_set():
                return
            self._waiters.add(waiter)
        try:
            await event.wait()
        finally:
            with self._lock:
                self._waiters.discard(waiter)
