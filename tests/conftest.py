"""Shared test fixtures."""

from __future__ import annotations

import json
import os
import stat
import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

import review_queue
from review_queue.config import QueueSettings
from review_queue.executor import CliExecutor
from review_queue.queue.models import ReviewQueueConfig
from review_queue.queue.service import ReviewQueueService

_SRC_DIR = Path(review_queue.__file__).resolve().parents[1]


@dataclass(slots=True)
class FakeCodex:
    """Shim directory with an executable `codex` backed by the echo agent."""

    bin_dir: Path
    binary: Path
    state_dir: Path

    def invocations(self) -> list[dict]:
        log = self.state_dir / "invocations.jsonl"
        if not log.exists():
            return []
        return [json.loads(line) for line in log.read_text("utf-8").splitlines() if line]

    def resolver(self, name: str) -> str | None:
        return str(self.binary) if name == "codex" else None


@pytest.fixture()
def fake_codex(tmp_path: Path, monkeypatch) -> FakeCodex:
    """Put a fake `codex` on PATH and record its invocations."""

    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    state_dir = tmp_path / "agent-state"
    state_dir.mkdir()
    binary = bin_dir / "codex"
    binary.write_text(
        "#!/usr/bin/env sh\n"
        f'PYTHONPATH="{_SRC_DIR}${{PYTHONPATH:+:$PYTHONPATH}}" '
        f'exec "{sys.executable}" -m review_queue.executor.echo_agent "$@"\n',
        "utf-8",
    )
    binary.chmod(binary.stat().st_mode | stat.S_IXUSR)
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    monkeypatch.setenv("ECHO_AGENT_STATE_DIR", str(state_dir))
    return FakeCodex(bin_dir=bin_dir, binary=binary, state_dir=state_dir)


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture()
def make_service(fake_codex: FakeCodex):
    """Factory for a service bound to the fake agent with test-sized limits."""

    def _make(**overrides) -> ReviewQueueService:
        grace = overrides.pop("graceful_shutdown_seconds", 1.0)
        settings = QueueSettings(
            **{
                "worker_timeout_seconds": 30,
                "aggregate_timeout_seconds": 40,
                "fix_timeout_seconds": 50,
                **overrides,
            },
        )
        executor = CliExecutor(
            graceful_shutdown_seconds=grace,
            binary_resolver=fake_codex.resolver,
        )
        return ReviewQueueService(executor=executor, settings=settings)

    return _make


@pytest.fixture()
def make_config(workspace: Path):
    def _make(prompts: list[str], **overrides) -> ReviewQueueConfig:
        return ReviewQueueConfig(
            workspace_path=str(workspace),
            review_prompts=prompts,
            aggregate_prompt=overrides.pop("aggregate_prompt", "Merge the findings"),
            fix_prompt=overrides.pop("fix_prompt", "Fix the findings"),
            **overrides,
        )

    return _make
