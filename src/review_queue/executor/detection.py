"""Detection of well-known AI coding CLIs installed on this machine."""

from __future__ import annotations

from dataclasses import dataclass

from review_queue.executor.process import CliExecutor

KNOWN_CLIS: dict[str, str] = {
    "claude": "Claude Code",
    "codex": "Codex",
    "cursor": "Cursor",
    "gemini": "Gemini CLI",
    "gh": "GitHub CLI",
    "copilot": "GitHub Copilot",
}


@dataclass(slots=True)
class DetectedCli:
    """One known CLI and where (if anywhere) it was found."""

    name: str
    display_name: str
    binary_path: str | None
    installed: bool
    version: str | None


async def detect_installed_clis(
    executor: CliExecutor,
    *,
    known_clis: dict[str, str] | None = None,
    version_timeout_seconds: float = 5.0,
) -> list[DetectedCli]:
    """Probe each known CLI and read the first line of `--version` output."""

    detected: list[DetectedCli] = []
    for name, display_name in (known_clis or KNOWN_CLIS).items():
        binary_path = executor.find_binary(name)
        version: str | None = None
        if binary_path is not None:
            result = await executor.execute(
                binary_path,
                ["--version"],
                timeout=version_timeout_seconds,
            )
            if result.success:
                lines = result.stdout.strip().splitlines()
                version = lines[0] if lines else None
        detected.append(
            DetectedCli(
                name=name,
                display_name=display_name,
                binary_path=binary_path,
                installed=binary_path is not None,
                version=version,
            ),
        )
    return sorted(detected, key=lambda item: item.display_name)
