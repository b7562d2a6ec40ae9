"""Executable discovery across PATH, common install dirs and version managers."""

from __future__ import annotations

import os
import shutil
from collections.abc import Mapping
from pathlib import Path

# Checked in order after PATH; "~" is expanded against the resolved home.
SEARCH_DIRS: tuple[str, ...] = (
    "/usr/local/bin",
    "/opt/homebrew/bin",
    "/usr/bin",
    "~/.local/bin",
    "~/.cargo/bin",
    "~/.bun/bin",
    "~/.deno/bin",
    "~/.npm-global/bin",
    "~/.opencode/bin",
    "~/.volta/bin",
    "~/.asdf/shims",
    "~/.local/share/mise/shims",
)


def find_binary(
    name: str,
    *,
    home: Path | None = None,
    environ: Mapping[str, str] | None = None,
    search_path: str | None = None,
) -> str | None:
    """Return the absolute path of executable `name`, or None if not installed."""

    env = os.environ if environ is None else environ
    home_dir = home or Path.home()

    on_path = shutil.which(name, path=search_path if search_path is not None else env.get("PATH"))
    if on_path:
        return on_path

    for raw_dir in SEARCH_DIRS:
        candidate = _expand_home(raw_dir, home_dir) / name
        if _is_executable_file(candidate):
            return str(candidate)

    return _find_in_version_managers(name, home=home_dir, environ=env)


def is_cli_installed(name: str) -> bool:
    return find_binary(name) is not None


def _find_in_version_managers(
    name: str,
    *,
    home: Path,
    environ: Mapping[str, str],
) -> str | None:
    nvm_base = home / ".nvm" / "versions" / "node"
    for version in _versions_descending(nvm_base):
        candidate = nvm_base / version / "bin" / name
        if _is_executable_file(candidate):
            return str(candidate)

    xdg_data_home = environ.get("XDG_DATA_HOME") or str(home / ".local" / "share")
    fnm_bases = (
        Path(xdg_data_home) / "fnm" / "node-versions",
        home / ".fnm" / "node-versions",
    )
    for fnm_base in fnm_bases:
        versions = _versions_descending(fnm_base)
        if not versions:
            continue
        for version in versions:
            candidate = fnm_base / version / "installation" / "bin" / name
            if _is_executable_file(candidate):
                return str(candidate)
        # an fnm tree with versions exists, the legacy location is stale
        break

    return None


def _versions_descending(base: Path) -> list[str]:
    try:
        entries = os.listdir(base)
    except OSError:
        return []
    return sorted(entries, reverse=True)


def _expand_home(raw_dir: str, home: Path) -> Path:
    if raw_dir == "~":
        return home
    if raw_dir.startswith("~/"):
        return home / raw_dir[2:]
    return Path(raw_dir)


def _is_executable_file(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)
