"""Thin subprocess wrapper around the GitHub CLI (``gh``)."""

from __future__ import annotations

import json
import shutil
import subprocess
from pathlib import Path
from typing import Any, Sequence


class GhError(RuntimeError):
    """Raised when a ``gh`` command fails or returns unusable output."""


def ensure_gh() -> str:
    """Return the ``gh`` executable path or raise :class:`GhError`."""
    executable = shutil.which("gh")
    if executable is None:
        raise GhError(
            "GitHub CLI (gh) is not installed or not in PATH. "
            "Install it from https://cli.github.com and run `gh auth login`."
        )
    return executable


def run_gh(
    args: Sequence[str],
    *,
    cwd: Path | str | None = None,
    timeout: float | None = None,
) -> str:
    """Run ``gh`` with ``args`` and return its decoded stdout."""
    command = ["gh", *args]
    try:
        process = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            text=False,
            check=False,
            timeout=timeout,
        )
    except FileNotFoundError as error:
        raise GhError("GitHub CLI (gh) is not installed or not in PATH.") from error
    except subprocess.TimeoutExpired as error:
        raise GhError(f"gh {' '.join(args[:3])} timed out after {timeout}s") from error
    stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    if process.returncode != 0:
        message = stderr.strip() or stdout.strip() or "unknown gh error"
        raise GhError(f"gh {' '.join(args[:3])} failed: {message}")
    return stdout


def gh_json(
    args: Sequence[str],
    *,
    cwd: Path | str | None = None,
    timeout: float | None = None,
) -> Any:
    """Run ``gh`` and decode its stdout as JSON."""
    stdout = run_gh(args, cwd=cwd, timeout=timeout)
    try:
        return json.loads(stdout)
    except json.JSONDecodeError as error:
        raise GhError(f"gh {' '.join(args[:3])} returned invalid JSON: {stdout[:200]}") from error


__all__ = ["GhError", "ensure_gh", "gh_json", "run_gh"]
