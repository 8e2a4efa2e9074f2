"""Oracle transport that shells out to the GitHub Copilot CLI."""

from __future__ import annotations

import logging
import os
import subprocess
from typing import Any, Callable, Dict, Optional, Sequence

from ..tools.gh import GhError, ensure_gh
from .llm_client import LLMClient, LLMTransportError

__all__ = ["CopilotCliClient"]

LOGGER = logging.getLogger(__name__)

Runner = Callable[[Sequence[str], float], "subprocess.CompletedProcess[bytes]"]


def _default_runner(command: Sequence[str], timeout: float) -> "subprocess.CompletedProcess[bytes]":
    return subprocess.run(list(command), capture_output=True, text=False, check=False, timeout=timeout)


class CopilotCliClient(LLMClient):
    """Run ``gh copilot -p <prompt> -s`` and return its stdout."""

    def __init__(
        self,
        *,
        model: str = "copilot",
        timeout: float = 180.0,
        runner: Optional[Runner] = None,
    ) -> None:
        super().__init__(model=model)
        timeout_override = os.getenv("CIDOC_ORACLE_TIMEOUT")
        if timeout_override:
            try:
                parsed = float(timeout_override)
                if parsed > 0:
                    timeout = parsed
            except ValueError:
                LOGGER.warning("Ignoring non-numeric CIDOC_ORACLE_TIMEOUT=%r", timeout_override)
        self._timeout = timeout
        self._runner = runner

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        prompt = _prompt_text(payload)
        runner = self._runner
        if runner is None:
            try:
                ensure_gh()
            except GhError as error:
                raise LLMTransportError(str(error)) from error
            runner = _default_runner

        command = ["gh", "copilot", "-p", prompt, "-s", "--no-custom-instructions"]
        LOGGER.info("Calling Copilot CLI (timeout %.0fs)", self._timeout)
        try:
            process = runner(command, self._timeout)
        except subprocess.TimeoutExpired as error:
            raise LLMTransportError(f"Copilot CLI timed out after {self._timeout:.0f}s") from error
        except OSError as error:
            raise LLMTransportError(f"Copilot CLI could not be started: {error}") from error

        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        if process.returncode != 0:
            message = stderr.strip() or stdout.strip() or f"exit code {process.returncode}"
            raise LLMTransportError(f"Copilot CLI invocation failed: {message}")
        return stdout


def _prompt_text(payload: Dict[str, Any]) -> str:
    """Flatten the Responses-style message list into one prompt string."""
    parts: list[str] = []
    for message in payload.get("input") or []:
        for content in message.get("content") or []:
            text = content.get("text") if isinstance(content, dict) else None
            if isinstance(text, str) and text:
                parts.append(text)
    return "\n\n".join(parts)
