"""Workflow run handles and the providers that look them up."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol

from ..tools.gh import GhError, gh_json, run_gh

LOGGER = logging.getLogger(__name__)


class PipelineError(RuntimeError):
    """Raised when the pipeline provider cannot be queried."""


class RunStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    @classmethod
    def parse(cls, value: Any) -> "RunStatus":
        text = str(value or "").strip().lower()
        if text == cls.COMPLETED.value:
            return cls.COMPLETED
        if text == cls.IN_PROGRESS.value:
            return cls.IN_PROGRESS
        # requested, waiting, pending and queued all mean "not started yet"
        return cls.QUEUED


class RunConclusion(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"

    @classmethod
    def parse(cls, value: Any) -> Optional["RunConclusion"]:
        """Map a provider conclusion onto success/failure; anything but success fails."""
        text = str(value or "").strip().lower()
        if not text:
            return None
        return cls.SUCCESS if text == cls.SUCCESS.value else cls.FAILURE


@dataclass(slots=True, frozen=True)
class RunHandle:
    """Snapshot of one workflow run."""

    id: int
    status: RunStatus
    conclusion: Optional[RunConclusion] = None
    workflow: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.status is RunStatus.COMPLETED

    @property
    def succeeded(self) -> bool:
        return self.completed and self.conclusion is RunConclusion.SUCCESS

    @classmethod
    def from_gh(cls, data: Mapping[str, Any], *, run_id: Any = None) -> "RunHandle":
        raw_id = data.get("databaseId", run_id)
        try:
            identifier = int(raw_id)
        except (TypeError, ValueError) as error:
            raise PipelineError(f"Run payload has no usable id: {data!r}") from error
        status = RunStatus.parse(data.get("status"))
        conclusion = RunConclusion.parse(data.get("conclusion")) if status is RunStatus.COMPLETED else None
        return cls(id=identifier, status=status, conclusion=conclusion, workflow=data.get("workflowName"))


class RunProvider(Protocol):
    """Minimal view of a CI provider: list, view and rerun runs."""

    def latest_run(self) -> Optional[RunHandle]: ...

    def view_run(self, run_id: int) -> RunHandle: ...

    def rerun_failed(self, run_id: int) -> None: ...


class GhRunProvider:
    """:class:`RunProvider` backed by ``gh run``."""

    def __init__(self, repo_root: Path | str, *, timeout: float | None = 60.0) -> None:
        self.repo_root = Path(repo_root)
        self.timeout = timeout

    def latest_run(self) -> Optional[RunHandle]:
        try:
            runs = gh_json(
                ["run", "list", "--limit", "1", "--json", "databaseId,status,conclusion,workflowName"],
                cwd=self.repo_root,
                timeout=self.timeout,
            )
        except GhError as error:
            raise PipelineError(str(error)) from error
        if not isinstance(runs, list) or not runs:
            return None
        return RunHandle.from_gh(runs[0])

    def view_run(self, run_id: int) -> RunHandle:
        try:
            data = gh_json(
                ["run", "view", str(run_id), "--json", "status,conclusion"],
                cwd=self.repo_root,
                timeout=self.timeout,
            )
        except GhError as error:
            raise PipelineError(str(error)) from error
        if not isinstance(data, Mapping):
            raise PipelineError(f"Unexpected payload for run {run_id}: {data!r}")
        return RunHandle.from_gh(data, run_id=run_id)

    def latest_failed_run_id(self) -> Optional[int]:
        try:
            runs = gh_json(
                ["run", "list", "--status", "failure", "--limit", "1", "--json", "databaseId"],
                cwd=self.repo_root,
                timeout=self.timeout,
            )
        except GhError as error:
            raise PipelineError(str(error)) from error
        if not isinstance(runs, list) or not runs:
            return None
        return RunHandle.from_gh(runs[0]).id

    def rerun_failed(self, run_id: int) -> None:
        LOGGER.info("Re-running failed jobs of run %s", run_id)
        try:
            run_gh(["run", "rerun", str(run_id), "--failed"], cwd=self.repo_root, timeout=self.timeout)
        except GhError as error:
            raise PipelineError(str(error)) from error


__all__ = [
    "GhRunProvider",
    "PipelineError",
    "RunConclusion",
    "RunHandle",
    "RunProvider",
    "RunStatus",
]
