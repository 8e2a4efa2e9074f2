"""Collect evidence about the latest failed GitHub Actions run via ``gh``."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from ..tools.gh import GhError, gh_json, run_gh
from .bundle import EvidenceBundle, EvidenceKind
from .redact import redact

LOGGER = logging.getLogger(__name__)

_RUN_FIELDS = "databaseId,workflowName,headBranch,event,conclusion,createdAt,url"
_FAILED_CONCLUSIONS = frozenset({"failure", "cancelled", "timed_out"})
_FAILING_STEP_RE = re.compile(
    r"^(.+?)\s+\d{4}-\d{2}.*Process completed with exit code [1-9]", re.MULTILINE
)


class EvidenceError(RuntimeError):
    """Raised when evidence about a failed run cannot be gathered."""


@dataclass(slots=True)
class GithubEvidenceCollector:
    """Build an :class:`EvidenceBundle` for a failed run.

    The bundle always carries five items in a fixed order so that prompts and
    responses can refer to them as ``E1`` .. ``E5``: repository info, the failed
    run, its failed jobs, a redacted log tail, and the workflow definition.
    """

    repo_root: Path
    log_tail_lines: int = 200
    run_list_limit: int = 20
    timeout: float | None = 60.0

    def collect(self, run_id: Any = None) -> EvidenceBundle:
        """Collect evidence for ``run_id``, or for the latest failed run when omitted."""
        try:
            repo_info = self.repo_info()
            failed_run = self.latest_failed_run() if run_id is None else self.run_details(run_id)
            if failed_run is None:
                raise EvidenceError("No failed GitHub Actions runs found in this repository.")
            run_id = failed_run.get("databaseId") or run_id
            LOGGER.info("Collecting evidence for %s (#%s)", failed_run.get("workflowName"), run_id)
            jobs = self.failed_jobs(run_id)
            logs = self.run_logs(run_id)
        except GhError as error:
            raise EvidenceError(str(error)) from error

        workflow_yaml = self.workflow_file(str(failed_run.get("workflowName") or ""))
        return EvidenceBundle.build(
            [
                (EvidenceKind.REPO_INFO, repo_info),
                (
                    EvidenceKind.FAILED_RUN,
                    {
                        "runId": run_id,
                        "workflow": failed_run.get("workflowName"),
                        "branch": failed_run.get("headBranch"),
                        "event": failed_run.get("event"),
                        "conclusion": failed_run.get("conclusion"),
                        "createdAt": failed_run.get("createdAt"),
                        "url": failed_run.get("url"),
                        "failingStep": parse_failing_step(logs),
                    },
                ),
                (EvidenceKind.FAILED_JOBS, [_summarise_job(job) for job in jobs]),
                (EvidenceKind.LOG_EXCERPT, logs),
                (EvidenceKind.WORKFLOW_YAML, workflow_yaml),
            ]
        )

    # ----------------------------------------------------------------- queries
    def repo_info(self) -> dict[str, Any]:
        data = gh_json(
            ["repo", "view", "--json", "nameWithOwner,defaultBranchRef,url"],
            cwd=self.repo_root,
            timeout=self.timeout,
        )
        default_ref = data.get("defaultBranchRef") if isinstance(data, Mapping) else None
        return {
            "nameWithOwner": data.get("nameWithOwner"),
            "defaultBranch": (default_ref or {}).get("name") or "unknown",
            "url": data.get("url"),
        }

    def latest_failed_run(self) -> dict[str, Any] | None:
        runs = gh_json(
            [
                "run",
                "list",
                "--status",
                "failure",
                "--limit",
                str(self.run_list_limit),
                "--json",
                _RUN_FIELDS,
            ],
            cwd=self.repo_root,
            timeout=self.timeout,
        )
        for run in runs or []:
            if isinstance(run, Mapping) and run.get("conclusion") == "failure":
                return dict(run)
        return None

    def run_details(self, run_id: Any) -> dict[str, Any]:
        data = gh_json(
            ["run", "view", str(run_id), "--json", _RUN_FIELDS],
            cwd=self.repo_root,
            timeout=self.timeout,
        )
        if not isinstance(data, Mapping):
            raise EvidenceError(f"Unexpected gh output for run #{run_id}.")
        return dict(data)

    def failed_jobs(self, run_id: Any) -> list[dict[str, Any]]:
        data = gh_json(
            ["run", "view", str(run_id), "--json", "jobs"],
            cwd=self.repo_root,
            timeout=self.timeout,
        )
        jobs = data.get("jobs") if isinstance(data, Mapping) else None
        return [
            dict(job)
            for job in jobs or []
            if isinstance(job, Mapping) and job.get("conclusion") in _FAILED_CONCLUSIONS
        ]

    def run_logs(self, run_id: Any) -> str:
        """Return the redacted tail of the failed-step log (full log as fallback)."""
        for flag in ("--log-failed", "--log"):
            try:
                stdout = run_gh(["run", "view", str(run_id), flag], cwd=self.repo_root, timeout=self.timeout)
            except GhError as error:
                LOGGER.debug("gh run view %s %s failed: %s", run_id, flag, error)
                continue
            lines = stdout.split("\n")
            return redact("\n".join(lines[-self.log_tail_lines :]))
        return "[Could not retrieve logs]"

    def workflow_file(self, workflow_name: str) -> str:
        """Return the redacted workflow YAML whose ``name:`` matches ``workflow_name``."""
        workflows_dir = self.repo_root / ".github" / "workflows"
        if not workflows_dir.is_dir():
            return "[No .github/workflows directory found]"
        files = sorted(
            path for path in workflows_dir.iterdir() if path.suffix in {".yml", ".yaml"} and path.is_file()
        )
        if not files:
            return "[Could not locate workflow file]"
        candidates = (f"name: {workflow_name}", f"name: '{workflow_name}'", f'name: "{workflow_name}"')
        for path in files:
            content = path.read_text(encoding="utf-8", errors="replace")
            if workflow_name and any(candidate in content for candidate in candidates):
                return redact(content)
        return redact(files[0].read_text(encoding="utf-8", errors="replace"))


def _summarise_job(job: Mapping[str, Any]) -> dict[str, Any]:
    steps = job.get("steps") or []
    return {
        "name": job.get("name"),
        "conclusion": job.get("conclusion"),
        "steps": [
            {"name": step.get("name"), "conclusion": step.get("conclusion")}
            for step in steps
            if isinstance(step, Mapping) and step.get("conclusion") in _FAILED_CONCLUSIONS
        ],
    }


def parse_failing_step(log_text: str) -> str | None:
    """Best-effort extraction of the failing step name from Actions log output."""
    match = _FAILING_STEP_RE.search(log_text or "")
    return match.group(1).strip() if match else None


__all__ = ["EvidenceError", "GithubEvidenceCollector", "parse_failing_step"]
