"""Safe-apply gate: the only component allowed to write to the working tree.

A proposed fix moves through ``proposed -> policy_checked -> dry_run_validated
-> branch_created -> applied -> committed``.  It can be rejected at any step
before a branch exists; once a branch exists any failure rolls the repository
back to the checkpoint taken before the branch was created and deletes the
branch.  Nothing is ever written to the branch that was active on entry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Mapping, Optional

from .cache import APPLY_ERROR_FILE, PATCH_FILE, ResultCache
from .evidence.redact import redact
from .oracle.contract import DiagnosticRecord, RiskLevel
from .telemetry import emit_event
from .tools.patch import PatchCheck, PatchError, PatchProposal, apply_patch, check_patch
from .tools.vcs import GitCheckpoint, GitError, GitRepository

LOGGER = logging.getLogger(__name__)

DEFAULT_BRANCH_PREFIX = "ci-fix"
DEFAULT_COMMIT_PREFIX = "CI Doctor:"
INTERACTIVE_MIN_CONFIDENCE = 60
UNATTENDED_MIN_CONFIDENCE = 80


class GateState(str, Enum):
    PROPOSED = "proposed"
    POLICY_CHECKED = "policy_checked"
    DRY_RUN_VALIDATED = "dry_run_validated"
    BRANCH_CREATED = "branch_created"
    APPLIED = "applied"
    COMMITTED = "committed"
    REJECTED = "rejected"
    ROLLED_BACK = "rolled_back"


@dataclass(slots=True, frozen=True)
class PolicyDecision:
    """Outcome of the confidence and risk policy for one record."""

    allowed: bool
    reason: Optional[str] = None
    confidence: Optional[int] = None


@dataclass(slots=True)
class GateResult:
    """Terminal state of one gate invocation and the path that led there."""

    state: GateState
    branch: Optional[str] = None
    commit: Optional[str] = None
    reason: Optional[str] = None
    proposal: Optional[PatchProposal] = None
    transitions: List[GateState] = field(default_factory=list)
    details: Mapping[str, Any] = field(default_factory=dict)

    @property
    def committed(self) -> bool:
        return self.state is GateState.COMMITTED


class SafeApplyGate:
    """Check, validate, branch, apply and commit one proposed patch."""

    def __init__(
        self,
        repo: GitRepository,
        *,
        branch_prefix: str = DEFAULT_BRANCH_PREFIX,
        commit_prefix: str = DEFAULT_COMMIT_PREFIX,
        clock: Optional[Callable[[], datetime]] = None,
        cache: Optional[ResultCache] = None,
    ) -> None:
        self.repo = repo
        self.branch_prefix = branch_prefix.rstrip("/")
        self.commit_prefix = commit_prefix
        self._clock = clock or datetime.now
        self._cache = cache

    # ----------------------------------------------------------------- steps
    def branch_name(self) -> str:
        """Return ``<prefix>/YYYYMMDD-HHMMSS`` for the current local time."""
        return f"{self.branch_prefix}/{self._clock().strftime('%Y%m%d-%H%M%S')}"

    def commit_message(self, description: Optional[str]) -> str:
        text = (description or "").strip() or "automated fix"
        return f"{self.commit_prefix} {text}"

    def check_policy(self, record: DiagnosticRecord, threshold: int) -> PolicyDecision:
        """Apply the hard confidence and risk policy; there is no override."""
        confidence = record.effective_confidence
        if record.risk is RiskLevel.HIGH:
            return PolicyDecision(False, "Risk level is HIGH; not applying automatically.", confidence)
        if confidence is None:
            return PolicyDecision(False, "Record carries no confidence.", None)
        if confidence < threshold:
            return PolicyDecision(
                False,
                f"Confidence too low ({confidence}% < {threshold}%); not applying automatically.",
                confidence,
            )
        if not (record.patch or "").strip():
            return PolicyDecision(False, "Record carries no patch.", confidence)
        return PolicyDecision(True, None, confidence)

    def validate(self, proposal: PatchProposal) -> PatchCheck:
        """Dry-run ``proposal`` against a clean working tree."""
        pending = self.repo.working_tree_changes(include_untracked=True)
        if pending:
            listed = ", ".join(path.as_posix() for path in pending[:5])
            more = f" (+{len(pending) - 5} more)" if len(pending) > 5 else ""
            return PatchCheck(
                ok=False,
                returncode=-1,
                stderr=f"Working tree has uncommitted changes: {listed}{more}",
            )
        return check_patch(self.repo, proposal)

    def apply(
        self,
        proposal: PatchProposal,
        branch_name: str,
        description: Optional[str],
        *,
        transitions: Optional[List[GateState]] = None,
    ) -> GateResult:
        """Create ``branch_name``, apply ``proposal`` and commit it.

        An existing ``branch_name`` rejects the call before anything changes.
        """

        trail = transitions if transitions is not None else []
        if self.repo.branch_exists(branch_name):
            return self._reject(trail, f"Branch already exists: {branch_name}", proposal=proposal)

        checkpoint = self.repo.create_checkpoint()
        try:
            self.repo.create_branch(branch_name)
        except GitError as error:
            return self._reject(trail, redact(str(error)), proposal=proposal)
        self._advance(trail, GateState.BRANCH_CREATED, branch=branch_name)

        try:
            apply_patch(self.repo, proposal)
            self._advance(trail, GateState.APPLIED, branch=branch_name)
            commit = self.repo.commit_all(self.commit_message(description))
        except (PatchError, GitError) as error:
            reason = redact(str(error))
            details = dict(getattr(error, "details", {}) or {})
            self._record_apply_error(reason)
            self._rollback(checkpoint, branch_name)
            self._advance(trail, GateState.ROLLED_BACK, branch=branch_name)
            emit_event("gate_rolled_back", branch=branch_name, reason=reason)
            LOGGER.warning("Rolled back %s: %s", branch_name, reason)
            return GateResult(
                state=GateState.ROLLED_BACK,
                branch=None,
                reason=reason,
                proposal=proposal,
                transitions=trail,
                details=details,
            )

        self._advance(trail, GateState.COMMITTED, branch=branch_name)
        emit_event("gate_committed", branch=branch_name, commit=commit, hunks=proposal.hunk_count)
        LOGGER.info("Committed fix %s on %s", commit[:12], branch_name)
        return GateResult(
            state=GateState.COMMITTED,
            branch=branch_name,
            commit=commit,
            proposal=proposal,
            transitions=trail,
        )

    def run(
        self,
        record: DiagnosticRecord,
        threshold: int,
        *,
        description: Optional[str] = None,
    ) -> GateResult:
        """Drive ``record`` through every gate step."""
        trail: List[GateState] = []
        self._advance(trail, GateState.PROPOSED)

        decision = self.check_policy(record, threshold)
        if not decision.allowed:
            return self._reject(trail, decision.reason or "Policy rejected the record.")
        self._advance(trail, GateState.POLICY_CHECKED)

        proposal = PatchProposal.from_text(record.patch or "")
        if self._cache is not None:
            self._cache.write_text(PATCH_FILE, proposal.normalized_text)

        check = self.validate(proposal)
        if not check.ok:
            reason = redact(check.message)
            self._record_apply_error(reason)
            return self._reject(
                trail,
                f"Patch dry-run failed: {reason}",
                proposal=proposal,
                details={"failing_hunks": [dict(item) for item in check.failing_hunks]},
            )
        self._advance(trail, GateState.DRY_RUN_VALIDATED)

        return self.apply(
            proposal,
            self.branch_name(),
            description if description is not None else record.description,
            transitions=trail,
        )

    # --------------------------------------------------------------- helpers
    def _advance(self, trail: List[GateState], state: GateState, **fields: Any) -> None:
        trail.append(state)
        emit_event("gate_transition", state=state, **fields)

    def _reject(
        self,
        trail: List[GateState],
        reason: str,
        *,
        proposal: Optional[PatchProposal] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> GateResult:
        self._advance(trail, GateState.REJECTED)
        emit_event("gate_rejected", reason=reason)
        LOGGER.info("Gate rejected fix: %s", reason)
        return GateResult(
            state=GateState.REJECTED,
            reason=reason,
            proposal=proposal,
            transitions=trail,
            details=dict(details or {}),
        )

    def _rollback(self, checkpoint: GitCheckpoint, branch_name: str) -> None:
        self.repo.restore_checkpoint(checkpoint)
        if self.repo.current_branch() != branch_name and self.repo.branch_exists(branch_name):
            self.repo.delete_branch(branch_name)

    def _record_apply_error(self, reason: str) -> None:
        if self._cache is None:
            return
        try:
            self._cache.write_text(APPLY_ERROR_FILE, reason + "\n")
        except OSError as error:
            LOGGER.debug("Could not cache apply error: %s", error)


__all__ = [
    "DEFAULT_BRANCH_PREFIX",
    "DEFAULT_COMMIT_PREFIX",
    "INTERACTIVE_MIN_CONFIDENCE",
    "UNATTENDED_MIN_CONFIDENCE",
    "GateResult",
    "GateState",
    "PolicyDecision",
    "SafeApplyGate",
]
