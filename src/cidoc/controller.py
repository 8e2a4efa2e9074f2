"""Convergence controller: diagnose, fix, push and re-check until CI passes.

Each iteration runs the same sequence:

1. look at the current run, waiting for it when it is missing or still
   running; a passing run ends the loop;
2. collect evidence for that run and ask the oracle for a diagnostic record;
3. stop when the record's confidence is below ``min_confidence``;
4. hand the record to the safe-apply gate;
5. push the fix branch;
6. wait for the run the push triggered; success or timeout ends the loop,
   another failure starts the next iteration.

Failures in any step become a terminal :class:`IterationRecord`; the history
is the only place the final outcome is read from.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, List, Mapping, Optional, Protocol, Tuple

from .cache import ResultCache, result_file
from .evidence.bundle import EvidenceBundle
from .evidence.github import EvidenceError
from .evidence.redact import redact
from .gate import UNATTENDED_MIN_CONFIDENCE, GateResult
from .oracle.contract import DiagnosticMode, DiagnosticRecord, OracleError
from .pipeline.poller import DEFAULT_POLL_INTERVAL, DEFAULT_POLL_TIMEOUT, RunPoller
from .pipeline.runs import PipelineError, RunHandle
from .telemetry import emit_event
from .tools.gh import GhError
from .tools.patch import PatchError
from .tools.vcs import GitError

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 5


class IterationOutcome(str, Enum):
    SUCCESS = "success"
    LOW_CONFIDENCE = "low-confidence"
    APPLY_FAILED = "apply-failed"
    PUSH_FAILED = "push-failed"
    TIMEOUT = "timeout"
    MAX_ITERATIONS = "max-iterations"
    FIX_PUSHED = "fix-pushed"

    @property
    def terminal(self) -> bool:
        return self is not IterationOutcome.FIX_PUSHED


@dataclass(slots=True, frozen=True)
class IterationRecord:
    """One entry of the controller history.

    ``synthetic`` marks the half-step records that carry the result of the run
    a pushed fix triggered, and the closing ``max-iterations`` record.
    """

    index: int
    outcome: IterationOutcome
    confidence: Optional[int] = None
    reason: Optional[str] = None
    branch: Optional[str] = None
    description: Optional[str] = None
    synthetic: bool = False

    def __post_init__(self) -> None:
        if self.index < 1:
            raise ValueError("iteration index must be >= 1")

    @property
    def label(self) -> str:
        if self.synthetic and self.outcome is not IterationOutcome.MAX_ITERATIONS:
            return f"{self.index}.5"
        return str(self.index)

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.label,
            "outcome": self.outcome.value,
            "confidence": self.confidence,
            "reason": self.reason,
            "branch": self.branch,
            "description": self.description,
            "synthetic": self.synthetic,
        }


class IterationHistory:
    """Append-only record of one controller run, read-only outside the controller."""

    def __init__(self) -> None:
        self._records: List[IterationRecord] = []

    def _append(self, record: IterationRecord) -> None:
        if self.terminal_record is not None:
            raise RuntimeError("History already holds a terminal record.")
        self._records.append(record)

    @property
    def records(self) -> Tuple[IterationRecord, ...]:
        return tuple(self._records)

    def __iter__(self) -> Iterator[IterationRecord]:
        return iter(tuple(self._records))

    def __len__(self) -> int:
        return len(self._records)

    @property
    def terminal_record(self) -> Optional[IterationRecord]:
        if self._records and self._records[-1].outcome.terminal:
            return self._records[-1]
        return None

    @property
    def final_outcome(self) -> Optional[IterationOutcome]:
        record = self.terminal_record
        return record.outcome if record is not None else None

    @property
    def iterations(self) -> int:
        return sum(1 for record in self._records if not record.synthetic)

    @property
    def last_confidence(self) -> Optional[int]:
        for record in reversed(self._records):
            if record.confidence is not None:
                return record.confidence
        return None


class Oracle(Protocol):
    def request(self, bundle: EvidenceBundle, mode: DiagnosticMode | str) -> DiagnosticRecord: ...


class Gate(Protocol):
    def run(self, record: DiagnosticRecord, threshold: int) -> GateResult: ...


@dataclass(slots=True)
class ControllerSettings:
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    min_confidence: int = UNATTENDED_MIN_CONFIDENCE
    poll_interval: float = DEFAULT_POLL_INTERVAL
    poll_timeout: float = DEFAULT_POLL_TIMEOUT
    mode: DiagnosticMode = DiagnosticMode.COMBINED

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.poll_timeout <= 0:
            raise ValueError("poll_timeout must be positive")
        if self.mode not in (DiagnosticMode.PATCH, DiagnosticMode.COMBINED):
            raise ValueError("watch mode needs a patch-bearing oracle mode (patch or combined)")

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ControllerSettings":
        watch = config.get("watch") or {}
        policy = config.get("policy") or {}
        oracle = config.get("oracle") or {}
        return cls(
            max_iterations=int(watch.get("max_iterations", DEFAULT_MAX_ITERATIONS)),
            min_confidence=int(policy.get("unattended_min_confidence", UNATTENDED_MIN_CONFIDENCE)),
            poll_interval=float(watch.get("poll_interval", DEFAULT_POLL_INTERVAL)),
            poll_timeout=float(watch.get("poll_timeout", DEFAULT_POLL_TIMEOUT)),
            mode=DiagnosticMode.parse(oracle.get("mode", DiagnosticMode.COMBINED.value)),
        )


@dataclass(slots=True)
class ConvergenceController:
    """Drive the diagnose-fix-verify loop against a live pipeline."""

    poller: RunPoller
    collect_evidence: Callable[[int], EvidenceBundle]
    oracle: Oracle
    gate: Gate
    push_branch: Callable[[str], None]
    settings: ControllerSettings = field(default_factory=ControllerSettings)
    cache: Optional[ResultCache] = None
    on_record: Optional[Callable[[IterationRecord], None]] = None
    current_record: Optional[DiagnosticRecord] = field(default=None, init=False)

    def run(self) -> IterationHistory:
        history = IterationHistory()
        for index in range(1, self.settings.max_iterations + 1):
            LOGGER.info("Iteration %d of %d", index, self.settings.max_iterations)
            if self._iterate(index, history):
                return history
        self._record(
            history,
            IterationRecord(
                index=self.settings.max_iterations,
                outcome=IterationOutcome.MAX_ITERATIONS,
                confidence=history.last_confidence,
                reason=f"Reached max iterations ({self.settings.max_iterations}).",
                synthetic=True,
            ),
        )
        return history

    # ------------------------------------------------------------- iteration
    def _iterate(self, index: int, history: IterationHistory) -> bool:
        """Run one iteration; return ``True`` once a terminal record was appended."""
        settings = self.settings

        # 1. current pipeline state
        try:
            failed_run = self._await_failed_run(index, history)
        except PipelineError as error:
            return self._stop(history, index, IterationOutcome.TIMEOUT, reason=f"Pipeline query failed: {redact(str(error))}")
        if failed_run is None:
            return True

        # 2. evidence and diagnosis
        try:
            bundle = self.collect_evidence(failed_run.id)
            record = self.oracle.request(bundle, settings.mode)
        except (EvidenceError, OracleError, GhError, OSError) as error:
            return self._stop(
                history,
                index,
                IterationOutcome.LOW_CONFIDENCE,
                reason=f"Diagnosis unavailable: {redact(str(error))}",
            )
        self.current_record = record
        self._cache_record(record)

        # 3. confidence floor
        confidence = record.effective_confidence
        if confidence is None or confidence < settings.min_confidence:
            shown = "none" if confidence is None else f"{confidence}%"
            return self._stop(
                history,
                index,
                IterationOutcome.LOW_CONFIDENCE,
                confidence=confidence,
                reason=f"Fix confidence ({shown}) is below threshold ({settings.min_confidence}%).",
                description=record.description,
            )

        # 4. gate
        try:
            result = self.gate.run(record, settings.min_confidence)
        except (GitError, PatchError, OSError) as error:
            return self._stop(
                history,
                index,
                IterationOutcome.APPLY_FAILED,
                confidence=confidence,
                reason=redact(str(error)),
                description=record.description,
            )
        if not result.committed or not result.branch:
            return self._stop(
                history,
                index,
                IterationOutcome.APPLY_FAILED,
                confidence=confidence,
                reason=result.reason or f"Gate ended in state {result.state.value}.",
                description=record.description,
            )

        # 5. push
        try:
            self.push_branch(result.branch)
        except (GitError, OSError) as error:
            return self._stop(
                history,
                index,
                IterationOutcome.PUSH_FAILED,
                confidence=confidence,
                reason=redact(str(error)),
                branch=result.branch,
                description=record.description,
            )

        # 6. verify
        self._record(
            history,
            IterationRecord(
                index=index,
                outcome=IterationOutcome.FIX_PUSHED,
                confidence=confidence,
                branch=result.branch,
                description=record.description,
            ),
        )
        try:
            poll = self.poller.await_new_run_completion(failed_run.id, settings.poll_interval, settings.poll_timeout)
        except PipelineError as error:
            return self._stop(
                history,
                index,
                IterationOutcome.TIMEOUT,
                confidence=confidence,
                reason=f"Pipeline query failed: {redact(str(error))}",
                branch=result.branch,
                synthetic=True,
            )
        if poll.timed_out:
            return self._stop(
                history,
                index,
                IterationOutcome.TIMEOUT,
                confidence=confidence,
                reason="Timed out waiting for the CI run triggered by the fix.",
                branch=result.branch,
                synthetic=True,
            )
        if poll.succeeded:
            return self._stop(
                history,
                index,
                IterationOutcome.SUCCESS,
                confidence=confidence,
                reason=f"CI run #{poll.run.id if poll.run else '?'} passed after the fix.",
                branch=result.branch,
                synthetic=True,
            )
        LOGGER.info("CI still failing after %s; trying another fix", result.branch)
        return False

    def _await_failed_run(self, index: int, history: IterationHistory) -> Optional[RunHandle]:
        """Return the failed run to work on, or ``None`` after recording a terminal outcome."""
        settings = self.settings
        run = self.poller.current_run()
        if run is None or not run.completed:
            if run is None:
                LOGGER.info("No CI runs found; waiting for one")
            else:
                LOGGER.info("Run %s in progress; waiting", run.id)
            poll = self.poller.await_completion(
                run.id if run is not None else None,
                settings.poll_interval,
                settings.poll_timeout,
            )
            if poll.timed_out:
                target = f"run #{run.id}" if run is not None else "a CI run"
                self._stop(history, index, IterationOutcome.TIMEOUT, reason=f"Timed out waiting for {target} to complete.")
                return None
            run = poll.run
        if run is not None and run.succeeded:
            self._stop(history, index, IterationOutcome.SUCCESS, reason=f"CI run #{run.id} is passing.")
            return None
        return run

    # --------------------------------------------------------------- helpers
    def _stop(
        self,
        history: IterationHistory,
        index: int,
        outcome: IterationOutcome,
        **fields: Any,
    ) -> bool:
        self._record(history, IterationRecord(index=index, outcome=outcome, **fields))
        return True

    def _record(self, history: IterationHistory, record: IterationRecord) -> None:
        history._append(record)
        emit_event("iteration_recorded", **record.to_dict())
        if self.on_record is not None:
            self.on_record(record)

    def _cache_record(self, record: DiagnosticRecord) -> None:
        if self.cache is None:
            return
        try:
            self.cache.write_json(result_file(record.mode.value), record.model_dump(mode="json"))
        except OSError as error:
            LOGGER.debug("Could not cache diagnostic record: %s", error)


__all__ = [
    "DEFAULT_MAX_ITERATIONS",
    "ControllerSettings",
    "ConvergenceController",
    "IterationHistory",
    "IterationOutcome",
    "IterationRecord",
]
