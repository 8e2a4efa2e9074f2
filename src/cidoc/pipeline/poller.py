"""Deadline-bounded polling of workflow runs.

Every wait is bounded by an absolute :class:`Deadline`.  Only "not yet
observed" states are polled again: no run yet, a run that has not completed,
or a new run that has not appeared.  A :class:`PipelineError` from the
provider is never retried.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from ..telemetry import emit_event
from .runs import RunConclusion, RunHandle, RunProvider

LOGGER = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 10.0
DEFAULT_POLL_TIMEOUT = 180.0

Clock = Callable[[], float]
Sleeper = Callable[[float], object]


class Deadline:
    """Absolute point on a monotonic clock with a bounded timed wait."""

    def __init__(self, timeout: float, *, clock: Clock = time.monotonic, sleeper: Optional[Sleeper] = None) -> None:
        if timeout < 0:
            raise ValueError("timeout must be non-negative")
        self._clock = clock
        self._sleeper = sleeper or threading.Event().wait
        self.expires_at = clock() + timeout

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def wait(self, interval: float) -> None:
        """Suspend for ``interval`` seconds, never past the deadline."""
        delay = min(interval, self.remaining())
        if delay > 0:
            self._sleeper(delay)


@dataclass(slots=True, frozen=True)
class PollResult:
    """Conclusion of a wait, or ``timed_out`` when the deadline passed first."""

    conclusion: Optional[RunConclusion] = None
    run: Optional[RunHandle] = None
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.conclusion is RunConclusion.SUCCESS


class RunPoller:
    """Poll a :class:`RunProvider` until a run completes or a deadline passes."""

    def __init__(
        self,
        provider: RunProvider,
        *,
        clock: Clock = time.monotonic,
        sleeper: Optional[Sleeper] = None,
    ) -> None:
        self.provider = provider
        self._clock = clock
        self._sleeper = sleeper

    def deadline(self, timeout: float) -> Deadline:
        return Deadline(timeout, clock=self._clock, sleeper=self._sleeper)

    def current_run(self) -> Optional[RunHandle]:
        return self.provider.latest_run()

    def await_completion(
        self,
        known_id: Optional[int],
        interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_POLL_TIMEOUT,
    ) -> PollResult:
        """Wait for run ``known_id`` (or, when ``None``, the latest run) to complete."""
        _check_interval(interval)
        deadline = self.deadline(timeout)
        while True:
            run = self.provider.view_run(known_id) if known_id is not None else self.provider.latest_run()
            emit_event(
                "poll_tick",
                run_id=run.id if run else None,
                status=run.status if run else None,
                remaining=round(deadline.remaining(), 1),
            )
            if run is not None and run.completed:
                LOGGER.info("Run %s completed: %s", run.id, run.conclusion.value if run.conclusion else "unknown")
                return PollResult(conclusion=run.conclusion or RunConclusion.FAILURE, run=run)
            if deadline.expired:
                LOGGER.info("Timed out waiting for run %s", known_id if known_id is not None else "(latest)")
                return PollResult(run=run, timed_out=True)
            deadline.wait(interval)

    def await_new_run_completion(
        self,
        previous_id: Optional[int],
        interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_POLL_TIMEOUT,
    ) -> PollResult:
        """Wait for a run other than ``previous_id`` to appear, then for it to complete.

        Appearance and completion each get their own ``timeout``.
        """
        _check_interval(interval)
        appearance = self.deadline(timeout)
        while True:
            run = self.provider.latest_run()
            emit_event(
                "poll_tick",
                run_id=run.id if run else None,
                previous_id=previous_id,
                remaining=round(appearance.remaining(), 1),
            )
            if run is not None and run.id != previous_id:
                break
            if appearance.expired:
                LOGGER.info("No new run appeared after run %s", previous_id)
                return PollResult(run=None, timed_out=True)
            appearance.wait(interval)

        LOGGER.info("New run detected: %s", run.id)
        if run.completed:
            return PollResult(conclusion=run.conclusion or RunConclusion.FAILURE, run=run)
        return self.await_completion(run.id, interval, timeout)


def _check_interval(interval: float) -> None:
    if interval <= 0:
        raise ValueError("poll interval must be positive")


__all__ = [
    "DEFAULT_POLL_INTERVAL",
    "DEFAULT_POLL_TIMEOUT",
    "Deadline",
    "PollResult",
    "RunPoller",
]
