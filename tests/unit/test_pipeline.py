from __future__ import annotations

from typing import Any, List, Optional

import pytest

from cidoc.pipeline import (
    Deadline,
    GhRunProvider,
    PipelineError,
    RunConclusion,
    RunHandle,
    RunPoller,
    RunStatus,
)
from cidoc.tools.gh import GhError


class SequenceProvider:
    """Return scripted runs from ``latest_run`` and ``view_run`` in order."""

    def __init__(self, latest: List[Any] = (), views: List[Any] = ()) -> None:
        self.latest = list(latest)
        self.views = list(views)
        self.latest_calls = 0
        self.view_calls: List[int] = []

    def _next(self, queue: List[Any]) -> Any:
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def latest_run(self) -> Optional[RunHandle]:
        self.latest_calls += 1
        return self._next(self.latest)

    def view_run(self, run_id: int) -> RunHandle:
        self.view_calls.append(run_id)
        return self._next(self.views)

    def rerun_failed(self, run_id: int) -> None:  # pragma: no cover - unused
        raise AssertionError


def _run(run_id: int, status: RunStatus = RunStatus.COMPLETED, conclusion: Optional[RunConclusion] = None) -> RunHandle:
    return RunHandle(id=run_id, status=status, conclusion=conclusion)


def _poller(provider: SequenceProvider, fake_clock) -> RunPoller:
    return RunPoller(provider, clock=fake_clock, sleeper=fake_clock.sleep)


def test_deadline_never_waits_past_expiry(fake_clock) -> None:
    deadline = Deadline(25.0, clock=fake_clock, sleeper=fake_clock.sleep)

    deadline.wait(10.0)
    deadline.wait(10.0)
    deadline.wait(10.0)
    deadline.wait(10.0)

    assert fake_clock.sleeps == [10.0, 10.0, 5.0]
    assert deadline.expired
    assert deadline.remaining() == 0.0


def test_deadline_rejects_negative_timeout(fake_clock) -> None:
    with pytest.raises(ValueError):
        Deadline(-1.0, clock=fake_clock)


def test_await_completion_polls_until_completed(fake_clock) -> None:
    provider = SequenceProvider(
        views=[
            _run(5, RunStatus.QUEUED),
            _run(5, RunStatus.IN_PROGRESS),
            _run(5, RunStatus.COMPLETED, RunConclusion.SUCCESS),
        ]
    )

    result = _poller(provider, fake_clock).await_completion(5, interval=10, timeout=180)

    assert result.succeeded
    assert result.run is not None and result.run.id == 5
    assert provider.view_calls == [5, 5, 5]
    assert fake_clock.sleeps == [10, 10]


def test_await_completion_without_conclusion_counts_as_failure(fake_clock) -> None:
    provider = SequenceProvider(views=[_run(5, RunStatus.COMPLETED)])

    result = _poller(provider, fake_clock).await_completion(5, interval=10, timeout=30)

    assert result.conclusion is RunConclusion.FAILURE
    assert not result.succeeded


def test_await_completion_times_out(fake_clock) -> None:
    provider = SequenceProvider(latest=[None])

    result = _poller(provider, fake_clock).await_completion(None, interval=10, timeout=30)

    assert result.timed_out
    assert result.run is None
    assert fake_clock.now == 30
    assert provider.latest_calls == 4


def test_zero_timeout_polls_once(fake_clock) -> None:
    provider = SequenceProvider(views=[_run(5, RunStatus.IN_PROGRESS)])

    result = _poller(provider, fake_clock).await_completion(5, interval=10, timeout=0)

    assert result.timed_out
    assert provider.view_calls == [5]
    assert fake_clock.sleeps == []


def test_pipeline_errors_are_not_retried(fake_clock) -> None:
    provider = SequenceProvider(latest=[PipelineError("gh run list failed: rate limited")])

    with pytest.raises(PipelineError, match="rate limited"):
        _poller(provider, fake_clock).await_new_run_completion(1, interval=10, timeout=180)
    assert provider.latest_calls == 1
    assert fake_clock.sleeps == []


def test_await_new_run_waits_for_appearance_then_completion(fake_clock) -> None:
    provider = SequenceProvider(
        latest=[_run(1, conclusion=RunConclusion.FAILURE), _run(2, RunStatus.QUEUED)],
        views=[_run(2, RunStatus.IN_PROGRESS), _run(2, conclusion=RunConclusion.FAILURE)],
    )

    result = _poller(provider, fake_clock).await_new_run_completion(1, interval=10, timeout=180)

    assert not result.timed_out
    assert result.conclusion is RunConclusion.FAILURE
    assert result.run is not None and result.run.id == 2
    assert provider.view_calls == [2, 2]


def test_await_new_run_returns_completed_run_immediately(fake_clock) -> None:
    provider = SequenceProvider(latest=[_run(8, conclusion=RunConclusion.SUCCESS)])

    result = _poller(provider, fake_clock).await_new_run_completion(7, interval=10, timeout=180)

    assert result.succeeded
    assert provider.view_calls == []


def test_non_positive_interval_is_rejected(fake_clock) -> None:
    poller = _poller(SequenceProvider(latest=[None]), fake_clock)

    with pytest.raises(ValueError):
        poller.await_completion(None, interval=0, timeout=10)


def test_run_handle_from_gh_payloads() -> None:
    cancelled = RunHandle.from_gh({"databaseId": 11, "status": "completed", "conclusion": "cancelled"})
    waiting = RunHandle.from_gh({"databaseId": "12", "status": "waiting", "conclusion": ""})
    viewed = RunHandle.from_gh({"status": "in_progress"}, run_id=13)

    assert cancelled.conclusion is RunConclusion.FAILURE
    assert cancelled.completed and not cancelled.succeeded
    assert waiting.id == 12
    assert waiting.status is RunStatus.QUEUED
    assert waiting.conclusion is None
    assert viewed.id == 13 and viewed.status is RunStatus.IN_PROGRESS

    with pytest.raises(PipelineError):
        RunHandle.from_gh({"status": "completed"})


def test_gh_run_provider_queries_gh(monkeypatch, tmp_path) -> None:
    calls: List[List[str]] = []

    def fake_gh_json(args, *, cwd=None, timeout=None):
        calls.append(list(args))
        if args[:2] == ["run", "list"]:
            return [{"databaseId": 99, "status": "completed", "conclusion": "failure", "workflowName": "CI"}]
        return {"status": "in_progress", "conclusion": ""}

    monkeypatch.setattr("cidoc.pipeline.runs.gh_json", fake_gh_json)
    provider = GhRunProvider(tmp_path)

    latest = provider.latest_run()
    viewed = provider.view_run(99)

    assert latest == RunHandle(id=99, status=RunStatus.COMPLETED, conclusion=RunConclusion.FAILURE, workflow="CI")
    assert viewed.status is RunStatus.IN_PROGRESS
    assert provider.latest_failed_run_id() == 99
    assert calls[1][:3] == ["run", "view", "99"]


def test_gh_run_provider_wraps_gh_errors(monkeypatch, tmp_path) -> None:
    def failing_gh_json(args, *, cwd=None, timeout=None):
        raise GhError("gh run list failed: authentication required")

    monkeypatch.setattr("cidoc.pipeline.runs.gh_json", failing_gh_json)

    with pytest.raises(PipelineError, match="authentication required"):
        GhRunProvider(tmp_path).latest_run()


def test_gh_run_provider_reruns_failed_jobs(monkeypatch, tmp_path) -> None:
    calls: List[List[str]] = []

    def fake_run_gh(args, *, cwd=None, timeout=None) -> str:
        calls.append(list(args))
        return ""

    monkeypatch.setattr("cidoc.pipeline.runs.run_gh", fake_run_gh)

    GhRunProvider(tmp_path).rerun_failed(42)

    assert calls == [["run", "rerun", "42", "--failed"]]
