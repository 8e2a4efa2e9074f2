"""CI pipeline access: run lookups and deadline-bounded polling."""

from .poller import Deadline, PollResult, RunPoller
from .runs import GhRunProvider, PipelineError, RunConclusion, RunHandle, RunProvider, RunStatus

__all__ = [
    "Deadline",
    "GhRunProvider",
    "PipelineError",
    "PollResult",
    "RunConclusion",
    "RunHandle",
    "RunPoller",
    "RunProvider",
    "RunStatus",
]
