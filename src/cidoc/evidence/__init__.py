"""Evidence gathering and scrubbing for failed CI runs."""

from .bundle import EvidenceBundle, EvidenceItem, EvidenceKind
from .github import EvidenceError, GithubEvidenceCollector
from .redact import redact

__all__ = [
    "EvidenceBundle",
    "EvidenceError",
    "EvidenceItem",
    "EvidenceKind",
    "GithubEvidenceCollector",
    "redact",
]
