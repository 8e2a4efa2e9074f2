"""Tool integrations: git, patches and the GitHub CLI."""

from .gh import GhError, ensure_gh, gh_json, run_gh
from .patch import PatchCheck, PatchError, PatchProposal, apply_patch, check_patch, normalize_patch
from .vcs import GitCheckpoint, GitError, GitRepository

__all__ = [
    "GhError",
    "GitCheckpoint",
    "GitError",
    "GitRepository",
    "PatchCheck",
    "PatchError",
    "PatchProposal",
    "apply_patch",
    "check_patch",
    "ensure_gh",
    "gh_json",
    "normalize_patch",
    "run_gh",
]
