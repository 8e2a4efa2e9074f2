"""Minimal git helpers.

The helpers below provide just enough structure to inspect the working tree,
create isolated fix branches, commit, push, and roll back to a checkpoint.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Set

import shutil
import subprocess


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


@dataclass(slots=True)
class GitCheckpoint:
    """Snapshot of the working tree at a point in time.

    The checkpoint records the active branch (``None`` when detached), the
    current ``HEAD`` and the set of pre-existing untracked paths.  Rolling back
    restores tracked files to the recorded commit, removes only the untracked
    files that appeared after the checkpoint was taken, and checks the
    recorded branch back out.
    """

    repo: "GitRepository"
    branch: str | None
    head: str | None
    baseline_untracked: tuple[str, ...]

    @property
    def ref(self) -> str | None:
        """Return the ref that identifies the checkpoint position."""

        return self.branch or self.head


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def discover(cls, start: Path | str | None = None) -> "GitRepository":
        """Locate the nearest git repository starting from ``start``."""

        path = Path(start or Path.cwd()).resolve()
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return cls(candidate)
        raise GitError(f"Unable to locate a git repository from {path}")

    # ------------------------------------------------------------------ git IO
    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        command = ["git", *args]
        process = subprocess.run(
            command,
            cwd=self.root,
            capture_output=True,
            text=False,
            check=False,
        )
        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message}")
        return result

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    # -------------------------------------------------------------- branches
    def current_branch(self) -> str | None:
        """Return the current branch name or ``None`` when detached."""

        result = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        branch = result.stdout.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    def branch_exists(self, name: str) -> bool:
        """Return ``True`` when a local branch called ``name`` exists."""

        result = self._run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{name}"], check=False)
        return result.returncode == 0

    def create_branch(self, name: str) -> None:
        """Create ``name`` from ``HEAD`` and switch to it.

        Fails when the branch already exists; an existing branch is never reset.
        """

        if self.branch_exists(name):
            raise GitError(f"Branch already exists: {name}")
        self._run_git(["checkout", "-b", name], check=True)

    def checkout(self, ref: str) -> None:
        """Switch the working tree to ``ref``."""

        self._run_git(["checkout", ref], check=True)

    def delete_branch(self, name: str) -> None:
        """Force-delete the local branch ``name``."""

        self._run_git(["branch", "-D", name], check=True)

    # ------------------------------------------------------------- repo status
    def _status_entries(self) -> List[tuple[str, Path]]:
        result = self._run_git(["status", "--porcelain"], check=True)
        entries: List[tuple[str, Path]] = []
        for line in result.stdout.splitlines():
            if not line:
                continue
            status = line[:2]
            raw_path = line[3:]
            if status[0] in {"R", "C"} and " -> " in raw_path:
                raw_path = raw_path.split(" -> ", 1)[1]
            status_clean = status.strip() or status
            entries.append((status_clean, Path(raw_path.strip())))
        return entries

    def working_tree_changes(self, *, include_untracked: bool = True) -> List[Path]:
        """Return the set of paths with pending modifications."""

        paths: Set[Path] = set()
        for status, path in self._status_entries():
            if status == "??" and not include_untracked:
                continue
            paths.add(path)
        return sorted(paths, key=lambda item: item.as_posix())

    def untracked_files(self) -> List[Path]:
        """Return the list of untracked files/directories."""

        return [path for status, path in self._status_entries() if status == "??"]

    def is_clean(self, *, include_untracked: bool = True) -> bool:
        """Return ``True`` when the working tree has no pending changes."""

        return not self.working_tree_changes(include_untracked=include_untracked)

    def head(self) -> str | None:
        """Return the ``HEAD`` commit SHA or ``None`` for an unborn branch."""

        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    # ------------------------------------------------------------- checkpoints
    def create_checkpoint(self) -> GitCheckpoint:
        """Record the active branch, ``HEAD`` and untracked files."""

        baseline_untracked = tuple(sorted(path.as_posix() for path in self.untracked_files()))
        return GitCheckpoint(
            repo=self,
            branch=self.current_branch(),
            head=self.head(),
            baseline_untracked=baseline_untracked,
        )

    def restore_checkpoint(self, checkpoint: GitCheckpoint) -> None:
        """Restore the repository to the state captured by ``checkpoint``."""

        if checkpoint.repo is not self:
            raise GitError("Checkpoint does not belong to this repository.")

        restore_args: List[str] = ["restore", "--worktree", "--staged"]
        if checkpoint.head:
            restore_args.extend(["--source", checkpoint.head])
        restore_args.extend(["--", "."])
        self._run_git(restore_args, check=True)

        baseline = {Path(entry) for entry in checkpoint.baseline_untracked}
        extra = sorted(
            (path for path in self.untracked_files() if path not in baseline),
            key=lambda item: len(item.parts),
            reverse=True,
        )
        for relative in extra:
            target = self.root / relative
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target, ignore_errors=True)
            elif target.exists() or target.is_symlink():
                target.unlink(missing_ok=True)

        ref = checkpoint.ref
        if ref and self.current_branch() != checkpoint.branch:
            self._run_git(["checkout", ref], check=True)

    # -------------------------------------------------------------- remotes
    def push(
        self,
        remote: str,
        branch: str,
        *,
        set_upstream: bool = False,
    ) -> None:
        """Push ``branch`` to ``remote`` applying requested flags."""

        args: List[str] = ["push"]
        if set_upstream:
            args.append("-u")
        args.extend([remote, branch])
        self._run_git(args, check=True)

    def commit_all(self, message: str) -> str:
        """Add all changes to the index, create a commit, and return its SHA."""

        self._run_git(["add", "--all"], check=True)

        commit = self._run_git(["commit", "-m", message], check=False)
        if commit.returncode != 0:
            output = commit.stderr.strip() or commit.stdout.strip() or ""
            raise GitError(f"git commit failed: {output}")

        rev = self._run_git(["rev-parse", "HEAD"], check=True)
        return rev.stdout.strip()


__all__ = ["GitCheckpoint", "GitError", "GitRepository"]
