"""Unified diff helpers with guard rails for automated patching.

Diffs produced by a reasoning service frequently carry ``@@`` headers whose
line counts disagree with the hunk body; ``git apply`` rejects those as a
corrupt patch even when the body itself is fine.  :func:`normalize_patch`
recounts every recognisable hunk from its body so the diff becomes
syntactically acceptable.  It never judges whether the change is correct.
"""

from __future__ import annotations

import re
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Mapping, Tuple

from ..telemetry import emit_event
from .vcs import GitRepository


class PatchError(RuntimeError):
    """Raised when a patch fails validation or application."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


@dataclass(slots=True, frozen=True)
class PatchProposal:
    """Normalised patch ready to be validated and applied."""

    normalized_text: str
    hunk_count: int
    touched_paths: Tuple[Path, ...] = ()

    @classmethod
    def from_text(cls, patch_text: str) -> "PatchProposal":
        normalized = normalize_patch(patch_text)
        proposal = cls(
            normalized_text=normalized,
            hunk_count=count_hunks(normalized),
            touched_paths=tuple(sorted(extract_paths(normalized), key=lambda item: item.as_posix())),
        )
        emit_event(
            "patch_normalized",
            changed=normalized != patch_text,
            hunks=proposal.hunk_count,
            paths=proposal.touched_paths,
        )
        return proposal


@dataclass(slots=True)
class PatchCheck:
    """Outcome of ``git apply --check`` against the working tree."""

    ok: bool
    returncode: int
    stdout: str = ""
    stderr: str = ""
    failing_hunks: Tuple[Mapping[str, Any], ...] = field(default_factory=tuple)

    @property
    def message(self) -> str:
        return self.stderr.strip() or self.stdout.strip() or "unknown error"


_HUNK_HEADER = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,\d+)? \+(?P<new_start>\d+)(?:,\d+)? @@(?P<trailing>.*)$"
)
_FILE_BOUNDARY_PREFIXES = ("diff ", "--- ", "+++ ")
_DIFF_HEADER = re.compile(r"^diff --git (\S+) (\S+)$", re.MULTILINE)
_NEW_FILE_HEADER = re.compile(r"^\+\+\+ (\S+)", re.MULTILINE)
_PATCH_FAILED_RE = re.compile(r"error: patch failed: (?P<path>.+?)(?::(?P<line>\d+))?$")
_PATCH_DOES_NOT_APPLY_RE = re.compile(r"error: (?P<path>.+?): patch does not apply")
_HUNK_FAILED_RE = re.compile(r"error: (?P<path>.+?): hunk #(?P<hunk>\d+) failed at (?P<line>-?\d+)")


# --------------------------------------------------------------- normalising
def normalize_patch(patch_text: str) -> str:
    """Return ``patch_text`` with every recognisable hunk header recounted.

    Carriage returns and trailing blank lines are stripped first.  A header
    that does not match ``@@ -a[,b] +c[,d] @@`` is left exactly as it is.
    The result always ends with a single newline.
    """

    lines = (patch_text or "").replace("\r", "").rstrip("\n").split("\n")
    output: list[str] = []
    hunk_start = -1

    for line in lines:
        if line.startswith("@@"):
            if hunk_start >= 0:
                _rewrite_hunk_header(output, hunk_start)
            hunk_start = len(output)
        output.append(line)

    if hunk_start >= 0:
        _rewrite_hunk_header(output, hunk_start)

    return "\n".join(output) + "\n"


def _rewrite_hunk_header(lines: list[str], header_index: int) -> None:
    match = _HUNK_HEADER.match(lines[header_index])
    if not match:
        return

    old_count = 0
    new_count = 0
    for candidate in lines[header_index + 1 :]:
        if candidate.startswith("@@") or candidate.startswith(_FILE_BOUNDARY_PREFIXES):
            break
        if candidate.startswith("\\"):
            continue
        prefix = candidate[:1]
        if prefix == "-":
            old_count += 1
        elif prefix == "+":
            new_count += 1
        else:
            old_count += 1
            new_count += 1

    lines[header_index] = (
        f"@@ -{match.group('old_start')},{old_count} "
        f"+{match.group('new_start')},{new_count} @@{match.group('trailing')}"
    )


def count_hunks(patch_text: str) -> int:
    """Return the number of ``@@`` hunk headers in ``patch_text``."""
    return sum(1 for line in patch_text.splitlines() if line.startswith("@@"))


def _normalise_diff_path(entry: str) -> Path | None:
    """Translate diff header operands into repository-relative paths."""
    if entry == "/dev/null":
        return None
    if entry.startswith("a/") or entry.startswith("b/"):
        entry = entry[2:]
    entry = entry.strip()
    if not entry:
        return None
    return Path(entry)


def extract_paths(patch_text: str) -> set[Path]:
    """Collect the file paths referenced by a unified diff."""
    paths: set[Path] = set()
    for match in _DIFF_HEADER.finditer(patch_text):
        for operand in match.groups():
            candidate = _normalise_diff_path(operand)
            if candidate is not None:
                paths.add(candidate)
    for match in _NEW_FILE_HEADER.finditer(patch_text):
        candidate = _normalise_diff_path(match.group(1))
        if candidate is not None:
            paths.add(candidate)
    return paths


# --------------------------------------------------------------- git apply IO
def _parse_git_apply_failures(output: str) -> Tuple[Mapping[str, Any], ...]:
    """Parse git apply stderr for failing hunk metadata."""
    if not output:
        return ()
    entries: list[dict[str, Any]] = []
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        match = _HUNK_FAILED_RE.match(line)
        if match:
            entries.append(
                {
                    "path": match.group("path"),
                    "hunk": int(match.group("hunk")),
                    "line": int(match.group("line")),
                    "reason": "hunk_failed",
                }
            )
            continue
        match = _PATCH_FAILED_RE.match(line)
        if match:
            line_text = match.group("line")
            entries.append(
                {
                    "path": match.group("path"),
                    "line": int(line_text) if line_text is not None else None,
                    "reason": "patch_failed",
                }
            )
            continue
        match = _PATCH_DOES_NOT_APPLY_RE.match(line)
        if match:
            entries.append({"path": match.group("path"), "reason": "does_not_apply"})
    return tuple(entries)


@contextmanager
def _patch_file(proposal: PatchProposal) -> Iterator[Path]:
    """Write the proposal to a temporary file outside the working tree."""
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", suffix=".patch", delete=False) as handle:
        handle.write(proposal.normalized_text)
        handle.flush()
        temp_path = Path(handle.name)
    try:
        yield temp_path
    finally:
        temp_path.unlink(missing_ok=True)


def check_patch(repo: GitRepository, proposal: PatchProposal) -> PatchCheck:
    """Dry-run ``proposal`` against the working tree without mutating it."""
    if not proposal.normalized_text.strip():
        return PatchCheck(ok=False, returncode=-1, stderr="Patch is empty.")
    with _patch_file(proposal) as patch_path:
        result = repo.git("apply", "--check", str(patch_path), check=False)
    combined = "\n".join(part for part in (result.stderr, result.stdout) if part)
    return PatchCheck(
        ok=result.returncode == 0,
        returncode=result.returncode,
        stdout=result.stdout,
        stderr=result.stderr,
        failing_hunks=_parse_git_apply_failures(combined),
    )


def apply_patch(repo: GitRepository, proposal: PatchProposal) -> None:
    """Apply ``proposal`` to the working tree, raising :class:`PatchError` on failure."""
    with _patch_file(proposal) as patch_path:
        result = repo.git("apply", str(patch_path), check=False)
    if result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown error"
        combined = "\n".join(part for part in (result.stderr, result.stdout) if part)
        raise PatchError(
            f"Patch failed to apply: {message}",
            details={
                "returncode": result.returncode,
                "failing_hunks": [dict(item) for item in _parse_git_apply_failures(combined)],
            },
        )


__all__ = [
    "PatchCheck",
    "PatchError",
    "PatchProposal",
    "apply_patch",
    "check_patch",
    "count_hunks",
    "extract_paths",
    "normalize_patch",
]
