from __future__ import annotations

from pathlib import Path

import pytest

from cidoc.tools.patch import (
    PatchError,
    PatchProposal,
    apply_patch,
    check_patch,
    count_hunks,
    extract_paths,
    normalize_patch,
)

APP_FIX = (
    "diff --git a/app.txt b/app.txt\n"
    "--- a/app.txt\n"
    "+++ b/app.txt\n"
    "@@ -1,1 +1,1 @@\n"
    "-a\n"
    "+b\n"
)


def test_normalize_recounts_wrong_header() -> None:
    patch = "@@ -1,10 +1,12 @@\n a\n-b\n+c\n d\n"

    assert normalize_patch(patch) == "@@ -1,3 +1,3 @@\n a\n-b\n+c\n d\n"


def test_normalize_recounts_two_removed_two_added() -> None:
    patch = "@@ -1,1 +1,1 @@\n-old one\n-old two\n+new one\n+new two\n"

    assert normalize_patch(patch) == patch.replace("-1,1 +1,1", "-1,2 +1,2")


def test_normalize_is_idempotent() -> None:
    patch = (
        "--- a/src/app.py\n"
        "+++ b/src/app.py\n"
        "@@ -4,2 +4,9 @@ def main():\n"
        " import os\n"
        "-import sys\n"
        "+import sys  # noqa\n"
        "+import json\n"
        " return 0\n"
    )

    once = normalize_patch(patch)

    assert normalize_patch(once) == once
    assert "@@ -4,3 +4,4 @@ def main():" in once.splitlines()


def test_normalize_leaves_correct_patch_byte_identical() -> None:
    patch = "@@ -1,1 +1,1 @@\n-a\n+b\n"

    assert normalize_patch(patch) == patch


def test_normalize_keeps_unrecognised_header() -> None:
    patch = "@@ garbage @@\n-a\n+b\n"

    assert normalize_patch(patch) == patch


def test_normalize_fills_missing_counts() -> None:
    assert normalize_patch("@@ -3 +3 @@\n x\n-y\n") == "@@ -3,2 +3,1 @@\n x\n-y\n"


def test_normalize_strips_carriage_returns_and_trailing_blank_lines() -> None:
    patch = "@@ -1,4 +1,4 @@\r\n-a\r\n+b\r\n\r\n\r\n"

    assert normalize_patch(patch) == "@@ -1,1 +1,1 @@\n-a\n+b\n"


def test_normalize_keeps_trailing_whitespace_on_last_line() -> None:
    patch = "@@ -1,1 +1,1 @@\n+b\n-a  \n"

    assert normalize_patch(patch) == patch
    assert normalize_patch(patch + "\n\n") == patch


def test_normalize_without_hunks_only_trims() -> None:
    assert normalize_patch("diff --git a/x b/x\n\n\n") == "diff --git a/x b/x\n"
    assert normalize_patch("") == "\n"


def test_normalize_ignores_no_newline_marker() -> None:
    patch = "@@ -1,9 +1,9 @@\n-a\n\\ No newline at end of file\n+b\n\\ No newline at end of file\n"

    normalized = normalize_patch(patch)

    assert normalized.splitlines()[0] == "@@ -1,1 +1,1 @@"


def test_normalize_handles_multiple_files() -> None:
    patch = (
        "--- a/one.txt\n"
        "+++ b/one.txt\n"
        "@@ -1,5 +1,5 @@\n"
        "-x\n"
        "+y\n"
        "--- a/two.txt\n"
        "+++ b/two.txt\n"
        "@@ -7,1 +7,4 @@\n"
        " keep\n"
        "+added\n"
    )

    lines = normalize_patch(patch).splitlines()

    assert lines[2] == "@@ -1,1 +1,1 @@"
    assert lines[7] == "@@ -7,1 +7,2 @@"


def test_proposal_records_hunks_and_paths() -> None:
    proposal = PatchProposal.from_text(APP_FIX)

    assert proposal.hunk_count == 1
    assert proposal.touched_paths == (Path("app.txt"),)
    assert count_hunks(proposal.normalized_text) == 1
    assert extract_paths("--- /dev/null\n+++ b/new.txt\n") == {Path("new.txt")}


def test_check_patch_accepts_matching_context(tiny_repo) -> None:
    check = check_patch(tiny_repo.repo, PatchProposal.from_text(APP_FIX))

    assert check.ok
    assert check.returncode == 0
    assert tiny_repo.read("app.txt") == "a\n"


def test_check_patch_reports_failing_context(tiny_repo) -> None:
    stale = APP_FIX.replace("-a\n", "-z\n")

    check = check_patch(tiny_repo.repo, PatchProposal.from_text(stale))

    assert not check.ok
    assert check.returncode != 0
    assert "app.txt" in check.message
    assert tiny_repo.read("app.txt") == "a\n"


def test_check_patch_rejects_empty_patch(tiny_repo) -> None:
    check = check_patch(tiny_repo.repo, PatchProposal.from_text("   \n"))

    assert not check.ok
    assert check.returncode == -1
    assert check.message == "Patch is empty."


def test_apply_patch_updates_working_tree(tiny_repo) -> None:
    apply_patch(tiny_repo.repo, PatchProposal.from_text(APP_FIX))

    assert tiny_repo.read("app.txt") == "b\n"
    assert tiny_repo.repo.working_tree_changes() == [Path("app.txt")]


def test_apply_patch_raises_with_details(tiny_repo) -> None:
    stale = APP_FIX.replace("-a\n", "-z\n")

    with pytest.raises(PatchError) as excinfo:
        apply_patch(tiny_repo.repo, PatchProposal.from_text(stale))

    assert "Patch failed to apply" in str(excinfo.value)
    assert excinfo.value.details["returncode"] != 0
    assert tiny_repo.read("app.txt") == "a\n"


def test_check_patch_accepts_trailing_whitespace_context(tiny_repo) -> None:
    tiny_repo.write("app.txt", "a  \n")
    tiny_repo.repo.commit_all("Pad app.txt")
    patch = APP_FIX.replace("-a\n+b\n", "+b\n-a  \n")

    check = check_patch(tiny_repo.repo, PatchProposal.from_text(patch))

    assert check.ok, check.message
    assert PatchProposal.from_text(patch).normalized_text == patch
