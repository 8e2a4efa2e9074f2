from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from cidoc.tools.vcs import GitRepository  # noqa: E402


@dataclass(slots=True)
class TinyRepo:
    """Fixture payload representing the synthetic repository under test."""

    root: Path
    repo: GitRepository

    def write(self, relative: str, text: str) -> Path:
        target = self.root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")
        return target

    def read(self, relative: str) -> str:
        return (self.root / relative).read_text(encoding="utf-8")

    def branches(self) -> List[str]:
        result = self.repo.git("branch", "--format=%(refname:short)")
        return sorted(line.strip() for line in result.stdout.splitlines() if line.strip())

    def commit_count(self) -> int:
        return int(self.repo.git("rev-list", "--count", "HEAD").stdout.strip())


@pytest.fixture()
def tiny_repo(tmp_path: Path) -> TinyRepo:
    """Create a tiny git repository on ``main`` with one committed file."""

    repo_root = tmp_path / "tiny-repo"
    repo_root.mkdir()

    def run_git(*cmd: str) -> None:
        subprocess.run(
            ["git", *cmd],
            cwd=repo_root,
            check=True,
            capture_output=True,
            text=True,
        )

    run_git("init")
    run_git("symbolic-ref", "HEAD", "refs/heads/main")
    run_git("config", "user.email", "doctor@example.com")
    run_git("config", "user.name", "CI Doctor")
    run_git("config", "commit.gpgsign", "false")

    (repo_root / "app.txt").write_text("a\n", encoding="utf-8")
    (repo_root / "config.yml").write_text("retries: 1\ntimeout: 30\n", encoding="utf-8")

    run_git("add", ".")
    run_git("commit", "-m", "Initial tiny repo state")

    return TinyRepo(root=repo_root, repo=GitRepository(repo_root))


@dataclass
class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    now: float = 0.0
    sleeps: List[float] = field(default_factory=list)

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()
