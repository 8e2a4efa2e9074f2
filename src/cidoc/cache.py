"""On-disk cache for the latest evidence, oracle answers and debug output."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = Path(".ci-doctor") / "cache"

EVIDENCE_FILE = "latest-evidence.json"
PATCH_FILE = "proposed.patch"
APPLY_ERROR_FILE = "git-apply-error.txt"
RAW_OUTPUT_FILE = "oracle-raw-output-debug.txt"


def result_file(mode: str) -> str:
    """Return the cache file name holding the latest answer for ``mode``."""
    return f"latest-{mode}.json"


class ResultCache:
    """Directory of JSON and text artefacts kept between CLI invocations.

    The directory carries its own ``.gitignore`` so nothing in it is ever
    staged by ``git add --all``.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    @classmethod
    def for_repo(cls, repo_root: Path | str, relative: Path | str = DEFAULT_CACHE_DIR) -> "ResultCache":
        return cls(Path(repo_root) / relative)

    def ensure(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        ignore = self.root / ".gitignore"
        if not ignore.exists():
            ignore.write_text("*\n", encoding="utf-8")
        return self.root

    def path(self, name: str) -> Path:
        return self.root / name

    def write_json(self, name: str, data: Any) -> Path:
        target = self.ensure() / name
        target.write_text(json.dumps(data, indent=2, default=str) + "\n", encoding="utf-8")
        LOGGER.debug("Cached %s", target)
        return target

    def read_json(self, name: str) -> Any | None:
        target = self.path(name)
        if not target.exists():
            return None
        try:
            return json.loads(target.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            LOGGER.warning("Ignoring corrupt cache file %s", target)
            return None

    def write_text(self, name: str, text: str) -> Path:
        target = self.ensure() / name
        target.write_text(text, encoding="utf-8")
        LOGGER.debug("Cached %s", target)
        return target

    def read_text(self, name: str) -> str | None:
        target = self.path(name)
        if not target.exists():
            return None
        return target.read_text(encoding="utf-8")


__all__ = [
    "APPLY_ERROR_FILE",
    "DEFAULT_CACHE_DIR",
    "EVIDENCE_FILE",
    "PATCH_FILE",
    "RAW_OUTPUT_FILE",
    "ResultCache",
    "result_file",
]
