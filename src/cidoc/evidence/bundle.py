"""Identifier-tagged evidence describing one observed CI failure."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Iterator, Mapping


class EvidenceKind(str, Enum):
    """Categories of evidence gathered about a failed run."""

    REPO_INFO = "repo_info"
    FAILED_RUN = "failed_run"
    FAILED_JOBS = "failed_jobs"
    LOG_EXCERPT = "log_excerpt"
    WORKFLOW_YAML = "workflow_yaml"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "EvidenceKind":
        try:
            return cls(str(value))
        except ValueError:
            return cls.OTHER


@dataclass(slots=True, frozen=True)
class EvidenceItem:
    """Single piece of evidence referenced by its short id (``E1``, ``E2`` ...)."""

    id: str
    kind: EvidenceKind
    payload: Any

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "type": self.kind.value, "data": self.payload}


@dataclass(slots=True, frozen=True)
class EvidenceBundle:
    """Immutable, ordered evidence package passed to the oracle.

    Item ids must be unique within a bundle; consumers reference ids, never
    positions.
    """

    items: tuple[EvidenceItem, ...]
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for item in self.items:
            if not item.id:
                raise ValueError("Evidence items require a non-empty id.")
            if item.id in seen:
                raise ValueError(f"Duplicate evidence id: {item.id}")
            seen.add(item.id)

    @classmethod
    def build(cls, entries: Iterable[tuple[EvidenceKind, Any]]) -> "EvidenceBundle":
        """Assign sequential ``E<n>`` ids to ``entries`` in order."""
        items = tuple(
            EvidenceItem(id=f"E{index}", kind=kind, payload=payload)
            for index, (kind, payload) in enumerate(entries, start=1)
        )
        return cls(items=items)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EvidenceBundle":
        raw_items = data.get("evidence")
        if not isinstance(raw_items, list):
            raise ValueError("Evidence bundle must contain an 'evidence' list.")
        items: list[EvidenceItem] = []
        for entry in raw_items:
            if not isinstance(entry, Mapping):
                raise ValueError("Evidence entries must be objects.")
            items.append(
                EvidenceItem(
                    id=str(entry.get("id") or ""),
                    kind=EvidenceKind.parse(entry.get("type")),
                    payload=entry.get("data"),
                )
            )
        timestamp = data.get("timestamp")
        if isinstance(timestamp, str) and timestamp:
            return cls(items=tuple(items), timestamp=timestamp)
        return cls(items=tuple(items))

    def __iter__(self) -> Iterator[EvidenceItem]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def ids(self) -> frozenset[str]:
        return frozenset(item.id for item in self.items)

    def get(self, item_id: str) -> EvidenceItem | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def first_of(self, kind: EvidenceKind) -> EvidenceItem | None:
        for item in self.items:
            if item.kind is kind:
                return item
        return None

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "evidence": [item.to_dict() for item in self.items]}

    def to_json(self, *, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)


__all__ = ["EvidenceBundle", "EvidenceItem", "EvidenceKind"]
