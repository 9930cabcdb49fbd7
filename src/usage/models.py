"""Usage records and aggregates."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

ANONYMOUS_KEY = "anonymous"


@dataclass(frozen=True, slots=True)
class UsageRecord:
    """One completed (or failed) routed request. Never mutated."""

    timestamp: datetime
    key_id: str
    engine: str
    path: str
    character_count: int
    duration_ms: int
    status_code: int

    @property
    def succeeded(self) -> bool:
        return 200 <= self.status_code < 300

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "key_id": self.key_id,
            "engine": self.engine,
            "path": self.path,
            "character_count": self.character_count,
            "duration_ms": self.duration_ms,
            "status_code": self.status_code,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UsageRecord:
        ts = datetime.fromisoformat(data["timestamp"])
        return cls(
            timestamp=ts if ts.tzinfo else ts.replace(tzinfo=UTC),
            key_id=str(data.get("key_id") or ANONYMOUS_KEY),
            engine=str(data["engine"]),
            path=str(data["path"]),
            character_count=int(data.get("character_count", 0)),
            duration_ms=int(data.get("duration_ms", 0)),
            status_code=int(data.get("status_code", 200)),
        )


@dataclass
class GroupUsage:
    requests: int = 0
    characters: int = 0
    duration_ms: int = 0

    def add(self, record: UsageRecord) -> None:
        self.requests += 1
        self.characters += record.character_count
        self.duration_ms += record.duration_ms


@dataclass
class UsageStats:
    """Aggregates computed from a set of usage records."""

    total_requests: int = 0
    total_characters: int = 0
    total_duration_ms: int = 0
    success_count: int = 0
    error_count: int = 0
    by_key: dict[str, GroupUsage] = field(default_factory=dict)
    by_engine: dict[str, GroupUsage] = field(default_factory=dict)
    by_path: dict[str, int] = field(default_factory=dict)
    by_status_code: dict[int, int] = field(default_factory=dict)

    @classmethod
    def from_records(cls, records: Iterable[UsageRecord]) -> UsageStats:
        stats = cls()
        for record in records:
            stats.total_requests += 1
            stats.total_characters += record.character_count
            stats.total_duration_ms += record.duration_ms
            if record.succeeded:
                stats.success_count += 1
            else:
                stats.error_count += 1
            stats.by_key.setdefault(record.key_id, GroupUsage()).add(record)
            stats.by_engine.setdefault(record.engine, GroupUsage()).add(record)
            stats.by_path[record.path] = stats.by_path.get(record.path, 0) + 1
            stats.by_status_code[record.status_code] = stats.by_status_code.get(record.status_code, 0) + 1
        return stats

    def to_dict(self) -> dict[str, Any]:
        def _group(groups: dict[str, GroupUsage]) -> dict[str, dict[str, int]]:
            return {
                name: {"requests": g.requests, "characters": g.characters, "duration_ms": g.duration_ms}
                for name, g in groups.items()
            }

        return {
            "total_requests": self.total_requests,
            "total_characters": self.total_characters,
            "total_duration_ms": self.total_duration_ms,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "by_key": _group(self.by_key),
            "by_engine": _group(self.by_engine),
            "by_path": dict(self.by_path),
            "by_status_code": {str(code): count for code, count in self.by_status_code.items()},
        }
