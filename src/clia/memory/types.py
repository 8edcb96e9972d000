"""Data model for command memory: entries, the collection, search options.

An entry remembers one (request → command) interaction. Its relevance
score blends usage and recency and is used both for ranking search results
and for deciding what survives eviction.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

SCHEMA_VERSION = "1.0"

# Timestamps in year 1 are the zero time written by older clients.
ZERO_TIME_YEAR = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_request(request: str) -> str:
    """Lowercase and collapse whitespace."""
    return " ".join(request.lower().split())


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an RFC3339 string (or a YAML-native datetime) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(text)
        except ValueError:
            return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def format_timestamp(ts: datetime | None) -> str:
    if ts is None:
        return ""
    return ts.isoformat(timespec="seconds")


def _parse_usage_count(value: Any) -> int:
    """Integer usage count, or -1 (never valid) when the value is not a whole number."""
    if isinstance(value, bool):
        return -1
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        return -1


def _parse_bool(value: Any) -> bool:
    """Real booleans pass through; only the strings "true"/"false" are mapped."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


class MatchType(str, Enum):
    """Which matching strategy produced a search result's score."""

    EXACT = "exact"
    FUZZY = "fuzzy"
    KEYWORD = "keyword"
    SEMANTIC = "semantic"
    COMMAND = "command"


class SortBy(str, Enum):
    RELEVANCE = "relevance"
    FREQUENCY = "frequency"
    RECENCY = "recency"
    COMBINED = "combined"


@dataclass
class MemoryEntry:
    """One remembered interaction: a user request and the command chosen for it."""

    id: str
    user_request: str
    selected_command: str
    normalized_request: str = ""
    description: str = ""
    success: bool = False
    timestamp: datetime | None = None
    usage_count: int = 1
    source: str = ""

    def is_valid(self) -> bool:
        return bool(
            self.id
            and self.user_request
            and self.selected_command
            and self.timestamp is not None
            and self.timestamp.year > ZERO_TIME_YEAR
            and self.usage_count >= 1
            and self.normalized_request == normalize_request(self.user_request)
        )

    def age(self, now: datetime | None = None) -> timedelta:
        if self.timestamp is None:
            return timedelta(0)
        return (now or utcnow()) - self.timestamp

    def relevance_score(self, now: datetime | None = None) -> float:
        """Blend usage (40%) and recency (60%), boosted by 1.2 on success.

        Recency decays as 1 / (1 + days/30). The result lies in (0, 1.2].
        """
        usage_score = min(self.usage_count / 10.0, 1.0) if self.usage_count > 0 else 0.0

        recency_score = 1.0
        age = self.age(now)
        if age > timedelta(0):
            days = age.total_seconds() / 86400
            recency_score = 1.0 / (1.0 + days / 30.0)

        success_boost = 1.2 if self.success else 1.0
        return (usage_score * 0.4 + recency_score * 0.6) * success_boost

    def copy(self) -> MemoryEntry:
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_request": self.user_request,
            "normalized_request": self.normalized_request,
            "selected_command": self.selected_command,
            "description": self.description,
            "success": self.success,
            "timestamp": format_timestamp(self.timestamp),
            "usage_count": self.usage_count,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryEntry:
        """Build an entry from its on-disk map. Missing fields get empty values."""
        user_request = str(data.get("user_request") or "")
        normalized = data.get("normalized_request")
        usage_count = _parse_usage_count(data.get("usage_count", 1))
        return cls(
            id=str(data.get("id") or ""),
            user_request=user_request,
            normalized_request=(
                str(normalized) if normalized is not None else normalize_request(user_request)
            ),
            selected_command=str(data.get("selected_command") or ""),
            description=str(data.get("description") or ""),
            success=_parse_bool(data.get("success", False)),
            timestamp=parse_timestamp(data.get("timestamp")),
            usage_count=usage_count,
            source=str(data.get("source") or ""),
        )

    def __str__(self) -> str:
        return f"{self.user_request} -> {self.selected_command}"


@dataclass
class Metadata:
    version: str = SCHEMA_VERSION
    last_updated: datetime | None = None
    total_entries: int = 0
    max_entries: int = 1000

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "last_updated": format_timestamp(self.last_updated),
            "total_entries": self.total_entries,
            "max_entries": self.max_entries,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Metadata:
        return cls(
            version=str(data.get("version") or SCHEMA_VERSION),
            last_updated=parse_timestamp(data.get("last_updated")),
            total_entries=int(data.get("total_entries") or 0),
            max_entries=int(data.get("max_entries") or 1000),
        )


@dataclass
class Memory:
    """The entry collection plus its metadata, as persisted in memory.yaml."""

    entries: list[MemoryEntry] = field(default_factory=list)
    metadata: Metadata = field(default_factory=Metadata)

    @classmethod
    def new(cls, max_entries: int = 1000) -> Memory:
        return cls(metadata=Metadata(last_updated=utcnow(), max_entries=max_entries))

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "metadata": self.metadata.to_dict(),
        }


@dataclass
class SearchResult:
    entry: MemoryEntry
    score: float
    reason: str
    match_type: MatchType | None


@dataclass
class SearchOptions:
    max_results: int = 10
    min_score: float = 0.3
    include_failures: bool = False
    sort_by: SortBy = SortBy.COMBINED


DEFAULT_SEARCH_OPTIONS = SearchOptions()


@dataclass
class MemoryConfig:
    """Retention and persistence settings for the command memory."""

    max_entries: int = 1000
    max_file_size: int = 10 * 1024 * 1024  # advisory, not enforced
    cleanup_interval: timedelta = timedelta(hours=24)
    min_usage_count: int = 1
    max_age: timedelta = timedelta(days=90)
    backup_count: int = 5
    enable_compression: bool = False  # unused


@dataclass
class EntryUpdate:
    """Partial update for an entry. Fields left as None are not touched."""

    user_request: str | None = None
    selected_command: str | None = None
    description: str | None = None
    success: bool | None = None
    source: str | None = None


@dataclass
class BackupInfo:
    filename: str
    path: str
    size: int
    mod_time: datetime


@dataclass
class FileInfo:
    path: str
    exists: bool = False
    size: int = 0
    mod_time: datetime | None = None


@dataclass
class MemoryStats:
    total_entries: int
    total_usage: int
    success_count: int
    success_rate: float
    last_updated: datetime | None
    memory_file: str
