"""Command memory — remembers which shell command answered which request.

Layout:
    <config-dir>/clia/
    ├── memory.yaml                        # Entries + metadata (source of truth)
    └── backups/
        └── memory_20261016_120000.yaml   # Timestamped snapshots (backup_count kept)

``MemoryManager`` is the entry point: search past commands for a new
request, record the command the user ran, and report its outcome.
"""

from clia.memory.errors import (
    BackupError,
    EntryNotFoundError,
    EntryValidationError,
    MemoryStoreError,
    StorageIOError,
    StorageParseError,
)
from clia.memory.manager import MemoryManager
from clia.memory.search import MemorySearch
from clia.memory.store import MemoryStorage
from clia.memory.types import (
    DEFAULT_SEARCH_OPTIONS,
    EntryUpdate,
    MatchType,
    Memory,
    MemoryConfig,
    MemoryEntry,
    SearchOptions,
    SearchResult,
    SortBy,
)

__all__ = [
    "BackupError",
    "DEFAULT_SEARCH_OPTIONS",
    "EntryNotFoundError",
    "EntryUpdate",
    "EntryValidationError",
    "MatchType",
    "Memory",
    "MemoryConfig",
    "MemoryEntry",
    "MemoryManager",
    "MemorySearch",
    "MemoryStorage",
    "MemoryStoreError",
    "SearchOptions",
    "SearchResult",
    "SortBy",
    "StorageIOError",
    "StorageParseError",
]
