"""Thread-safe façade over command memory.

``MemoryManager`` owns the in-memory entry collection, guarded by a single
reader/writer lock. Search, ``get_all`` and ``get_stats`` share the read
side; every mutation takes the write side.

Persistence has two contracts:

- ``add``/``remove``/``update`` hand the write to a single background worker
  and return immediately. A failed background write is only logged.
- ``save``, ``cleanup`` and ``import_from`` write synchronously and raise on
  failure.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

from clia.memory.errors import (
    EntryNotFoundError,
    EntryValidationError,
    MemoryStoreError,
    StorageIOError,
)
from clia.memory.search import MemorySearch, similarity
from clia.memory.store import MemoryStorage
from clia.memory.types import (
    BackupInfo,
    EntryUpdate,
    FileInfo,
    Memory,
    MemoryConfig,
    MemoryEntry,
    MemoryStats,
    SearchOptions,
    SearchResult,
    normalize_request,
    utcnow,
)

if TYPE_CHECKING:
    from clia.config import CliaConfig

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.9


class ReadWriteLock:
    """Many concurrent readers or one writer. Waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class MemoryManager:
    """Remembers (request → command) interactions and retrieves them for new requests."""

    def __init__(self, memory_file: Path, config: MemoryConfig | None = None) -> None:
        self.config = config or MemoryConfig()
        self.memory_file = Path(memory_file)
        self._storage = MemoryStorage(self.memory_file, max_backups=self.config.backup_count)
        self._search = MemorySearch()
        self._memory = Memory.new(max_entries=self.config.max_entries)
        self._lock = ReadWriteLock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="clia-memory-save")
        self._closed = False
        # guards _closed together with executor submission
        self._close_lock = threading.Lock()

    @classmethod
    def open(cls, memory_file: Path, config: MemoryConfig | None = None) -> MemoryManager:
        """Create a manager and load its file. An unreadable file leaves memory empty."""
        manager = cls(memory_file, config)
        try:
            manager.load()
        except MemoryStoreError as e:
            logger.warning("Could not load memory from %s: %s", memory_file, e)
        return manager

    @classmethod
    def from_config(cls, config: CliaConfig) -> MemoryManager:
        return cls.open(config.memory_file, config.memory)

    # ── Persistence ───────────────────────────────────────────

    def load(self) -> None:
        memory = self._storage.load()
        with self._lock.write():
            memory.metadata.max_entries = self.config.max_entries
            self._memory = memory
        logger.debug("Loaded %d memory entries from %s", len(memory.entries), self.memory_file)

    def save(self) -> None:
        """Write memory to disk now, blocking until done."""
        with self._lock.write():
            self._save_locked()

    def _save_locked(self) -> None:
        meta = self._memory.metadata
        meta.last_updated = utcnow()
        meta.total_entries = len(self._memory.entries)
        meta.max_entries = self.config.max_entries
        self._storage.save(self._memory)

    def _background_save(self, action: str) -> None:
        try:
            self.save()
        except Exception as e:
            logger.warning("Failed to save memory after %s: %s", action, e)

    def _schedule_save(self, action: str) -> None:
        with self._close_lock:
            if self._closed:
                logger.warning("Memory manager closed, not saving after %s", action)
                return
            self._executor.submit(self._background_save, action)

    def flush(self, timeout: float | None = None) -> None:
        """Wait until every background save queued so far has finished."""
        with self._close_lock:
            if self._closed:
                return
            pending = self._executor.submit(lambda: None)
        pending.result(timeout=timeout)

    def close(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._executor.shutdown(wait=True)

    # ── Queries ───────────────────────────────────────────────

    def search(self, query: str, options: SearchOptions | None = None) -> list[SearchResult]:
        with self._lock.read():
            return self._search.search(query, self._memory.entries, options)

    def get_all(self) -> list[MemoryEntry]:
        """Copies of all entries; changing them does not affect the manager."""
        with self._lock.read():
            return [e.copy() for e in self._memory.entries]

    def get(self, entry_id: str) -> MemoryEntry:
        with self._lock.read():
            return self._memory.entries[self._index_of(entry_id)].copy()

    def get_stats(self) -> MemoryStats:
        with self._lock.read():
            entries = self._memory.entries
            total_usage = sum(e.usage_count for e in entries)
            success_count = sum(1 for e in entries if e.success)
            return MemoryStats(
                total_entries=len(entries),
                total_usage=total_usage,
                success_count=success_count,
                success_rate=success_count / len(entries) if entries else 0.0,
                last_updated=self._memory.metadata.last_updated,
                memory_file=str(self.memory_file),
            )

    def get_file_info(self) -> FileInfo:
        return self._storage.get_file_info()

    def get_config(self) -> MemoryConfig:
        return replace(self.config)

    def set_config(self, config: MemoryConfig) -> None:
        with self._lock.write():
            self.config = config
            self._storage.max_backups = config.backup_count
            self._memory.metadata.max_entries = config.max_entries

    # ── Mutations ─────────────────────────────────────────────

    def add(
        self,
        user_request: str,
        selected_command: str,
        description: str = "",
        source: str = "",
        success: bool = True,
    ) -> MemoryEntry:
        """Record that `selected_command` was chosen for `user_request`.

        A similar existing entry (same request, same command, or a request
        within edit-distance similarity 0.9) is bumped instead of duplicated.
        Returns a copy of the stored entry.
        """
        normalized = normalize_request(user_request)
        if not normalized or not selected_command.strip():
            raise EntryValidationError("user request and selected command must be non-empty")

        with self._lock.write():
            entry = self._find_similar(normalized, selected_command)
            if entry is not None:
                entry.usage_count += 1
                entry.timestamp = utcnow()
                entry.success = success
                if description:
                    entry.description = description
            else:
                entry = MemoryEntry(
                    id=str(uuid.uuid4()),
                    user_request=user_request,
                    normalized_request=normalized,
                    selected_command=selected_command,
                    description=description,
                    success=success,
                    timestamp=utcnow(),
                    usage_count=1,
                    source=source,
                )
                if not entry.is_valid():
                    raise EntryValidationError(f"invalid memory entry: {entry!r}")
                self._memory.entries.append(entry)

            result = entry.copy()
            if len(self._memory.entries) > self.config.max_entries:
                self._cleanup()

        self._schedule_save("add")
        return result

    def remove(self, entry_id: str) -> None:
        with self._lock.write():
            del self._memory.entries[self._index_of(entry_id)]
        self._schedule_save("removal")

    def update(self, entry_id: str, changes: EntryUpdate) -> MemoryEntry:
        """Apply the non-None fields of `changes` and refresh the timestamp."""
        with self._lock.write():
            index = self._index_of(entry_id)
            updated = self._memory.entries[index].copy()
            if changes.user_request is not None:
                updated.user_request = changes.user_request
                updated.normalized_request = normalize_request(changes.user_request)
            if changes.selected_command is not None:
                updated.selected_command = changes.selected_command
            if changes.description is not None:
                updated.description = changes.description
            if changes.success is not None:
                updated.success = changes.success
            if changes.source is not None:
                updated.source = changes.source
            updated.timestamp = utcnow()

            if not updated.is_valid():
                raise EntryValidationError(f"update would make entry {entry_id} invalid")

            self._memory.entries[index] = updated
            result = updated.copy()

        self._schedule_save("update")
        return result

    def record_outcome(self, entry_id: str, success: bool) -> MemoryEntry:
        """Mark whether the command of an entry succeeded when it was run."""
        return self.update(entry_id, EntryUpdate(success=success))

    # ── Eviction ──────────────────────────────────────────────

    def cleanup(self) -> int:
        """Evict stale and low-value entries, then save synchronously.

        Returns the number of entries removed.
        """
        with self._lock.write():
            removed = self._cleanup()
            self._save_locked()
        return removed

    def _cleanup(self) -> int:
        now = utcnow()
        before = len(self._memory.entries)
        keep = [
            e
            for e in self._memory.entries
            if e.usage_count >= self.config.min_usage_count
            and now - e.timestamp <= self.config.max_age
        ]
        keep.sort(key=lambda e: e.relevance_score(now), reverse=True)
        keep = keep[: self.config.max_entries]

        logger.info("Memory cleanup: %d -> %d entries", before, len(keep))
        self._memory.entries = keep
        return before - len(keep)

    # ── Import / export ───────────────────────────────────────

    def export_to(self, path: Path) -> None:
        """Write the current collection to `path` as-is."""
        with self._lock.read():
            snapshot = Memory(
                entries=[e.copy() for e in self._memory.entries],
                metadata=replace(self._memory.metadata),
            )
        MemoryStorage(Path(path), max_backups=self.config.backup_count).save(snapshot)

    def import_from(self, path: Path, merge: bool = False) -> int:
        """Load entries from `path`, replacing or merging, then save synchronously.

        Returns the number of entries read from the file.
        """
        path = Path(path)
        if not path.is_file():
            raise StorageIOError(f"import file does not exist: {path}")
        imported = MemoryStorage(path).load()

        with self._lock.write():
            if merge:
                existing_ids = {e.id for e in self._memory.entries}
                for entry in imported.entries:
                    existing = self._find_similar(entry.normalized_request, entry.selected_command)
                    if existing is not None:
                        existing.usage_count += entry.usage_count
                        if entry.timestamp > existing.timestamp:
                            existing.timestamp = entry.timestamp
                        continue
                    if entry.id in existing_ids:
                        entry.id = str(uuid.uuid4())
                    existing_ids.add(entry.id)
                    self._memory.entries.append(entry)
            else:
                self._memory = imported

            if len(self._memory.entries) > self.config.max_entries:
                self._cleanup()
            self._save_locked()

        logger.info(
            "Imported %d entries from %s (%s)", len(imported.entries), path,
            "merged" if merge else "replaced",
        )
        return len(imported.entries)

    # ── Backups ───────────────────────────────────────────────

    def list_backups(self) -> list[BackupInfo]:
        return self._storage.list_backups()

    def restore_from_backup(self, backup_path: Path) -> None:
        """Restore the memory file from a backup and reload it."""
        self.flush()
        with self._lock.write():
            self._storage.restore_from_backup(Path(backup_path))
            memory = self._storage.load()
            memory.metadata.max_entries = self.config.max_entries
            self._memory = memory

    # ── Helpers ───────────────────────────────────────────────

    def _index_of(self, entry_id: str) -> int:
        for i, entry in enumerate(self._memory.entries):
            if entry.id == entry_id:
                return i
        raise EntryNotFoundError(entry_id)

    def _find_similar(self, normalized_request: str, command: str) -> MemoryEntry | None:
        for entry in self._memory.entries:
            if entry.normalized_request == normalized_request or entry.selected_command == command:
                return entry
            if similarity(entry.normalized_request, normalized_request) > SIMILARITY_THRESHOLD:
                return entry
        return None
