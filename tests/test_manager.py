"""Tests for the thread-safe memory manager."""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import timedelta
from pathlib import Path

import pytest

from clia.memory.errors import (
    EntryNotFoundError,
    EntryValidationError,
    StorageIOError,
)
from clia.memory.manager import MemoryManager, ReadWriteLock
from clia.memory.store import MemoryStorage
from clia.memory.types import (
    EntryUpdate,
    MatchType,
    Memory,
    MemoryConfig,
    MemoryEntry,
    normalize_request,
    utcnow,
)


def make_entry(
    entry_id: str,
    request: str,
    command: str,
    usage_count: int = 1,
    age: timedelta = timedelta(hours=1),
    success: bool = True,
) -> MemoryEntry:
    return MemoryEntry(
        id=entry_id,
        user_request=request,
        normalized_request=normalize_request(request),
        selected_command=command,
        success=success,
        timestamp=utcnow() - age,
        usage_count=usage_count,
        source="test",
    )


def write_memory(path: Path, *entries: MemoryEntry) -> None:
    memory = Memory.new()
    memory.entries.extend(entries)
    MemoryStorage(path).save(memory)


@pytest.fixture
def memory_file(tmp_path: Path) -> Path:
    return tmp_path / "clia" / "memory.yaml"


@pytest.fixture
def manager(memory_file: Path):
    m = MemoryManager(memory_file)
    yield m
    m.close()


class TestAdd:
    def test_creates_entry(self, manager: MemoryManager):
        entry = manager.add("List Directory  Files", "ls -la", "List all files", "ai", True)
        assert entry.id
        assert entry.normalized_request == "list directory files"
        assert entry.usage_count == 1
        assert entry.source == "ai"
        assert entry.is_valid()
        assert len(manager.get_all()) == 1

    def test_repeat_merges(self, manager: MemoryManager):
        manager.add("list directory files", "ls -la", "List all files", "test", True)
        manager.add("list directory files", "ls -la", "updated desc", "test", True)
        entries = manager.get_all()
        assert len(entries) == 1
        assert entries[0].usage_count == 2
        assert entries[0].description == "updated desc"

    def test_empty_description_keeps_old(self, manager: MemoryManager):
        manager.add("list files", "ls", "original", "test", True)
        manager.add("list files", "ls", "", "test", False)
        entry = manager.get_all()[0]
        assert entry.description == "original"
        assert entry.success is False

    def test_same_command_merges(self, manager: MemoryManager):
        manager.add("list files", "ls -la")
        manager.add("show everything here", "ls -la")
        entries = manager.get_all()
        assert len(entries) == 1
        assert entries[0].usage_count == 2

    def test_near_identical_request_merges(self, manager: MemoryManager):
        manager.add("list all files in directory", "ls -la")
        manager.add("list all files in directorys", "ls -A")
        assert len(manager.get_all()) == 1

    def test_distinct_requests(self, manager: MemoryManager):
        manager.add("list files", "ls -la")
        manager.add("show disk usage", "du -sh")
        assert len(manager.get_all()) == 2

    def test_rejects_empty(self, manager: MemoryManager):
        with pytest.raises(EntryValidationError):
            manager.add("   ", "ls")
        with pytest.raises(EntryValidationError):
            manager.add("list files", "")
        assert manager.get_all() == []

    def test_persists_in_background(self, manager: MemoryManager, memory_file: Path):
        entry = manager.add("list files", "ls -la")
        manager.flush()
        loaded = MemoryStorage(memory_file).load()
        assert [e.id for e in loaded.entries] == [entry.id]

    def test_background_failure_only_logged(self, manager: MemoryManager, monkeypatch, caplog):
        def fail(memory):
            raise StorageIOError("disk full")

        monkeypatch.setattr(manager._storage, "save", fail)
        with caplog.at_level(logging.WARNING):
            manager.add("list files", "ls -la")
            manager.flush()
        assert "Failed to save memory after add" in caplog.text
        assert len(manager.get_all()) == 1

    def test_over_capacity_evicts(self, memory_file: Path):
        m = MemoryManager(memory_file, MemoryConfig(max_entries=2))
        try:
            m.add("list files", "ls")
            m.add("show disk usage", "du -sh")
            m.add("print working directory", "pwd")
            assert len(m.get_all()) == 2
        finally:
            m.close()


class TestRemoveAndUpdate:
    def test_remove(self, manager: MemoryManager):
        entry = manager.add("list files", "ls")
        manager.remove(entry.id)
        assert manager.get_all() == []

    def test_remove_missing(self, manager: MemoryManager):
        with pytest.raises(EntryNotFoundError):
            manager.remove("nope")

    def test_update_fields(self, manager: MemoryManager):
        entry = manager.add("list files", "ls", "old", "ai", True)
        updated = manager.update(
            entry.id,
            EntryUpdate(
                user_request="List  Hidden Files",
                selected_command="ls -a",
                description="new",
                success=False,
                source="manual",
            ),
        )
        assert updated.user_request == "List  Hidden Files"
        assert updated.normalized_request == "list hidden files"
        assert updated.selected_command == "ls -a"
        assert updated.description == "new"
        assert updated.success is False
        assert updated.source == "manual"
        assert updated.timestamp >= entry.timestamp
        assert manager.get(entry.id) == updated

    def test_update_partial(self, manager: MemoryManager):
        entry = manager.add("list files", "ls", "desc", "ai", True)
        updated = manager.update(entry.id, EntryUpdate(description="changed"))
        assert updated.selected_command == "ls"
        assert updated.source == "ai"
        assert updated.description == "changed"

    def test_update_missing(self, manager: MemoryManager):
        with pytest.raises(EntryNotFoundError):
            manager.update("nope", EntryUpdate(success=True))

    def test_update_invalid_leaves_entry(self, manager: MemoryManager):
        entry = manager.add("list files", "ls")
        with pytest.raises(EntryValidationError):
            manager.update(entry.id, EntryUpdate(selected_command=""))
        assert manager.get(entry.id).selected_command == "ls"

    def test_record_outcome(self, manager: MemoryManager):
        entry = manager.add("list files", "ls", success=True)
        assert manager.record_outcome(entry.id, False).success is False
        assert manager.get_all()[0].success is False


class TestQueries:
    def test_search(self, manager: MemoryManager):
        manager.add("list files", "ls -la")
        manager.add("show disk usage", "du -sh")
        results = manager.search("list files")
        assert results[0].entry.selected_command == "ls -la"
        assert results[0].match_type is MatchType.EXACT

    def test_get_all_is_defensive_copy(self, manager: MemoryManager):
        manager.add("list files", "ls")
        entries = manager.get_all()
        entries[0].usage_count = 42
        entries.append(entries[0])
        fresh = manager.get_all()
        assert len(fresh) == 1
        assert fresh[0].usage_count == 1

    def test_stats(self, manager: MemoryManager, memory_file: Path):
        manager.add("list files", "ls", success=True)
        manager.add("list files", "ls", success=True)
        manager.add("show disk usage", "du -sh", success=False)
        stats = manager.get_stats()
        assert stats.total_entries == 2
        assert stats.total_usage == 3
        assert stats.success_count == 1
        assert stats.success_rate == pytest.approx(0.5)
        assert stats.memory_file == str(memory_file)

    def test_stats_empty(self, manager: MemoryManager):
        stats = manager.get_stats()
        assert stats.total_entries == 0
        assert stats.success_rate == 0.0


class TestCleanup:
    def test_keeps_top_relevance(self, memory_file: Path):
        write_memory(
            memory_file,
            *[make_entry(f"e{u}", f"request {u} {'x' * u}", f"cmd{u}", usage_count=u) for u in range(1, 6)],
        )
        m = MemoryManager.open(memory_file, MemoryConfig(max_entries=3))
        try:
            assert m.cleanup() == 2
            assert sorted(e.id for e in m.get_all()) == ["e3", "e4", "e5"]
        finally:
            m.close()

    def test_drops_old_and_rarely_used(self, memory_file: Path):
        write_memory(
            memory_file,
            make_entry("old", "old request", "a", usage_count=5, age=timedelta(days=120)),
            make_entry("rare", "rare request", "b", usage_count=1),
            make_entry("keep", "kept request", "c", usage_count=3),
        )
        m = MemoryManager.open(memory_file, MemoryConfig(min_usage_count=2))
        try:
            m.cleanup()
            assert [e.id for e in m.get_all()] == ["keep"]
        finally:
            m.close()

    def test_saves_synchronously(self, memory_file: Path):
        write_memory(
            memory_file,
            *[make_entry(f"e{u}", f"request {u} {'x' * u}", f"cmd{u}", usage_count=u) for u in range(1, 6)],
        )
        m = MemoryManager.open(memory_file, MemoryConfig(max_entries=3))
        try:
            m.cleanup()
            assert len(MemoryStorage(memory_file).load().entries) == 3
        finally:
            m.close()


class TestImportExport:
    def test_export(self, manager: MemoryManager, tmp_path: Path):
        a = manager.add("list files", "ls")
        b = manager.add("show disk usage", "du -sh")
        target = tmp_path / "export" / "out.yaml"
        manager.export_to(target)
        loaded = MemoryStorage(target).load()
        assert [e.id for e in loaded.entries] == [a.id, b.id]

    def test_import_replace(self, manager: MemoryManager, tmp_path: Path, memory_file: Path):
        manager.add("list files", "ls")
        source = tmp_path / "import.yaml"
        write_memory(source, make_entry("imp", "show disk usage", "du -sh", usage_count=4))

        assert manager.import_from(source, merge=False) == 1

        assert [e.id for e in manager.get_all()] == ["imp"]
        assert [e.id for e in MemoryStorage(memory_file).load().entries] == ["imp"]

    def test_import_merge(self, manager: MemoryManager, tmp_path: Path):
        existing = manager.add("list files", "ls")
        newer = make_entry("dup", "list files", "ls", usage_count=3, age=timedelta(0))
        newer.timestamp = existing.timestamp + timedelta(days=1)
        source = tmp_path / "import.yaml"
        write_memory(source, newer, make_entry("new", "show disk usage", "du -sh", usage_count=2))

        manager.import_from(source, merge=True)

        entries = {e.id: e for e in manager.get_all()}
        assert set(entries) == {existing.id, "new"}
        assert entries[existing.id].usage_count == 4
        assert entries[existing.id].timestamp == newer.timestamp.replace(microsecond=0)
        assert entries["new"].usage_count == 2

    def test_import_merge_keeps_later_timestamp(self, manager: MemoryManager, tmp_path: Path):
        existing = manager.add("list files", "ls")
        source = tmp_path / "import.yaml"
        write_memory(source, make_entry("dup", "list files", "ls", age=timedelta(days=10)))
        manager.import_from(source, merge=True)
        assert manager.get(existing.id).timestamp == existing.timestamp

    def test_import_over_capacity_evicts(self, memory_file: Path, tmp_path: Path):
        source = tmp_path / "import.yaml"
        write_memory(
            source,
            *[make_entry(f"e{u}", f"request {u} {'x' * u}", f"cmd{u}", usage_count=u) for u in range(1, 6)],
        )
        m = MemoryManager(memory_file, MemoryConfig(max_entries=2))
        try:
            m.import_from(source)
            assert sorted(e.id for e in m.get_all()) == ["e4", "e5"]
        finally:
            m.close()

    def test_import_missing_file(self, manager: MemoryManager, tmp_path: Path):
        manager.add("list files", "ls")
        with pytest.raises(StorageIOError):
            manager.import_from(tmp_path / "missing.yaml")
        assert len(manager.get_all()) == 1


class TestLifecycle:
    def test_open_loads_existing(self, memory_file: Path):
        write_memory(memory_file, make_entry("a", "list files", "ls"))
        m = MemoryManager.open(memory_file)
        try:
            assert [e.id for e in m.get_all()] == ["a"]
        finally:
            m.close()

    def test_open_corrupt_file_starts_empty(self, memory_file: Path, caplog):
        memory_file.parent.mkdir(parents=True)
        memory_file.write_text("entries: [unclosed\n", encoding="utf-8")
        with caplog.at_level(logging.WARNING):
            m = MemoryManager.open(memory_file)
        try:
            assert m.get_all() == []
            assert "Could not load memory" in caplog.text
        finally:
            m.close()

    def test_restore_from_backup_reloads(self, manager: MemoryManager):
        manager.add("list files", "ls")
        manager.save()
        manager.add("show disk usage", "du -sh")
        manager.save()
        backup = manager.list_backups()[0]

        manager.restore_from_backup(Path(backup.path))

        assert [e.selected_command for e in manager.get_all()] == ["ls"]

    def test_set_config(self, manager: MemoryManager):
        manager.set_config(MemoryConfig(max_entries=7, backup_count=2))
        assert manager.get_config().max_entries == 7
        assert manager._storage.max_backups == 2

    def test_add_after_close_does_not_raise(self, memory_file: Path, caplog):
        m = MemoryManager(memory_file)
        m.close()
        with caplog.at_level(logging.WARNING):
            m.add("list files", "ls")
        assert "not saving" in caplog.text

    def test_close_racing_with_adds(self, memory_file: Path):
        m = MemoryManager(memory_file)
        errors: list[Exception] = []
        started = threading.Barrier(3)

        def writer():
            started.wait()
            try:
                for _ in range(50):
                    token = uuid.uuid4().hex
                    m.add(token, f"echo {token}")
            except Exception as e:  # pragma: no cover
                errors.append(e)

        threads = [threading.Thread(target=writer) for _ in range(2)]
        for t in threads:
            t.start()
        started.wait()
        m.close()
        for t in threads:
            t.join()

        assert errors == []
        assert len(m.get_all()) == 100


class TestConcurrency:
    def test_parallel_adds_and_searches(self, manager: MemoryManager):
        errors: list[Exception] = []

        def writer():
            try:
                for _ in range(10):
                    token = uuid.uuid4().hex
                    manager.add(token, f"echo {token}")
            except Exception as e:  # pragma: no cover
                errors.append(e)

        def reader():
            try:
                for _ in range(20):
                    manager.search("echo something")
                    manager.get_stats()
            except Exception as e:  # pragma: no cover
                errors.append(e)

        threads = [threading.Thread(target=writer) for _ in range(4)]
        threads += [threading.Thread(target=reader) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        manager.flush()

        assert errors == []
        assert len(manager.get_all()) == 40

    def test_readers_share_lock(self):
        lock = ReadWriteLock()
        barrier = threading.Barrier(2, timeout=5)

        def read():
            with lock.read():
                barrier.wait()

        threads = [threading.Thread(target=read) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert not barrier.broken

    def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        events: list[str] = []
        writer_in = threading.Event()

        def write():
            with lock.write():
                writer_in.set()
                events.append("write-start")
                threading.Event().wait(0.05)
                events.append("write-end")

        def read():
            writer_in.wait()
            with lock.read():
                events.append("read")

        w = threading.Thread(target=write)
        r = threading.Thread(target=read)
        w.start()
        r.start()
        w.join()
        r.join()
        assert events == ["write-start", "write-end", "read"]
