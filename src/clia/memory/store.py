"""YAML persistence for command memory.

The primary file is written atomically (temp file + rename). Before each
write the previous file is copied into a sibling ``backups/`` directory as
``memory_<YYYYMMDD_HHMMSS>.yaml``; only the newest ``max_backups`` copies
are kept.
"""

from __future__ import annotations

import logging
import os
import shutil
from datetime import datetime
from pathlib import Path

import yaml

from clia.memory.errors import (
    BackupError,
    EntryValidationError,
    StorageIOError,
    StorageParseError,
)
from clia.memory.types import (
    BackupInfo,
    FileInfo,
    Memory,
    MemoryEntry,
    Metadata,
    format_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "memory_"
BACKUP_SUFFIX = ".yaml"
BACKUP_TIME_FORMAT = "%Y%m%d_%H%M%S"


class MemoryStorage:
    """Reads and writes one memory file and manages its backups."""

    def __init__(self, file_path: Path, max_backups: int = 5) -> None:
        self.file_path = Path(file_path)
        self.backup_dir = self.file_path.parent / "backups"
        self.max_backups = max_backups

    # ── Load / save ───────────────────────────────────────────

    def load(self) -> Memory:
        """Load the memory file. A missing file yields empty memory."""
        if not self.file_path.exists():
            return Memory.new()

        try:
            text = self.file_path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageIOError(f"failed to read memory file {self.file_path}: {e}") from e

        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise StorageParseError(f"failed to parse memory YAML {self.file_path}: {e}") from e

        if data is None:
            return Memory.new()
        if not isinstance(data, dict):
            raise StorageParseError(f"memory file {self.file_path} is not a mapping")

        raw_entries = data.get("entries") or []
        if not isinstance(raw_entries, list):
            raise StorageParseError(f"'entries' in {self.file_path} is not a list")

        raw_meta = data.get("metadata") or {}
        try:
            metadata = Metadata.from_dict(raw_meta if isinstance(raw_meta, dict) else {})
        except (TypeError, ValueError) as e:
            raise StorageParseError(f"invalid metadata in {self.file_path}: {e}") from e

        entries: list[MemoryEntry] = []
        for i, raw in enumerate(raw_entries):
            if not isinstance(raw, dict):
                logger.warning("Skipping malformed entry at index %d: %r", i, raw)
                continue
            entry = MemoryEntry.from_dict(raw)
            if not entry.is_valid():
                logger.warning("Skipping invalid entry at index %d: %r", i, raw)
                continue
            entries.append(entry)

        memory = Memory(entries=entries, metadata=metadata)
        memory.metadata.total_entries = len(entries)
        return memory

    def save(self, memory: Memory) -> None:
        """Validate, back up the current file, then atomically replace it."""
        self._validate(memory)

        try:
            self._create_backup()
        except BackupError as e:
            logger.warning("Failed to create backup: %s", e)

        try:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"failed to create directory {self.file_path.parent}: {e}") from e

        content = self.render(memory)
        tmp_path = self.file_path.with_name(self.file_path.name + ".tmp")
        try:
            tmp_path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise StorageIOError(f"failed to write temporary file {tmp_path}: {e}") from e
        try:
            os.replace(tmp_path, self.file_path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageIOError(f"failed to move temporary file into place: {e}") from e

        try:
            self._cleanup_old_backups()
        except OSError as e:
            logger.warning("Failed to cleanup old backups: %s", e)

    def render(self, memory: Memory) -> str:
        """Serialize memory to YAML with the generated header comment."""
        header = (
            "# clia memory file\n"
            f"# Generated on {format_timestamp(utcnow())}\n"
            f"# Total entries: {len(memory.entries)}\n\n"
        )
        body = yaml.safe_dump(
            memory.to_dict(),
            sort_keys=False,
            allow_unicode=True,
            default_flow_style=False,
        )
        return header + body

    def _validate(self, memory: Memory) -> None:
        """Drop invalid entries and refresh metadata. Structural problems are fatal."""
        if memory is None:
            raise EntryValidationError("memory is None")
        if not isinstance(memory.entries, list):
            raise EntryValidationError("memory entries must be a list")
        if not memory.metadata.version:
            memory.metadata.version = Metadata().version

        valid = []
        for i, entry in enumerate(memory.entries):
            if not isinstance(entry, MemoryEntry) or not entry.is_valid():
                logger.warning("Skipping invalid entry at index %d: %r", i, entry)
                continue
            valid.append(entry)
        memory.entries = valid
        memory.metadata.total_entries = len(valid)

    # ── Backups ───────────────────────────────────────────────

    def _create_backup(self) -> Path | None:
        """Copy the current file into backups/. No-op if there is nothing to copy."""
        if not self.file_path.exists():
            return None
        ts = datetime.now().strftime(BACKUP_TIME_FORMAT)
        backup_path = self.backup_dir / f"{BACKUP_PREFIX}{ts}{BACKUP_SUFFIX}"
        # Several saves within one second must not overwrite each other
        counter = 2
        while backup_path.exists():
            backup_path = self.backup_dir / f"{BACKUP_PREFIX}{ts}_{counter}{BACKUP_SUFFIX}"
            counter += 1
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(self.file_path, backup_path)
        except OSError as e:
            raise BackupError(f"failed to back up {self.file_path}: {e}") from e
        return backup_path

    def _backup_files(self) -> list[Path]:
        if not self.backup_dir.is_dir():
            return []
        return [
            p
            for p in self.backup_dir.iterdir()
            if p.is_file() and p.name.startswith(BACKUP_PREFIX) and p.name.endswith(BACKUP_SUFFIX)
        ]

    def _cleanup_old_backups(self) -> int:
        """Keep only the newest `max_backups` backups (by mtime). Returns count removed."""
        backups = sorted(self._backup_files(), key=lambda p: (p.stat().st_mtime, p.name))
        excess = len(backups) - self.max_backups
        removed = 0
        for path in backups[: max(excess, 0)]:
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.warning("Failed to remove old backup %s: %s", path, e)
        return removed

    def list_backups(self) -> list[BackupInfo]:
        backups = []
        for path in sorted(self._backup_files()):
            try:
                st = path.stat()
            except OSError:
                continue
            backups.append(
                BackupInfo(
                    filename=path.name,
                    path=str(path),
                    size=st.st_size,
                    mod_time=datetime.fromtimestamp(st.st_mtime).astimezone(),
                )
            )
        return backups

    def restore_from_backup(self, backup_path: Path) -> None:
        """Replace the memory file with a backup, backing up the current file first."""
        backup_path = Path(backup_path)
        if not backup_path.is_file():
            raise BackupError(f"backup file does not exist: {backup_path}")

        try:
            self._create_backup()
        except BackupError as e:
            logger.warning("Failed to backup current file before restore: %s", e)

        try:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(backup_path, self.file_path)
        except OSError as e:
            raise BackupError(f"failed to restore from {backup_path}: {e}") from e
        logger.info("Restored memory file from %s", backup_path)

    # ── File info ─────────────────────────────────────────────

    def get_file_info(self) -> FileInfo:
        info = FileInfo(path=str(self.file_path))
        try:
            st = self.file_path.stat()
        except FileNotFoundError:
            return info
        except OSError as e:
            raise StorageIOError(f"failed to stat {self.file_path}: {e}") from e
        info.exists = True
        info.size = st.st_size
        info.mod_time = datetime.fromtimestamp(st.st_mtime).astimezone()
        return info
