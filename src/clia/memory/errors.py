"""Exceptions raised by the command memory."""

from __future__ import annotations


class MemoryStoreError(Exception):
    """Base class for command memory errors."""


class EntryValidationError(MemoryStoreError):
    """An entry (or search options) failed validation."""


class EntryNotFoundError(MemoryStoreError, LookupError):
    def __init__(self, entry_id: str) -> None:
        super().__init__(f"memory entry with ID {entry_id} not found")
        self.entry_id = entry_id


class StorageIOError(MemoryStoreError):
    """Reading or writing the memory file failed."""


class StorageParseError(MemoryStoreError):
    """The memory file is not a valid YAML memory document."""


class BackupError(MemoryStoreError):
    """Creating, pruning or restoring a backup failed."""
