"""Entry point: python -m clia <command>

Maintenance commands for the command memory:

- stats                    Entry counts and success rate
- search <query...>        Show remembered commands for a request
- cleanup                  Evict stale entries now (synchronous save)
- backups                  List backup snapshots
- restore <backup>         Restore memory.yaml from a backup
- export <path>            Write memory to another file
- import <path> [--merge]  Replace (or merge into) memory from a file
- maintain                 Run the periodic cleanup scheduler until interrupted
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

from clia.config import load_config
from clia.memory import MemoryManager, MemoryStoreError


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _usage() -> None:
    print(__doc__.split("\n\n", 1)[1].strip())


def _run_stats(manager: MemoryManager) -> None:
    stats = manager.get_stats()
    print(f"Memory file:   {stats.memory_file}")
    print(f"Entries:       {stats.total_entries}")
    print(f"Total usage:   {stats.total_usage}")
    print(f"Success rate:  {stats.success_rate:.0%} ({stats.success_count})")
    if stats.last_updated:
        print(f"Last updated:  {stats.last_updated.isoformat(timespec='seconds')}")


def _run_search(manager: MemoryManager, query: str) -> None:
    results = manager.search(query)
    if not results:
        print("No matching commands remembered.")
        return
    for r in results:
        match = r.match_type.value if r.match_type else "-"
        print(f"{r.score:.2f}  [{match}]  {r.entry.selected_command}")
        print(f"      {r.entry.user_request} ({r.reason})")


def _run_backups(manager: MemoryManager) -> None:
    backups = manager.list_backups()
    if not backups:
        print("No backups found.")
        return
    for b in backups:
        print(f"{b.mod_time.isoformat(timespec='seconds')}  {b.size:>8}  {b.path}")


def _run_maintain(manager: MemoryManager) -> None:
    from clia.memory.scheduler import CleanupScheduler

    scheduler = CleanupScheduler(manager)
    try:
        asyncio.run(scheduler.start(asyncio.Event()))
    except KeyboardInterrupt:
        pass


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if not args:
        _usage()
        return 1

    config = load_config()
    _setup_logging(config.log_level)

    cmd, rest = args[0], args[1:]
    manager = MemoryManager.from_config(config)
    try:
        if cmd == "stats":
            _run_stats(manager)
        elif cmd == "search" and rest:
            _run_search(manager, " ".join(rest))
        elif cmd == "cleanup":
            removed = manager.cleanup()
            print(f"Removed {removed} entries.")
        elif cmd == "backups":
            _run_backups(manager)
        elif cmd == "restore" and rest:
            manager.restore_from_backup(Path(rest[0]))
            print(f"Restored from {rest[0]}")
        elif cmd == "export" and rest:
            manager.export_to(Path(rest[0]))
            print(f"Exported to {rest[0]}")
        elif cmd == "import" and rest:
            count = manager.import_from(Path(rest[0]), merge="--merge" in rest[1:])
            print(f"Imported {count} entries.")
        elif cmd == "maintain":
            _run_maintain(manager)
        else:
            _usage()
            return 1
    except MemoryStoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        manager.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
