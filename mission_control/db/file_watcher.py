"""File watcher service using watchfiles.

Monitors the plan directory for phase file modifications and hands each
changed path to a callback (the sync engine's debounce entry point).
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional

from watchfiles import awatch, Change

logger = logging.getLogger("mission_control.watcher")

# Raw watchfiles batching; the sync engine applies its own per-file debounce
_RAW_DEBOUNCE_MS = 100


class FileWatcher:
    """Background file watcher that reports modified files.

    Uses `watchfiles` (Rust-accelerated) for efficient watching.
    """

    def __init__(self):
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False

    async def start(
        self,
        root: Path,
        on_change: Callable[[Path], None],
        *,
        suffix: str = ".md",
        max_depth: int = 2,
    ) -> None:
        """Start watching `root` in a background task."""
        if self._running:
            logger.warning("File watcher already running")
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(
            self._watch_loop(root, on_change, suffix, max_depth)
        )
        logger.info(f"File watcher started for {root}")

    async def stop(self) -> None:
        """Stop the file watcher."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._stop_event = None
        logger.info("File watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _watch_loop(
        self,
        root: Path,
        on_change: Callable[[Path], None],
        suffix: str,
        max_depth: int,
    ) -> None:
        """Main watching loop. Never lets a callback error end the watch."""
        if not root.exists():
            logger.warning(f"Watch root {root} does not exist, watcher has nothing to monitor")
            self._running = False
            return

        logger.info(f"Watching plan directory: {root}")

        try:
            async for changes in awatch(root, stop_event=self._stop_event, debounce=_RAW_DEBOUNCE_MS):
                if not self._running:
                    break

                for path in self._classify_changes(changes, root, suffix, max_depth):
                    try:
                        on_change(path)
                    except Exception as e:
                        logger.error(f"Error scheduling sync for {path}: {e}")
        except asyncio.CancelledError:
            logger.info("File watcher task cancelled")
        except Exception as e:
            logger.error(f"File watcher error: {e}")
        finally:
            self._running = False

    def _classify_changes(
        self,
        changes: set[tuple[Change, str]],
        root: Path,
        suffix: str,
        max_depth: int,
    ) -> list[Path]:
        """Reduce raw watchfiles changes to modified paths worth syncing.

        Deletions are dropped. Editors that save by rename surface as
        `added`, so those count as modifications too.
        """
        result: list[Path] = []
        seen: set[Path] = set()
        for change_type, path_str in changes:
            path = Path(path_str)

            if path.suffix != suffix:
                continue
            if change_type not in (Change.modified, Change.added):
                continue
            if not self._within_depth(path, root, max_depth):
                continue
            if path in seen:
                continue
            seen.add(path)
            result.append(path)

        return result

    @staticmethod
    def _within_depth(path: Path, root: Path, max_depth: int) -> bool:
        """True when `path` sits at most `max_depth` directories below `root`."""
        try:
            relative = path.relative_to(root)
        except ValueError:
            try:
                relative = path.resolve(strict=False).relative_to(root.resolve(strict=False))
            except ValueError:
                return False
        return len(relative.parts) - 1 <= max_depth
