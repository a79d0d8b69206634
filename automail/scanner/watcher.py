"""Filesystem watcher that requests early rescans.

Uses the ``watchdog`` library (inotify on Linux). The Observer runs in a
background thread; events are forwarded to the asyncio loop by setting a
``wake`` event that the scheduler loop waits on. The heartbeat still runs,
so a missed event only delays a rescan until the next due tick.
"""

import asyncio
import logging
import os
import time

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

# A file being written produces several events for the same path; collapse them.
DEBOUNCE_SECONDS = 2.0


class InventoryChangeHandler(FileSystemEventHandler):
    """Sets ``wake`` when a file appears, disappears, or is renamed."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        wake: asyncio.Event,
        debounce: float = DEBOUNCE_SECONDS,
    ) -> None:
        super().__init__()
        self._loop = loop
        self._wake = wake
        self._debounce = debounce
        self._last_seen: dict[str, float] = {}

    def _should_debounce(self, path: str) -> bool:
        now = time.monotonic()
        last = self._last_seen.get(path)
        if last is not None and now - last < self._debounce:
            return True
        self._last_seen[path] = now
        return False

    def _request_scan(self, event: FileSystemEvent) -> None:
        if event.is_directory or self._should_debounce(str(event.src_path)):
            return
        logger.info("Change detected: %s %s", event.event_type, event.src_path)
        self._loop.call_soon_threadsafe(self._wake.set)

    def on_created(self, event: FileSystemEvent) -> None:
        self._request_scan(event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._request_scan(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._request_scan(event)

    def on_closed(self, event: FileSystemEvent) -> None:
        """File finished writing (inotify IN_CLOSE_WRITE)."""
        self._request_scan(event)


class FolderWatcher:
    """Watches the monitored folders (non-recursive) while in a ``with`` block.

    Usage::

        wake = asyncio.Event()
        with FolderWatcher(folders, loop=loop, wake=wake):
            await scheduler.run(engine.scan, wake=wake)
    """

    def __init__(
        self,
        folders: list[str],
        *,
        loop: asyncio.AbstractEventLoop,
        wake: asyncio.Event,
    ) -> None:
        self._folders = folders
        self._handler = InventoryChangeHandler(loop=loop, wake=wake)
        self._observer = Observer()

    def start(self) -> None:
        for folder in self._folders:
            if not os.path.isdir(folder):
                logger.warning("Cannot watch %s: not a directory", folder)
                continue
            self._observer.schedule(self._handler, folder, recursive=False)
        self._observer.start()
        logger.info("Watching %d folder(s) for changes", len(self._folders))

    def stop(self) -> None:
        self._observer.stop()
        self._observer.join()
        logger.info("Watcher stopped.")

    def __enter__(self) -> "FolderWatcher":
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()
