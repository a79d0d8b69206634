"""Folder scanner: enumerate monitored folders into a file inventory.

A folder that cannot be read contributes nothing for this pass and produces
a warning; the remaining folders are still scanned. Subdirectories are not
descended into.
"""

import asyncio
import logging
import os
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field

from automail.scanner.fingerprint import FingerprintCache, inventory_fingerprint
from automail.schemas.reconciliation import FileEntry

logger = logging.getLogger(__name__)


class ScanOutcome(BaseModel):
    """Result of one pass over the monitored folders."""

    entries: tuple[FileEntry, ...] = ()
    changed: bool = False
    fingerprint: str = ""
    warnings: list[str] = Field(default_factory=list)
    scanned_at: datetime


def _list_files(folder: str) -> list[FileEntry]:
    entries = []
    with os.scandir(folder) as it:
        for item in it:
            if item.is_file():
                entries.append(FileEntry(name=item.name, path=item.path, source_folder=folder))
    return sorted(entries, key=lambda e: e.name)


async def file_timestamp(entry: FileEntry) -> datetime | None:
    """Last-modified time of ``entry``, or None if it cannot be read."""
    try:
        stat = await asyncio.to_thread(os.stat, entry.path)
    except OSError as exc:
        logger.debug("No timestamp for %s: %s", entry.name, exc)
        return None
    return datetime.fromtimestamp(stat.st_mtime, UTC)


class FolderScanner:
    """Scans a list of folders and tracks their fingerprint.

    Usage::

        scanner = FolderScanner(["/reports/2024-06"])
        outcome = await scanner.scan()
        if outcome.changed:
            publish(outcome.entries)
    """

    def __init__(self, folders: list[str], cache: FingerprintCache | None = None) -> None:
        self._folders = [str(Path(f)) for f in folders]
        self._cache = cache or FingerprintCache()
        self.last_scan_at: datetime | None = None

    @property
    def folders(self) -> list[str]:
        return list(self._folders)

    def set_folders(self, folders: list[str]) -> None:
        """Replace the monitored folders; forces the next scan to publish."""
        normalized = [str(Path(f)) for f in folders]
        if normalized != self._folders:
            self._folders = normalized
            self._cache.invalidate()
            logger.info("Monitored folders changed: %s", normalized)

    async def scan(self, now: datetime | None = None) -> ScanOutcome:
        entries: list[FileEntry] = []
        warnings: list[str] = []

        for folder in self._folders:
            try:
                found = await asyncio.to_thread(_list_files, folder)
            except OSError as exc:
                logger.warning("Cannot read folder %s: %s", folder, exc)
                warnings.append(f"Cannot read folder {folder}: {exc}")
                continue
            logger.debug("Folder %s: %d file(s)", folder, len(found))
            entries.extend(found)

        self.last_scan_at = now or datetime.now(UTC)
        value = inventory_fingerprint(entries, self._folders)
        is_new = self._cache.update(value)
        if not is_new:
            logger.debug("No changes on disk (%d file(s))", len(entries))

        return ScanOutcome(
            entries=tuple(entries),
            changed=is_new,
            fingerprint=value,
            warnings=warnings,
            scanned_at=self.last_scan_at,
        )
