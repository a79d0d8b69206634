"""Directory fingerprints: a cheap "did anything change on disk" check."""

from collections.abc import Iterable

from automail.schemas.reconciliation import FileEntry

SEPARATOR = "|"


def fingerprint(file_names: Iterable[str]) -> str:
    """Order-independent digest of a filename listing."""
    return SEPARATOR.join(sorted(file_names))


def inventory_fingerprint(entries: Iterable[FileEntry], folders: Iterable[str]) -> str:
    """Per-folder fingerprints, concatenated in folder order."""
    by_folder: dict[str | None, list[str]] = {}
    for entry in entries:
        by_folder.setdefault(entry.source_folder, []).append(entry.name)
    parts = [f"{folder}:{fingerprint(by_folder.get(folder, []))}" for folder in folders]
    return "\n".join(parts)


def changed(previous: str | None, current: str) -> bool:
    return previous != current


class FingerprintCache:
    """Last fingerprint seen in this monitoring session. Never persisted."""

    def __init__(self) -> None:
        self._current: str | None = None

    @property
    def current(self) -> str | None:
        return self._current

    def update(self, value: str) -> bool:
        """Store ``value``; return True if it differs from the cached one."""
        if not changed(self._current, value):
            return False
        self._current = value
        return True

    def invalidate(self) -> None:
        self._current = None
