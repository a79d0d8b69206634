"""Append-only JSONL log of dispatched emails.

Runtime recipient state is ephemeral; this log is the durable record of what
was sent, to whom, and when.
"""

import logging
from datetime import datetime
from pathlib import Path

from automail.schemas.reconciliation import SendLogEntry

logger = logging.getLogger(__name__)


class SendLog:
    """Append-only JSONL send history.

    Usage::

        log = SendLog("/path/to/send_log.jsonl")
        log.log(entry)
        recent = log.read_entries(since=some_datetime)
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def log(self, entry: SendLogEntry) -> None:
        """Append a single entry to the log file."""
        with self._path.open("a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")
        logger.debug("Send log: %s %s %s", entry.recipient_code, entry.recipient_email, entry.subject)

    def read_entries(
        self,
        *,
        since: datetime | None = None,
        recipient_code: str | None = None,
        limit: int | None = None,
    ) -> list[SendLogEntry]:
        """Read entries, oldest first.

        Args:
            since: Only entries after this timestamp.
            recipient_code: Only entries for this sigla (case-insensitive).
            limit: Keep only the newest ``limit`` entries after filtering;
                zero or less keeps none.
        """
        if not self._path.exists():
            return []

        entries: list[SendLogEntry] = []
        with self._path.open(encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                entry = SendLogEntry.model_validate_json(line)
                if since and entry.timestamp <= since:
                    continue
                if recipient_code and entry.recipient_code.lower() != recipient_code.lower():
                    continue
                entries.append(entry)

        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def clear(self) -> int:
        """Delete the whole history. Returns how many entries were removed."""
        count = len(self.read_entries())
        if self._path.exists():
            self._path.unlink()
        logger.info("Cleared %d send log entr%s", count, "y" if count == 1 else "ies")
        return count
