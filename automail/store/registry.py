"""JSON-backed recipient registry and settings store.

Load failures are not fatal: a missing or unreadable file yields an empty
registry with default settings. Saves are atomic (temp file + rename).
"""

import json
import logging
import os
import re
import tempfile
from pathlib import Path

from pydantic import ValidationError

from automail.schemas.registry import Recipient, RegistryFile, Settings, registry_key

logger = logging.getLogger(__name__)

_ADDRESS_SPLIT = re.compile(r"[,;]+")


def _split_addresses(value: str) -> list[str]:
    return [a.strip() for a in _ADDRESS_SPLIT.split(value or "") if a.strip()]


def merge_recipients(recipients: list[Recipient]) -> list[Recipient]:
    """Collapse records sharing a sigla (trimmed, case-insensitive).

    Emails and services are unioned in first-seen order; the newest
    non-empty notes win. Output keeps the order of first appearance.
    """
    merged: dict[str, Recipient] = {}
    for recipient in recipients:
        key = registry_key(recipient.sigla)
        existing = merged.get(key)
        if existing is None:
            merged[key] = recipient.model_copy(
                update={"email": "; ".join(_split_addresses(recipient.email))}
            )
            continue

        emails = list(dict.fromkeys(_split_addresses(existing.email) + _split_addresses(recipient.email)))
        services = list(dict.fromkeys(existing.services + recipient.services))
        merged[key] = existing.model_copy(
            update={
                "email": "; ".join(emails),
                "services": services,
                "notes": recipient.notes or existing.notes,
            }
        )
    return list(merged.values())


class RegistryStore:
    """Recipients + settings persisted as one JSON file.

    Usage::

        store = RegistryStore.load("data/registry.json")
        store.add(Recipient(sigla="JFAL", name="Justiça Federal de Alagoas"))
        store.settings.global_cc = "suporte@example.com"
        store.save()
    """

    def __init__(self, data: RegistryFile, path: Path) -> None:
        self._data = data
        self._path = path

    @classmethod
    def load(cls, path: str | Path) -> "RegistryStore":
        """Load the registry; any failure yields an empty one."""
        path = Path(path)
        if not path.exists():
            logger.info("Registry file not found at %s, starting empty", path)
            return cls(RegistryFile(), path)

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            data = RegistryFile.model_validate(raw)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Could not load registry %s (%s), starting empty", path, exc)
            return cls(RegistryFile(), path)

        data.recipients = merge_recipients(data.recipients)
        logger.info("Loaded %d recipient(s) from %s", len(data.recipients), path)
        return cls(data, path)

    @property
    def recipients(self) -> list[Recipient]:
        return list(self._data.recipients)

    @property
    def settings(self) -> Settings:
        return self._data.settings

    def get(self, sigla: str) -> Recipient | None:
        key = registry_key(sigla)
        return next((r for r in self._data.recipients if r.key == key), None)

    def add(self, recipient: Recipient) -> Recipient:
        """Add a recipient, merging into an existing one with the same sigla."""
        self._data.recipients = merge_recipients(self._data.recipients + [recipient])
        self.save()
        return self.get(recipient.sigla)

    def replace(self, recipients: list[Recipient]) -> None:
        self._data.recipients = merge_recipients(recipients)
        self.save()

    def remove(self, sigla: str) -> bool:
        """Remove by sigla. Returns True if something was removed."""
        key = registry_key(sigla)
        before = len(self._data.recipients)
        self._data.recipients = [r for r in self._data.recipients if r.key != key]
        if len(self._data.recipients) == before:
            return False
        self.save()
        return True

    def save(self) -> None:
        """Atomic write: temp file + rename to prevent corruption."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps(self._data.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n"

        fd, tmp_path = tempfile.mkstemp(dir=str(self._path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_path, str(self._path))
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
