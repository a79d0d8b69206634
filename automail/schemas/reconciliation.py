"""Schemas for the reconciliation engine.

Covers the derived, in-memory side of the system:
  file inventory -> match results -> recipient runtime state -> send log

Runtime models are frozen. Transitions build new instances with
``model_copy(update=...)`` so callers can compare snapshots before/after.
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from automail.schemas.registry import Recipient


class RecipientStatus(StrEnum):
    """Delivery lifecycle of a recipient."""

    PENDING = "pending"
    FILE_FOUND = "file_found"
    READY = "ready"
    SENT = "sent"


class FileEntry(BaseModel):
    """One file found in a monitored folder."""

    model_config = ConfigDict(frozen=True)

    name: str
    path: str = Field(description="Opaque handle, only used to read the mtime")
    source_folder: str | None = None


class MatchedFile(BaseModel):
    """A service satisfied by a file."""

    model_config = ConfigDict(frozen=True)

    service: str
    file_name: str
    timestamp: datetime | None = None


class MatchResult(BaseModel):
    """Outcome of matching one recipient against the inventory."""

    model_config = ConfigDict(frozen=True)

    matched: tuple[MatchedFile, ...] = ()
    missing: tuple[str, ...] = ()
    configured: bool = True

    @property
    def satisfied(self) -> bool:
        return self.configured and bool(self.matched) and not self.missing


class GeneratedContent(BaseModel):
    """What the content generator returns for one recipient."""

    subject: str
    body: str
    body_html: str = ""
    override_to: str | None = None
    override_cc: str | None = None


class RecipientRuntime(BaseModel):
    """Ephemeral state of a recipient, rebuilt on every reconciliation."""

    model_config = ConfigDict(frozen=True)

    recipient: Recipient
    status: RecipientStatus = RecipientStatus.PENDING
    matched_files: tuple[MatchedFile, ...] = ()
    missing_services: tuple[str, ...] = ()
    matched_at: datetime | None = None
    unconfigured: bool = False
    email_subject: str | None = None
    email_body: str | None = None
    email_body_html: str | None = None
    override_to: str | None = None
    override_cc: str | None = None

    @property
    def key(self) -> str:
        return self.recipient.key

    @property
    def primary_file(self) -> str:
        return self.matched_files[0].file_name if self.matched_files else ""


class OutboundEmail(BaseModel):
    """Final message handed to the send action."""

    to: str
    cc: str = ""
    subject: str
    body: str


class SendLogEntry(BaseModel):
    """An audit record for one dispatched email."""

    timestamp: datetime
    recipient_code: str
    recipient_email: str
    subject: str


class EngineSnapshot(BaseModel):
    """Everything the engine publishes, replaced as a whole on each update."""

    model_config = ConfigDict(frozen=True)

    recipients: tuple[RecipientRuntime, ...] = ()
    files: tuple[FileEntry, ...] = ()
    fingerprint: str = ""
    last_scan_at: datetime | None = None

    def get(self, key: str) -> RecipientRuntime | None:
        for runtime in self.recipients:
            if runtime.key == key:
                return runtime
        return None
