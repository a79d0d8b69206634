"""Engine facade: wires scanner, reconciliation, content and sending.

The flow is an explicit pipeline rather than reactive callbacks:

    scan -> on_file_inventory_changed -> reconcile -> publish
         -> generate_content -> publish

Every stage replaces the published ``EngineSnapshot`` as a whole. Stages are
serialized by a single lock, so a registry edit never interleaves with a
half-finished pass.
"""

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import datetime

from pydantic import BaseModel, Field

from automail.engine.content import (
    ContentGenerator,
    OllamaContentGenerator,
    TemplateContentGenerator,
    generate_content,
)
from automail.engine.reconcile import TimestampGetter, reconcile, sync_registry
from automail.engine.state import TransitionError, mark_sent, restore_sent
from automail.engine.state import reset as reset_runtime
from automail.integrations.mailto import MailtoSendAction, SendAction, join_addresses
from automail.integrations.ollama import OllamaClient
from automail.matching.matcher import KeywordMatcher, Matcher, OllamaMatcher
from automail.scanner.folders import FolderScanner, file_timestamp
from automail.scanner.scheduler import HEARTBEAT_SECONDS, ScanScheduler, local_now
from automail.schemas.reconciliation import (
    EngineSnapshot,
    FileEntry,
    OutboundEmail,
    RecipientRuntime,
    RecipientStatus,
    SendLogEntry,
)
from automail.schemas.registry import MatcherKind, Recipient, Settings, registry_key
from automail.store.send_log import SendLog

logger = logging.getLogger(__name__)

Listener = Callable[[EngineSnapshot], None]


class ScanReport(BaseModel):
    """What one scan request did."""

    scanned_at: datetime
    busy: bool = Field(default=False, description="Refused: a scan was already running")
    changed: bool = False
    file_count: int = 0
    warnings: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
    ready: list[str] = Field(default_factory=list)


class Engine:
    """Owns the published snapshot and every transition applied to it.

    Usage::

        engine = build_engine(store.recipients, store.settings, SendLog(path))
        report = await engine.scan()
        for runtime in filter_recipients(engine.snapshot.recipients, status=RecipientStatus.READY):
            await engine.send(runtime.key)
    """

    def __init__(
        self,
        *,
        recipients: Sequence[Recipient],
        settings: Settings,
        scanner: FolderScanner,
        matcher: Matcher,
        generator: ContentGenerator,
        send_action: SendAction,
        send_log: SendLog,
        scheduler: ScanScheduler | None = None,
        clock: Callable[[], datetime] = local_now,
        get_timestamp: TimestampGetter = file_timestamp,
    ) -> None:
        self.settings = settings
        self.scanner = scanner
        self.matcher = matcher
        self.generator = generator
        self.send_action = send_action
        self.send_log = send_log
        self.scheduler = scheduler or ScanScheduler(settings.scan)
        self._clock = clock
        self._get_timestamp = get_timestamp
        self._lock = asyncio.Lock()
        self._listeners: list[Listener] = []
        self._snapshot = EngineSnapshot(recipients=self._restore_sent(sync_registry((), recipients)))

    def _restore_sent(self, runtimes: Sequence[RecipientRuntime]) -> tuple[RecipientRuntime, ...]:
        """Recipients already dispatched this month start sent, so a restart never resends."""
        now = self._clock()
        dispatched = {
            registry_key(entry.recipient_code)
            for entry in self.send_log.read_entries()
            if (entry.timestamp.year, entry.timestamp.month) == (now.year, now.month)
        }
        restored = []
        for runtime in runtimes:
            if runtime.key in dispatched:
                logger.info("%s already sent this month, keeping it locked", runtime.recipient.sigla)
                runtime = restore_sent(runtime)
            restored.append(runtime)
        return tuple(restored)

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> EngineSnapshot:
        return self._snapshot

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _publish(self, snapshot: EngineSnapshot) -> None:
        self._snapshot = snapshot
        for listener in self._listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Snapshot listener failed")

    def _require(self, key: str) -> RecipientRuntime:
        runtime = self._snapshot.get(registry_key(key))
        if runtime is None:
            raise KeyError(f"Unknown recipient: {key}")
        return runtime

    def _replace(self, runtime: RecipientRuntime) -> EngineSnapshot:
        recipients = tuple(runtime if r.key == runtime.key else r for r in self._snapshot.recipients)
        return self._snapshot.model_copy(update={"recipients": recipients})

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    async def _reconcile_and_generate(self, report: ScanReport | None = None) -> None:
        result = await reconcile(
            self._snapshot.recipients,
            self._snapshot.files,
            matcher=self.matcher,
            now=self._clock(),
            get_timestamp=self._get_timestamp,
        )
        if result.changed:
            self._publish(self._snapshot.model_copy(update={"recipients": result.recipients}))

        recipients, ready = await generate_content(self._snapshot.recipients, self.generator)
        if ready:
            self._publish(self._snapshot.model_copy(update={"recipients": recipients}))

        if report is not None:
            report.updated = list(result.changed)
            report.ready = list(ready)

    async def on_file_inventory_changed(
        self, files: Sequence[FileEntry], report: ScanReport | None = None
    ) -> None:
        """Publish a new inventory and run reconciliation + content on it."""
        async with self._lock:
            self._publish(self._snapshot.model_copy(update={"files": tuple(files)}))
            await self._reconcile_and_generate(report)

    async def update_registry(self, recipients: Sequence[Recipient]) -> None:
        """The registry was edited: rebuild runtime state and reconcile."""
        async with self._lock:
            synced = sync_registry(self._snapshot.recipients, recipients)
            self._publish(self._snapshot.model_copy(update={"recipients": synced}))
            await self._reconcile_and_generate()

    async def invalidate_content(self) -> None:
        """Drop generated bodies (e.g. the signature changed) and regenerate."""
        async with self._lock:
            cleared = tuple(
                r.model_copy(update={"email_body": None, "email_body_html": None})
                if r.status == RecipientStatus.READY
                else r
                for r in self._snapshot.recipients
            )
            self._publish(self._snapshot.model_copy(update={"recipients": cleared}))
            await self._reconcile_and_generate()

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    async def _scan_pass(self, now: datetime) -> ScanReport:
        outcome = await self.scanner.scan(now)
        report = ScanReport(
            scanned_at=outcome.scanned_at,
            changed=outcome.changed,
            file_count=len(outcome.entries),
            warnings=outcome.warnings,
        )
        self._publish(self._snapshot.model_copy(update={"last_scan_at": outcome.scanned_at}))
        if not outcome.changed:
            return report

        self._publish(self._snapshot.model_copy(update={"fingerprint": outcome.fingerprint}))
        await self.on_file_inventory_changed(outcome.entries, report)
        return report

    async def scan(self, now: datetime | None = None) -> ScanReport:
        """Operator-requested scan. Refused (``busy=True``) while one runs."""
        now = now or self._clock()
        reports: list[ScanReport] = []

        async def _run() -> None:
            reports.append(await self._scan_pass(now))

        if not await self.scheduler.run_manual(_run, now):
            return ScanReport(scanned_at=now, busy=True)
        return reports[0]

    def set_folders(self, folders: list[str]) -> None:
        self.settings.folders = list(folders)
        self.scanner.set_folders(folders)

    async def run(
        self,
        *,
        stop: asyncio.Event | None = None,
        wake: asyncio.Event | None = None,
        heartbeat: float = HEARTBEAT_SECONDS,
    ) -> None:
        """Scan once, then keep scanning on the scheduler heartbeat."""
        await self.scan()

        async def _auto() -> None:
            await self._scan_pass(self._clock())

        await self.scheduler.run(_auto, heartbeat=heartbeat, stop=stop, wake=wake, clock=self._clock)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def draft_for(self, key: str) -> OutboundEmail:
        """The message that ``send`` would hand to the send action."""
        runtime = self._require(key)
        if runtime.status != RecipientStatus.READY or not runtime.email_subject or not runtime.email_body:
            raise TransitionError(runtime, RecipientStatus.SENT)
        return OutboundEmail(
            to=join_addresses(runtime.override_to or runtime.recipient.email),
            cc=join_addresses(runtime.override_cc or self.settings.global_cc),
            subject=runtime.email_subject,
            body=runtime.email_body,
        )

    async def send(self, key: str, now: datetime | None = None) -> SendLogEntry | None:
        """Dispatch a ready recipient; lock it as sent and log the send.

        Returns None (state unchanged) if the send action reports failure.
        """
        async with self._lock:
            runtime = self._require(key)
            email = self.draft_for(key)
            if not await self.send_action.send(email):
                logger.warning("Send action failed for %s", runtime.recipient.sigla)
                return None

            entry = SendLogEntry(
                timestamp=now or self._clock(),
                recipient_code=runtime.recipient.sigla,
                recipient_email=email.to,
                subject=email.subject,
            )
            self.send_log.log(entry)
            self._publish(self._replace(mark_sent(runtime)))
            logger.info("Sent %s to %s", runtime.recipient.sigla, email.to)
            return entry

    async def send_ready(self, now: datetime | None = None) -> list[SendLogEntry]:
        """Send every ready recipient, in registry order."""
        entries = []
        ready = [r.key for r in self._snapshot.recipients if r.status == RecipientStatus.READY]
        for key in ready:
            entry = await self.send(key, now)
            if entry is not None:
                entries.append(entry)
        return entries

    async def reset(self, key: str) -> RecipientRuntime:
        """sent -> pending, then reconcile so current files are picked up again."""
        async with self._lock:
            runtime = self._require(key)
            if runtime.status != RecipientStatus.SENT:
                return runtime
            self._publish(self._replace(reset_runtime(runtime)))
            logger.info("Reset %s to pending", runtime.recipient.sigla)
            await self._reconcile_and_generate()
            return self._require(key)


def filter_recipients(
    recipients: Sequence[RecipientRuntime],
    *,
    status: RecipientStatus | None = None,
    search: str = "",
) -> list[RecipientRuntime]:
    """Dashboard view: status filter, case-insensitive search, sorted by sigla."""
    selected = [r for r in recipients if status is None or r.status == status]
    term = search.strip().lower()
    if term:
        selected = [
            r
            for r in selected
            if term in r.recipient.name.lower()
            or term in r.recipient.sigla.lower()
            or term in r.recipient.email.lower()
        ]
    return sorted(selected, key=lambda r: r.recipient.sigla.lower())


def build_engine(
    recipients: Sequence[Recipient],
    settings: Settings,
    send_log: SendLog,
    *,
    ollama: OllamaClient | None = None,
    model: str = "",
    send_action: SendAction | None = None,
) -> Engine:
    """Assemble an engine from persisted settings.

    The AI matcher and report classifier are used only when
    ``settings.matcher`` asks for them and an Ollama client and model are
    available; otherwise everything runs on the deterministic path.
    """
    rule = settings.contract_rule
    use_ollama = settings.matcher == MatcherKind.OLLAMA and ollama is not None and bool(model)
    if settings.matcher == MatcherKind.OLLAMA and not use_ollama:
        logger.warning("AI matcher requested but no Ollama model available, using keyword rules")

    matcher: Matcher
    generator: ContentGenerator
    if use_ollama:
        matcher = OllamaMatcher(ollama, model=model, rule=rule)
        generator = OllamaContentGenerator(ollama, model=model, signature=settings.signature)
    else:
        matcher = KeywordMatcher(rule)
        generator = TemplateContentGenerator(settings.signature)

    return Engine(
        recipients=recipients,
        settings=settings,
        scanner=FolderScanner(settings.folders),
        matcher=matcher,
        generator=generator,
        send_action=send_action or MailtoSendAction(),
        send_log=send_log,
    )
