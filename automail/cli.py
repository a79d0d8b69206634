"""CLI entry point for AutoMail.

Commands:
    automail scan       — scan monitored folders once and show recipients
    automail run        — keep scanning on the configured schedule
    automail status     — recipients by status (dashboard view)
    automail files      — list files found in the monitored folders
    automail dispatch   — review ready drafts and send them
    automail history    — show or clear the send log
    automail clients    — list/add/remove recipients
    automail folders    — list/add/remove monitored folders
    automail config     — show or change schedule, CC, signature, matcher
"""

import asyncio
import contextlib
import logging
import sys
from collections.abc import AsyncIterator
from pathlib import Path

import click

from automail.config import (
    HEARTBEAT_SECONDS,
    OLLAMA_BASE_URL,
    OLLAMA_MODEL,
    REGISTRY_PATH,
    SEND_LOG_PATH,
)

logger = logging.getLogger("automail")

_STATUS_LABELS = {
    "pending": "pending",
    "file_found": "file found",
    "ready": "ready",
    "sent": "sent",
}


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """AutoMail — match report files to recipients and draft their emails."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _load_store():
    from automail.store.registry import RegistryStore

    return RegistryStore.load(REGISTRY_PATH)


def _require_folders(store) -> None:
    if not store.settings.folders:
        click.echo("Error: No monitored folders. Add one with `automail folders add PATH`.", err=True)
        sys.exit(1)


@contextlib.asynccontextmanager
async def _open_engine(store, send_action=None) -> AsyncIterator:
    """Build an engine; opens an Ollama client only if the AI matcher is on."""
    from automail.engine.pipeline import build_engine
    from automail.integrations.ollama import OllamaClient
    from automail.schemas.registry import MatcherKind
    from automail.store.send_log import SendLog

    send_log = SendLog(SEND_LOG_PATH)
    if store.settings.matcher != MatcherKind.OLLAMA:
        yield build_engine(store.recipients, store.settings, send_log, send_action=send_action)
        return

    async with OllamaClient(OLLAMA_BASE_URL) as ollama:
        try:
            model = await ollama.resolve_model(OLLAMA_MODEL)
        except Exception:
            logger.warning("Ollama unavailable at %s", OLLAMA_BASE_URL, exc_info=True)
            model = None
        if model:
            click.echo(f"AI matcher model: {model}")
        yield build_engine(
            store.recipients,
            store.settings,
            send_log,
            ollama=ollama,
            model=model or "",
            send_action=send_action,
        )


def _echo_recipients(recipients) -> None:
    if not recipients:
        click.echo("No recipients.")
        return
    for r in recipients:
        label = _STATUS_LABELS[r.status.value]
        if r.unconfigured:
            label += " (no services configured)"
        click.echo(f"  {r.recipient.sigla:<12} {label:<14} {r.recipient.name}")
        for match in r.matched_files:
            click.echo(f"      + {match.service}: {match.file_name}")
        for service in r.missing_services:
            click.echo(f"      - {service}: missing")


def _echo_report(report) -> None:
    for warning in report.warnings:
        click.echo(f"Warning: {warning}", err=True)
    if report.changed:
        click.echo(
            f"Scanned {report.file_count} file(s). "
            f"Updated: {len(report.updated)}, Ready: {len(report.ready)}"
        )
    else:
        click.echo(f"No changes on disk ({report.file_count} file(s)).")


# ------------------------------------------------------------------
# automail scan
# ------------------------------------------------------------------


@cli.command()
def scan() -> None:
    """Scan monitored folders once and show every recipient."""
    store = _load_store()
    _require_folders(store)
    asyncio.run(_scan_async(store))


async def _scan_async(store) -> None:
    from automail.engine.pipeline import filter_recipients

    async with _open_engine(store) as engine:
        report = await engine.scan()
        _echo_report(report)
        _echo_recipients(filter_recipients(engine.snapshot.recipients))


# ------------------------------------------------------------------
# automail status
# ------------------------------------------------------------------


@cli.command()
@click.option(
    "--status",
    "status_filter",
    type=click.Choice(["pending", "file_found", "ready", "sent"]),
    default=None,
    help="Only show recipients in this state.",
)
@click.option("--search", default="", help="Filter by name, sigla or email.")
def status(status_filter: str | None, search: str) -> None:
    """Dashboard view: recipients by status, next scan, recent sends."""
    store = _load_store()
    _require_folders(store)
    asyncio.run(_status_async(store, status_filter, search))


async def _status_async(store, status_filter: str | None, search: str) -> None:
    from datetime import timedelta

    from automail.engine.pipeline import filter_recipients
    from automail.scanner.scheduler import local_now
    from automail.schemas.reconciliation import RecipientStatus

    async with _open_engine(store) as engine:
        await engine.scan()
        recipients = engine.snapshot.recipients
        counts = {s: sum(1 for r in recipients if r.status == s) for s in RecipientStatus}

        now = local_now()
        next_scan = engine.scheduler.next_scan_time(now)
        sent_today = engine.send_log.read_entries(since=now - timedelta(hours=24))

        click.echo("AutoMail Status")
        click.echo(f"  Folders:        {len(store.settings.folders)}")
        click.echo(f"  Files:          {len(engine.snapshot.files)}")
        click.echo(f"  Pending:        {counts[RecipientStatus.PENDING]}")
        click.echo(f"  File found:     {counts[RecipientStatus.FILE_FOUND]}")
        click.echo(f"  Ready:          {counts[RecipientStatus.READY]}")
        click.echo(f"  Sent (24h):     {len(sent_today)}")
        click.echo(f"  Schedule:       {store.settings.scan.mode.value}")
        if next_scan is not None:
            click.echo(f"  Next scan:      {next_scan:%Y-%m-%d %H:%M}")

        selected = filter_recipients(
            recipients,
            status=RecipientStatus(status_filter) if status_filter else None,
            search=search,
        )
        click.echo("")
        _echo_recipients(selected)


# ------------------------------------------------------------------
# automail files
# ------------------------------------------------------------------


@cli.command()
def files() -> None:
    """List files found in the monitored folders."""
    store = _load_store()
    _require_folders(store)
    asyncio.run(_files_async(store))


async def _files_async(store) -> None:
    from automail.scanner.folders import FolderScanner

    outcome = await FolderScanner(store.settings.folders).scan()
    for warning in outcome.warnings:
        click.echo(f"Warning: {warning}", err=True)
    click.echo(f"Files in monitored folders ({len(outcome.entries)}):")
    for entry in outcome.entries:
        click.echo(f"  • {entry.name}  [{entry.source_folder}]")


# ------------------------------------------------------------------
# automail run
# ------------------------------------------------------------------


@cli.command()
@click.option("--watch", is_flag=True, help="Also rescan when files change on disk.")
@click.option(
    "--heartbeat",
    default=HEARTBEAT_SECONDS,
    show_default=True,
    type=float,
    help="Seconds between schedule checks.",
)
def run(watch: bool, heartbeat: float) -> None:
    """Keep scanning on the configured schedule until interrupted."""
    store = _load_store()
    _require_folders(store)
    try:
        asyncio.run(_run_async(store, watch, heartbeat))
    except KeyboardInterrupt:
        click.echo("\nStopped.")


async def _run_async(store, watch: bool, heartbeat: float) -> None:
    from automail.scanner.watcher import FolderWatcher

    previous: dict[str, str] = {}

    def _on_publish(snapshot) -> None:
        for r in snapshot.recipients:
            if previous.get(r.key) != r.status.value:
                if r.key in previous:
                    click.echo(f"{r.recipient.sigla}: {previous[r.key]} -> {r.status.value}")
                previous[r.key] = r.status.value

    async with _open_engine(store) as engine:
        engine.subscribe(_on_publish)
        click.echo(f"Monitoring {len(store.settings.folders)} folder(s) (Ctrl+C to stop)…")
        click.echo(f"  Schedule: {store.settings.scan.mode.value}")

        if not watch:
            await engine.run(heartbeat=heartbeat)
            return

        wake = asyncio.Event()
        with FolderWatcher(store.settings.folders, loop=asyncio.get_running_loop(), wake=wake):
            await engine.run(heartbeat=heartbeat, wake=wake)


# ------------------------------------------------------------------
# automail dispatch
# ------------------------------------------------------------------


@cli.command()
@click.option("--all", "send_all", is_flag=True, help="Send every ready draft without reviewing each.")
@click.option("--yes", "-y", is_flag=True, help="Skip the confirmation for --all.")
def dispatch(send_all: bool, yes: bool) -> None:
    """Review ready drafts and open them in the mail client."""
    store = _load_store()
    _require_folders(store)
    asyncio.run(_dispatch_async(store, send_all, yes))


async def _dispatch_async(store, send_all: bool, yes: bool) -> None:
    from automail.engine.pipeline import filter_recipients
    from automail.schemas.reconciliation import RecipientStatus

    async with _open_engine(store) as engine:
        await engine.scan()
        ready = filter_recipients(engine.snapshot.recipients, status=RecipientStatus.READY)
        if not ready:
            click.echo("No drafts ready to send.")
            return

        if send_all:
            if not yes and not click.confirm(f"Open {len(ready)} email draft(s)?"):
                return
            entries = await engine.send_ready()
            click.echo(f"Sent: {len(entries)}, Failed: {len(ready) - len(entries)}")
            return

        click.echo(f"Found {len(ready)} ready draft(s).\n")
        sent = 0
        skipped = 0
        for i, runtime in enumerate(ready, 1):
            draft = engine.draft_for(runtime.key)
            click.echo(f"--- [{i}/{len(ready)}] {runtime.recipient.sigla}: {runtime.recipient.name} ---")
            click.echo(f"  To:      {draft.to}")
            if draft.cc:
                click.echo(f"  Cc:      {draft.cc}")
            click.echo(f"  Subject: {draft.subject}")
            click.echo(f"  Files:   {[m.file_name for m in runtime.matched_files]}")

            choice = click.prompt(
                "  Action",
                type=click.Choice(["s", "k", "q"], case_sensitive=False),
                prompt_suffix=" [s]end / s[k]ip / [q]uit: ",
            )
            if choice == "s":
                entry = await engine.send(runtime.key)
                if entry is None:
                    click.echo("  -> ERROR: Mail client did not accept the draft.", err=True)
                else:
                    click.echo("  -> Sent.")
                    sent += 1
            elif choice == "k":
                click.echo("  -> Skipped.")
                skipped += 1
            else:
                click.echo("  -> Quitting.")
                break

        click.echo(f"\nDispatch complete. Sent: {sent}, Skipped: {skipped}")


# ------------------------------------------------------------------
# automail history
# ------------------------------------------------------------------


@cli.command()
@click.option("--limit", "-n", default=20, show_default=True, type=click.IntRange(min=1), help="Newest entries to show.")
@click.option("--sigla", default=None, help="Only entries for this recipient.")
@click.option("--clear", is_flag=True, help="Delete the whole send history.")
def history(limit: int, sigla: str | None, clear: bool) -> None:
    """Show (or clear) the send log."""
    from automail.store.send_log import SendLog

    send_log = SendLog(SEND_LOG_PATH)
    if clear:
        if click.confirm("Delete the entire send history?"):
            removed = send_log.clear()
            click.echo(f"Removed {removed} entr{'y' if removed == 1 else 'ies'}.")
        return

    entries = send_log.read_entries(recipient_code=sigla, limit=limit)
    if not entries:
        click.echo("No emails sent yet.")
        return
    for entry in reversed(entries):
        click.echo(
            f"  {entry.timestamp:%Y-%m-%d %H:%M}  {entry.recipient_code:<12} "
            f"{entry.recipient_email}  {entry.subject}"
        )


# ------------------------------------------------------------------
# automail clients
# ------------------------------------------------------------------


@cli.group()
def clients() -> None:
    """Manage the recipient registry."""


@clients.command("list")
def clients_list() -> None:
    """List registered recipients."""
    store = _load_store()
    recipients = sorted(store.recipients, key=lambda r: r.sigla.lower())
    click.echo(f"Registered recipients ({len(recipients)}):")
    for r in recipients:
        services = ", ".join(r.services) if r.services else "(no services)"
        click.echo(f"  • {r.sigla} - {r.name} <{r.email}> [{services}]")


@clients.command("add")
@click.option("--sigla", required=True, help="Short agency code used for matching.")
@click.option("--name", required=True, help="Display/legal name used in the greeting.")
@click.option("--email", required=True, help="Addresses, separated by ';' or ','.")
@click.option("--service", "services", multiple=True, help="Required service (repeatable).")
@click.option("--notes", default="", help="Free text.")
def clients_add(sigla: str, name: str, email: str, services: tuple[str, ...], notes: str) -> None:
    """Add a recipient (merged into an existing one with the same sigla)."""
    from automail.schemas.registry import Recipient

    if not sigla.strip():
        click.echo("Error: --sigla must not be empty.", err=True)
        sys.exit(1)
    store = _load_store()
    recipient = store.add(
        Recipient(sigla=sigla.strip(), name=name.strip(), email=email, services=list(services), notes=notes)
    )
    click.echo(f"Saved {recipient.sigla}: {recipient.email} [{', '.join(recipient.services)}]")


@clients.command("remove")
@click.argument("sigla")
def clients_remove(sigla: str) -> None:
    """Remove a recipient by sigla."""
    store = _load_store()
    if not store.remove(sigla):
        click.echo(f"Error: Unknown recipient: {sigla}", err=True)
        sys.exit(1)
    click.echo(f"Removed {sigla}.")


# ------------------------------------------------------------------
# automail folders
# ------------------------------------------------------------------


@cli.group()
def folders() -> None:
    """Manage monitored folders."""


@folders.command("list")
def folders_list() -> None:
    store = _load_store()
    if not store.settings.folders:
        click.echo("No monitored folders.")
        return
    for folder in store.settings.folders:
        click.echo(f"  • {folder}")


@folders.command("add")
@click.argument("path")
def folders_add(path: str) -> None:
    """Monitor another folder."""
    folder = Path(path).expanduser().resolve()
    if not folder.is_dir():
        click.echo(f"Error: Folder does not exist: {path}", err=True)
        sys.exit(1)
    store = _load_store()
    if str(folder) in store.settings.folders:
        click.echo(f"Already monitored: {folder}")
        return
    store.settings.folders.append(str(folder))
    store.save()
    click.echo(f"Monitoring {folder}")


@folders.command("remove")
@click.argument("path")
def folders_remove(path: str) -> None:
    """Stop monitoring a folder."""
    store = _load_store()
    candidates = {path, str(Path(path).expanduser().resolve())}
    remaining = [f for f in store.settings.folders if f not in candidates]
    if len(remaining) == len(store.settings.folders):
        click.echo(f"Error: Not monitored: {path}", err=True)
        sys.exit(1)
    store.settings.folders = remaining
    store.save()
    click.echo(f"Stopped monitoring {path}")


# ------------------------------------------------------------------
# automail config
# ------------------------------------------------------------------


@cli.group()
def config() -> None:
    """Show or change persisted settings."""


@config.command("show")
def config_show() -> None:
    store = _load_store()
    s = store.settings
    click.echo("AutoMail Settings")
    schedule = s.scan.mode.value
    if s.scan.mode.value == "interval":
        schedule += f" (every {s.scan.interval_minutes} min)"
    click.echo(f"  Schedule:   {schedule}")
    click.echo(f"  Global CC:  {s.global_cc or '(none)'}")
    click.echo(f"  Matcher:    {s.matcher.value}")
    click.echo(f"  Signature:  {', '.join(x for x in (s.signature.name, s.signature.role) if x) or '(none)'}")
    click.echo(f"  Contract:   {' + '.join(s.contract_rule.file_tokens)}")


@config.command("schedule")
@click.argument("mode", type=click.Choice(["disabled", "interval", "fixed"]))
@click.option("--interval", "interval_minutes", type=click.IntRange(min=1), default=None, help="Minutes (interval mode).")
def config_schedule(mode: str, interval_minutes: int | None) -> None:
    """Set the automatic scan mode."""
    from automail.schemas.registry import ScanMode

    store = _load_store()
    store.settings.scan.mode = ScanMode(mode)
    if interval_minutes is not None:
        store.settings.scan.interval_minutes = interval_minutes
    store.save()
    click.echo(f"Schedule: {mode}")


@config.command("cc")
@click.argument("addresses")
def config_cc(addresses: str) -> None:
    """Set the CC list used when a draft has no override."""
    from automail.integrations.mailto import join_addresses

    store = _load_store()
    store.settings.global_cc = join_addresses(addresses)
    store.save()
    click.echo(f"Global CC: {store.settings.global_cc or '(none)'}")


@config.command("signature")
@click.option("--name", default=None)
@click.option("--role", default=None)
@click.option("--company", default=None)
@click.option("--phone", default=None)
def config_signature(name: str | None, role: str | None, company: str | None, phone: str | None) -> None:
    """Change the signature appended to generated bodies."""
    store = _load_store()
    sig = store.settings.signature
    for field, value in (("name", name), ("role", role), ("company", company), ("phone", phone)):
        if value is not None:
            setattr(sig, field, value.strip())
    store.save()
    click.echo("Signature updated.")


@config.command("matcher")
@click.argument("kind", type=click.Choice(["keyword", "ollama"]))
def config_matcher(kind: str) -> None:
    """Choose the deterministic or the AI-assisted matcher."""
    from automail.schemas.registry import MatcherKind

    store = _load_store()
    store.settings.matcher = MatcherKind(kind)
    store.save()
    click.echo(f"Matcher: {kind}")
