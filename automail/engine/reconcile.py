"""Reconciliation pass: every non-sent recipient against the file inventory.

Recipients are evaluated in registry order and the result is returned as one
batch. Only recipients whose status, matched files, or missing services
actually changed are replaced; the rest keep their previous object so
callers can detect "nothing happened" by identity or equality.
"""

import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime

from pydantic import BaseModel

from automail.engine.state import apply_match
from automail.matching.matcher import Matcher
from automail.matching.rules import is_contract_variant
from automail.scanner.folders import file_timestamp
from automail.schemas.reconciliation import (
    FileEntry,
    MatchedFile,
    MatchResult,
    RecipientRuntime,
    RecipientStatus,
)
from automail.schemas.registry import Recipient

logger = logging.getLogger(__name__)

TimestampGetter = Callable[[FileEntry], Awaitable[datetime | None]]


class ReconcileResult(BaseModel):
    """Batch produced by one reconciliation pass."""

    recipients: tuple[RecipientRuntime, ...]
    changed: tuple[str, ...] = ()


def sync_registry(
    previous: Sequence[RecipientRuntime],
    recipients: Sequence[Recipient],
) -> tuple[RecipientRuntime, ...]:
    """Rebuild runtime state for the current registry.

    Runtime fields survive for recipients that are still registered (same
    key); new recipients start pending; removed ones disappear.
    """
    existing = {r.key: r for r in previous}
    rebuilt = []
    for recipient in recipients:
        runtime = existing.get(recipient.key)
        if runtime is None:
            rebuilt.append(RecipientRuntime(recipient=recipient))
        else:
            rebuilt.append(runtime.model_copy(update={"recipient": recipient}))
    return tuple(rebuilt)


async def _timestamp_for(
    name: str,
    files: Sequence[FileEntry],
    get_timestamp: TimestampGetter,
) -> datetime | None:
    entry = next((f for f in files if f.name == name), None)
    if entry is None:
        return None
    try:
        return await get_timestamp(entry)
    except Exception:
        logger.debug("Timestamp lookup failed for %s", name, exc_info=True)
        return None


async def match_recipient(
    recipient: Recipient,
    files: Sequence[FileEntry],
    *,
    matcher: Matcher,
    get_timestamp: TimestampGetter = file_timestamp,
) -> MatchResult:
    """Evaluate every required service (or the contract pseudo-service)."""
    names = [f.name for f in files]
    rule = matcher.rule

    if is_contract_variant(recipient, rule):
        hit = await matcher.find(recipient, rule.service_label, names)
        if hit is None:
            return MatchResult(missing=(rule.missing_label,))
        ts = await _timestamp_for(hit, files, get_timestamp)
        return MatchResult(matched=(MatchedFile(service=rule.service_label, file_name=hit, timestamp=ts),))

    if not recipient.services:
        return MatchResult(configured=False)

    matched: list[MatchedFile] = []
    missing: list[str] = []
    for service in recipient.services:
        hit = await matcher.find(recipient, service, names)
        if hit is None:
            missing.append(service)
            continue
        ts = await _timestamp_for(hit, files, get_timestamp)
        matched.append(MatchedFile(service=service, file_name=hit, timestamp=ts))
    return MatchResult(matched=tuple(matched), missing=tuple(missing))


def _differs(before: RecipientRuntime, after: RecipientRuntime) -> bool:
    return (
        before.status != after.status
        or before.matched_files != after.matched_files
        or before.missing_services != after.missing_services
        or before.unconfigured != after.unconfigured
    )


async def reconcile(
    recipients: Sequence[RecipientRuntime],
    files: Sequence[FileEntry],
    *,
    matcher: Matcher,
    now: datetime,
    get_timestamp: TimestampGetter = file_timestamp,
) -> ReconcileResult:
    """Run one reconciliation pass and return the updated batch."""
    updated: list[RecipientRuntime] = []
    changed: list[str] = []

    for runtime in recipients:
        if runtime.status == RecipientStatus.SENT:
            updated.append(runtime)
            continue
        try:
            result = await match_recipient(
                runtime.recipient, files, matcher=matcher, get_timestamp=get_timestamp
            )
        except Exception:
            logger.exception("Matching failed for %s, keeping previous state", runtime.recipient.sigla)
            updated.append(runtime)
            continue

        candidate = apply_match(runtime, result, now=now)
        if _differs(runtime, candidate):
            logger.info(
                "%s: %s -> %s (matched=%d missing=%d)",
                runtime.recipient.sigla,
                runtime.status.value,
                candidate.status.value,
                len(candidate.matched_files),
                len(candidate.missing_services),
            )
            updated.append(candidate)
            changed.append(runtime.key)
        else:
            updated.append(runtime)

    return ReconcileResult(recipients=tuple(updated), changed=tuple(changed))
