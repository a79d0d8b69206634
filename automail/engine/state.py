"""Recipient state machine.

    pending -> file_found -> ready -> sent
       ^          |           |       |
       +----------+-----------+       | (explicit reset only)
       +------------------------------+

Every function returns a new ``RecipientRuntime``; nothing is mutated.
"""

from datetime import datetime

from automail.schemas.reconciliation import (
    GeneratedContent,
    MatchResult,
    RecipientRuntime,
    RecipientStatus,
)

_NO_CONTENT = {
    "email_subject": None,
    "email_body": None,
    "email_body_html": None,
    "override_to": None,
    "override_cc": None,
}


class TransitionError(ValueError):
    """Raised for a transition the state machine does not allow."""

    def __init__(self, runtime: RecipientRuntime, target: RecipientStatus) -> None:
        super().__init__(
            f"Cannot move {runtime.recipient.sigla} from {runtime.status.value} to {target.value}"
        )
        self.runtime = runtime
        self.target = target


def apply_match(
    runtime: RecipientRuntime,
    result: MatchResult,
    *,
    now: datetime,
) -> RecipientRuntime:
    """Fold a reconciliation result into the runtime state.

    Sent recipients are returned untouched. A recipient that stops being
    satisfied goes back to pending and loses its generated content.
    """
    if runtime.status == RecipientStatus.SENT:
        return runtime

    update: dict = {
        "matched_files": result.matched,
        "missing_services": result.missing,
        "unconfigured": not result.configured,
    }
    if result.satisfied:
        if runtime.status == RecipientStatus.READY:
            update["status"] = RecipientStatus.READY
        else:
            update["status"] = RecipientStatus.FILE_FOUND
        update["matched_at"] = runtime.matched_at or now
    else:
        update["status"] = RecipientStatus.PENDING
        update["matched_at"] = None
        update.update(_NO_CONTENT)
    return runtime.model_copy(update=update)


def attach_content(runtime: RecipientRuntime, content: GeneratedContent) -> RecipientRuntime:
    """Store generated content; file_found (or contentless ready) -> ready."""
    if runtime.status not in (RecipientStatus.FILE_FOUND, RecipientStatus.READY):
        raise TransitionError(runtime, RecipientStatus.READY)
    return runtime.model_copy(
        update={
            "status": RecipientStatus.READY,
            "email_subject": content.subject,
            "email_body": content.body,
            "email_body_html": content.body_html,
            "override_to": content.override_to,
            "override_cc": content.override_cc,
        }
    )


def mark_sent(runtime: RecipientRuntime) -> RecipientRuntime:
    """ready -> sent. Requires a subject and a body."""
    if runtime.status != RecipientStatus.READY or not runtime.email_subject or not runtime.email_body:
        raise TransitionError(runtime, RecipientStatus.SENT)
    return runtime.model_copy(update={"status": RecipientStatus.SENT})


def reset(runtime: RecipientRuntime) -> RecipientRuntime:
    """sent -> pending, discarding content so the next pass regenerates it.

    Non-sent recipients are returned unchanged.
    """
    if runtime.status != RecipientStatus.SENT:
        return runtime
    return runtime.model_copy(
        update={
            "status": RecipientStatus.PENDING,
            "matched_files": (),
            "missing_services": (),
            "matched_at": None,
            **_NO_CONTENT,
        }
    )


def needs_content(runtime: RecipientRuntime) -> bool:
    """file_found, or ready without a body (content was invalidated)."""
    if runtime.status == RecipientStatus.FILE_FOUND:
        return True
    return runtime.status == RecipientStatus.READY and not runtime.email_body


def restore_sent(runtime: RecipientRuntime) -> RecipientRuntime:
    """Fresh pending -> sent, for a recipient the send log shows as dispatched."""
    if runtime.status != RecipientStatus.PENDING:
        raise TransitionError(runtime, RecipientStatus.SENT)
    return runtime.model_copy(update={"status": RecipientStatus.SENT})
