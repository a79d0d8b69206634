"""Send action: hand a drafted email to the desktop mail client.

Delivery is fire-and-forget. The engine only needs to know that the action
happened so it can mark the recipient sent and log it.
"""

import logging
import re
import webbrowser
from typing import Protocol
from urllib.parse import quote

from automail.schemas.reconciliation import OutboundEmail

logger = logging.getLogger(__name__)

_ADDRESS_SPLIT = re.compile(r"[,;]+")


class SendAction(Protocol):
    async def send(self, email: OutboundEmail) -> bool: ...


def join_addresses(*values: str | None) -> str:
    """Merge address lists into one ``;``-separated string (Outlook format)."""
    seen: list[str] = []
    for value in values:
        for address in _ADDRESS_SPLIT.split(value or ""):
            address = address.strip()
            if address and address not in seen:
                seen.append(address)
    return "; ".join(seen)


def build_mailto_url(email: OutboundEmail) -> str:
    """``mailto:`` URL with ``;`` separators and encoded subject/body."""
    to = join_addresses(email.to).replace(" ", "")
    params = []
    cc = join_addresses(email.cc).replace(" ", "")
    if cc:
        params.append(f"cc={quote(cc, safe='@;')}")
    params.append(f"subject={quote(email.subject, safe='')}")
    params.append(f"body={quote(email.body, safe='')}")
    return f"mailto:{quote(to, safe='@;')}?{'&'.join(params)}"


class MailtoSendAction:
    """Opens the message in the default mail client."""

    def __init__(self, opener=webbrowser.open) -> None:
        self._opener = opener

    async def send(self, email: OutboundEmail) -> bool:
        url = build_mailto_url(email)
        opened = bool(self._opener(url))
        if opened:
            logger.info("Opened draft to %s: %s", email.to, email.subject)
        else:
            logger.warning("No mail client accepted the draft to %s", email.to)
        return opened
