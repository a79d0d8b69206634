"""Matcher capability: deterministic keyword matcher and an AI-assisted one.

The engine only talks to the ``Matcher`` protocol. ``KeywordMatcher`` is the
default and needs no network. ``OllamaMatcher`` runs the keyword rules first
and only asks the LLM when they find nothing; its answer is accepted only if
it names a file that is actually in the inventory.
"""

import logging
from typing import Protocol

from pydantic import BaseModel, Field

from automail.integrations.ollama import OllamaClient
from automail.matching.rules import find_match, is_contract_variant
from automail.schemas.registry import ContractRule, Recipient

logger = logging.getLogger(__name__)

# Cap the inventory sent to the LLM to stay within context limits.
MAX_FILES_IN_PROMPT = 200


class Matcher(Protocol):
    rule: ContractRule

    async def find(
        self, recipient: Recipient, service: str, file_names: list[str]
    ) -> str | None: ...


class KeywordMatcher:
    """Pure rule-based matcher (see ``automail.matching.rules``)."""

    def __init__(self, rule: ContractRule | None = None) -> None:
        self.rule = rule or ContractRule()

    async def find(
        self, recipient: Recipient, service: str, file_names: list[str]
    ) -> str | None:
        return find_match(recipient, service, file_names, rule=self.rule)


class FilePick(BaseModel):
    """LLM output for the best-effort matcher."""

    filename: str | None = Field(default=None, description="Exact filename from the list, or null")


SYSTEM_PROMPT = """\
You match report files to the organization they belong to.

You receive an organization (short code and full name), the service the
report covers, and a list of filenames. Return the one filename that most
likely is that organization's report for that service, copied exactly.
Filenames often abbreviate names ("Ministério da Saúde" -> "min_saude").
If no file fits, return null. Never invent a filename.
"""

USER_PROMPT = """\
**Code:** {sigla}
**Name:** {name}
**Service:** {service}

**Files:**
{files}
"""


class OllamaMatcher:
    """Keyword rules first, LLM pick as a fallback. Never raises."""

    def __init__(
        self,
        ollama: OllamaClient,
        *,
        model: str,
        rule: ContractRule | None = None,
    ) -> None:
        self.rule = rule or ContractRule()
        self._keyword = KeywordMatcher(self.rule)
        self._ollama = ollama
        self._model = model

    async def find(
        self, recipient: Recipient, service: str, file_names: list[str]
    ) -> str | None:
        hit = await self._keyword.find(recipient, service, file_names)
        if hit is not None or not file_names:
            return hit
        # The contract report has a fixed filename format; guessing would
        # only produce false positives.
        if is_contract_variant(recipient, self.rule):
            return None

        prompt = USER_PROMPT.format(
            sigla=recipient.sigla,
            name=recipient.name,
            service=service,
            files="\n".join(f"- {n}" for n in file_names[:MAX_FILES_IN_PROMPT]),
        )
        try:
            pick, _raw = await self._ollama.generate_structured(
                model=self._model,
                schema_class=FilePick,
                system=SYSTEM_PROMPT,
                prompt=prompt,
            )
        except Exception:
            logger.warning(
                "AI match failed for %s/%s, keeping keyword result",
                recipient.sigla,
                service,
                exc_info=True,
            )
            return None

        if pick.filename and pick.filename in file_names:
            logger.info("AI matched %s/%s -> %s", recipient.sigla, service, pick.filename)
            return pick.filename
        if pick.filename:
            logger.warning("AI proposed unknown file %r for %s, ignoring", pick.filename, recipient.sigla)
        return None
