"""Content orchestration and the email content generators.

The orchestrator calls the generator once per eligible recipient,
concurrently, and publishes all results as one batch once every call has
settled. Generators must not raise: on any internal failure they fall back
to the deterministic template.
"""

import asyncio
import html
import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Protocol

from pydantic import BaseModel, Field

from automail.engine.state import attach_content, needs_content
from automail.integrations.ollama import OllamaClient
from automail.matching.normalize import compact
from automail.schemas.reconciliation import GeneratedContent, RecipientRuntime
from automail.schemas.registry import SignatureConfig

logger = logging.getLogger(__name__)

MONTHS_PT = (
    "janeiro",
    "fevereiro",
    "março",
    "abril",
    "maio",
    "junho",
    "julho",
    "agosto",
    "setembro",
    "outubro",
    "novembro",
    "dezembro",
)

HEALTHCHECK = "Healthcheck"
TICKETS = "Chamados"
AMBIGUOUS_REPORT = "Healthcheck ou Chamados"

_HEALTHCHECK_HINTS = ("health", "hc", "check")
_TICKETS_HINTS = ("chamado", "ticket", "atendimento")


class ContentGenerator(Protocol):
    async def generate(
        self,
        name: str,
        sigla: str,
        primary_file: str,
        services: list[str],
    ) -> GeneratedContent: ...


def month_year(now: datetime) -> tuple[str, int]:
    return MONTHS_PT[now.month - 1], now.year


def guess_report_type(file_name: str) -> str | None:
    """Filename heuristics; None when the name says nothing useful."""
    key = compact(file_name)
    if any(hint in key for hint in _HEALTHCHECK_HINTS):
        return HEALTHCHECK
    if any(hint in key for hint in _TICKETS_HINTS):
        return TICKETS
    return None


def render_signature(signature: SignatureConfig) -> list[str]:
    return [line for line in (signature.name, signature.role, signature.company, signature.phone) if line]


def render_template(
    *,
    name: str,
    sigla: str,
    report_type: str,
    now: datetime,
    signature: SignatureConfig,
) -> GeneratedContent:
    """The fixed pt-BR template used for every report email."""
    month, year = month_year(now)
    paragraphs = [
        f"Ao {name},",
        "Prezados(as) Senhores(as),",
        f"Encaminhamos, em anexo, o relatório de {report_type} referente ao mês de {month} de {year}.",
        "Colocamo-nos à disposição para quaisquer esclarecimentos que se fizerem necessários.",
        "Atenciosamente,",
    ]
    sig_lines = render_signature(signature)

    body = "\n\n".join(paragraphs)
    if sig_lines:
        body += "\n" + "\n".join(sig_lines)

    body_html = "".join(f"<p>{html.escape(p)}</p>" for p in paragraphs)
    if sig_lines:
        body_html += "<p>" + "<br>".join(html.escape(line) for line in sig_lines) + "</p>"

    return GeneratedContent(
        subject=f"Relatório de {report_type} - {sigla} - {month}/{year}",
        body=body,
        body_html=body_html,
    )


class TemplateContentGenerator:
    """Deterministic generator. Report type comes from the services list,
    or from filename heuristics when the recipient has none."""

    def __init__(
        self,
        signature: SignatureConfig | None = None,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.signature = signature or SignatureConfig()
        self._clock = clock

    async def report_type(self, primary_file: str, services: list[str]) -> str:
        if services:
            return ", ".join(services)
        return guess_report_type(primary_file) or AMBIGUOUS_REPORT

    async def generate(
        self,
        name: str,
        sigla: str,
        primary_file: str,
        services: list[str],
    ) -> GeneratedContent:
        try:
            report_type = await self.report_type(primary_file, services)
        except Exception:
            logger.warning("Report type lookup failed for %s, using default", sigla, exc_info=True)
            report_type = AMBIGUOUS_REPORT
        return render_template(
            name=name,
            sigla=sigla,
            report_type=report_type,
            now=self._clock(),
            signature=self.signature,
        )


class ReportClassification(BaseModel):
    """LLM output for ambiguous report filenames."""

    report_type: str = Field(description="Healthcheck, Chamados, or Geral")


CLASSIFY_SYSTEM_PROMPT = """\
You classify monthly report files by their filename.
Answer with exactly one of: "Healthcheck", "Chamados", "Geral".
Use "Geral" when the filename does not make it clear.
"""


class OllamaContentGenerator(TemplateContentGenerator):
    """Template generator that asks the LLM about ambiguous filenames."""

    def __init__(
        self,
        ollama: OllamaClient,
        *,
        model: str,
        signature: SignatureConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        super().__init__(signature, clock=clock)
        self._ollama = ollama
        self._model = model

    async def report_type(self, primary_file: str, services: list[str]) -> str:
        if services:
            return ", ".join(services)
        guessed = guess_report_type(primary_file)
        if guessed or not primary_file:
            return guessed or AMBIGUOUS_REPORT

        verdict, _raw = await self._ollama.generate_structured(
            model=self._model,
            schema_class=ReportClassification,
            system=CLASSIFY_SYSTEM_PROMPT,
            prompt=f'Filename: "{primary_file}"',
        )
        answer = verdict.report_type.strip()
        if answer.lower().startswith("health"):
            return HEALTHCHECK
        if answer.lower().startswith("chamado"):
            return TICKETS
        return AMBIGUOUS_REPORT


async def generate_content(
    recipients: Sequence[RecipientRuntime],
    generator: ContentGenerator,
) -> tuple[tuple[RecipientRuntime, ...], tuple[str, ...]]:
    """Generate content for every eligible recipient as one batch.

    Returns the updated recipients (registry order preserved) and the keys
    that became ready.
    """
    targets = [r for r in recipients if needs_content(r)]
    if not targets:
        return tuple(recipients), ()

    results = await asyncio.gather(
        *(
            generator.generate(r.recipient.name, r.recipient.sigla, r.primary_file, list(r.recipient.services))
            for r in targets
        ),
        return_exceptions=True,
    )

    produced: dict[str, GeneratedContent] = {}
    for runtime, result in zip(targets, results, strict=True):
        if isinstance(result, BaseException):
            logger.error(
                "Content generation failed for %s: %s",
                runtime.recipient.sigla,
                result,
                exc_info=result,
            )
            continue
        produced[runtime.key] = result

    updated = tuple(
        attach_content(r, produced[r.key]) if r.key in produced else r for r in recipients
    )
    logger.info("Generated content for %d/%d recipient(s)", len(produced), len(targets))
    return updated, tuple(produced)
