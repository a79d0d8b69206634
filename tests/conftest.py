"""Shared fixtures for AutoMail tests."""

from datetime import datetime

import pytest

from automail.schemas.reconciliation import FileEntry, GeneratedContent
from automail.schemas.registry import Recipient


def make_recipient(**overrides) -> Recipient:
    defaults = dict(
        sigla="JFAL",
        name="Justiça Federal de Alagoas",
        email="contato@jfal.jus.br",
        services=["Varonis"],
    )
    defaults.update(overrides)
    return Recipient(**defaults)


def make_files(*names: str, folder: str = "/reports") -> tuple[FileEntry, ...]:
    return tuple(FileEntry(name=n, path=f"{folder}/{n}", source_folder=folder) for n in names)


async def no_timestamp(entry: FileEntry) -> datetime | None:
    return None


class FakeGenerator:
    """Deterministic content generator that records its calls."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str, list[str]]] = []

    async def generate(self, name, sigla, primary_file, services) -> GeneratedContent:
        self.calls.append((name, sigla, primary_file, services))
        return GeneratedContent(
            subject=f"Relatório - {sigla}",
            body=f"Ao {name}, segue {primary_file}.",
            body_html=f"<p>Ao {name}</p>",
        )


class FakeSendAction:
    def __init__(self, result: bool = True) -> None:
        self.result = result
        self.sent = []

    async def send(self, email) -> bool:
        self.sent.append(email)
        return self.result


@pytest.fixture()
def report_dir(tmp_path):
    """A monitored folder with one JFAL report in it."""
    folder = tmp_path / "reports"
    folder.mkdir()
    (folder / "relatorio_JFAL_Varonis_2024.pdf").write_bytes(b"%PDF")
    return folder
