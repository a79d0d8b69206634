"""End-to-end tests for the engine facade."""

from datetime import datetime
from unittest.mock import MagicMock

import pytest

from conftest import FakeGenerator, FakeSendAction, make_recipient, no_timestamp

from automail.engine.content import OllamaContentGenerator, TemplateContentGenerator
from automail.engine.pipeline import Engine, build_engine, filter_recipients
from automail.engine.state import TransitionError
from automail.matching.matcher import KeywordMatcher, OllamaMatcher
from automail.scanner.folders import FolderScanner
from automail.scanner.scheduler import SchedulerState
from automail.schemas.reconciliation import RecipientRuntime, RecipientStatus, SendLogEntry
from automail.schemas.registry import MatcherKind, Settings
from automail.store.send_log import SendLog

NOW = datetime(2024, 6, 3, 8, 0)
REPORT = "relatorio_JFAL_Varonis_2024.pdf"


def _engine(tmp_path, folders, *, recipients=None, generator=None, send_action=None, **settings):
    settings = Settings(folders=[str(f) for f in folders], **settings)
    return Engine(
        recipients=recipients if recipients is not None else [make_recipient()],
        settings=settings,
        scanner=FolderScanner(settings.folders),
        matcher=KeywordMatcher(settings.contract_rule),
        generator=generator or TemplateContentGenerator(settings.signature, clock=lambda: NOW),
        send_action=send_action or FakeSendAction(),
        send_log=SendLog(tmp_path / "send_log.jsonl"),
        clock=lambda: NOW,
        get_timestamp=no_timestamp,
    )


# ------------------------------------------------------------------
# Scan -> ready -> send
# ------------------------------------------------------------------


class TestScanToReady:
    async def test_matching_file_makes_recipient_ready(self, tmp_path, report_dir):
        engine = _engine(tmp_path, [report_dir])

        report = await engine.scan()

        assert report.changed is True
        assert report.file_count == 1
        assert report.updated == ["jfal"]
        assert report.ready == ["jfal"]
        runtime = engine.snapshot.get("jfal")
        assert runtime.status == RecipientStatus.READY
        assert runtime.email_subject == "Relatório de Varonis - JFAL - junho/2024"
        assert runtime.primary_file == REPORT
        assert engine.snapshot.last_scan_at == NOW

    async def test_other_agency_stays_pending(self, tmp_path):
        folder = tmp_path / "reports"
        folder.mkdir()
        (folder / "relatorio_JFBR_Varonis_2024.pdf").write_bytes(b"%PDF")
        engine = _engine(tmp_path, [folder])

        await engine.scan()

        runtime = engine.snapshot.get("jfal")
        assert runtime.status == RecipientStatus.PENDING
        assert runtime.missing_services == ("Varonis",)

    async def test_unchanged_rescan_does_nothing(self, tmp_path, report_dir):
        generator = FakeGenerator()
        engine = _engine(tmp_path, [report_dir], generator=generator)
        await engine.scan()
        before = engine.snapshot.recipients

        report = await engine.scan()

        assert report.changed is False
        assert engine.snapshot.recipients == before
        assert len(generator.calls) == 1

    async def test_removed_file_regresses_to_pending(self, tmp_path, report_dir):
        engine = _engine(tmp_path, [report_dir])
        await engine.scan()

        (report_dir / REPORT).unlink()
        await engine.scan()

        runtime = engine.snapshot.get("jfal")
        assert runtime.status == RecipientStatus.PENDING
        assert runtime.email_subject is None

    async def test_missing_folder_is_reported(self, tmp_path, report_dir):
        engine = _engine(tmp_path, [tmp_path / "nope", report_dir])
        report = await engine.scan()
        assert len(report.warnings) == 1
        assert engine.snapshot.get("jfal").status == RecipientStatus.READY

    async def test_busy_scan_refused(self, tmp_path, report_dir):
        engine = _engine(tmp_path, [report_dir])
        engine.scheduler.state = SchedulerState.SCANNING

        report = await engine.scan()

        assert report.busy is True
        assert engine.snapshot.get("jfal").status == RecipientStatus.PENDING

    async def test_listeners_see_each_stage(self, tmp_path, report_dir):
        engine = _engine(tmp_path, [report_dir])
        seen = []
        engine.subscribe(lambda snap: seen.append(snap.get("jfal").status))

        await engine.scan()

        assert RecipientStatus.FILE_FOUND in seen
        assert seen[-1] == RecipientStatus.READY

    async def test_failing_listener_does_not_break_pipeline(self, tmp_path, report_dir):
        engine = _engine(tmp_path, [report_dir])
        engine.subscribe(MagicMock(side_effect=RuntimeError("ui gone")))

        await engine.scan()

        assert engine.snapshot.get("jfal").status == RecipientStatus.READY


class TestSend:
    async def test_send_locks_and_logs(self, tmp_path, report_dir):
        action = FakeSendAction()
        engine = _engine(tmp_path, [report_dir], send_action=action, global_cc="chefe@empresa.com.br")
        await engine.scan()

        entry = await engine.send("JFAL")

        assert entry is not None
        assert entry.recipient_code == "JFAL"
        assert entry.recipient_email == "contato@jfal.jus.br"
        assert entry.timestamp == NOW
        assert engine.snapshot.get("jfal").status == RecipientStatus.SENT
        assert len(engine.send_log.read_entries()) == 1
        assert action.sent[0].cc == "chefe@empresa.com.br"

    async def test_sent_survives_file_removal(self, tmp_path, report_dir):
        engine = _engine(tmp_path, [report_dir])
        await engine.scan()
        await engine.send("jfal")

        (report_dir / REPORT).unlink()
        await engine.scan()

        assert engine.snapshot.get("jfal").status == RecipientStatus.SENT

    async def test_failed_send_action_changes_nothing(self, tmp_path, report_dir):
        engine = _engine(tmp_path, [report_dir], send_action=FakeSendAction(result=False))
        await engine.scan()

        assert await engine.send("jfal") is None
        assert engine.snapshot.get("jfal").status == RecipientStatus.READY
        assert engine.send_log.read_entries() == []

    async def test_send_requires_ready(self, tmp_path):
        engine = _engine(tmp_path, [])
        with pytest.raises(TransitionError):
            await engine.send("jfal")

    async def test_unknown_recipient(self, tmp_path):
        engine = _engine(tmp_path, [])
        with pytest.raises(KeyError):
            await engine.send("nobody")

    async def test_send_ready_sends_all(self, tmp_path, report_dir):
        (report_dir / "TRF5_Varonis.pdf").write_bytes(b"%PDF")
        recipients = [make_recipient(), make_recipient(sigla="TRF5", name="TRF 5", email="trf5@trf5.jus.br")]
        engine = _engine(tmp_path, [report_dir], recipients=recipients)
        await engine.scan()

        entries = await engine.send_ready()

        assert [e.recipient_code for e in entries] == ["JFAL", "TRF5"]
        assert all(r.status == RecipientStatus.SENT for r in engine.snapshot.recipients)


class TestRestart:
    def _log_send(self, tmp_path, when):
        SendLog(tmp_path / "send_log.jsonl").log(
            SendLogEntry(
                timestamp=when,
                recipient_code="JFAL",
                recipient_email="contato@jfal.jus.br",
                subject="Relatório de Varonis - JFAL - junho/2024",
            )
        )

    async def test_sent_this_month_stays_locked(self, tmp_path, report_dir):
        self._log_send(tmp_path, datetime(2024, 6, 1, 9, 0))
        action = FakeSendAction()
        engine = _engine(tmp_path, [report_dir], send_action=action)

        await engine.scan()

        assert engine.snapshot.get("jfal").status == RecipientStatus.SENT
        assert await engine.send_ready() == []
        assert action.sent == []

    async def test_last_month_send_does_not_lock(self, tmp_path, report_dir):
        self._log_send(tmp_path, datetime(2024, 5, 31, 9, 0))
        engine = _engine(tmp_path, [report_dir])

        await engine.scan()

        assert engine.snapshot.get("jfal").status == RecipientStatus.READY

    async def test_restored_recipient_can_be_reset(self, tmp_path, report_dir):
        self._log_send(tmp_path, datetime(2024, 6, 1, 9, 0))
        engine = _engine(tmp_path, [report_dir])
        await engine.scan()

        runtime = await engine.reset("jfal")

        assert runtime.status == RecipientStatus.READY


class TestDraft:
    async def test_overrides_win(self, tmp_path, report_dir):
        engine = _engine(tmp_path, [report_dir], global_cc="cc@x.br")
        await engine.scan()
        runtime = engine.snapshot.get("jfal")
        engine._publish(
            engine._replace(runtime.model_copy(update={"override_to": "a@x.br, b@x.br", "override_cc": "z@x.br"}))
        )

        draft = engine.draft_for("jfal")

        assert draft.to == "a@x.br; b@x.br"
        assert draft.cc == "z@x.br"


class TestReset:
    async def test_reset_reconciles_again(self, tmp_path, report_dir):
        engine = _engine(tmp_path, [report_dir])
        await engine.scan()
        await engine.send("jfal")

        runtime = await engine.reset("jfal")

        assert runtime.status == RecipientStatus.READY

    async def test_reset_without_file(self, tmp_path, report_dir):
        engine = _engine(tmp_path, [report_dir])
        await engine.scan()
        await engine.send("jfal")
        (report_dir / REPORT).unlink()
        await engine.scan()

        runtime = await engine.reset("jfal")

        assert runtime.status == RecipientStatus.PENDING

    async def test_reset_non_sent_is_noop(self, tmp_path, report_dir):
        engine = _engine(tmp_path, [report_dir])
        await engine.scan()
        assert (await engine.reset("jfal")).status == RecipientStatus.READY


class TestRegistryChanges:
    async def test_added_recipient_is_reconciled(self, tmp_path, report_dir):
        (report_dir / "TRF5_Varonis.pdf").write_bytes(b"%PDF")
        engine = _engine(tmp_path, [report_dir])
        await engine.scan()

        await engine.update_registry([make_recipient(), make_recipient(sigla="TRF5", name="TRF 5")])

        assert engine.snapshot.get("trf5").status == RecipientStatus.READY

    async def test_sent_survives_registry_edit(self, tmp_path, report_dir):
        engine = _engine(tmp_path, [report_dir])
        await engine.scan()
        await engine.send("jfal")

        await engine.update_registry([make_recipient(email="novo@jfal.jus.br")])

        runtime = engine.snapshot.get("jfal")
        assert runtime.status == RecipientStatus.SENT
        assert runtime.recipient.email == "novo@jfal.jus.br"

    async def test_invalidate_content_regenerates(self, tmp_path, report_dir):
        generator = FakeGenerator()
        engine = _engine(tmp_path, [report_dir], generator=generator)
        await engine.scan()

        await engine.invalidate_content()

        assert len(generator.calls) == 2
        assert engine.snapshot.get("jfal").status == RecipientStatus.READY

    async def test_set_folders_forces_rescan(self, tmp_path, report_dir):
        other = tmp_path / "other"
        other.mkdir()
        engine = _engine(tmp_path, [other])
        await engine.scan()

        engine.set_folders([str(report_dir)])
        report = await engine.scan()

        assert report.changed is True
        assert engine.settings.folders == [str(report_dir)]
        assert engine.snapshot.get("jfal").status == RecipientStatus.READY


# ------------------------------------------------------------------
# Dashboard filter and assembly
# ------------------------------------------------------------------


class TestFilterRecipients:
    def _runtimes(self):
        return (
            RecipientRuntime(recipient=make_recipient(sigla="TRF5", name="Tribunal"), status=RecipientStatus.READY),
            RecipientRuntime(recipient=make_recipient(sigla="jfal"), status=RecipientStatus.PENDING),
            RecipientRuntime(recipient=make_recipient(sigla="CEF", name="Caixa"), status=RecipientStatus.READY),
        )

    def test_sorted_by_sigla(self):
        assert [r.recipient.sigla for r in filter_recipients(self._runtimes())] == ["CEF", "jfal", "TRF5"]

    def test_status_filter(self):
        selected = filter_recipients(self._runtimes(), status=RecipientStatus.READY)
        assert [r.recipient.sigla for r in selected] == ["CEF", "TRF5"]

    def test_search_is_case_insensitive(self):
        assert [r.recipient.sigla for r in filter_recipients(self._runtimes(), search="CAIXA")] == ["CEF"]
        assert [r.recipient.sigla for r in filter_recipients(self._runtimes(), search="jfal.jus")] == [
            "CEF",
            "jfal",
            "TRF5",
        ]


class TestBuildEngine:
    def test_keyword_by_default(self, tmp_path):
        engine = build_engine([make_recipient()], Settings(), SendLog(tmp_path / "log.jsonl"))
        assert isinstance(engine.matcher, KeywordMatcher)
        assert isinstance(engine.generator, TemplateContentGenerator)

    def test_ollama_without_model_falls_back(self, tmp_path):
        settings = Settings(matcher=MatcherKind.OLLAMA)
        engine = build_engine([], settings, SendLog(tmp_path / "log.jsonl"), ollama=MagicMock(), model="")
        assert isinstance(engine.matcher, KeywordMatcher)

    def test_ollama_selected(self, tmp_path):
        settings = Settings(matcher=MatcherKind.OLLAMA)
        engine = build_engine([], settings, SendLog(tmp_path / "log.jsonl"), ollama=MagicMock(), model="qwen2.5")
        assert isinstance(engine.matcher, OllamaMatcher)
        assert isinstance(engine.generator, OllamaContentGenerator)
