"""Tests for the JSONL send log."""

from datetime import UTC, datetime

from automail.schemas.reconciliation import SendLogEntry
from automail.store.send_log import SendLog


def _entry(code="JFAL", day=3) -> SendLogEntry:
    return SendLogEntry(
        timestamp=datetime(2024, 6, day, 9, 0, tzinfo=UTC),
        recipient_code=code,
        recipient_email=f"contato@{code.lower()}.jus.br",
        subject=f"Relatório de Varonis - {code} - junho/2024",
    )


class TestSendLog:
    def test_log_and_read(self, tmp_path):
        log = SendLog(tmp_path / "send_log.jsonl")
        log.log(_entry())
        entries = log.read_entries()
        assert len(entries) == 1
        assert entries[0].recipient_code == "JFAL"

    def test_append_only(self, tmp_path):
        path = tmp_path / "send_log.jsonl"
        SendLog(path).log(_entry("JFAL"))
        SendLog(path).log(_entry("TRF5"))
        assert len(path.read_text(encoding="utf-8").strip().splitlines()) == 2

    def test_creates_parent_dirs(self, tmp_path):
        log = SendLog(tmp_path / "nested" / "dir" / "send_log.jsonl")
        log.log(_entry())
        assert (tmp_path / "nested" / "dir" / "send_log.jsonl").exists()

    def test_missing_file_is_empty(self, tmp_path):
        assert SendLog(tmp_path / "send_log.jsonl").read_entries() == []

    def test_filter_since(self, tmp_path):
        log = SendLog(tmp_path / "send_log.jsonl")
        log.log(_entry(day=1))
        log.log(_entry(day=5))
        entries = log.read_entries(since=datetime(2024, 6, 3, tzinfo=UTC))
        assert [e.timestamp.day for e in entries] == [5]

    def test_filter_recipient_code(self, tmp_path):
        log = SendLog(tmp_path / "send_log.jsonl")
        log.log(_entry("JFAL"))
        log.log(_entry("TRF5"))
        assert [e.recipient_code for e in log.read_entries(recipient_code="jfal")] == ["JFAL"]

    def test_limit_keeps_newest(self, tmp_path):
        log = SendLog(tmp_path / "send_log.jsonl")
        for day in (1, 2, 3):
            log.log(_entry(day=day))
        assert [e.timestamp.day for e in log.read_entries(limit=2)] == [2, 3]

    def test_limit_zero_returns_nothing(self, tmp_path):
        log = SendLog(tmp_path / "send_log.jsonl")
        for day in (1, 2):
            log.log(_entry(day=day))
        assert log.read_entries(limit=0) == []

    def test_clear(self, tmp_path):
        log = SendLog(tmp_path / "send_log.jsonl")
        log.log(_entry())
        log.log(_entry("TRF5"))
        assert log.clear() == 2
        assert log.read_entries() == []
        assert log.clear() == 0
