"""Tests for the mailto send action."""

from unittest.mock import MagicMock

from automail.integrations.mailto import MailtoSendAction, build_mailto_url, join_addresses
from automail.schemas.reconciliation import OutboundEmail

EMAIL = OutboundEmail(
    to="contato@jfal.jus.br, ti@jfal.jus.br",
    cc="chefe@empresa.com.br",
    subject="Relatório de Varonis - JFAL - junho/2024",
    body="Ao JFAL,\n\nSegue.",
)


class TestJoinAddresses:
    def test_merges_and_dedupes(self):
        assert join_addresses("a@x.br, b@x.br", "b@x.br;c@x.br") == "a@x.br; b@x.br; c@x.br"

    def test_empty_and_none(self):
        assert join_addresses("", None, " ; ") == ""


class TestBuildMailtoUrl:
    def test_structure(self):
        url = build_mailto_url(EMAIL)
        assert url.startswith("mailto:contato@jfal.jus.br;ti@jfal.jus.br?")
        assert "cc=chefe@empresa.com.br" in url
        assert "subject=Relat%C3%B3rio%20de%20Varonis%20-%20JFAL%20-%20junho%2F2024" in url
        assert "body=Ao%20JFAL%2C%0A%0ASegue." in url

    def test_no_cc(self):
        url = build_mailto_url(EMAIL.model_copy(update={"cc": ""}))
        assert "cc=" not in url


class TestMailtoSendAction:
    async def test_opens_url(self):
        opener = MagicMock(return_value=True)
        assert await MailtoSendAction(opener=opener).send(EMAIL) is True
        assert opener.call_args.args[0].startswith("mailto:")

    async def test_no_mail_client(self):
        opener = MagicMock(return_value=False)
        assert await MailtoSendAction(opener=opener).send(EMAIL) is False
