"""
SMTP Reply Transport Tests
==========================

aiosmtplib.SMTP is patched; nothing leaves the process.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import aiosmtplib
import pytest

from contracts import SendResult, StateIOError, ThreadInfo, TransportError
from src.email_responder.accounts import Account
from src.email_responder.credentials import Credentials
from src.email_responder.smtp_client import (
    ReplyHandle,
    SmtpTransport,
    TransportCache,
    build_reply_subject,
    build_thread_info,
    compose_message,
    send_email,
    send_new_email,
)


# =============================================================================
# TEST FIXTURES
# =============================================================================

@pytest.fixture
def smtp_credentials():
    return Credentials(
        username="bot@example.com",
        password="secret123",
        server="smtp.example.com",
        port=587,
        use_ssl=False,
        start_tls=True,
    )


@pytest.fixture
def account(smtp_credentials):
    return Account(
        account_id="work",
        email="bot@example.com",
        name="Support Bot",
        imap=Credentials(username="bot@example.com", password="secret123", server="imap.example.com"),
        smtp=smtp_credentials,
        signature="-- The Bot",
    )


@pytest.fixture
def mock_smtp():
    """Patched aiosmtplib.SMTP whose instances start disconnected."""
    with patch("aiosmtplib.SMTP") as mock:
        client = MagicMock()
        client.is_connected = False
        client.connect = AsyncMock()
        client.send_message = AsyncMock()
        mock.return_value = client
        yield mock


# =============================================================================
# THREADING HEADERS
# =============================================================================

class TestReplySubject:

    def test_prefix_added_once(self):
        assert build_reply_subject("Hello") == "Re: Hello"
        assert build_reply_subject("Re: Hello") == "Re: Hello"
        assert build_reply_subject("RE: Hello") == "RE: Hello"

    def test_custom_prefix(self):
        assert build_reply_subject("Hello", prefix="AW: ") == "AW: Hello"


class TestThreadInfo:

    def test_references_end_with_parent(self):
        info = build_thread_info("<p@x>", ("<a@x>", "<b@x>"))
        assert info.in_reply_to == "<p@x>"
        assert info.references == ("<a@x>", "<b@x>", "<p@x>")

    def test_duplicates_removed(self):
        info = build_thread_info("<p@x>", ("<a@x>", "<p@x>", "<a@x>", "<b@x>"))
        assert info.references == ("<a@x>", "<b@x>", "<p@x>")

    def test_fresh_message_id_each_time(self):
        first = build_thread_info("<p@x>")
        second = build_thread_info("<p@x>")
        assert first.message_id != second.message_id
        assert first.message_id.startswith("<") and first.message_id.endswith("@email-responder>")

    def test_no_parent(self):
        info = build_thread_info(None)
        assert info.in_reply_to is None
        assert info.references == ()


class TestComposeMessage:

    def test_headers(self):
        thread = ThreadInfo(message_id="<new@x>", in_reply_to="<p@x>", references=("<a@x>", "<p@x>"))
        message = compose_message(
            from_addr="bot@example.com",
            from_name="Support Bot",
            to="alice@example.com",
            subject="Re: Hello",
            text="Thanks!",
            thread_info=thread,
        )

        assert message["From"] == "Support Bot <bot@example.com>"
        assert message["To"] == "alice@example.com"
        assert message["Message-ID"] == "<new@x>"
        assert message["In-Reply-To"] == "<p@x>"
        assert message["References"] == "<a@x> <p@x>"
        assert message["Date"]

    def test_signature_appended(self):
        message = compose_message(
            from_addr="bot@example.com",
            to="alice@example.com",
            subject="Hi",
            text="Body",
            html="<p>Body</p>",
            signature="The Bot",
        )

        plain = message.get_body(preferencelist=("plain",)).get_content()
        html = message.get_body(preferencelist=("html",)).get_content()
        assert plain.rstrip() == "Body\n\nThe Bot"
        assert "<pre>The Bot</pre>" in html


# =============================================================================
# TRANSPORT
# =============================================================================

class TestSmtpTransport:

    def test_connects_lazily_and_reuses_session(self, mock_smtp, smtp_credentials):
        transport = SmtpTransport(smtp_credentials)
        client = mock_smtp.return_value

        async def scenario():
            await transport.send(compose_message(from_addr="a@x", to="b@x", subject="1", text="1"))
            client.is_connected = True
            await transport.send(compose_message(from_addr="a@x", to="b@x", subject="2", text="2"))

        asyncio.run(scenario())

        mock_smtp.assert_called_once_with(
            hostname="smtp.example.com",
            port=587,
            username="bot@example.com",
            password="secret123",
            use_tls=False,
            start_tls=True,
        )
        client.connect.assert_awaited_once()
        assert client.send_message.await_count == 2

    def test_failure_raises_transport_error_and_drops_session(self, mock_smtp, smtp_credentials):
        client = mock_smtp.return_value
        client.send_message.side_effect = aiosmtplib.SMTPException("rejected")
        transport = SmtpTransport(smtp_credentials)

        async def scenario():
            await transport.send(compose_message(from_addr="a@x", to="b@x", subject="s", text="t"))

        with pytest.raises(TransportError):
            asyncio.run(scenario())
        client.close.assert_called_once()

    def test_implicit_tls_disables_starttls(self, mock_smtp):
        creds = Credentials(username="u", password="p", server="smtp.example.com", port=465, use_ssl=True, start_tls=True)
        SmtpTransport(creds)._new_client()
        kwargs = mock_smtp.call_args.kwargs
        assert kwargs["use_tls"] is True
        assert kwargs["start_tls"] is False


class TestTransportCache:

    def test_same_identity_shares_transport(self, smtp_credentials):
        cache = TransportCache()
        first = cache.get(smtp_credentials)
        again = cache.get(smtp_credentials.with_password("rotated"))
        other = cache.get(Credentials(username="other", password="p", server="smtp.example.com", port=587))

        assert first is again
        assert first is not other
        assert len(cache) == 2

    def test_clear_closes_everything(self, smtp_credentials):
        cache = TransportCache()
        transport = cache.get(smtp_credentials)
        with patch.object(transport, "close") as close:
            cache.clear()
        close.assert_called_once()
        assert len(cache) == 0


# =============================================================================
# SENDING
# =============================================================================

class TestSendEmail:

    def test_success(self, smtp_credentials):
        transport = SmtpTransport(smtp_credentials)
        with patch.object(SmtpTransport, "send", new=AsyncMock()):
            result = asyncio.run(send_email(
                transport, from_addr="bot@example.com", to="alice@example.com", subject="Hi", text="Hello",
            ))

        assert result.ok is True
        assert result.message_id.endswith("@email-responder>")

    def test_failure_is_returned_not_raised(self, smtp_credentials):
        transport = SmtpTransport(smtp_credentials)
        with patch.object(SmtpTransport, "send", new=AsyncMock(side_effect=TransportError("down"))):
            result = asyncio.run(send_email(
                transport, from_addr="bot@example.com", to="alice@example.com", subject="Hi", text="Hello",
            ))

        assert result == SendResult(ok=False, error="down")

    def test_send_new_email_threads_when_replying(self, account):
        transports = TransportCache()
        with patch.object(SmtpTransport, "send", new=AsyncMock()) as send:
            result = asyncio.run(send_new_email(
                account, transports, to="carol@example.com", text="Following up", reply_to_id="<p@x>",
            ))

        message = send.await_args.args[0]
        assert result.ok is True
        assert message["In-Reply-To"] == "<p@x>"
        assert message["Subject"] == "Re: Your message"


class TestReplyHandle:

    def make_handle(self, account, store, sink=None):
        return ReplyHandle(
            account=account,
            recipient="alice@example.com",
            subject="Re: Hello",
            parent_message_id="<p@x>",
            parent_references=("<a@x>",),
            transports=TransportCache(),
            store=store,
            status_sink=sink,
        )

    def test_success_records_reply(self, account):
        store = MagicMock()
        sink = MagicMock()
        handle = self.make_handle(account, store, sink)

        with patch.object(SmtpTransport, "send", new=AsyncMock()) as send:
            result = asyncio.run(handle("Thanks!"))

        message = send.await_args.args[0]
        assert result.ok is True
        assert message["References"] == "<a@x> <p@x>"
        store.record_reply.assert_called_once_with("alice@example.com")
        assert "last_outbound_at" in sink.call_args.args[0]

    def test_failure_not_recorded(self, account):
        store = MagicMock()
        handle = self.make_handle(account, store)

        with patch.object(SmtpTransport, "send", new=AsyncMock(side_effect=TransportError("down"))):
            result = asyncio.run(handle("Thanks!"))

        assert result.ok is False
        store.record_reply.assert_not_called()

    def test_each_reply_gets_own_message_id(self, account):
        handle = self.make_handle(account, MagicMock())

        with patch.object(SmtpTransport, "send", new=AsyncMock()):
            first = asyncio.run(handle("one"))
            second = asyncio.run(handle("two"))

        assert first.message_id != second.message_id

    def test_ceiling_checked_before_sending(self, account):
        store = MagicMock()
        store.check_rate_limit.return_value = False
        handle = self.make_handle(account, store)

        with patch.object(SmtpTransport, "send", new=AsyncMock()) as send:
            result = asyncio.run(handle("Thanks!"))

        assert result == SendResult(ok=False, error="rate limited")
        store.check_rate_limit.assert_called_once_with(
            "alice@example.com", account.max_replies_per_sender_per_hour
        )
        send.assert_not_awaited()
        store.record_reply.assert_not_called()

    def test_failing_status_sink_does_not_fail_reply(self, account):
        sink = MagicMock(side_effect=RuntimeError("sink down"))
        handle = self.make_handle(account, MagicMock(), sink)

        with patch.object(SmtpTransport, "send", new=AsyncMock()):
            result = asyncio.run(handle("Thanks!"))

        assert result.ok is True
        sink.assert_called_once()

    def test_state_write_failure_still_succeeds(self, account):
        store = MagicMock()
        store.record_reply.side_effect = StateIOError("disk full")
        handle = self.make_handle(account, store)

        with patch.object(SmtpTransport, "send", new=AsyncMock()):
            result = asyncio.run(handle("Thanks!"))

        assert result.ok is True
