"""
Email Responder Contract Tests
==============================

Domain types, error taxonomy and collaborator protocols exported by
`contracts`. Import from the index, never from the contract file directly.
"""

from datetime import datetime, timezone

import pytest

from contracts import (
    AccountStatus,
    AuthFailedError,
    ConnectionFailedError,
    EmailResponderError,
    FolderNotFoundError,
    InboundEvent,
    NormalizedMessage,
    NotConnectedError,
    ParseError,
    PollState,
    Responder,
    SendResult,
    StateIOError,
    ThreadInfo,
    TransportError,
)


# =============================================================================
# TEST FIXTURES
# =============================================================================

@pytest.fixture
def message():
    return NormalizedMessage(
        uid=7,
        message_id="<abc@example.com>",
        from_addr="alice@example.com",
        from_name="Alice",
        to_addrs=("bot@example.com",),
        cc_addrs=(),
        subject="Hello",
        plain_body="Hi there",
        html_body=None,
        date=datetime(2026, 1, 13, 10, 0, tzinfo=timezone.utc),
        headers={"auto-submitted": "no", "x-mailer": "test"},
    )


# =============================================================================
# DOMAIN TYPES
# =============================================================================

class TestDomainTypes:

    def test_header_lookup_is_case_insensitive(self, message):
        assert message.header("Auto-Submitted") == "no"
        assert message.header("X-MAILER") == "test"
        assert message.header("Precedence") is None

    def test_normalized_message_is_immutable(self, message):
        with pytest.raises(AttributeError):
            message.subject = "changed"

    def test_thread_info_fields(self):
        info = ThreadInfo(message_id="<new@x>", in_reply_to="<p@x>", references=("<a@x>", "<p@x>"))
        assert info.references[-1] == info.in_reply_to

    def test_send_result_defaults(self):
        result = SendResult(ok=False, error="boom")
        assert result.message_id is None
        assert result.error == "boom"

    def test_poll_states(self):
        assert {s.value for s in PollState} == {
            "disconnected", "connecting", "connected", "polling", "stopped",
        }

    def test_inbound_event_channel_is_email(self, message):
        async def reply(text: str) -> SendResult:
            return SendResult(ok=True)

        event = InboundEvent(
            account_id="default",
            sender=message.from_addr,
            sender_name=message.from_name,
            recipient="bot@example.com",
            subject=message.subject,
            body=message.plain_body,
            message_id=message.message_id,
            date=message.date,
            reply=reply,
        )
        assert event.channel == "email"
        assert event.in_reply_to is None


class TestAccountStatus:

    def test_apply_merges_patch(self):
        status = AccountStatus(account_id="work")
        status.apply({"connected": True, "last_error": None})
        status.apply({"last_poll_at": 123.0})

        assert status.connected is True
        assert status.last_poll_at == 123.0

    def test_apply_ignores_unknown_keys_and_account_id(self):
        status = AccountStatus(account_id="work")
        status.apply({"account_id": "other", "bogus": 1})

        assert status.account_id == "work"
        assert not hasattr(status, "bogus")


# =============================================================================
# ERROR TYPES
# =============================================================================

class TestErrorTaxonomy:

    @pytest.mark.parametrize(
        "error_type",
        [AuthFailedError, NotConnectedError, FolderNotFoundError],
    )
    def test_mailbox_errors_are_connection_failures(self, error_type):
        assert issubclass(error_type, ConnectionFailedError)

    @pytest.mark.parametrize(
        "error_type, code",
        [
            (ConnectionFailedError, "CONNECTION_FAILED"),
            (AuthFailedError, "AUTH_FAILED"),
            (ParseError, "PARSE_FAILED"),
            (TransportError, "TRANSPORT_FAILED"),
            (StateIOError, "STATE_IO"),
        ],
    )
    def test_error_codes(self, error_type, code):
        assert issubclass(error_type, EmailResponderError)
        assert error_type.code == code

    def test_connection_error_is_not_builtin(self):
        assert not issubclass(ConnectionFailedError, ConnectionError)


# =============================================================================
# COLLABORATOR CONTRACTS
# =============================================================================

def test_async_callable_satisfies_responder_protocol():
    class Recorder:
        async def __call__(self, event: InboundEvent) -> None:
            return None

    assert isinstance(Recorder(), Responder)
