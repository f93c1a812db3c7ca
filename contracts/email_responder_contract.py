"""
Email Responder Contract
========================

Behavioral contract for the mailbox-watching auto responder.

The responder polls one IMAP folder per account, normalizes each unseen
message, drops loops and abuse, hands qualifying messages to an external
responder callback and sends replies back over SMTP with threading headers.

AUTHORITY: This file is the SINGLE authoritative source for the domain
types, error types and collaborator protocols. Import from `contracts`.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable


# =============================================================================
# DOMAIN TYPES
# =============================================================================

class PollState(Enum):
    """Per-account poll loop states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    POLLING = "polling"
    STOPPED = "stopped"


class SkipReason(Enum):
    """Why the filter pipeline consumed a message without a reply."""
    ALREADY_PROCESSED = "already_processed"
    OWN_MESSAGE = "own_message"
    AUTO_REPLY = "auto_reply"
    IGNORED_SENDER = "ignored_sender"
    RATE_LIMITED = "rate_limited"


@dataclass(frozen=True)
class RawMessage:
    """Unparsed message as fetched from the watched folder."""
    uid: int
    source: bytes


@dataclass(frozen=True)
class NormalizedMessage:
    """
    One inbound unit after normalization.

    `headers` keys are lower-cased; use `header()` for lookups.
    `uid` is only meaningful inside the folder it was fetched from.
    """
    uid: int
    message_id: str
    from_addr: str
    from_name: str | None
    to_addrs: tuple[str, ...]
    cc_addrs: tuple[str, ...]
    subject: str
    plain_body: str
    html_body: str | None
    date: datetime
    in_reply_to: str | None = None
    references: tuple[str, ...] = ()
    headers: Mapping[str, str] = field(default_factory=dict)

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())


@dataclass(frozen=True)
class ThreadInfo:
    """Threading headers for one outgoing reply."""
    message_id: str
    in_reply_to: str | None
    references: tuple[str, ...]


@dataclass(frozen=True)
class SendResult:
    """Outcome of an SMTP send. Failures are values, not exceptions."""
    ok: bool
    message_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class RateLimitStatus:
    """Sliding-window usage for one sender."""
    count: int
    remaining: int
    reset_seconds: float


@dataclass(frozen=True)
class InboundEvent:
    """
    Event handed to the responder callback.

    `reply` is bound to this message's thread; awaiting it sends one reply
    and returns a SendResult.
    """
    account_id: str
    sender: str
    sender_name: str | None
    recipient: str
    subject: str
    body: str
    message_id: str
    date: datetime
    reply: Callable[[str], Awaitable[SendResult]]
    in_reply_to: str | None = None
    channel: str = "email"


@dataclass
class AccountStatus:
    """Runtime snapshot of one account, built from status patches."""
    account_id: str
    running: bool = False
    connected: bool = False
    last_start_at: float | None = None
    last_stop_at: float | None = None
    last_error: str | None = None
    last_poll_at: float | None = None
    last_inbound_at: float | None = None
    last_outbound_at: float | None = None

    def apply(self, patch: Mapping[str, Any]) -> None:
        """Merge a partial update. Unknown keys are ignored."""
        known = {f.name for f in fields(self)}
        for key, value in patch.items():
            if key in known and key != "account_id":
                setattr(self, key, value)


# =============================================================================
# ERROR TYPES
# =============================================================================

class EmailResponderError(Exception):
    """Base error for all Email Responder operations."""
    code: str = "EMAIL_RESPONDER_ERROR"


class BiosecretDeniedError(EmailResponderError):
    """
    User cancelled the biometric prompt while a password was retrieved.

    RECOVERY: Fatal for the account. Restart once the user approves.
    """
    code = "BIOSECRET_DENIED"


class BiosecretNotFoundError(EmailResponderError):
    """
    No credentials stored under the expected keychain key.

    RECOVERY: Fatal for the account. Store credentials via biosecret.
    """
    code = "BIOSECRET_NOT_FOUND"


class AccountConfigError(EmailResponderError):
    """
    Accounts file is missing, unreadable or not a JSON object of accounts.

    RECOVERY: Fix the accounts file and restart.
    """
    code = "ACCOUNT_CONFIG"


class ConnectionFailedError(EmailResponderError):
    """
    Network or protocol failure talking to the mailbox.

    RECOVERY: Retried with exponential backoff. Never fatal to the process.
    """
    code = "CONNECTION_FAILED"


class AuthFailedError(ConnectionFailedError):
    """
    Mail server rejected the credentials.

    RECOVERY: Retried like any connection failure; the status sink carries
    the error so an operator can update the password.
    """
    code = "AUTH_FAILED"


class NotConnectedError(ConnectionFailedError):
    """Operation attempted on a closed or never-opened mailbox connection."""
    code = "NOT_CONNECTED"


class FolderNotFoundError(ConnectionFailedError):
    """Watched folder does not exist on the server."""
    code = "FOLDER_NOT_FOUND"


class ParseError(EmailResponderError):
    """
    A single message could not be normalized.

    RECOVERY: The message is skipped and logged; the batch continues.
    """
    code = "PARSE_FAILED"


class TransportError(EmailResponderError):
    """
    Outbound SMTP delivery failed.

    RECOVERY: Surfaced as SendResult(ok=False); the source message is still
    marked processed.
    """
    code = "TRANSPORT_FAILED"


class StateIOError(EmailResponderError):
    """
    Durable state file unreadable or unwritable.

    RECOVERY: On read the store starts empty; on write the error propagates
    and the in-memory state stays as mutated.
    """
    code = "STATE_IO"


# =============================================================================
# COLLABORATOR CONTRACTS
# =============================================================================

StatusSink = Callable[[dict[str, Any]], None]


@runtime_checkable
class Responder(Protocol):
    """
    External responder callback.

    Invoked at most once per qualifying message per delivery attempt, only
    after every filter has passed. May await `event.reply(text)` any number
    of times, including after it returns.
    """

    async def __call__(self, event: InboundEvent) -> None:
        ...


@runtime_checkable
class MailboxContract(Protocol):
    """
    Live connection to one IMAP mailbox.

    SEQUENCE:
    1. connect(credentials)
    2. fetch_unseen / mark_seen, any number of times
    3. close()

    ERRORS:
    - AUTH_FAILED: login rejected
    - CONNECTION_FAILED: network or protocol failure
    - NOT_CONNECTED: fetch or mark after close
    - FOLDER_NOT_FOUND: watched folder missing
    """

    def connect(self, credentials: Any) -> None:
        """Open and authenticate. Blocking; run it off the event loop."""
        ...

    def fetch_unseen(self, folder: str, limit: int) -> list[RawMessage]:
        """Unseen messages, newest `limit`, without flipping \\Seen."""
        ...

    def mark_seen(self, folder: str, uid: int) -> None:
        """Set \\Seen on exactly one UID."""
        ...

    def close(self) -> None:
        """Best-effort logout. Never raises."""
        ...


@runtime_checkable
class ProcessedStoreContract(Protocol):
    """
    Durable dedup markers and per-sender reply timestamps.

    Every mutation is persisted before the call returns.
    """

    def is_processed(self, message_id: str) -> bool:
        ...

    def mark_processed(self, message_id: str) -> None:
        ...

    def check_rate_limit(self, sender: str, max_per_window: int) -> bool:
        """True while the sender is under the ceiling."""
        ...

    def record_reply(self, sender: str) -> None:
        ...

    def clear(self) -> None:
        ...
