"""
SMTP Reply Transport
====================

Builds threaded replies and sends them over SMTP.

- transports are cached per host:port:user and reused for every reply
- send_email never raises; delivery failures come back as SendResult
- every outgoing message gets a fresh Message-ID plus In-Reply-To and
  References pointing at the message being answered
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, formatdate, make_msgid
from typing import TYPE_CHECKING, Any

import aiosmtplib

from contracts import (
    ProcessedStoreContract,
    SendResult,
    StateIOError,
    StatusSink,
    ThreadInfo,
    TransportError,
)
from src.email_responder.credentials import Credentials

if TYPE_CHECKING:
    from src.email_responder.accounts import Account

logger = logging.getLogger("email-responder.smtp")

MESSAGE_ID_DOMAIN = "email-responder"
RATE_LIMITED_ERROR = "rate limited"


class SmtpTransport:
    """
    Long-lived SMTP session for one credential set.

    Connects lazily and reconnects when the server has dropped the session.
    Sends through one transport are serialized.
    """

    def __init__(self, credentials: Credentials) -> None:
        self.credentials = credentials
        self._smtp: aiosmtplib.SMTP | None = None
        self._lock = asyncio.Lock()

    def _new_client(self) -> aiosmtplib.SMTP:
        creds = self.credentials
        return aiosmtplib.SMTP(
            hostname=creds.server,
            port=creds.port,
            username=creds.username or None,
            password=creds.password or None,
            use_tls=creds.use_ssl,
            start_tls=False if creds.use_ssl else creds.start_tls,
        )

    async def send(self, message: EmailMessage) -> None:
        """Deliver one message. Raises TransportError on failure."""
        async with self._lock:
            try:
                if self._smtp is None or not self._smtp.is_connected:
                    self._smtp = self._new_client()
                    await self._smtp.connect()
                await self._smtp.send_message(message)
            except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as e:
                self.close()
                raise TransportError(
                    f"SMTP delivery via {self.credentials.server} failed: {e}"
                ) from e

    def close(self) -> None:
        if self._smtp is not None:
            try:
                self._smtp.close()
            except Exception:
                pass
            finally:
                self._smtp = None


class TransportCache:
    """Memoizes SmtpTransport handles by host, port and user."""

    def __init__(self) -> None:
        self._transports: dict[str, SmtpTransport] = {}

    def get(self, credentials: Credentials) -> SmtpTransport:
        key = credentials.cache_key
        transport = self._transports.get(key)
        if transport is None:
            transport = SmtpTransport(credentials)
            self._transports[key] = transport
        return transport

    def clear(self) -> None:
        for transport in self._transports.values():
            transport.close()
        self._transports.clear()

    def __len__(self) -> int:
        return len(self._transports)


def build_reply_subject(original: str, prefix: str = "Re: ") -> str:
    if original.lower().startswith(prefix.lower()):
        return original
    return f"{prefix}{original}"


def build_thread_info(
    parent_message_id: str | None,
    parent_references: tuple[str, ...] | list[str] | None = None,
    domain: str = MESSAGE_ID_DOMAIN,
) -> ThreadInfo:
    """
    Threading headers for a reply to `parent_message_id`.

    References keep the parent's chain in order without duplicates and end
    with the parent itself.
    """
    references: list[str] = []
    for ref in parent_references or ():
        if ref not in references and ref != parent_message_id:
            references.append(ref)
    if parent_message_id:
        references.append(parent_message_id)

    return ThreadInfo(
        message_id=make_msgid(domain=domain),
        in_reply_to=parent_message_id or None,
        references=tuple(references),
    )


def compose_message(
    *,
    from_addr: str,
    to: str,
    subject: str,
    text: str,
    html: str | None = None,
    from_name: str | None = None,
    thread_info: ThreadInfo | None = None,
    signature: str | None = None,
) -> EmailMessage:
    message = EmailMessage()
    message["From"] = formataddr((from_name, from_addr)) if from_name else from_addr
    message["To"] = to
    message["Subject"] = subject
    message["Date"] = formatdate(localtime=True)
    message["Message-ID"] = thread_info.message_id if thread_info else make_msgid(
        domain=MESSAGE_ID_DOMAIN
    )

    if thread_info is not None:
        if thread_info.in_reply_to:
            message["In-Reply-To"] = thread_info.in_reply_to
        if thread_info.references:
            message["References"] = " ".join(thread_info.references)

    message.set_content(f"{text}\n\n{signature}" if signature else text)
    if html:
        message.add_alternative(
            f"{html}<br><br><pre>{signature}</pre>" if signature else html,
            subtype="html",
        )
    return message


async def send_email(
    transport: SmtpTransport,
    *,
    from_addr: str,
    to: str,
    subject: str,
    text: str,
    html: str | None = None,
    from_name: str | None = None,
    thread_info: ThreadInfo | None = None,
    signature: str | None = None,
) -> SendResult:
    """Compose and send. Never raises."""
    try:
        message = compose_message(
            from_addr=from_addr,
            to=to,
            subject=subject,
            text=text,
            html=html,
            from_name=from_name,
            thread_info=thread_info,
            signature=signature,
        )
        await transport.send(message)
    except (TransportError, ValueError) as e:
        return SendResult(ok=False, error=str(e))

    return SendResult(ok=True, message_id=message["Message-ID"])


@dataclass(frozen=True)
class ReplyHandle:
    """
    Everything needed to answer one inbound message.

    Handed to the responder as `event.reply`; each call sends one reply with
    its own Message-ID in the same thread, unless the recipient has reached
    the account's reply ceiling.
    """

    account: Account
    recipient: str
    subject: str
    parent_message_id: str
    parent_references: tuple[str, ...]
    transports: TransportCache
    store: ProcessedStoreContract
    status_sink: StatusSink | None = None

    def _emit(self, patch: dict[str, Any]) -> None:
        if self.status_sink is None:
            return
        try:
            self.status_sink(patch)
        except Exception:
            logger.exception(f"[{self.account.account_id}] Status sink rejected {sorted(patch)}")

    async def __call__(self, text: str, html: str | None = None) -> SendResult:
        prefix = f"[{self.account.account_id}]"
        ceiling = self.account.max_replies_per_sender_per_hour
        if not self.store.check_rate_limit(self.recipient, ceiling):
            # ceiling is enforced at send time as well as at filter time
            logger.warning(f"{prefix} Not replying to {self.recipient}: {RATE_LIMITED_ERROR}")
            return SendResult(ok=False, error=RATE_LIMITED_ERROR)

        transport = self.transports.get(self.account.smtp)
        thread_info = build_thread_info(self.parent_message_id, self.parent_references)

        result = await send_email(
            transport,
            from_addr=self.account.email,
            from_name=self.account.name,
            to=self.recipient,
            subject=self.subject,
            text=text,
            html=html,
            thread_info=thread_info,
            signature=self.account.signature,
        )

        if not result.ok:
            logger.error(f"{prefix} Failed to reply to {self.recipient}: {result.error}")
            return result

        logger.info(f"{prefix} Replied to {self.recipient} ({result.message_id})")
        try:
            self.store.record_reply(self.recipient)
        except StateIOError as e:
            logger.error(f"{prefix} Reply sent but not recorded for rate limiting: {e}")
        self._emit({"last_outbound_at": time.time()})
        return result


async def send_new_email(
    account: Account,
    transports: TransportCache,
    *,
    to: str,
    text: str,
    subject: str | None = None,
    reply_to_id: str | None = None,
) -> SendResult:
    """Agent-initiated mail that does not answer a fetched message."""
    thread_info = build_thread_info(reply_to_id) if reply_to_id else None
    if subject is None:
        subject = "Re: Your message" if reply_to_id else "Message from email responder"

    return await send_email(
        transports.get(account.smtp),
        from_addr=account.email,
        from_name=account.name,
        to=to,
        subject=subject,
        text=text,
        thread_info=thread_info,
        signature=account.signature,
    )
