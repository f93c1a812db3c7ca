"""
Email Monitor - IMAP Polling Loop
=================================

One PollLoop per account:

    DISCONNECTED -> CONNECTING -> CONNECTED -> POLLING -> CONNECTED ...
                                                 |
                                                 +-> DISCONNECTED on error
    any state -> STOPPED once the cancellation event is observed

Messages in a batch are handled one at a time so per-sender rate limits see
them in order. Blocking IMAP calls run in worker threads; state-store
mutations happen on the event loop between awaits.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from contracts import (
    InboundEvent,
    MailboxContract,
    NormalizedMessage,
    ParseError,
    PollState,
    RawMessage,
    Responder,
    SkipReason,
    StateIOError,
    StatusSink,
)
from src.email_responder.accounts import Account
from src.email_responder.filters import evaluate
from src.email_responder.imap_client import (
    Backoff,
    MailboxClient,
    connect_with_backoff,
    sleep_or_cancel,
)
from src.email_responder.normalizer import normalize
from src.email_responder.smtp_client import ReplyHandle, TransportCache, build_reply_subject
from src.email_responder.state import ProcessedStore

logger = logging.getLogger("email-responder.monitor")


class PollLoop:
    """Watches one account's folder until its cancellation event is set."""

    def __init__(
        self,
        account: Account,
        responder: Responder,
        store: ProcessedStore,
        transports: TransportCache,
        *,
        cancel: asyncio.Event,
        status_sink: StatusSink | None = None,
        client_factory: Callable[[], MailboxContract] = MailboxClient,
        backoff: Backoff | None = None,
        sleep: Callable[[asyncio.Event, float], Awaitable[bool]] = sleep_or_cancel,
    ) -> None:
        self.account = account
        self.responder = responder
        self.store = store
        self.transports = transports
        self.cancel = cancel
        self._status_sink = status_sink
        self._client_factory = client_factory
        self._backoff = backoff or Backoff()
        self._sleep = sleep
        self._state = PollState.DISCONNECTED
        self._prefix = f"[{account.account_id}]"

    @property
    def state(self) -> PollState:
        return self._state

    def _set_state(self, state: PollState) -> None:
        if state is not self._state:
            logger.debug(f"{self._prefix} {self._state.value} -> {state.value}")
            self._state = state

    def _emit(self, patch: dict[str, Any]) -> None:
        if self._status_sink is None:
            return
        try:
            self._status_sink(patch)
        except Exception:
            logger.exception(f"{self._prefix} Status sink rejected {sorted(patch)}")

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        account = self.account
        client: MailboxContract | None = None
        logger.info(
            f"{self._prefix} Monitoring {account.folder} on {account.imap.server} "
            f"every {account.poll_interval_seconds:g}s"
        )

        try:
            while not self.cancel.is_set():
                if client is None:
                    client = await self._connect()
                    if client is None:
                        break

                try:
                    self._set_state(PollState.POLLING)
                    await self.poll_once(client)
                    self._set_state(PollState.CONNECTED)
                    self._emit({"last_poll_at": time.time()})
                except Exception as e:
                    logger.error(f"{self._prefix} Poll error: {e}")
                    self._emit({"connected": False, "last_error": str(e)})
                    await asyncio.to_thread(client.close)
                    client = None
                    self._set_state(PollState.DISCONNECTED)

                if await self._sleep(self.cancel, account.poll_interval_seconds):
                    break
        finally:
            if client is not None:
                await asyncio.to_thread(client.close)
            self._set_state(PollState.STOPPED)
            self._emit({"connected": False})
            logger.info(f"{self._prefix} Monitor stopped")

    async def _connect(self) -> MailboxContract | None:
        self._set_state(PollState.CONNECTING)

        def on_failure(error: Exception) -> None:
            self._emit({"connected": False, "last_error": str(error)})

        client = await connect_with_backoff(
            self.account.imap,
            self.cancel,
            self._backoff,
            client_factory=self._client_factory,
            sleep=self._sleep,
            on_failure=on_failure,
        )
        if client is None:
            return None

        if self.cancel.is_set():
            await asyncio.to_thread(client.close)
            return None

        self._set_state(PollState.CONNECTED)
        self._emit({"connected": True, "last_error": None})
        return client

    async def poll_once(self, client: MailboxContract) -> None:
        """Fetch unseen messages and handle them in order."""
        account = self.account
        raws = await asyncio.to_thread(client.fetch_unseen, account.folder, account.fetch_limit)
        logger.debug(f"{self._prefix} Found {len(raws)} unseen messages in {account.folder}")

        for raw in raws:
            if self.cancel.is_set():
                break
            await self.process_raw(client, raw)

        try:
            self.store.touch_last_poll()
        except StateIOError as e:
            logger.warning(f"{self._prefix} Could not record poll time: {e}")

    # ------------------------------------------------------------------
    # Per-message handling
    # ------------------------------------------------------------------

    async def process_raw(self, client: MailboxContract, raw: RawMessage) -> None:
        try:
            message = normalize(raw)
        except ParseError as e:
            logger.warning(f"{self._prefix} Skipping unparseable message: {e}")
            return

        if message is None:
            logger.debug(f"{self._prefix} Dropping UID {raw.uid}: no sender address")
            return

        await self.process_message(client, message)

    async def process_message(self, client: MailboxContract, message: NormalizedMessage) -> None:
        account = self.account
        reason = evaluate(
            message,
            own_address=account.email,
            store=self.store,
            max_replies=account.max_replies_per_sender_per_hour,
        )
        if reason is not None:
            self._log_skip(message, reason)
            await self._finish(client, message)
            return

        logger.info(f"{self._prefix} Processing email from {message.from_addr}: {message.subject}")
        self._emit({"last_inbound_at": time.time()})

        event = InboundEvent(
            account_id=account.account_id,
            sender=message.from_addr,
            sender_name=message.from_name,
            recipient=account.email,
            subject=message.subject,
            body=message.plain_body,
            message_id=message.message_id,
            in_reply_to=message.in_reply_to,
            date=message.date,
            reply=ReplyHandle(
                account=account,
                recipient=message.from_addr,
                subject=build_reply_subject(message.subject, account.reply_prefix),
                parent_message_id=message.message_id,
                parent_references=message.references,
                transports=self.transports,
                store=self.store,
                status_sink=self._status_sink,
            ),
        )

        try:
            await self.responder(event)
        except Exception as e:
            # left unseen and unmarked so the next poll is a fresh delivery attempt
            logger.exception(f"{self._prefix} Responder failed for {message.message_id}")
            self._emit({"last_error": f"Responder failed: {e}"})
            return

        await self._finish(client, message)

    async def _finish(self, client: MailboxContract, message: NormalizedMessage) -> None:
        try:
            self.store.mark_processed(message.message_id)
        except StateIOError as e:
            logger.error(f"{self._prefix} Could not persist processed marker: {e}")
        await asyncio.to_thread(client.mark_seen, self.account.folder, message.uid)

    def _log_skip(self, message: NormalizedMessage, reason: SkipReason) -> None:
        if reason is SkipReason.IGNORED_SENDER or reason is SkipReason.RATE_LIMITED:
            logger.info(f"{self._prefix} Skipping {message.from_addr}: {reason.value}")
        else:
            logger.debug(f"{self._prefix} Skipping {message.message_id}: {reason.value}")
