"""
IMAP Client Wrapper
===================

Mailbox connection manager for the watched folder.

- fetch_unseen uses BODY.PEEK[] so fetching never flips \\Seen; the poll
  loop marks each message explicitly once it has been handled
- search+fetch and mark_seen hold the same folder lock so they never
  interleave on one connection
- connect_with_backoff retries forever with capped exponential delay until
  the cancellation event is set
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError

from contracts import (
    AuthFailedError,
    ConnectionFailedError,
    FolderNotFoundError,
    MailboxContract,
    NotConnectedError,
    RawMessage,
)
from src.email_responder.credentials import Credentials

logger = logging.getLogger("email-responder.imap")

SEEN_FLAG = b"\\Seen"
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 60.0


class MailboxClient:
    """IMAP connection to one mailbox."""

    def __init__(self) -> None:
        self._client: IMAPClient | None = None
        self._server: str = ""
        self._connected: bool = False
        self._folder_lock = threading.Lock()

    @property
    def connected(self) -> bool:
        """Check if connected to server."""
        return self._connected and self._client is not None

    @property
    def server(self) -> str:
        return self._server

    def connect(self, credentials: Credentials) -> None:
        """
        Connect and authenticate to IMAP server.

        ERRORS:
        - ConnectionFailedError: host unreachable, TLS failure
        - AuthFailedError: login rejected
        """
        try:
            self._client = IMAPClient(
                credentials.server,
                port=credentials.port,
                ssl=credentials.use_ssl,
            )
            self._server = credentials.server
        except Exception as e:
            self._client = None
            raise ConnectionFailedError(f"Failed to connect to {credentials.server}: {e}") from e

        try:
            self._client.login(credentials.username, credentials.password)
            self._connected = True
        except Exception as e:
            self.close()
            raise AuthFailedError(f"Authentication failed: {e}") from e

    def close(self) -> None:
        """Disconnect from server. Errors are swallowed."""
        if self._client:
            try:
                self._client.logout()
            except Exception:
                pass
            finally:
                self._client = None
                self._connected = False

    def _require_connection(self) -> IMAPClient:
        """Ensure connected, raise NotConnectedError if not."""
        if not self._connected or self._client is None:
            raise NotConnectedError("Not connected to mail server")
        return self._client

    def _select(self, client: IMAPClient, folder: str) -> None:
        try:
            client.select_folder(folder)
        except IMAPClientError as e:
            raise FolderNotFoundError(f"Folder not found: {folder}") from e
        except OSError as e:
            raise ConnectionFailedError(f"Lost connection selecting {folder}: {e}") from e

    def fetch_unseen(self, folder: str = "INBOX", limit: int = 20) -> list[RawMessage]:
        """
        Fetch unseen messages from folder.

        Keeps the `limit` most recent UIDs and returns them oldest first so
        that per-sender bookkeeping sees messages in arrival order.
        """
        client = self._require_connection()

        with self._folder_lock:
            self._select(client, folder)
            try:
                uids = sorted(client.search(["UNSEEN"]))
                if not uids:
                    return []

                uids = uids[-limit:]
                fetch_data = client.fetch(uids, ["BODY.PEEK[]"])
            except (IMAPClientError, OSError) as e:
                raise ConnectionFailedError(f"Fetch from {folder} failed: {e}") from e

        messages = []
        for uid in uids:
            data = fetch_data.get(uid)
            if not data:
                continue
            source = data.get(b"BODY[]") or data.get(b"BODY.PEEK[]")
            if source:
                messages.append(RawMessage(uid=uid, source=source))
        return messages

    def mark_seen(self, folder: str, uid: int) -> None:
        """Set \\Seen on exactly one message. Only that flag is modified."""
        client = self._require_connection()

        with self._folder_lock:
            self._select(client, folder)
            try:
                client.add_flags([uid], [SEEN_FLAG])
            except (IMAPClientError, OSError) as e:
                raise ConnectionFailedError(f"Failed to mark UID {uid} seen: {e}") from e


# =============================================================================
# RECONNECT POLICY
# =============================================================================

@dataclass
class Backoff:
    """Doubling delay, capped; no limit on the number of attempts."""

    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY

    def __post_init__(self) -> None:
        self.delay = self.base_delay

    def next_delay(self) -> float:
        delay = self.delay
        self.delay = min(self.delay * 2, self.max_delay)
        return delay

    def reset(self) -> None:
        self.delay = self.base_delay


async def sleep_or_cancel(cancel: asyncio.Event, seconds: float) -> bool:
    """Wait up to `seconds`; return True as soon as `cancel` is set."""
    if cancel.is_set():
        return True
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True


async def connect_with_backoff(
    credentials: Credentials,
    cancel: asyncio.Event,
    backoff: Backoff,
    *,
    client_factory: Callable[[], MailboxContract] = MailboxClient,
    sleep: Callable[[asyncio.Event, float], Awaitable[bool]] = sleep_or_cancel,
    on_failure: Callable[[ConnectionFailedError], None] | None = None,
) -> MailboxContract | None:
    """
    Connect, retrying until success or cancellation.

    Returns None if cancelled before a connection was made. The backoff is
    reset right after a successful connect.
    """
    while not cancel.is_set():
        client = client_factory()
        try:
            logger.info(f"Connecting to IMAP {credentials.server}:{credentials.port}")
            await asyncio.to_thread(client.connect, credentials)
        except ConnectionFailedError as e:
            delay = backoff.next_delay()
            logger.error(f"IMAP connection failed: {e}; retrying in {delay:.1f}s")
            if on_failure is not None:
                on_failure(e)
            if await sleep(cancel, delay):
                break
            continue

        backoff.reset()
        logger.info(f"IMAP connected to {credentials.server}")
        return client

    return None
