"""
Durable State Store
===================

Processed-message markers and per-sender reply timestamps, persisted as JSON:

    {"processedIds": [...], "rateLimits": {"sender": [epochMillis, ...]},
     "lastPollTime": epochMillis}

Loaded once and cached in memory; every mutation is written back before the
call returns. Unknown fields in the file are ignored on load.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from collections.abc import Callable
from pathlib import Path

from contracts import RateLimitStatus, StateIOError

logger = logging.getLogger("email-responder.state")

MAX_PROCESSED_IDS = 10_000
RATE_LIMIT_WINDOW_SECONDS = 60 * 60


def default_state_path() -> Path:
    return Path.home() / ".email-responder" / "state.json"


def normalize_sender(sender: str) -> str:
    return sender.strip().lower()


class ProcessedStore:
    """
    Process-scoped dedup and rate-limit bookkeeping.

    One instance is shared by every account's poll loop. Read-modify-persist
    sequences run under a re-entrant lock so the store stays consistent when
    called from worker threads as well as from the event loop.
    """

    def __init__(
        self,
        path: Path | None = None,
        *,
        max_processed_ids: int = MAX_PROCESSED_IDS,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._path = Path(path) if path is not None else default_state_path()
        self._max_processed_ids = max_processed_ids
        self._window_ms = int(window_seconds * 1000)
        self._clock = clock
        self._lock = threading.RLock()
        self._loaded = False
        # dict keys double as an insertion-ordered set
        self._processed: dict[str, None] = {}
        self._rate_limits: dict[str, list[int]] = {}
        self._last_poll_time: int | None = None

    @property
    def path(self) -> Path:
        return self._path

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ------------------------------------------------------------------
    # Load / save
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Read the state file once. Unreadable files start an empty store."""
        with self._lock:
            if self._loaded:
                return
            self._loaded = True
            try:
                data = json.loads(self._path.read_text(encoding="utf-8"))
            except FileNotFoundError:
                return
            except (OSError, ValueError) as e:
                logger.error(f"Failed to load responder state from {self._path}: {e}")
                return

            if not isinstance(data, dict):
                logger.error(f"Ignoring malformed responder state in {self._path}")
                return

            processed = data.get("processedIds")
            if isinstance(processed, list):
                self._processed = {str(mid): None for mid in processed}

            rate_limits = data.get("rateLimits")
            if isinstance(rate_limits, dict):
                self._rate_limits = {
                    str(sender): [int(ts) for ts in stamps if isinstance(ts, (int, float))]
                    for sender, stamps in rate_limits.items()
                    if isinstance(stamps, list)
                }

            last_poll = data.get("lastPollTime")
            if isinstance(last_poll, (int, float)):
                self._last_poll_time = int(last_poll)

    def save(self) -> None:
        """
        Trim, purge and persist.

        Raises StateIOError when the file cannot be written; the in-memory
        state keeps the mutation either way.
        """
        with self._lock:
            self.load()
            if len(self._processed) > self._max_processed_ids:
                keep = list(self._processed)[-self._max_processed_ids:]
                self._processed = dict.fromkeys(keep)
            self._purge_expired(self._now_ms())

            payload: dict[str, object] = {
                "processedIds": list(self._processed),
                "rateLimits": self._rate_limits,
            }
            if self._last_poll_time is not None:
                payload["lastPollTime"] = self._last_poll_time

            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(
                    dir=self._path.parent, prefix=".state-", suffix=".json"
                )
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(payload, fh, indent=2)
                os.replace(tmp_name, self._path)
            except OSError as e:
                raise StateIOError(f"Failed to write responder state to {self._path}: {e}") from e

    def clear(self) -> None:
        """Wipe both the in-memory cache and the durable copy."""
        with self._lock:
            self._processed = {}
            self._rate_limits = {}
            self._last_poll_time = None
            self._loaded = False
            try:
                self._path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise StateIOError(f"Failed to delete responder state {self._path}: {e}") from e

    def _purge_expired(self, now_ms: int) -> None:
        for sender in list(self._rate_limits):
            recent = [ts for ts in self._rate_limits[sender] if now_ms - ts < self._window_ms]
            if recent:
                self._rate_limits[sender] = recent
            else:
                del self._rate_limits[sender]

    # ------------------------------------------------------------------
    # Processed markers
    # ------------------------------------------------------------------

    def is_processed(self, message_id: str) -> bool:
        with self._lock:
            self.load()
            return message_id in self._processed

    def mark_processed(self, message_id: str) -> None:
        with self._lock:
            self.load()
            if message_id in self._processed:
                return
            self._processed[message_id] = None
            self.save()

    @property
    def processed_ids(self) -> list[str]:
        with self._lock:
            self.load()
            return list(self._processed)

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    def _recent(self, sender: str, now_ms: int) -> list[int]:
        key = normalize_sender(sender)
        stamps = self._rate_limits.get(key)
        if not stamps:
            return []
        recent = [ts for ts in stamps if now_ms - ts < self._window_ms]
        if recent:
            self._rate_limits[key] = recent
        else:
            del self._rate_limits[key]
        return recent

    def check_rate_limit(self, sender: str, max_per_window: int) -> bool:
        """True while the sender has fewer than `max_per_window` recent replies."""
        with self._lock:
            self.load()
            return len(self._recent(sender, self._now_ms())) < max_per_window

    def record_reply(self, sender: str) -> None:
        with self._lock:
            self.load()
            self._rate_limits.setdefault(normalize_sender(sender), []).append(self._now_ms())
            self.save()

    def rate_limit_status(self, sender: str, max_per_window: int = 5) -> RateLimitStatus:
        with self._lock:
            self.load()
            now_ms = self._now_ms()
            recent = self._recent(sender, now_ms)
            oldest = min(recent) if recent else now_ms
            reset_ms = max(0, oldest + self._window_ms - now_ms) if recent else 0
            return RateLimitStatus(
                count=len(recent),
                remaining=max(0, max_per_window - len(recent)),
                reset_seconds=reset_ms / 1000,
            )

    # ------------------------------------------------------------------
    # Advisory poll time
    # ------------------------------------------------------------------

    @property
    def last_poll_time(self) -> int | None:
        with self._lock:
            self.load()
            return self._last_poll_time

    def touch_last_poll(self) -> None:
        with self._lock:
            self.load()
            self._last_poll_time = self._now_ms()
            self.save()
