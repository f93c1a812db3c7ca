"""Runs one poll loop per account and tracks their runtime status."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from dataclasses import asdict
from typing import Any

from contracts import AccountStatus, Responder, StatusSink
from src.email_responder.accounts import Account
from src.email_responder.monitor import PollLoop
from src.email_responder.smtp_client import TransportCache
from src.email_responder.state import ProcessedStore

logger = logging.getLogger("email-responder.orchestrator")


class AccountOrchestrator:
    """
    Owns the shared store and transport cache and one task per account.

    Each account gets its own cancellation event; a crash in one loop is
    recorded on that account's status and never touches the others.
    """

    def __init__(
        self,
        responder: Responder,
        store: ProcessedStore | None = None,
        transports: TransportCache | None = None,
        *,
        status_sink: StatusSink | None = None,
    ) -> None:
        self.responder = responder
        self.store = store or ProcessedStore()
        self.transports = transports or TransportCache()
        self._external_sink = status_sink
        self.accounts: dict[str, Account] = {}
        self.statuses: dict[str, AccountStatus] = {}
        self._cancels: dict[str, asyncio.Event] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def _update(self, account_id: str, patch: dict[str, Any]) -> None:
        status = self.statuses.setdefault(account_id, AccountStatus(account_id=account_id))
        status.apply(patch)
        if self._external_sink is not None:
            self._external_sink({"account_id": account_id, **patch})

    def start(self, accounts: Iterable[Account]) -> None:
        for account in accounts:
            self.accounts[account.account_id] = account
            if not account.enabled:
                logger.info(f"[{account.account_id}] Account disabled, not starting")
                continue
            if not account.configured:
                logger.warning(f"[{account.account_id}] Account not configured, not starting")
                continue
            self.start_account(account)

    def start_account(self, account: Account) -> asyncio.Task:
        account_id = account.account_id
        if account_id in self._tasks and not self._tasks[account_id].done():
            raise RuntimeError(f"Account {account_id} is already running")

        self.accounts[account_id] = account
        cancel = asyncio.Event()
        loop = PollLoop(
            account,
            self.responder,
            self.store,
            self.transports,
            cancel=cancel,
            status_sink=lambda patch: self._update(account_id, patch),
        )
        self._cancels[account_id] = cancel
        task = asyncio.create_task(self._run(account, loop), name=f"email-responder:{account_id}")
        self._tasks[account_id] = task
        return task

    async def _run(self, account: Account, loop: PollLoop) -> None:
        account_id = account.account_id
        logger.info(f"[{account_id}] Starting email monitor for {account.email}")
        self._update(account_id, {"running": True, "last_start_at": time.time()})
        try:
            await loop.run()
        except Exception as e:
            logger.exception(f"[{account_id}] Monitor crashed")
            self._update(account_id, {"last_error": str(e)})
        finally:
            self._update(
                account_id,
                {"running": False, "connected": False, "last_stop_at": time.time()},
            )

    async def stop(self, account_id: str) -> None:
        cancel = self._cancels.get(account_id)
        task = self._tasks.get(account_id)
        if cancel is None or task is None:
            return
        cancel.set()
        await task

    async def stop_all(self) -> None:
        for cancel in self._cancels.values():
            cancel.set()
        await self.wait()

    async def wait(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    def account(self, account_id: str) -> Account | None:
        return self.accounts.get(account_id)

    def snapshot(self) -> list[dict[str, Any]]:
        result = []
        for account_id, account in self.accounts.items():
            status = self.statuses.get(account_id) or AccountStatus(account_id=account_id)
            result.append(
                {
                    **asdict(status),
                    "name": account.name,
                    "email": account.email,
                    "enabled": account.enabled,
                    "configured": account.configured,
                }
            )
        return result
