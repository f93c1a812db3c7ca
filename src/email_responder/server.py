"""
Email Responder MCP Server
==========================

MCP server that lets an AI agent act as the responder for watched mailboxes.

Inbound messages that pass the filter pipeline are queued; the agent lists
them with email_pending and answers with email_reply, which sends a threaded
reply through the account's SMTP transport.

Message bodies and credentials are never logged.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import os
import sys
from collections import OrderedDict
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from contracts import EmailResponderError, InboundEvent, SendResult
from src.email_responder.accounts import Account, load_accounts
from src.email_responder.orchestrator import AccountOrchestrator
from src.email_responder.smtp_client import TransportCache, send_new_email
from src.email_responder.state import ProcessedStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger("email-responder")

MAX_PENDING_EVENTS = 500
ACCOUNTS_ENV = "EMAIL_RESPONDER_ACCOUNTS"


class UnknownEventError(EmailResponderError):
    """No pending inbound event with that message id."""
    code = "UNKNOWN_EVENT"


class InvalidArgumentsError(EmailResponderError):
    """Tool called with missing or unexpected arguments."""
    code = "INVALID_ARGUMENTS"


class UnknownAccountError(EmailResponderError):
    """No loaded account with that id."""
    code = "UNKNOWN_ACCOUNT"


class QueueResponder:
    """
    Responder callback that parks events until the agent answers them.

    Oldest events are dropped once MAX_PENDING_EVENTS are waiting.
    """

    def __init__(self, max_pending: int = MAX_PENDING_EVENTS) -> None:
        self._events: OrderedDict[str, InboundEvent] = OrderedDict()
        self._max_pending = max_pending

    async def __call__(self, event: InboundEvent) -> None:
        self._events[event.message_id] = event
        self._events.move_to_end(event.message_id)
        while len(self._events) > self._max_pending:
            dropped, _ = self._events.popitem(last=False)
            logger.warning(f"Pending queue full, dropped {dropped}")

    def pending(self) -> list[InboundEvent]:
        return list(self._events.values())

    def get(self, message_id: str) -> InboundEvent | None:
        return self._events.get(message_id)

    def pop(self, message_id: str) -> InboundEvent | None:
        return self._events.pop(message_id, None)

    def __len__(self) -> int:
        return len(self._events)


class EmailResponderServer:
    """Email Responder MCP Server - the agent side of the responder callback."""

    def __init__(
        self,
        store: ProcessedStore | None = None,
        transports: TransportCache | None = None,
    ) -> None:
        self.responder = QueueResponder()
        self.orchestrator = AccountOrchestrator(
            self.responder,
            store=store,
            transports=transports,
        )
        self._server = Server("email-responder")
        self._setup_tools()

    @property
    def store(self) -> ProcessedStore:
        return self.orchestrator.store

    def _setup_tools(self) -> None:
        """Register MCP tools."""

        @self._server.list_tools()
        async def list_tools() -> list[Tool]:
            return [
                Tool(
                    name="email_status",
                    description="Runtime status of every configured email account",
                    inputSchema={
                        "type": "object",
                        "properties": {},
                    },
                ),
                Tool(
                    name="email_pending",
                    description="Inbound emails waiting for a reply",
                    inputSchema={
                        "type": "object",
                        "properties": {
                            "account_id": {
                                "type": "string",
                                "description": "Only events for this account",
                            },
                        },
                    },
                ),
                Tool(
                    name="email_reply",
                    description="Reply to a pending inbound email in its thread",
                    inputSchema={
                        "type": "object",
                        "properties": {
                            "message_id": {
                                "type": "string",
                                "description": "Message-ID of the pending email",
                            },
                            "text": {
                                "type": "string",
                                "description": "Plain-text reply body",
                            },
                            "keep_pending": {
                                "type": "boolean",
                                "description": "Leave the email in the pending list after replying",
                                "default": False,
                            },
                        },
                        "required": ["message_id", "text"],
                    },
                ),
                Tool(
                    name="email_send",
                    description="Send a new email from one of the accounts",
                    inputSchema={
                        "type": "object",
                        "properties": {
                            "to": {
                                "type": "string",
                                "description": "Recipient address",
                            },
                            "text": {
                                "type": "string",
                                "description": "Plain-text body",
                            },
                            "subject": {
                                "type": "string",
                                "description": "Subject line",
                            },
                            "account_id": {
                                "type": "string",
                                "description": "Sending account (default: first account)",
                            },
                            "reply_to_id": {
                                "type": "string",
                                "description": "Message-ID this email answers",
                            },
                        },
                        "required": ["to", "text"],
                    },
                ),
                Tool(
                    name="email_rate_limit",
                    description="Replies sent to a sender in the current hour",
                    inputSchema={
                        "type": "object",
                        "properties": {
                            "sender": {
                                "type": "string",
                                "description": "Sender address",
                            },
                            "account_id": {
                                "type": "string",
                                "description": "Account whose ceiling applies",
                            },
                        },
                        "required": ["sender"],
                    },
                ),
                Tool(
                    name="email_clear_state",
                    description="Forget processed messages and rate-limit history",
                    inputSchema={
                        "type": "object",
                        "properties": {},
                    },
                ),
            ]

        @self._server.call_tool()
        async def call_tool(name: str, arguments: dict[str, Any] | None) -> list[TextContent]:
            return await self.handle_tool(name, arguments)

    async def handle_tool(self, name: str, arguments: dict[str, Any] | None) -> list[TextContent]:
        """Dispatch one tool call; domain errors come back as error text."""
        handlers = {
            "email_status": self.email_status,
            "email_pending": self.email_pending,
            "email_reply": self.email_reply,
            "email_send": self.email_send,
            "email_rate_limit": self.email_rate_limit,
            "email_clear_state": self.email_clear_state,
        }
        handler = handlers.get(name)
        if handler is None:
            return [TextContent(type="text", text=f"Unknown tool: {name}")]

        arguments = arguments or {}
        try:
            try:
                inspect.signature(handler).bind(**arguments)
            except TypeError as e:
                raise InvalidArgumentsError(f"Invalid arguments for {name}: {e}") from e

            result = handler(**arguments)
            if inspect.isawaitable(result):
                result = await result
            return [TextContent(type="text", text=self._serialize_result(result))]

        except EmailResponderError as e:
            return [TextContent(type="text", text=f"Error: {e.__class__.__name__}: {e}")]

    def _account(self, account_id: str | None) -> Account:
        accounts = self.orchestrator.accounts
        if account_id is None:
            if not accounts:
                raise UnknownAccountError("No accounts loaded")
            return next(iter(accounts.values()))
        account = accounts.get(account_id)
        if account is None:
            raise UnknownAccountError(f"Unknown account: {account_id}")
        return account

    def email_status(self) -> dict:
        return {
            "accounts": self.orchestrator.snapshot(),
            "pending": len(self.responder),
            "state_path": str(self.store.path),
        }

    def email_pending(self, *, account_id: str | None = None) -> dict:
        events = [
            {
                "account_id": e.account_id,
                "message_id": e.message_id,
                "from": e.sender,
                "from_name": e.sender_name,
                "to": e.recipient,
                "subject": e.subject,
                "body": e.body,
                "date": e.date,
                "in_reply_to": e.in_reply_to,
            }
            for e in self.responder.pending()
            if account_id is None or e.account_id == account_id
        ]
        return {"events": events}

    async def email_reply(
        self,
        *,
        message_id: str,
        text: str,
        keep_pending: bool = False,
    ) -> SendResult:
        event = self.responder.get(message_id)
        if event is None:
            raise UnknownEventError(f"No pending email with id {message_id}")

        logger.info(f"[{event.account_id}] Replying to {event.sender} ({message_id})")
        result = await event.reply(text)
        if result.ok and not keep_pending:
            self.responder.pop(message_id)
        return result

    async def email_send(
        self,
        *,
        to: str,
        text: str,
        subject: str | None = None,
        account_id: str | None = None,
        reply_to_id: str | None = None,
    ) -> SendResult:
        account = self._account(account_id)
        logger.info(f"[{account.account_id}] Sending email to {to}")
        return await send_new_email(
            account,
            self.orchestrator.transports,
            to=to.strip(),
            text=text,
            subject=subject,
            reply_to_id=reply_to_id,
        )

    def email_rate_limit(self, *, sender: str, account_id: str | None = None) -> dict:
        ceiling = 5
        if self.orchestrator.accounts:
            ceiling = self._account(account_id).max_replies_per_sender_per_hour
        status = self.store.rate_limit_status(sender, ceiling)
        return {"sender": sender.strip().lower(), "limit": ceiling, **asdict(status)}

    def email_clear_state(self) -> dict:
        self.store.clear()
        logger.info("Cleared responder state")
        return {"cleared": True, "state_path": str(self.store.path)}

    def _serialize_result(self, result: Any) -> str:
        """Serialize result to JSON string."""

        def default_serializer(obj: Any) -> Any:
            if hasattr(obj, "__dataclass_fields__"):
                return asdict(obj)
            if isinstance(obj, datetime):
                return obj.isoformat()
            if hasattr(obj, "value"):  # Enum
                return obj.value
            raise TypeError(f"Cannot serialize {type(obj)}")

        return json.dumps(result, default=default_serializer, indent=2)

    async def run(self, accounts: list[Account]) -> None:
        """Start every account's monitor and serve MCP over stdio."""
        self.orchestrator.start(accounts)
        try:
            async with stdio_server() as (read_stream, write_stream):
                await self._server.run(
                    read_stream, write_stream, self._server.create_initialization_options()
                )
        finally:
            await self.orchestrator.stop_all()


def create_server(
    store: ProcessedStore | None = None,
    transports: TransportCache | None = None,
) -> EmailResponderServer:
    """Create a new server instance."""
    return EmailResponderServer(store=store, transports=transports)


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    path = Path(
        argv[0] if argv else os.environ.get(
            ACCOUNTS_ENV, str(Path.home() / ".email-responder" / "accounts.json")
        )
    )
    try:
        accounts = load_accounts(path)
    except EmailResponderError as e:
        logger.error(f"{e.code}: {e}")
        return 1

    asyncio.run(create_server().run(accounts))
    return 0
