"""
Email Responder
===============

Watches IMAP mailboxes, filters loops and abuse, hands qualifying messages
to a responder and sends threaded replies over SMTP. Ships as an MCP server
so an AI agent can act as the responder.
"""

__version__ = "0.1.0"

from src.email_responder.accounts import Account, load_accounts
from src.email_responder.credentials import Credentials, retrieve_password
from src.email_responder.imap_client import Backoff, MailboxClient, connect_with_backoff
from src.email_responder.monitor import PollLoop
from src.email_responder.normalizer import normalize
from src.email_responder.orchestrator import AccountOrchestrator
from src.email_responder.server import EmailResponderServer, create_server
from src.email_responder.smtp_client import (
    ReplyHandle,
    TransportCache,
    build_reply_subject,
    build_thread_info,
    send_email,
)
from src.email_responder.state import ProcessedStore

__all__ = [
    "Account",
    "load_accounts",
    "Credentials",
    "retrieve_password",
    "MailboxClient",
    "Backoff",
    "connect_with_backoff",
    "normalize",
    "ProcessedStore",
    "TransportCache",
    "ReplyHandle",
    "build_reply_subject",
    "build_thread_info",
    "send_email",
    "PollLoop",
    "AccountOrchestrator",
    "EmailResponderServer",
    "create_server",
]
