"""
Email Responder Contract Index
==============================

AUTHORITY: This file is the SINGLE authoritative entrypoint for all
Email Responder contracts. Import from here, not from individual contract files.
"""

from contracts.email_responder_contract import (
    AccountConfigError,
    AccountStatus,
    AuthFailedError,
    BiosecretDeniedError,
    BiosecretNotFoundError,
    ConnectionFailedError,
    # Error Types
    EmailResponderError,
    FolderNotFoundError,
    InboundEvent,
    # Contracts (Protocols)
    MailboxContract,
    NormalizedMessage,
    NotConnectedError,
    ParseError,
    # Domain Types
    PollState,
    ProcessedStoreContract,
    RateLimitStatus,
    RawMessage,
    Responder,
    SendResult,
    SkipReason,
    StateIOError,
    StatusSink,
    ThreadInfo,
    TransportError,
)

__all__ = [
    # Domain Types
    "PollState",
    "SkipReason",
    "RawMessage",
    "NormalizedMessage",
    "ThreadInfo",
    "SendResult",
    "RateLimitStatus",
    "InboundEvent",
    "AccountStatus",
    # Error Types
    "EmailResponderError",
    "BiosecretDeniedError",
    "BiosecretNotFoundError",
    "AccountConfigError",
    "ConnectionFailedError",
    "AuthFailedError",
    "NotConnectedError",
    "FolderNotFoundError",
    "ParseError",
    "TransportError",
    "StateIOError",
    # Contracts
    "StatusSink",
    "Responder",
    "MailboxContract",
    "ProcessedStoreContract",
]
