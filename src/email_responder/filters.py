"""
Filter Pipeline
===============

Decides whether a normalized message reaches the responder. Rules run in a
fixed order and the first match wins:

1. already processed
2. sent by the account itself
3. auto-reply headers
4. automated sender address
5. sender over the reply ceiling
"""

from __future__ import annotations

import re

from contracts import NormalizedMessage, ProcessedStoreContract, SkipReason

AUTO_REPLY_HEADERS = (
    "x-auto-reply",
    "x-autoreply",
    "auto-submitted",
    "x-autorespond",
    "precedence",
)

IGNORED_SENDER_PATTERNS = (
    re.compile(r"^noreply@", re.IGNORECASE),
    re.compile(r"^no-reply@", re.IGNORECASE),
    re.compile(r"^mailer-daemon@", re.IGNORECASE),
    re.compile(r"^postmaster@", re.IGNORECASE),
    re.compile(r"^bounce[^@]*@", re.IGNORECASE),
    re.compile(r"^notifications?@", re.IGNORECASE),
    re.compile(r"^donotreply@", re.IGNORECASE),
    re.compile(r"^do-not-reply@", re.IGNORECASE),
)


def is_auto_reply(message: NormalizedMessage) -> bool:
    """
    Any auto-reply header with a value counts, `Auto-Submitted: no` excepted.

    Precedence bulk/junk/list are the usual values; any other non-empty
    precedence matches too.
    """
    for header in AUTO_REPLY_HEADERS:
        value = (message.header(header) or "").strip()
        if not value:
            continue
        if header == "auto-submitted" and value.lower() == "no":
            continue
        return True
    return False


def is_ignored_sender(address: str) -> bool:
    address = address.strip()
    return any(pattern.match(address) for pattern in IGNORED_SENDER_PATTERNS)


def evaluate(
    message: NormalizedMessage,
    *,
    own_address: str,
    store: ProcessedStoreContract,
    max_replies: int,
) -> SkipReason | None:
    """Return why the message is skipped, or None if it goes to the responder."""
    if store.is_processed(message.message_id):
        return SkipReason.ALREADY_PROCESSED
    if message.from_addr.lower() == own_address.strip().lower():
        return SkipReason.OWN_MESSAGE
    if is_auto_reply(message):
        return SkipReason.AUTO_REPLY
    if is_ignored_sender(message.from_addr):
        return SkipReason.IGNORED_SENDER
    if not store.check_rate_limit(message.from_addr, max_replies):
        return SkipReason.RATE_LIMITED
    return None
