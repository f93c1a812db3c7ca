"""
Account Descriptors
===================

Resolved per-account connection and behavior parameters, and loading them
from a JSON accounts file of the form::

    {
      "work": {
        "imap_host": "imap.example.com",
        "imap_user": "bot@example.com",
        "imap_password": "...",
        "smtp_host": "smtp.example.com",
        "max_replies_per_sender_per_hour": 3
      }
    }

Fields left out take the defaults below. No merging or schema validation
happens here; each entry is taken as already resolved.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from contracts import AccountConfigError
from src.email_responder.credentials import Credentials, retrieve_password

logger = logging.getLogger("email-responder.accounts")


@dataclass(frozen=True)
class Account:
    """One mailbox + transport pair, driven by one poll loop."""

    account_id: str
    email: str
    imap: Credentials
    smtp: Credentials
    name: str | None = None
    enabled: bool = True
    poll_interval_seconds: float = 60.0
    folder: str = "INBOX"
    max_replies_per_sender_per_hour: int = 5
    reply_prefix: str = "Re: "
    signature: str | None = None
    fetch_limit: int = 20

    @property
    def configured(self) -> bool:
        return bool(
            self.imap.server
            and self.imap.username
            and self.imap.password
            and self.smtp.server
        )


def normalize_email_address(address: str) -> str:
    return address.strip().lower()


def account_from_dict(account_id: str, data: dict[str, Any]) -> Account:
    """
    Build an Account from one accounts-file entry.

    SMTP user/password fall back to the IMAP ones. A missing IMAP password
    is looked up in the keychain when host and user are present; the SMTP
    password then comes from the same keychain entry.
    """
    imap_user = data.get("imap_user", "")
    imap_password = data.get("imap_password", "")
    smtp_password = data.get("smtp_password", "")
    if not imap_password and data.get("imap_host") and imap_user:
        imap_password = retrieve_password(account_id, "imap")
        if not smtp_password:
            smtp_password = retrieve_password(account_id, "smtp")

    imap = Credentials(
        username=imap_user,
        password=imap_password,
        server=data.get("imap_host", ""),
        port=int(data.get("imap_port", 993)),
        use_ssl=bool(data.get("imap_tls", True)),
    )
    smtp = Credentials(
        username=data.get("smtp_user") or imap_user,
        password=smtp_password or imap_password,
        server=data.get("smtp_host", ""),
        port=int(data.get("smtp_port", 587)),
        use_ssl=bool(data.get("smtp_tls", False)),
        start_tls=bool(data.get("smtp_start_tls", True)),
    )

    return Account(
        account_id=account_id,
        email=normalize_email_address(data.get("email") or imap_user),
        imap=imap,
        smtp=smtp,
        name=data.get("name"),
        enabled=data.get("enabled", True) is not False,
        poll_interval_seconds=float(data.get("poll_interval_seconds", 60)),
        folder=data.get("folder", "INBOX"),
        max_replies_per_sender_per_hour=int(data.get("max_replies_per_sender_per_hour", 5)),
        reply_prefix=data.get("reply_prefix", "Re: "),
        signature=data.get("signature"),
        fetch_limit=int(data.get("fetch_limit", 20)),
    )


def load_accounts(path: Path) -> list[Account]:
    """Load every account from a JSON accounts file."""
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise AccountConfigError(f"Accounts file not found: {path}") from e
    except (OSError, json.JSONDecodeError) as e:
        raise AccountConfigError(f"Unreadable accounts file {path}: {e}") from e

    if not isinstance(raw, dict):
        raise AccountConfigError("Accounts file must hold a JSON object keyed by account id")

    accounts = []
    for account_id, data in raw.items():
        if not isinstance(data, dict):
            raise AccountConfigError(f"Account {account_id!r} must be a JSON object")
        account = account_from_dict(account_id, data)
        logger.info(
            f"Loaded account {account_id} (configured={account.configured}, "
            f"enabled={account.enabled})"
        )
        accounts.append(account)
    return accounts
