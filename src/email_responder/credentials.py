"""
Credentials Management
======================

Abstraction for credential retrieval. Passwords that are not present in the
accounts file are fetched from the keychain through the biosecret CLI.
For testing, this can be mocked.

Credentials are held in memory only, never written back to disk.
"""

import json
import subprocess
from dataclasses import dataclass, replace

from contracts import (
    BiosecretDeniedError,
    BiosecretNotFoundError,
)

KEYCHAIN_PREFIX = "email-responder"


@dataclass(frozen=True)
class Credentials:
    """Server endpoint plus username/password, held in memory only."""

    username: str
    password: str
    server: str
    port: int = 993
    use_ssl: bool = True
    start_tls: bool = False

    def __repr__(self) -> str:
        return (
            f"Credentials(username={self.username!r}, server={self.server!r}, "
            f"port={self.port}, use_ssl={self.use_ssl}, start_tls={self.start_tls})"
        )

    @property
    def cache_key(self) -> str:
        """host:port:user, the identity of an authenticated session."""
        return f"{self.server}:{self.port}:{self.username}"

    def with_password(self, password: str) -> "Credentials":
        return replace(self, password=password)


def retrieve_password(account_id: str, protocol: str = "imap") -> str:
    """
    Retrieve a mailbox password via biosecret CLI.

    PRE: biosecret CLI is available in PATH
    PRE: User has stored a JSON secret under "email-responder/{account_id}"
         holding "password" and optionally "smtp_password"

    ERRORS:
    - BiosecretDeniedError: User cancelled biometric prompt
    - BiosecretNotFoundError: No credentials under expected key
    """
    try:
        result = subprocess.run(
            ["biosecret", "get", f"{KEYCHAIN_PREFIX}/{account_id}"],
            capture_output=True,
            text=True,
            timeout=30,
        )

        if result.returncode != 0:
            stderr = result.stderr.lower() if result.stderr else ""
            if "cancel" in stderr or "denied" in stderr:
                raise BiosecretDeniedError("User cancelled biometric authentication")
            raise BiosecretNotFoundError(f"No credentials found for {account_id}")

        data = json.loads(result.stdout)
        if protocol == "smtp" and data.get("smtp_password"):
            return data["smtp_password"]
        return data["password"]
    except subprocess.TimeoutExpired as e:
        raise BiosecretDeniedError("Biometric authentication timed out") from e
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        raise BiosecretNotFoundError("Invalid credential format") from e
    except FileNotFoundError as e:
        raise BiosecretNotFoundError("biosecret CLI not found in PATH") from e
