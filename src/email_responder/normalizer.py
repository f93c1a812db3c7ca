"""
Message Normalizer
==================

Turns a raw RFC 822 message into a NormalizedMessage with clean plaintext:
quoted replies and signatures removed, HTML-only bodies converted to text.
"""

from __future__ import annotations

import email
import email.message
import email.utils
import re
import time
from datetime import datetime, timezone
from email.header import decode_header

import html2text

from contracts import NormalizedMessage, ParseError, RawMessage

_ANGLE_ADDR = re.compile(r"<([^>]+)>")
_WROTE_MARKER = re.compile(r"^On .+ wrote:$", re.IGNORECASE)
_ORIGINAL_MESSAGE = re.compile(r"^-{2,}\s*Original Message", re.IGNORECASE)
_QUOTED_LINE = re.compile(r"^>+")
_SIGNATURE_DELIMITER = re.compile(r"^--\s*$")
_FOLDED_LINE = re.compile(r"[\r\n]+[ \t]*")

HTML_WRAP_WIDTH = 80


def extract_email_address(value: str) -> str:
    """Address part of `Name <addr>` or a bare address, lower-cased."""
    match = _ANGLE_ADDR.search(value)
    return (match.group(1) if match else value).strip().lower()


def strip_quoted_content(text: str) -> str:
    """
    Drop quoted reply history and the signature block.

    Everything after an "On ... wrote:" or "--- Original Message" line is
    dropped, ">"-prefixed lines are dropped wherever they appear, and a lone
    "--" line ends the body.
    """
    result = []
    in_quoted_block = False

    for line in text.split("\n"):
        stripped = line.strip()
        if _WROTE_MARKER.match(stripped) or _ORIGINAL_MESSAGE.match(stripped):
            in_quoted_block = True
            continue
        if _QUOTED_LINE.match(stripped):
            continue
        if _SIGNATURE_DELIMITER.match(line):
            break
        if not in_quoted_block:
            result.append(line)

    return "\n".join(result).strip()


def html_to_text(html: str) -> str:
    converter = html2text.HTML2Text()
    converter.body_width = HTML_WRAP_WIDTH
    converter.ignore_links = True
    converter.ignore_images = True
    return converter.handle(html)


def _unfold(value: object) -> str:
    """Join a header folded across lines back onto one line."""
    return _FOLDED_LINE.sub(" ", str(value or "")).strip()


def _decode_header(header: str | None) -> str:
    """Decode RFC 2047 encoded header."""
    if not header:
        return ""

    decoded_parts = []
    for part, charset in decode_header(_unfold(header)):
        if isinstance(part, bytes):
            try:
                decoded_parts.append(part.decode(charset or "utf-8", errors="replace"))
            except LookupError:
                decoded_parts.append(part.decode("utf-8", errors="replace"))
        else:
            decoded_parts.append(part)
    return _FOLDED_LINE.sub(" ", "".join(decoded_parts)).strip()


def _decode_payload(part: email.message.Message) -> str:
    payload = part.get_payload(decode=True)
    if payload is None:
        return ""

    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _address_list(msg: email.message.Message, name: str) -> tuple[str, ...]:
    values = [_unfold(v) for v in msg.get_all(name, [])]
    return tuple(
        address.strip().lower()
        for _name, address in email.utils.getaddresses(values)
        if address
    )


def _bodies(msg: email.message.Message) -> tuple[str | None, str | None]:
    body_plain = None
    body_html = None

    if msg.is_multipart():
        for part in msg.walk():
            if "attachment" in str(part.get("Content-Disposition", "")):
                continue
            content_type = part.get_content_type()
            if content_type == "text/plain" and body_plain is None:
                body_plain = _decode_payload(part)
            elif content_type == "text/html" and body_html is None:
                body_html = _decode_payload(part)
    else:
        content_type = msg.get_content_type()
        if content_type == "text/plain":
            body_plain = _decode_payload(msg)
        elif content_type == "text/html":
            body_html = _decode_payload(msg)

    return body_plain, body_html


def _parse_date(value: str | None) -> datetime:
    if value:
        try:
            parsed = email.utils.parsedate_to_datetime(value)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
        except (TypeError, ValueError, IndexError):
            pass
    return datetime.now(timezone.utc)


def normalize(raw: RawMessage) -> NormalizedMessage | None:
    """
    Normalize one fetched message.

    Returns None when no sender address can be extracted; the message is
    dropped, not failed. Raises ParseError when the source cannot be parsed.
    """
    try:
        msg = email.message_from_bytes(raw.source)
    except Exception as e:
        raise ParseError(f"Failed to parse message UID {raw.uid}: {e}") from e

    try:
        from_header = _unfold(msg.get("From"))
        from_name, from_addr = email.utils.parseaddr(from_header)
        from_name = _decode_header(from_name)
        from_addr = extract_email_address(from_addr or from_header)
        if not from_addr or "@" not in from_addr:
            return None

        body_plain, body_html = _bodies(msg)
        text = body_plain or ""
        if not text and body_html:
            text = html_to_text(body_html)

        message_id = _unfold(msg.get("Message-ID"))
        if not message_id:
            message_id = f"generated-{raw.uid}-{int(time.time() * 1000)}"

        in_reply_to = _unfold(msg.get("In-Reply-To")) or None
        references = tuple(_unfold(msg.get("References")).split())

        headers: dict[str, str] = {}
        for key, value in msg.items():
            headers.setdefault(key.lower(), _decode_header(value))

        return NormalizedMessage(
            uid=raw.uid,
            message_id=message_id,
            from_addr=from_addr,
            from_name=from_name or None,
            to_addrs=_address_list(msg, "To"),
            cc_addrs=_address_list(msg, "Cc"),
            subject=_decode_header(msg.get("Subject")) or "(no subject)",
            plain_body=strip_quoted_content(text),
            html_body=body_html,
            date=_parse_date(_unfold(msg.get("Date"))),
            in_reply_to=in_reply_to,
            references=references,
            headers=headers,
        )
    except (LookupError, TypeError, ValueError, AttributeError) as e:
        raise ParseError(f"Failed to normalize message UID {raw.uid}: {e}") from e
