"""Convert mailbox API message resources into domain objects."""

import base64
import html
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional, Tuple

from mailmirror.core.models.message import Body, Message
from mailmirror.utils.logging import get_logger

logger = get_logger(__name__)

NO_SUBJECT = "(no subject)"
UNKNOWN_SENDER = "(unknown sender)"


def _headers(payload: Dict[str, Any]) -> Dict[str, str]:
    return {
        header.get("name", "").lower(): header.get("value", "")
        for header in payload.get("headers", [])
    }


def _received_at(data: Dict[str, Any], headers: Dict[str, str]) -> Optional[datetime]:
    """Prefer the server's internal date, fall back to the Date header."""
    internal = data.get("internalDate")
    if internal:
        try:
            return datetime.fromtimestamp(int(internal) / 1000, tz=timezone.utc)
        except (TypeError, ValueError):
            logger.debug(f"Unparseable internalDate {internal!r}")

    date_str = headers.get("date")
    if date_str:
        try:
            parsed = parsedate_to_datetime(date_str)
        except (TypeError, ValueError) as e:
            logger.debug(f"Failed to parse date string '{date_str}': {e}")
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    return None


def parse_message(data: Dict[str, Any]) -> Message:
    """Build a Message from a ``format=metadata`` (or ``full``) resource."""
    headers = _headers(data.get("payload", {}))

    recipients = ", ".join(
        value for value in (headers.get("to", ""), headers.get("cc", "")) if value
    )
    labels = frozenset(data.get("labelIds", []))

    return Message(
        id=data["id"],
        thread_id=data.get("threadId", data["id"]),
        subject=headers.get("subject") or NO_SUBJECT,
        sender=headers.get("from") or UNKNOWN_SENDER,
        recipients=recipients,
        snippet=html.unescape(data.get("snippet", "")),
        received_at=_received_at(data, headers),
        labels=labels,
        remote_labels=labels,
    )


def decode_part_data(data: str) -> str:
    """Decode base64url body data (padding is often stripped)."""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def extract_text_parts(payload: Dict[str, Any]) -> Tuple[str, str]:
    """Walk the MIME tree and return the first text/plain and text/html parts.

    Attachments (parts with a filename) are skipped.
    """
    text = ""
    html_body = ""

    mime_type = payload.get("mimeType", "")
    body = payload.get("body", {})
    parts = payload.get("parts", [])

    if not parts and body.get("data") and not payload.get("filename"):
        content = decode_part_data(body["data"])
        if mime_type.startswith("text/html"):
            html_body = content
        elif mime_type.startswith("text/"):
            text = content

    for part in parts:
        if part.get("filename"):
            continue

        nested_text, nested_html = extract_text_parts(part)
        text = text or nested_text
        html_body = html_body or nested_html

        if text and html_body:
            break

    return text, html_body


def parse_body(data: Dict[str, Any]) -> Body:
    """Build a Body from a ``format=full`` message resource."""
    text, html_body = extract_text_parts(data.get("payload", {}))
    return Body(
        message_id=data["id"],
        text=text,
        html=html_body or None,
        fetched_at=datetime.now(timezone.utc),
    )
