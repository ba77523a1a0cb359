"""
Best-effort plain-text body extraction.

Works on both shapes of "message structure" the sync engine sees:
- a Gmail API `payload` dict (mimeType / body.data / parts, base64url bodies)
- a stdlib `email.message.Message` parsed from a raw IMAP source

Both are walked recursively into (mime_type, text) leaves. The first
text/plain leaf wins, then the first text/html leaf (tags stripped), then the
top-level body of a flat structure. Nothing here raises.
"""

import base64
import binascii
import logging
from email.message import Message
from typing import Any, Dict, Iterator, List, Tuple

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

PLAIN = "text/plain"
HTML = "text/html"
MAX_DEPTH = 20


def clean_html(html_content: str) -> str:
    """Strips HTML tags, scripts and styles; keeps one line per text block."""
    if not html_content:
        return ""
    soup = BeautifulSoup(html_content, "html.parser")
    for script_or_style in soup(["script", "style"]):
        script_or_style.decompose()
    text = soup.get_text(separator="\n")
    lines = (line.strip() for line in text.splitlines())
    return "\n".join(line for line in lines if line)


def _decode_b64url(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def _gmail_leaves(node: Dict[str, Any], depth: int = 0) -> Iterator[Tuple[str, str]]:
    if depth > MAX_DEPTH or not isinstance(node, dict):
        return
    parts = node.get("parts")
    if parts:
        for part in parts:
            yield from _gmail_leaves(part, depth + 1)
        return
    data = (node.get("body") or {}).get("data")
    if not data:
        return
    try:
        yield (node.get("mimeType") or "").lower(), _decode_b64url(data)
    except (binascii.Error, ValueError) as e:
        logger.debug(f"[MIME] Undecodable {node.get('mimeType')} part skipped: {e}")


def _email_leaves(message: Message) -> Iterator[Tuple[str, str]]:
    for part in message.walk():
        if part.is_multipart():
            continue
        if part.get_content_disposition() == "attachment":
            continue
        try:
            payload = part.get_payload(decode=True)
        except (ValueError, LookupError) as e:
            logger.debug(f"[MIME] Undecodable {part.get_content_type()} part skipped: {e}")
            continue
        if payload is None:
            continue
        charset = part.get_content_charset() or "utf-8"
        try:
            text = payload.decode(charset, errors="replace")
        except LookupError:
            text = payload.decode("utf-8", errors="replace")
        yield part.get_content_type(), text


def collect_leaves(structure: Any) -> List[Tuple[str, str]]:
    """All (mime_type, text) leaves of a message structure, in document order."""
    if isinstance(structure, Message):
        return list(_email_leaves(structure))
    if isinstance(structure, dict):
        return list(_gmail_leaves(structure))
    return []


def extract_body(structure: Any) -> str:
    """
    Extract a single best-effort plain-text body.

    Returns:
        The body text, or "" when nothing usable is found (callers substitute the snippet).
    """
    try:
        leaves = collect_leaves(structure)
        for mime_type, text in leaves:
            if mime_type == PLAIN and text.strip():
                return text.strip()
        for mime_type, text in leaves:
            if mime_type == HTML and text.strip():
                return clean_html(text)
        # Flat structure with an unusual type: take whatever the top-level body holds
        if leaves and not _has_parts(structure):
            return leaves[0][1].strip()
    except Exception as e:
        logger.warning(f"[MIME] Body extraction failed, falling back to empty body: {type(e).__name__}: {e}")
    return ""


def _has_parts(structure: Any) -> bool:
    if isinstance(structure, Message):
        return structure.is_multipart()
    return bool(structure.get("parts"))
