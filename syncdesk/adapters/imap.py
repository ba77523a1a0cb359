"""
IMAP Adapter - protocol-level mail retrieval strategy (fallback)

Opens a read-only INBOX session over IMAP4-SSL, searches by date window and
falls back to the most recent N sequence numbers when the search is empty.
The session is logged out on every exit path.
"""

import asyncio
import email
import imaplib
import logging
import re
from datetime import datetime, timedelta, timezone
from email import policy
from email.utils import parsedate_to_datetime
from typing import Any, Callable, List, Optional

from syncdesk.adapters.base import MailSource, SourceBatch, parse_sender
from syncdesk.config import Config
from syncdesk.data.models import FetchedMessage, MessageSource, Scope
from syncdesk.errors import AuthExpired, ParseFailure, ProviderUnavailable
from syncdesk.services.mime_extractor import extract_body

logger = logging.getLogger(__name__)

# IMAP dates are DD-Mon-YYYY with English month names regardless of locale
_MONTHS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]
_SEQ = re.compile(rb"^\s*(\d+)")
_UID = re.compile(rb"UID (\d+)")
SNIPPET_CHARS = 200


def imap_date(value: datetime) -> str:
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year}"


class ImapSource(MailSource):
    """
    IMAP retrieval strategy for a configured mailbox (host, username, app password).
    """

    source = MessageSource.IMAP

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        fallback_count: Optional[int] = None,
        timeout: Optional[float] = None,
        session_timeout: float = 60.0,
        imap_factory: Callable[..., Any] = imaplib.IMAP4_SSL,
    ):
        self.host = host if host is not None else Config.IMAP_HOST
        self.port = port or Config.IMAP_PORT
        self.username = username if username is not None else Config.IMAP_USERNAME
        self.password = password if password is not None else Config.IMAP_PASSWORD
        self.fallback_count = fallback_count or Config.IMAP_FALLBACK_COUNT
        self.timeout = timeout or Config.HTTP_TIMEOUT_SECONDS
        self.session_timeout = session_timeout
        self._imap_factory = imap_factory

    def is_available(self, user_id: str) -> bool:
        return bool(self.host and self.username and self.password)

    async def fetch_recent(
        self,
        user_id: str,
        limit: int,
        window: timedelta,
        page_token: Optional[str] = None,
    ) -> SourceBatch:
        try:
            batch = await asyncio.wait_for(
                asyncio.to_thread(self._fetch_blocking, user_id, limit, window),
                timeout=self.session_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ProviderUnavailable(f"IMAP session timed out after {self.session_timeout}s", user_id=user_id) from e
        logger.info(f"[IMAP] Fetched {len(batch.messages)} messages ({batch.skipped} skipped) for user {user_id}")
        return batch

    def _fetch_blocking(self, user_id: str, limit: int, window: timedelta) -> SourceBatch:
        imap = None
        try:
            imap = self._imap_factory(self.host, self.port, timeout=self.timeout)
            imap.login(self.username, self.password)

            status, data = imap.select("INBOX", readonly=True)
            if status != "OK":
                raise ProviderUnavailable(f"Failed to open INBOX: {data}", user_id=user_id)
            total = int(data[0]) if data and data[0] else 0
            uidvalidity = _uidvalidity(imap)

            since = imap_date(datetime.now(timezone.utc) - window)
            status, data = imap.search(None, "SINCE", since)
            sequence_numbers = data[0].split() if status == "OK" and data and data[0] else []

            if not sequence_numbers and total:
                start = max(1, total - self.fallback_count + 1)
                logger.info(f"[IMAP] No messages since {since}, falling back to sequence range {start}:{total}")
                sequence_numbers = [str(n).encode() for n in range(start, total + 1)]

            sequence_numbers = sequence_numbers[-limit:]
            if not sequence_numbers:
                return SourceBatch()

            status, fetched = imap.fetch(b",".join(sequence_numbers).decode(), "(UID RFC822)")
            if status != "OK":
                raise ProviderUnavailable(f"IMAP fetch failed: {status}", user_id=user_id)

            messages: List[FetchedMessage] = []
            skipped = 0
            for item in fetched or []:
                if not isinstance(item, tuple) or len(item) < 2:
                    continue
                header = item[0] or b""
                seq_match = _SEQ.match(header)
                seq = seq_match.group(1).decode() if seq_match else "?"
                uid_match = _UID.search(header)
                # Sequence numbers shift on expunge; UIDVALIDITY + UID do not
                fallback_id = f"imap-{uidvalidity}-{uid_match.group(1).decode()}" if uid_match and uidvalidity else None
                try:
                    messages.append(self.to_fetched(item[1], seq, fallback_id))
                except ParseFailure as e:
                    skipped += 1
                    logger.warning(f"[IMAP] Skipping message #{seq}: {e}")

            # Sequence order is oldest first
            messages.reverse()
            return SourceBatch(messages=messages, skipped=skipped)

        except imaplib.IMAP4.error as e:
            if "AUTHENTICATIONFAILED" in str(e).upper() or "LOGIN" in str(e).upper():
                raise AuthExpired(
                    "IMAP authentication failed; check the mailbox app password",
                    user_id=user_id,
                    scope=Scope.MAIL.value,
                ) from e
            raise ProviderUnavailable(f"IMAP error: {e}", user_id=user_id) from e
        except OSError as e:
            raise ProviderUnavailable(f"IMAP connection error: {e}", user_id=user_id) from e
        finally:
            if imap is not None:
                _close_session(imap)

    @staticmethod
    def to_fetched(raw: Any, seq: str = "?", fallback_id: Optional[str] = None) -> FetchedMessage:
        """
        Parse a raw RFC822 source into FetchedMessage.

        The id is the Message-ID header, else `fallback_id` (UIDVALIDITY + UID).

        Raises:
            ParseFailure: The source is not bytes, its headers cannot be read,
                or it has neither a Message-ID nor a stable fallback id.
        """
        if not isinstance(raw, (bytes, bytearray)):
            raise ParseFailure(f"IMAP message #{seq} has no body")

        try:
            message = email.message_from_bytes(bytes(raw), policy=policy.default)
            message_id = (str(message.get("Message-ID") or "").strip().strip("<>")) or fallback_id
            sender_name, sender_email = parse_sender(str(message.get("From") or ""))
            subject = str(message.get("Subject") or "").strip() or "No Subject"
            received_at = _parse_date(message.get("Date"))
            body = extract_body(message)
        except (ValueError, TypeError, IndexError, LookupError) as e:
            raise ParseFailure(f"Malformed IMAP message #{seq}: {e}") from e
        if not message_id:
            raise ParseFailure(f"IMAP message #{seq} has no Message-ID and no UID")

        snippet = " ".join(body.split())[:SNIPPET_CHARS]
        return FetchedMessage(
            id=message_id,
            sender_name=sender_name,
            sender_email=sender_email,
            subject=subject,
            received_at=received_at,
            snippet=snippet,
            body_text=body or snippet,
            source=MessageSource.IMAP,
        )


def _parse_date(value: Any) -> datetime:
    if value:
        try:
            parsed = parsedate_to_datetime(str(value))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except (TypeError, ValueError, IndexError):
            pass
    return datetime.now(timezone.utc)


def _uidvalidity(imap) -> Optional[str]:
    """UIDVALIDITY of the selected mailbox, from the untagged SELECT response."""
    _, data = imap.response("UIDVALIDITY")
    if data and data[0]:
        value = data[0]
        return value.decode() if isinstance(value, bytes) else str(value)
    return None


def _close_session(imap) -> None:
    try:
        if getattr(imap, "state", None) == "SELECTED":
            imap.close()
    except (imaplib.IMAP4.error, OSError) as e:
        logger.debug(f"[IMAP] close() failed: {e}")
    try:
        imap.logout()
    except (imaplib.IMAP4.error, OSError) as e:
        logger.debug(f"[IMAP] logout() failed: {e}")
