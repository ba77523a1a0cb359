"""
Mail Retrieval Strategy Pattern

This module defines the interface shared by the mail retrieval strategies
(Gmail API, IMAP) and the batch format every strategy returns.
"""

import re
from abc import ABC, abstractmethod
from datetime import timedelta
from email.utils import parseaddr
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from syncdesk.data.models import FetchedMessage, MessageSource

_ANGLE_ADDR = re.compile(r"^\s*(?P<name>.*?)\s*<(?P<addr>[^<>]+)>\s*$")


class SourceBatch(BaseModel):
    """
    What one retrieval strategy produced for one sync call.
    `skipped` counts messages that were listed but could not be fetched or parsed.
    """
    messages: List[FetchedMessage] = Field(default_factory=list)
    skipped: int = 0
    next_page_token: Optional[str] = None


class MailSource(ABC):
    """
    Abstract base class for mail retrieval strategies.

    The sync engine chains implementations in order and falls back to the
    next one when a strategy is unavailable, fails, or returns nothing.
    """

    source: MessageSource

    @abstractmethod
    def is_available(self, user_id: str) -> bool:
        """Whether the credential/configuration this strategy needs exists for the user."""

    @abstractmethod
    async def fetch_recent(
        self,
        user_id: str,
        limit: int,
        window: timedelta,
        page_token: Optional[str] = None,
    ) -> SourceBatch:
        """
        Fetch messages received within `window`, at most `limit`, newest first.

        Raises:
            AuthExpired / AuthTransient / NotConnected: credential-level failures
            ProviderUnavailable / ProviderRateLimited: the whole listing failed
        """


def parse_sender(from_value: Optional[str]) -> Tuple[str, str]:
    """
    Tolerant From-header parser.

    Accepts '"Name" <addr>', 'Name <addr>', '<addr>' and bare 'addr'. When no
    display name is present, the local part of the address stands in for it.

    Returns:
        (sender_name, sender_email)
    """
    value = (from_value or "").strip()
    if not value:
        return "Unknown", ""

    match = _ANGLE_ADDR.match(value)
    if match:
        name = match.group("name").strip().strip('"').strip("'").strip()
        addr = match.group("addr").strip()
    else:
        name, addr = parseaddr(value)
        if not addr and "@" in value:
            addr = value

    if not addr or "@" not in addr:
        return name or value, ""
    return name or addr.split("@", 1)[0], addr
