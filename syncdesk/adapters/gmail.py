"""
Gmail Adapter - structured-API mail retrieval strategy

Features:
- Token refresh through TokenManager before every sync
- Time-window listing with page-token pagination
- Bounded concurrent detail fetches with per-message failure isolation
- Tolerant From/Subject/Date header parsing
"""

import asyncio
import html
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from dateutil import parser as date_parser

from syncdesk.adapters import google_api
from syncdesk.adapters.base import MailSource, SourceBatch, parse_sender
from syncdesk.auth.credential_store import CredentialStore
from syncdesk.auth.token_manager import TokenManager
from syncdesk.config import Config
from syncdesk.data.models import FetchedMessage, MessageSource, Scope
from syncdesk.errors import AuthExpired, AuthTransient, ParseFailure
from syncdesk.services.mime_extractor import extract_body

logger = logging.getLogger(__name__)

LIST_PAGE_MAX = 100


class GmailApiSource(MailSource):
    """
    Gmail REST API retrieval strategy.
    Normalizes Gmail API responses into FetchedMessage.
    """

    source = MessageSource.GMAIL_API

    def __init__(
        self,
        token_manager: TokenManager,
        credential_store: CredentialStore,
        workers: Optional[int] = None,
        service_factory: Optional[Callable[[str], Any]] = None,
    ):
        self.token_manager = token_manager
        self.credential_store = credential_store
        self.workers = workers or Config.MAIL_FETCH_WORKERS
        # httplib2 is not thread-safe: every request gets its own service object
        self._service_factory = service_factory or (lambda token: google_api.build_service("gmail", "v1", token))

    def is_available(self, user_id: str) -> bool:
        return self.credential_store.get(user_id, Scope.MAIL) is not None

    async def fetch_recent(
        self,
        user_id: str,
        limit: int,
        window: timedelta,
        page_token: Optional[str] = None,
    ) -> SourceBatch:
        access_token = await self.token_manager.ensure_fresh(user_id, Scope.MAIL)

        message_ids, next_page_token = await self._list_ids(access_token, limit, window, page_token)
        logger.info(f"[GMAIL] Listed {len(message_ids)} messages for user {user_id}")
        if not message_ids:
            return SourceBatch(next_page_token=next_page_token)

        semaphore = asyncio.Semaphore(self.workers)

        async def fetch_one(message_id: str) -> FetchedMessage:
            async with semaphore:
                raw = await google_api.execute(
                    lambda: self._service_factory(access_token).users().messages().get(
                        userId="me", id=message_id, format="full"
                    ),
                    label=f"Gmail get {message_id}",
                )
            return self.to_fetched(raw)

        results = await asyncio.gather(*(fetch_one(mid) for mid in message_ids), return_exceptions=True)

        messages: List[FetchedMessage] = []
        skipped = 0
        for message_id, result in zip(message_ids, results):
            if isinstance(result, (AuthExpired, AuthTransient)):
                raise result
            if isinstance(result, BaseException):
                skipped += 1
                logger.warning(f"[GMAIL] Skipping message {message_id}: {type(result).__name__}: {result}")
                continue
            messages.append(result)

        messages.sort(key=lambda m: m.received_at, reverse=True)
        return SourceBatch(messages=messages, skipped=skipped, next_page_token=next_page_token)

    async def _list_ids(self, access_token: str, limit: int, window: timedelta, page_token: Optional[str]):
        since = int((datetime.now(timezone.utc) - window).timestamp())
        query = f"after:{since}"

        message_ids: List[str] = []
        token = page_token
        while len(message_ids) < limit:
            params = {
                "userId": "me",
                "q": query,
                "maxResults": min(LIST_PAGE_MAX, limit - len(message_ids)),
            }
            if token:
                params["pageToken"] = token

            page = await google_api.execute(
                lambda: self._service_factory(access_token).users().messages().list(**params),
                label="Gmail list",
            )
            message_ids.extend(m["id"] for m in page.get("messages", []) if m.get("id"))
            token = page.get("nextPageToken")
            if not token:
                break

        return message_ids[:limit], token

    @staticmethod
    def to_fetched(raw: Dict[str, Any]) -> FetchedMessage:
        """
        Convert a Gmail API message (format=full) to FetchedMessage.

        Raises:
            ParseFailure: The message is missing its id or payload.
        """
        message_id = raw.get("id") if isinstance(raw, dict) else None
        if not message_id:
            raise ParseFailure("Gmail message without id")

        try:
            payload = raw.get("payload") or {}
            headers = {h["name"].lower(): h.get("value", "") for h in payload.get("headers", [])}
            sender_name, sender_email = parse_sender(headers.get("from"))
            snippet = html.unescape(raw.get("snippet", "") or "")

            return FetchedMessage(
                id=message_id,
                sender_name=sender_name,
                sender_email=sender_email,
                subject=headers.get("subject") or "No Subject",
                received_at=_received_at(raw.get("internalDate"), headers.get("date")),
                snippet=snippet,
                body_text=extract_body(payload) or snippet,
                source=MessageSource.GMAIL_API,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ParseFailure(f"Malformed Gmail message: {e}", message_id=message_id) from e


def _received_at(internal_date: Optional[str], date_header: Optional[str]) -> datetime:
    if internal_date:
        try:
            return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            pass
    if date_header:
        try:
            parsed = date_parser.parse(date_header)
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except (ValueError, OverflowError):
            pass
    return datetime.now(timezone.utc)
