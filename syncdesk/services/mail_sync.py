"""
Mail Sync Engine - orchestrates retrieval strategies, enrichment and storage.

Sources are tried in order (Gmail API first, IMAP as fallback). The first
source that yields messages wins; its batch is enriched concurrently under a
worker limit, de-duplicated by id and upserted into the message store.

When every source fails for a non-credential reason, or comes back empty, the
caller still gets a usable inbox: three fixed placeholder messages marked
`degraded`. Placeholders are never persisted. Credential failures
(expired/revoked/unreachable identity provider) are raised instead, so the UI
can prompt for re-authorization.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

from syncdesk.adapters.base import MailSource
from syncdesk.config import Config
from syncdesk.data.models import (
    FetchedMessage,
    MailSyncResult,
    MessageSource,
    NormalizedMessage,
)
from syncdesk.data.store import StateBackend
from syncdesk.errors import AuthExpired, AuthTransient, NotConnected
from syncdesk.services.enrichment import AIEnrichmentAdapter, placeholder_enrichment

logger = logging.getLogger(__name__)

PLACEHOLDER_SAMPLES = [
    ("SyncDesk", "Your inbox is temporarily unavailable",
     "We could not reach your mailbox just now. Recent messages will appear after the next sync."),
    ("SyncDesk", "Showing sample messages",
     "These placeholder messages are shown while mail sync is degraded."),
    ("SyncDesk", "Try reconnecting your mail account",
     "If this keeps happening, disconnect and reconnect your mail account from settings."),
]


def placeholder_messages(now: Optional[datetime] = None) -> List[NormalizedMessage]:
    now = now or datetime.now(timezone.utc)
    messages = []
    for index, (sender, subject, body) in enumerate(PLACEHOLDER_SAMPLES, start=1):
        fetched = FetchedMessage(
            id=f"placeholder-{index}",
            sender_name=sender,
            sender_email="",
            subject=subject,
            received_at=now - timedelta(minutes=index),
            snippet=body,
            body_text=body,
            source=MessageSource.PLACEHOLDER,
        )
        messages.append(NormalizedMessage.from_fetched(fetched, placeholder_enrichment(sender, subject)))
    return messages


def dedupe(messages: Sequence[NormalizedMessage]) -> List[NormalizedMessage]:
    """Keeps the first occurrence of every id, newest first."""
    seen: Dict[str, NormalizedMessage] = {}
    for message in sorted(messages, key=lambda m: m.received_at, reverse=True):
        seen.setdefault(message.id, message)
    return list(seen.values())


class MailSyncEngine:
    def __init__(
        self,
        sources: Sequence[MailSource],
        enrichment: AIEnrichmentAdapter,
        message_store: Optional[StateBackend] = None,
        workers: Optional[int] = None,
    ):
        self.sources = list(sources)
        self.enrichment = enrichment
        self.message_store = message_store
        self.workers = workers or Config.MAIL_FETCH_WORKERS

    async def fetch_recent(
        self,
        user_id: str,
        limit: Optional[int] = None,
        window: Optional[timedelta] = None,
        page_token: Optional[str] = None,
    ) -> MailSyncResult:
        """
        Syncs the user's recent mail.

        Returns:
            MailSyncResult, newest first and unique by id.

        Raises:
            NotConnected: No source is available for the user.
            AuthExpired / AuthTransient: Credential failure and no other source produced data.
        """
        limit = limit or Config.MAIL_SYNC_LIMIT
        window = window or timedelta(hours=Config.MAIL_SYNC_WINDOW_HOURS)

        # Availability checks and the upsert hit the credential/message store, which blocks
        available = [s for s in self.sources if await asyncio.to_thread(s.is_available, user_id)]
        if not available:
            raise NotConnected("No mail account connected", user_id=user_id, scope="mail")

        credential_error: Optional[Exception] = None
        skipped = 0

        for source in available:
            name = source.source.value
            try:
                batch = await source.fetch_recent(user_id, limit, window, page_token)
            except (AuthExpired, AuthTransient, NotConnected) as e:
                logger.warning(f"[MAIL-SYNC] {name} credential failure for user {user_id}: {type(e).__name__}: {e}")
                credential_error = e
                continue
            except Exception as e:
                logger.warning(f"[MAIL-SYNC] {name} failed for user {user_id}: {type(e).__name__}: {e}")
                continue

            skipped += batch.skipped
            if not batch.messages:
                logger.info(f"[MAIL-SYNC] {name} returned no messages for user {user_id}")
                continue

            messages = dedupe(await self._enrich_all(batch.messages))
            if self.message_store is not None:
                await asyncio.to_thread(self.message_store.upsert_messages, user_id, messages)

            logger.info(
                f"[MAIL-SYNC] Synced {len(messages)} messages for user {user_id} "
                f"via {name} ({skipped} skipped)"
            )
            return MailSyncResult(
                messages=messages,
                next_page_token=batch.next_page_token,
                skipped=skipped,
                source=source.source,
                degraded=False,
            )

        if credential_error is not None:
            raise credential_error

        logger.warning(f"[MAIL-SYNC] All sources failed or were empty for user {user_id}, returning placeholders")
        return MailSyncResult(
            messages=placeholder_messages(),
            skipped=skipped,
            source=MessageSource.PLACEHOLDER,
            degraded=True,
        )

    async def _enrich_all(self, fetched: Sequence[FetchedMessage]) -> List[NormalizedMessage]:
        semaphore = asyncio.Semaphore(self.workers)

        async def enrich_one(message: FetchedMessage) -> NormalizedMessage:
            async with semaphore:
                enrichment = await self.enrichment.enrich(
                    message.body_text or message.snippet,
                    sender_name=message.sender_name,
                    subject=message.subject,
                )
            return NormalizedMessage.from_fetched(message, enrichment)

        results = await asyncio.gather(*(enrich_one(m) for m in fetched), return_exceptions=True)

        normalized = []
        for message, result in zip(fetched, results):
            if isinstance(result, BaseException):
                logger.error(f"[MAIL-SYNC] Enrichment crashed for {message.id}: {type(result).__name__}: {result}")
                result = NormalizedMessage.from_fetched(
                    message, placeholder_enrichment(message.sender_name, message.subject)
                )
            normalized.append(result)
        return normalized
