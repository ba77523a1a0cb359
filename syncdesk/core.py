import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional, Sequence

from googleapiclient.errors import HttpError

from syncdesk.adapters.base import MailSource
from syncdesk.adapters.gmail import GmailApiSource
from syncdesk.adapters.imap import ImapSource
from syncdesk.auth.credential_store import CredentialStore
from syncdesk.auth.oauth import OAuthManager
from syncdesk.auth.token_manager import TokenManager
from syncdesk.config import Config
from syncdesk.data.models import (
    CalendarSyncResult,
    FocusSuggestion,
    MailSyncResult,
    ScheduleResult,
    ScheduleStatus,
    SchedulingState,
)
from syncdesk.data.store import PersistenceManager, StateBackend
from syncdesk.engine import scheduler_parser
from syncdesk.engine.conflict_guard import ConflictGuard
from syncdesk.errors import AuthExpired, InvalidTimezone, NotConnected, SyncDeskError
from syncdesk.security.security_manager import SecurityManager
from syncdesk.services.calendar_sync import CalendarSyncEngine
from syncdesk.services.enrichment import AIEnrichmentAdapter
from syncdesk.services.mail_sync import MailSyncEngine

logger = logging.getLogger(__name__)

FOCUS_CONTEXT_MESSAGES = 10


def build_backend() -> StateBackend:
    """Supabase when configured, the local JSON store otherwise."""
    if Config.supabase_configured():
        from syncdesk.infrastructure.supabase_store import SupabaseStore

        logger.info("[CORE] Using Supabase persistence")
        return SupabaseStore()
    logger.info(f"[CORE] Using local JSON persistence under {Config.DATA_DIR}")
    return PersistenceManager()


class SyncDesk:
    """
    Caller-facing operations of the sync core: mail sync, calendar sync and
    free-text scheduling. Wires the credential, mail and calendar layers together.
    """

    def __init__(
        self,
        backend: Optional[StateBackend] = None,
        security_manager: Optional[SecurityManager] = None,
        mail_sources: Optional[Sequence[MailSource]] = None,
        enrichment: Optional[AIEnrichmentAdapter] = None,
        gmail_service_factory: Optional[Callable[[str], Any]] = None,
        calendar_service_factory: Optional[Callable[[str], Any]] = None,
    ):
        self.backend = backend or build_backend()
        if security_manager is None and Config.FERNET_KEY:
            security_manager = SecurityManager()

        self.credential_store = CredentialStore(self.backend, security_manager)
        self.token_manager = TokenManager(self.credential_store)
        self.oauth = OAuthManager(self.credential_store)

        if mail_sources is None:
            mail_sources = [
                GmailApiSource(self.token_manager, self.credential_store, service_factory=gmail_service_factory),
                ImapSource(),
            ]
        self.mail_sync = MailSyncEngine(mail_sources, enrichment or AIEnrichmentAdapter(), self.backend)

        self.calendar = CalendarSyncEngine(self.token_manager, service_factory=calendar_service_factory)
        self.conflict_guard: ConflictGuard = self.calendar.conflict_guard

    async def request_mail_sync(self, user_id: str, page_token: Optional[str] = None) -> MailSyncResult:
        return await self.mail_sync.fetch_recent(user_id, page_token=page_token)

    async def request_calendar_sync(self, user_id: str) -> CalendarSyncResult:
        return await self.calendar.sync(user_id)

    async def request_schedule_from_text(
        self,
        user_id: str,
        text: str,
        timezone: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ScheduleResult:
        """
        Parse -> conflict check -> create.

        Always returns a ScheduleResult: either the created event or the precise
        reason it was not created (example phrase, the conflicting event, or
        the account problem). `state` is where the flow stopped.
        """
        state = self._transition(user_id, SchedulingState.IDLE, SchedulingState.PARSING)

        command = scheduler_parser.parse(text, timezone, now)
        if not command.valid:
            return ScheduleResult(
                status=ScheduleStatus.INVALID,
                message=command.error or "",
                command=command,
                state=self._transition(user_id, state, SchedulingState.INVALID),
            )

        state = self._transition(user_id, state, SchedulingState.PARSED)
        state = self._transition(user_id, state, SchedulingState.CHECKING_AVAILABILITY)

        try:
            conflict = await self.conflict_guard.check_conflict(user_id, command.start_time, command.end_time)
            if conflict is not None:
                return ScheduleResult(
                    status=ScheduleStatus.CONFLICT,
                    message=f"That time overlaps {conflict.describe()}.",
                    conflict=conflict,
                    command=command,
                    state=self._transition(user_id, state, SchedulingState.CONFLICT),
                )

            state = self._transition(user_id, state, SchedulingState.AVAILABLE)
            state = self._transition(user_id, state, SchedulingState.CREATING_EVENT)
            event = await self.calendar.create_event(
                user_id, command.summary, command.start_time, command.end_time, check_conflicts=False
            )
        except NotConnected:
            return ScheduleResult(
                status=ScheduleStatus.NOT_CONNECTED,
                message="Connect your Google Calendar to schedule events.",
                command=command,
                state=self._transition(user_id, state, SchedulingState.FAILED),
            )
        except AuthExpired:
            return ScheduleResult(
                status=ScheduleStatus.AUTH_EXPIRED,
                message="Your calendar access expired. Please reconnect Google Calendar.",
                command=command,
                state=self._transition(user_id, state, SchedulingState.FAILED),
            )
        except (SyncDeskError, HttpError) as e:
            logger.error(f"[SCHEDULER] Scheduling failed for user {user_id}: {type(e).__name__}: {e}")
            return ScheduleResult(
                status=ScheduleStatus.FAILED,
                message="Google Calendar is not reachable right now. Please try again.",
                command=command,
                state=self._transition(user_id, state, SchedulingState.FAILED),
            )

        return ScheduleResult(
            status=ScheduleStatus.CREATED,
            message=f'Scheduled "{event.summary}" for {command.start_time.strftime("%a %d %b at %H:%M")}.',
            event=event,
            command=command,
            state=self._transition(user_id, state, SchedulingState.CREATED),
        )

    async def request_focus_suggestion(
        self,
        user_id: str,
        timezone: Optional[str] = None,
        minutes: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> FocusSuggestion:
        """
        First free focus slot in the coming days, plus a task for it drawn
        from the most recent stored mail.

        Raises:
            InvalidTimezone: Unknown timezone
            NotConnected / AuthExpired: calendar credential missing or unusable
        """
        zone = scheduler_parser.resolve_timezone(timezone)
        if zone is None:
            raise InvalidTimezone(f"Unknown timezone '{timezone}'", user_id=user_id)
        minutes = minutes or Config.FOCUS_MINUTES

        slot = await self.calendar.suggest_focus_slot(user_id, zone, minutes=minutes, now=now)
        if slot is None:
            return FocusSuggestion(found=False, message="No free focus time found in the coming days.")
        start, end = slot

        recent = await asyncio.to_thread(self.backend.list_messages, user_id, FOCUS_CONTEXT_MESSAGES)
        task, generated = await self.mail_sync.enrichment.suggest_focus_task(
            start, minutes, [m.subject for m in recent]
        )
        logger.info(f"[SCHEDULER] Suggested focus slot {start.isoformat()} for user {user_id}")
        return FocusSuggestion(
            found=True,
            message=f'Suggested focus time {start.strftime("%a %d %b at %H:%M")}.',
            start_time=start,
            end_time=end,
            suggested_task=task,
            generated=generated,
        )

    @staticmethod
    def _transition(user_id: str, current: SchedulingState, target: SchedulingState) -> SchedulingState:
        logger.debug(f"[SCHEDULER] user {user_id}: {current.value} -> {target.value}")
        return target
