from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class Scope(str, Enum):
    MAIL = "mail"
    CALENDAR = "calendar"


class MessageSource(str, Enum):
    GMAIL_API = "gmail_api"
    IMAP = "imap"
    PLACEHOLDER = "placeholder"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Credential(BaseModel):
    """One delegated-access credential per (user_id, scope)."""

    user_id: str
    scope: Scope
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: datetime
    account_email: str = ""
    scopes: List[str] = Field(default_factory=list)

    @field_validator("expires_at")
    @classmethod
    def _expires_at_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    def is_expired(self, now: Optional[datetime] = None, skew_seconds: int = 0) -> bool:
        now = now or datetime.now(timezone.utc)
        return now.timestamp() + skew_seconds >= self.expires_at.timestamp()


class FetchedMessage(BaseModel):
    """A message as returned by a retrieval strategy, before enrichment."""

    id: str
    sender_name: str
    sender_email: str
    subject: str
    received_at: datetime
    snippet: str = ""
    body_text: str = ""
    source: MessageSource

    @field_validator("received_at")
    @classmethod
    def _received_at_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class Enrichment(BaseModel):
    summary: str
    suggested_replies: List[str] = Field(default_factory=list, max_length=3)
    generated: bool = True


class NormalizedMessage(FetchedMessage):
    ai_summary: str
    suggested_replies: List[str] = Field(default_factory=list, max_length=3)

    @classmethod
    def from_fetched(cls, fetched: FetchedMessage, enrichment: Enrichment) -> "NormalizedMessage":
        return cls(
            **fetched.model_dump(),
            ai_summary=enrichment.summary,
            suggested_replies=enrichment.suggested_replies,
        )


class CalendarEvent(BaseModel):
    id: str
    summary: str
    start_time: datetime
    end_time: datetime
    all_day: bool = False


class BusyInterval(BaseModel):
    start: datetime
    end: datetime


class ParsedCommand(BaseModel):
    summary: str = ""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_minutes: int = 0
    explicit_day: bool = False
    valid: bool = False
    error: Optional[str] = None


class Conflict(BaseModel):
    existing_summary: str
    existing_start: datetime
    existing_end: datetime
    event_id: Optional[str] = None

    def describe(self) -> str:
        return (
            f'"{self.existing_summary}" from {self.existing_start.strftime("%H:%M")} '
            f'to {self.existing_end.strftime("%H:%M")}'
        )


class MailSyncResult(BaseModel):
    messages: List[NormalizedMessage] = Field(default_factory=list)
    next_page_token: Optional[str] = None
    skipped: int = 0
    source: Optional[MessageSource] = None
    degraded: bool = False


class CalendarSyncResult(BaseModel):
    events: List[CalendarEvent] = Field(default_factory=list)
    busy: List[BusyInterval] = Field(default_factory=list)


class ScheduleStatus(str, Enum):
    CREATED = "created"
    INVALID = "invalid"
    CONFLICT = "conflict"
    AUTH_EXPIRED = "authExpired"
    NOT_CONNECTED = "notConnected"
    FAILED = "failed"


class SchedulingState(str, Enum):
    IDLE = "Idle"
    PARSING = "Parsing"
    INVALID = "Invalid"
    PARSED = "Parsed"
    CHECKING_AVAILABILITY = "CheckingAvailability"
    CONFLICT = "Conflict"
    AVAILABLE = "Available"
    CREATING_EVENT = "CreatingEvent"
    CREATED = "Created"
    FAILED = "Failed"


class ScheduleResult(BaseModel):
    status: ScheduleStatus
    message: str
    # Where the scheduling flow stopped
    state: Optional[SchedulingState] = None
    event: Optional[CalendarEvent] = None
    conflict: Optional[Conflict] = None
    command: Optional[ParsedCommand] = None


class FocusSuggestion(BaseModel):
    """A free focus slot in the coming days plus a task to spend it on."""

    found: bool
    message: str
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    suggested_task: str = ""
    generated: bool = False
