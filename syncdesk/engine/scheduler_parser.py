"""
Natural-language scheduling parser.

Turns phrases like "set a focus block for 10 am about doing homework" or
"dentist appointment on Friday at 3pm" into a ParsedCommand. Parsing is an
ordered list of independent extractors (time, day, duration). Each returns an
optional partial result plus the text spans it consumed; the summary is what
is left of the text once those spans and the scheduling keywords are removed.

Nothing in here raises on user input: a phrase without a time comes back with
valid=False and an example phrase in `error`.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from dateutil import tz
from pydantic import BaseModel, Field

from syncdesk.data.models import ParsedCommand

logger = logging.getLogger(__name__)

DEFAULT_DURATION_MINUTES = 60
FOCUS_DURATION_MINUTES = 30
DEFAULT_SUMMARY = "Focus time"
INVALID_HINT = (
    'I couldn\'t find a time in that. Try something like '
    '"set a focus block for 10 am about doing homework" or "lunch tomorrow at 12:30".'
)

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

_MERIDIEM = r"(?P<meridiem>a\.?m\.?|p\.?m\.?)(?![a-z])"
_TIME_PREP = r"(?:(?:\bat|\bfor|\bfrom|\bby)\s+|@\s*)?"

_NOT_DURATION = r"(?!\s*(?:hours?|hrs?|minutes?|mins?)\b)"

# Most specific first: H:MM (or H.MM), then H am/pm, then a bare H introduced by "at"/"@"
TIME_PATTERNS = [
    re.compile(
        _TIME_PREP + r"\b(?P<hour>\d{1,2})[:.](?P<minute>\d{2})(?!\d)" + _NOT_DURATION + r"(?:\s*" + _MERIDIEM + r")?",
        re.IGNORECASE,
    ),
    re.compile(_TIME_PREP + r"\b(?P<hour>\d{1,2})\s*" + _MERIDIEM, re.IGNORECASE),
    re.compile(r"(?:\bat\s+|@\s*)(?P<hour>\d{1,2})\b(?![.:]\d)" + _NOT_DURATION, re.IGNORECASE),
]

DAY_PATTERN = re.compile(
    r"(?:\b(?:on|this|next)\s+)?\b(?P<day>today|tonight|tomorrow|" + "|".join(WEEKDAYS) + r")\b",
    re.IGNORECASE,
)

DURATION_PATTERN = re.compile(
    r"\bfor\s+(?:(?P<amount>\d+(?:\.\d+)?)\s*(?P<unit>hours?|hrs?|minutes?|mins?)\b"
    r"|(?P<half>half\s+an\s+hour)|an\s+hour\b)",
    re.IGNORECASE,
)

FOCUS_PATTERN = re.compile(r"\bfocus\s+(?:block|time)\b", re.IGNORECASE)

KEYWORD_PATTERNS = [
    re.compile(r"^\s*(?:please\s+)?(?:(?:can|could)\s+you\s+)?"
               r"(?:set\s+up|set|schedule|add|create|book|block\s+off|block|put|plan)\b", re.IGNORECASE),
    re.compile(r"\b(?:an?\s+)?focus\s+(?:block|time|session)\b", re.IGNORECASE),
    re.compile(r"\b(?:to|in|on)\s+(?:my\s+)?calendar\b", re.IGNORECASE),
]

_LEADING_FILLER = re.compile(r"^(?:(?:about|an?)\s+)+", re.IGNORECASE)

Span = Tuple[int, int]


class Partial(BaseModel):
    """What one extractor recognized, plus the text spans it consumed."""

    hour: Optional[int] = None
    minute: Optional[int] = None
    day_offset: Optional[int] = None
    weekday: Optional[int] = None
    explicit_day: bool = False
    evening: bool = False
    has_meridiem: bool = False
    duration_minutes: Optional[int] = None
    spans: List[Span] = Field(default_factory=list)


def _to_24h(hour: int, minute: int, meridiem: Optional[str]) -> Optional[Tuple[int, int]]:
    if minute > 59:
        return None
    if meridiem:
        if not 1 <= hour <= 12:
            return None
        is_pm = meridiem.lower().startswith("p")
        hour = hour % 12 + (12 if is_pm else 0)
    elif hour > 23:
        return None
    return hour, minute


def extract_time(text: str) -> Optional[Partial]:
    for pattern in TIME_PATTERNS:
        for match in pattern.finditer(text):
            groups = match.groupdict()
            resolved = _to_24h(int(groups["hour"]), int(groups.get("minute") or 0), groups.get("meridiem"))
            if resolved:
                return Partial(
                    hour=resolved[0], minute=resolved[1], has_meridiem=bool(groups.get("meridiem")), spans=[match.span()]
                )
    return None


def extract_day(text: str) -> Optional[Partial]:
    match = DAY_PATTERN.search(text)
    if not match:
        return None
    day = match.group("day").lower()
    if day in ("today", "tonight"):
        return Partial(day_offset=0, explicit_day=True, evening=day == "tonight", spans=[match.span()])
    if day == "tomorrow":
        return Partial(day_offset=1, explicit_day=True, spans=[match.span()])
    return Partial(weekday=WEEKDAYS.index(day), explicit_day=True, spans=[match.span()])


def extract_duration(text: str) -> Optional[Partial]:
    match = DURATION_PATTERN.search(text)
    if match:
        if match.group("half"):
            minutes = 30
        elif match.group("amount"):
            amount = float(match.group("amount"))
            minutes = round(amount * 60) if match.group("unit").lower().startswith("h") else round(amount)
        else:
            minutes = 60
        if minutes > 0:
            return Partial(duration_minutes=minutes, spans=[match.span()])
    if FOCUS_PATTERN.search(text):
        return Partial(duration_minutes=FOCUS_DURATION_MINUTES)
    return None


EXTRACTORS: List[Callable[[str], Optional[Partial]]] = [extract_time, extract_day, extract_duration]


def merge(partials: List[Optional[Partial]]) -> Partial:
    """Later extractors only fill fields earlier ones left empty; spans accumulate."""
    merged = Partial()
    for partial in partials:
        if partial is None:
            continue
        for field, value in partial.model_dump(exclude={"spans"}, exclude_defaults=True).items():
            if getattr(merged, field) in (None, False):
                setattr(merged, field, value)
        merged.spans.extend(partial.spans)
    return merged


def extract_summary(text: str, spans: List[Span]) -> str:
    chars = list(text)
    for start, end in spans:
        for i in range(start, end):
            chars[i] = " "
    remainder = "".join(chars)

    for pattern in KEYWORD_PATTERNS:
        remainder = pattern.sub(" ", remainder)

    remainder = " ".join(remainder.split()).strip(" ,.;:-")
    remainder = _LEADING_FILLER.sub("", remainder).strip(" ,.;:-")
    if not remainder:
        return DEFAULT_SUMMARY
    return remainder[0].upper() + remainder[1:]


def resolve_timezone(timezone: Optional[str]):
    if not timezone:
        return tz.UTC
    return tz.gettz(timezone)


def parse(text: str, timezone: Optional[str] = None, now: Optional[datetime] = None) -> ParsedCommand:
    """
    Parse a free-text scheduling request.

    Args:
        text: The user's phrase
        timezone: IANA zone name the phrase is interpreted in (default UTC)
        now: Reference time (default: current time)

    Returns:
        ParsedCommand; `valid` is False when no time could be found.
    """
    text = (text or "").strip()
    zone = resolve_timezone(timezone)
    if zone is None:
        return ParsedCommand(valid=False, error=f"Unknown timezone '{timezone}'")

    if now is None:
        now = datetime.now(zone)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=zone)
    else:
        now = now.astimezone(zone)

    partial = merge([extractor(text) for extractor in EXTRACTORS])
    summary = extract_summary(text, partial.spans)

    if partial.hour is None:
        logger.info(f"[SCHEDULER] No time found in '{text}'")
        return ParsedCommand(summary=summary, valid=False, error=INVALID_HINT)

    hour = partial.hour
    # "tonight at 8" means 20:00
    if partial.evening and not partial.has_meridiem and 1 <= hour < 12:
        hour += 12

    base_date = now.date()
    start = datetime(base_date.year, base_date.month, base_date.day, hour, partial.minute or 0, tzinfo=zone)

    if partial.weekday is not None:
        days_ahead = (partial.weekday - now.weekday()) % 7
        if days_ahead == 0 and start < now:
            days_ahead = 7
        start += timedelta(days=days_ahead)
    elif partial.day_offset:
        start += timedelta(days=partial.day_offset)

    if start < now and not partial.explicit_day:
        start += timedelta(days=1)

    duration = partial.duration_minutes or DEFAULT_DURATION_MINUTES
    return ParsedCommand(
        summary=summary,
        start_time=start,
        end_time=start + timedelta(minutes=duration),
        duration_minutes=duration,
        explicit_day=partial.explicit_day,
        valid=True,
    )
