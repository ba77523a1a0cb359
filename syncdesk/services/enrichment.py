"""
AI enrichment of synced messages (summary + three suggested replies).

The model is a black box: text in, JSON out. Whatever happens on the way
(AI disabled, no key, timeout, provider error, malformed JSON) the caller gets
a usable Enrichment; placeholders are deterministic and never empty.
"""

import logging
from datetime import datetime
from typing import Any, List, Optional, Sequence, Tuple

from syncdesk.config import Config
from syncdesk.data.models import Enrichment
from syncdesk.engine.nlp_engine import MistralEngine
from syncdesk.engine.prompts import (
    ENRICHMENT_PROMPT,
    FOCUS_TASK_PROMPT,
    PLACEHOLDER_FOCUS_TASK,
    PLACEHOLDER_REPLIES,
)

logger = logging.getLogger(__name__)

REPLY_COUNT = 3
FOCUS_CONTEXT_SUBJECTS = 10


def placeholder_enrichment(sender_name: str = "", subject: str = "") -> Enrichment:
    sender = sender_name.strip() or "Unknown sender"
    topic = subject.strip() or "No Subject"
    return Enrichment(
        summary=f"Email from {sender}: {topic}",
        suggested_replies=list(PLACEHOLDER_REPLIES),
        generated=False,
    )


def placeholder_focus_task(subjects: Sequence[str] = ()) -> str:
    if subjects:
        return f'Work through "{subjects[0]}"'
    return PLACEHOLDER_FOCUS_TASK


def _normalize_replies(raw: Any) -> List[str]:
    replies = [str(r).strip() for r in raw if str(r).strip()] if isinstance(raw, list) else []
    replies = replies[:REPLY_COUNT]
    for filler in PLACEHOLDER_REPLIES:
        if len(replies) >= REPLY_COUNT:
            break
        if filler not in replies:
            replies.append(filler)
    return replies


class AIEnrichmentAdapter:
    """
    Produces summary + replies for one message body.
    """

    def __init__(
        self,
        engine: Optional[MistralEngine] = None,
        enabled: Optional[bool] = None,
        max_chars: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self.engine = engine or MistralEngine()
        self.enabled = Config.AI_ENABLED if enabled is None else enabled
        self.max_chars = max_chars or Config.AI_MAX_CHARS
        self.timeout = timeout if timeout is not None else Config.AI_TIMEOUT_SECONDS

    async def enrich(self, body_text: str, sender_name: str = "", subject: str = "") -> Enrichment:
        if not self.enabled or not self.engine.configured:
            return placeholder_enrichment(sender_name, subject)

        body = (body_text or "")[: self.max_chars]
        prompt = ENRICHMENT_PROMPT.format(
            sender=sender_name or "Unknown",
            subject=subject or "No Subject",
            body=body,
        )

        try:
            data = await self.engine.generate_json_async(prompt=prompt, timeout=self.timeout)
        except (ValueError, TimeoutError, RuntimeError) as e:
            logger.warning(f"[AI] Enrichment failed, using placeholders: {e}")
            return placeholder_enrichment(sender_name, subject)
        except Exception as e:
            logger.error(f"[AI] Unexpected enrichment error, using placeholders: {type(e).__name__}: {e}")
            return placeholder_enrichment(sender_name, subject)

        summary = str(data.get("summary") or "").strip()
        if not summary:
            logger.warning("[AI] Model returned an empty summary, using placeholder summary")
            summary = placeholder_enrichment(sender_name, subject).summary

        return Enrichment(
            summary=summary,
            suggested_replies=_normalize_replies(data.get("suggested_replies")),
        )

    async def suggest_focus_task(self, slot_start: datetime, minutes: int, subjects: Sequence[str]) -> Tuple[str, bool]:
        """
        A task for a focus block, informed by recent mail subjects.

        Returns:
            (task, generated); generated is False for the deterministic fallback.
        """
        subjects = [s for s in subjects if s][:FOCUS_CONTEXT_SUBJECTS]
        if not self.enabled or not self.engine.configured:
            return placeholder_focus_task(subjects), False

        prompt = FOCUS_TASK_PROMPT.format(
            minutes=minutes,
            slot=slot_start.strftime("%A %d %B at %H:%M"),
            subjects="\n".join(f"- {s}" for s in subjects) or "- (none)",
        )
        try:
            data = await self.engine.generate_json_async(prompt=prompt, max_tokens=128, timeout=self.timeout)
        except (ValueError, TimeoutError, RuntimeError) as e:
            logger.warning(f"[AI] Focus task suggestion failed, using placeholder: {e}")
            return placeholder_focus_task(subjects), False
        except Exception as e:
            logger.error(f"[AI] Unexpected focus task error, using placeholder: {type(e).__name__}: {e}")
            return placeholder_focus_task(subjects), False

        task = str(data.get("suggested_task") or "").strip()
        if not task:
            return placeholder_focus_task(subjects), False
        return task, True
