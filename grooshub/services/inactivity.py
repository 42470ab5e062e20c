"""
Inactivity summarization — run hourly by cron.

Finds conversations idle for an hour or more that have activity after their
last summary, and compresses their unsummarized messages (the 10 most recent
stay verbatim). Conversations without enough unsummarized messages for a
chunk are left out of the query, so they never crowd out due ones. Each
conversation commits on its own; one failure does not stop the sweep.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..models.base import utcnow
from ..models.conversation import Conversation, Message
from ..models.summary import ChatSummary
from .conversation_analyzer import summarize_pending_messages

logger = logging.getLogger(__name__)


@dataclass
class InactivitySummaryResult:
    conversation_id: str
    session_id: str
    user_id: Optional[str]
    message_count: int
    summaries_created: int
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


async def find_inactive_conversations(
    db: AsyncSession,
    now: Optional[datetime] = None,
    inactive_for: Optional[timedelta] = None,
    limit: Optional[int] = None,
) -> list[tuple[str, str, Optional[str]]]:
    """(id, session_id, user_id) of conversations due for a sweep, oldest activity first."""
    settings = get_settings()
    now = now or utcnow()
    cutoff = now - (inactive_for or timedelta(hours=settings.inactivity_hours))

    message_count = (
        select(func.count(Message.id))
        .where(Message.conversation_id == Conversation.id)
        .scalar_subquery()
    )
    next_index = (
        select(func.coalesce(func.max(ChatSummary.message_range_end) + 1, 0))
        .where(ChatSummary.conversation_id == Conversation.id)
        .scalar_subquery()
    )
    result = await db.execute(
        select(Conversation.id, Conversation.session_id, Conversation.user_id)
        .where(
            Conversation.last_activity_at < cutoff,
            or_(
                Conversation.last_summary_at.is_(None),
                Conversation.last_activity_at > Conversation.last_summary_at,
            ),
            message_count > settings.summarize_after_messages,
            # Enough unsummarized messages outside the verbatim window for one chunk
            message_count - settings.keep_recent_messages - next_index >= settings.min_messages_to_summarize,
        )
        .order_by(Conversation.last_activity_at.asc())
        .limit(limit or settings.inactivity_batch_size)
    )
    return [tuple(row) for row in result.all()]


async def summarize_inactive_conversations(
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> list[InactivitySummaryResult]:
    due = await find_inactive_conversations(db, now=now)
    logger.info("Found %d inactive conversations to process", len(due))

    results = []
    for convo_id, session_id, user_id in due:
        try:
            convo = await db.get(Conversation, convo_id)
            created = []
            while True:
                summary = await summarize_pending_messages(db, convo)
                if summary is None:
                    break
                created.append(summary)
            await db.commit()

            if not created:
                results.append(InactivitySummaryResult(
                    convo_id, session_id, user_id, 0, 0, False,
                    "Too few messages to summarize",
                ))
                continue

            summarized = sum(s.message_count for s in created)
            logger.info(
                "Summarized conversation %s: %d messages in %d summaries",
                convo_id, summarized, len(created),
            )
            results.append(InactivitySummaryResult(
                convo_id, session_id, user_id, summarized, len(created), True,
            ))
        except Exception as e:
            await db.rollback()
            logger.error("Failed to summarize conversation %s: %s", convo_id, e, exc_info=True)
            results.append(InactivitySummaryResult(
                convo_id, session_id, user_id, 0, 0, False, str(e),
            ))

    succeeded = sum(1 for r in results if r.success)
    logger.info("Inactivity sweep complete: %d succeeded, %d skipped or failed",
                succeeded, len(results) - succeeded)
    return results
