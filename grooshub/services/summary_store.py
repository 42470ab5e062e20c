"""
Conversation summary store.

Summaries compress old messages so they can be dropped from the context window.
Each one records the inclusive message index range it replaces; ranges never
overlap and the next summary starts right after the latest one.

Summary text and key points are encrypted together (both or neither) with the
organization key when ENCRYPTION_MASTER_KEY is set.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select, func, delete as sql_delete
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.encryption import (
    encrypt_for_storage,
    encrypt_json_for_storage,
    decrypt_from_storage,
    decrypt_json_from_storage,
)
from ..models.summary import ChatSummary

logger = logging.getLogger(__name__)


@dataclass
class SummaryRecord:
    """Decrypted view of a ChatSummary row."""
    id: str
    conversation_id: str
    summary_text: str
    key_points: list[str] = field(default_factory=list)
    message_range_start: int = 0
    message_range_end: int = 0
    token_count: int = 0
    compression_ratio: Optional[float] = None
    model_used: str = ""
    content_encrypted: bool = False
    created_at: Optional[datetime] = None

    @property
    def message_count(self) -> int:
        return self.message_range_end - self.message_range_start + 1

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "summary_text": self.summary_text,
            "key_points": self.key_points,
            "message_range_start": self.message_range_start,
            "message_range_end": self.message_range_end,
            "message_count": self.message_count,
            "token_count": self.token_count,
            "compression_ratio": self.compression_ratio,
            "model_used": self.model_used,
            "content_encrypted": self.content_encrypted,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


def _to_record(row: ChatSummary) -> SummaryRecord:
    # Flagged rows without a key raise here: no silent ciphertext pass-through
    text = decrypt_from_storage(row.summary_text, row.content_encrypted, row.tenant_id)
    key_points = decrypt_json_from_storage(row.key_points, row.content_encrypted, row.tenant_id) or []
    return SummaryRecord(
        id=row.id,
        conversation_id=row.conversation_id,
        summary_text=text,
        key_points=list(key_points),
        message_range_start=row.message_range_start,
        message_range_end=row.message_range_end,
        token_count=row.token_count or 0,
        compression_ratio=row.compression_ratio,
        model_used=row.model_used,
        content_encrypted=row.content_encrypted,
        created_at=row.created_at,
    )


async def create_chat_summary(
    db: AsyncSession,
    tenant_id: str,
    conversation_id: str,
    summary_text: str,
    key_points: list[str],
    message_range_start: int,
    message_range_end: int,
    token_count: int = 0,
    compression_ratio: Optional[float] = None,
    model_used: str = "claude-haiku",
) -> str:
    """Persist a summary. Returns its id."""
    if message_range_end < message_range_start:
        raise ValueError(
            f"Invalid summary range {message_range_start}-{message_range_end}"
        )

    encrypted_text, text_encrypted = encrypt_for_storage(summary_text, tenant_id)
    encrypted_points, points_encrypted = encrypt_json_for_storage(list(key_points), tenant_id)
    is_encrypted = text_encrypted and points_encrypted

    summary = ChatSummary(
        tenant_id=tenant_id,
        conversation_id=conversation_id,
        summary_text=encrypted_text,
        key_points=encrypted_points,
        content_encrypted=is_encrypted,
        message_range_start=message_range_start,
        message_range_end=message_range_end,
        token_count=token_count,
        compression_ratio=compression_ratio,
        model_used=model_used,
    )
    db.add(summary)
    await db.flush()

    logger.info(
        "Created summary %s for conversation %s (messages %d-%d, encrypted=%s)",
        summary.id, conversation_id, message_range_start, message_range_end, is_encrypted,
    )
    return summary.id


async def get_chat_summaries(
    db: AsyncSession,
    tenant_id: str,
    conversation_id: str,
) -> list[SummaryRecord]:
    """All summaries for a conversation, oldest range first."""
    result = await db.execute(
        select(ChatSummary)
        .where(
            ChatSummary.tenant_id == tenant_id,
            ChatSummary.conversation_id == conversation_id,
        )
        .order_by(ChatSummary.message_range_start.asc())
    )
    return [_to_record(row) for row in result.scalars().all()]


async def get_latest_chat_summary(
    db: AsyncSession,
    tenant_id: str,
    conversation_id: str,
) -> Optional[SummaryRecord]:
    """The summary reaching furthest into the conversation, or None."""
    result = await db.execute(
        select(ChatSummary)
        .where(
            ChatSummary.tenant_id == tenant_id,
            ChatSummary.conversation_id == conversation_id,
        )
        .order_by(ChatSummary.message_range_end.desc())
        .limit(1)
    )
    row = result.scalar_one_or_none()
    return _to_record(row) if row else None


async def delete_chat_summaries(
    db: AsyncSession,
    tenant_id: str,
    conversation_id: str,
) -> None:
    await db.execute(
        sql_delete(ChatSummary).where(
            ChatSummary.tenant_id == tenant_id,
            ChatSummary.conversation_id == conversation_id,
        )
    )
    await db.flush()
    logger.info("Deleted all summaries for conversation %s", conversation_id)


async def get_chat_compression_stats(
    db: AsyncSession,
    tenant_id: str,
    conversation_id: str,
) -> Optional[dict]:
    """Aggregate compression numbers for a conversation, or None without summaries."""
    result = await db.execute(
        select(
            func.count(ChatSummary.id),
            func.sum(ChatSummary.message_range_end - ChatSummary.message_range_start + 1),
            func.avg(ChatSummary.compression_ratio),
            func.sum(ChatSummary.token_count),
        ).where(
            ChatSummary.tenant_id == tenant_id,
            ChatSummary.conversation_id == conversation_id,
        )
    )
    count, messages, avg_ratio, tokens = result.one()
    if not count:
        return None

    return {
        "summary_count": int(count),
        "total_summarized_messages": int(messages or 0),
        "avg_compression_ratio": float(avg_ratio) if avg_ratio is not None else None,
        "total_summary_tokens": int(tokens or 0),
    }


# ── Utilities ────────────────────────────────────────────────────────

def next_unsummarized_index(latest: Optional[SummaryRecord]) -> int:
    """Index of the first message not covered by any summary."""
    return latest.message_range_end + 1 if latest else 0


def format_summaries_for_context(summaries: list[SummaryRecord]) -> str:
    """Combine summaries into one block for the system prompt."""
    if not summaries:
        return ""

    parts = []
    for i, summary in enumerate(summaries, start=1):
        block = f"[Earlier conversation {i}]\n{summary.summary_text}"
        if summary.key_points:
            block += "\nKey points:\n" + "\n".join(f"- {p}" for p in summary.key_points)
        parts.append(block)

    return "\n\n---\n\n".join(parts)


def calculate_compression_ratio(original_tokens: int, summary_tokens: int) -> float:
    """Summary size relative to the original, 0.0-1.0 (lower is better)."""
    if original_tokens <= 0:
        return 1.0
    return min(1.0, summary_tokens / original_tokens)
