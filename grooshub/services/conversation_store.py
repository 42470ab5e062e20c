"""
Conversation log the memory pipeline reads from.

Messages are numbered from 0 in arrival order; summary ranges point at these
numbers. Content is encrypted per organization when a master key is set.
"""

import logging
from typing import Optional

from sqlalchemy import select, func, delete as sql_delete
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.encryption import encrypt_for_storage, decrypt_from_storage
from ..models.base import utcnow
from ..models.conversation import Conversation, Message
from .summary_store import delete_chat_summaries

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 80


async def get_conversation(
    db: AsyncSession,
    tenant_id: str,
    session_id: str,
    for_update: bool = False,
) -> Optional[Conversation]:
    """for_update row-locks the conversation until the transaction ends (no-op on SQLite)."""
    query = select(Conversation).where(
        Conversation.tenant_id == tenant_id,
        Conversation.session_id == session_id,
    )
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def get_or_create_conversation(
    db: AsyncSession,
    tenant_id: str,
    session_id: str,
    user_id: str = "",
    project_id: Optional[str] = None,
    locale: str = "nl",
) -> Conversation:
    """Get existing conversation or create a new one."""
    convo = await get_conversation(db, tenant_id, session_id)

    if convo is None:
        convo = Conversation(
            tenant_id=tenant_id,
            session_id=session_id,
            user_id=user_id,
            project_id=project_id,
            title=None,
            locale=locale,
            last_activity_at=utcnow(),
            last_summary_at=None,
        )
        db.add(convo)
        await db.flush()
        logger.info("Created conversation: %s (session=%s)", convo.id, session_id)
    elif project_id and convo.project_id != project_id:
        convo.project_id = project_id
        await db.flush()

    return convo


async def add_message(
    db: AsyncSession,
    convo: Conversation,
    role: str,
    content: str,
    metadata: dict = None,
) -> Message:
    """
    Append a message and bump the conversation's last activity.
    Sequence numbers are taken under a row lock on the conversation.
    """
    await db.execute(
        select(Conversation.id).where(Conversation.id == convo.id).with_for_update()
    )
    result = await db.execute(
        select(func.max(Message.sequence_number))
        .where(Message.conversation_id == convo.id)
    )
    last_seq = result.scalar_one_or_none()
    seq = last_seq + 1 if last_seq is not None else 0

    stored, is_encrypted = encrypt_for_storage(content, convo.tenant_id)
    msg = Message(
        conversation_id=convo.id,
        tenant_id=convo.tenant_id,
        role=role,
        content=stored,
        content_encrypted=is_encrypted,
        sequence_number=seq,
        metadata_=metadata or {},
    )
    db.add(msg)
    convo.last_activity_at = utcnow()

    # Auto-generate title from first user message
    if role == "user" and not convo.title and seq <= 1:
        convo.title = content[:TITLE_MAX_CHARS].strip()
        if len(content) > TITLE_MAX_CHARS:
            convo.title += "..."

    await db.flush()
    return msg


def message_to_dict(msg: Message) -> dict:
    return {
        "index": msg.sequence_number,
        "role": msg.role,
        "content": decrypt_from_storage(msg.content or "", msg.content_encrypted, msg.tenant_id),
        "metadata": msg.metadata_ or {},
        "created_at": msg.created_at.isoformat() if msg.created_at else None,
    }


async def load_messages(
    db: AsyncSession,
    convo: Conversation,
    start: int = 0,
    end: Optional[int] = None,
) -> list[dict]:
    """Decrypted messages with index in [start, end] (inclusive), oldest first."""
    query = select(Message).where(
        Message.conversation_id == convo.id,
        Message.sequence_number >= start,
    )
    if end is not None:
        query = query.where(Message.sequence_number <= end)
    result = await db.execute(query.order_by(Message.sequence_number.asc()))
    return [message_to_dict(m) for m in result.scalars().all()]


async def count_messages(
    db: AsyncSession,
    convo: Conversation,
    role: Optional[str] = None,
) -> int:
    query = select(func.count(Message.id)).where(Message.conversation_id == convo.id)
    if role:
        query = query.where(Message.role == role)
    result = await db.execute(query)
    return int(result.scalar_one() or 0)


async def list_conversations(
    db: AsyncSession,
    tenant_id: str,
    user_id: Optional[str] = None,
    limit: int = 50,
) -> list[Conversation]:
    """Most recently active first."""
    query = select(Conversation).where(Conversation.tenant_id == tenant_id)
    if user_id:
        query = query.where(Conversation.user_id == user_id)
    result = await db.execute(
        query.order_by(Conversation.last_activity_at.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def delete_conversation(
    db: AsyncSession,
    tenant_id: str,
    session_id: str,
) -> bool:
    """Delete a conversation with its messages and summaries."""
    convo = await get_conversation(db, tenant_id, session_id)
    if convo is None:
        return False

    await delete_chat_summaries(db, tenant_id, convo.id)
    await db.execute(sql_delete(Message).where(Message.conversation_id == convo.id))
    await db.execute(sql_delete(Conversation).where(Conversation.id == convo.id))
    await db.flush()
    logger.info("Deleted conversation %s (session=%s)", convo.id, session_id)
    return True
