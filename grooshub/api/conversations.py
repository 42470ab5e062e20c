"""
Conversations API.

GET    /v1/conversations                          — List user conversations
POST   /v1/conversations/{session_id}/messages    — Append a message, queue analysis
GET    /v1/conversations/{session_id}             — Conversation with messages
DELETE /v1/conversations/{session_id}             — Delete conversation and summaries
GET    /v1/conversations/{session_id}/context     — Prompt context for the next turn
GET    /v1/conversations/{session_id}/summaries   — Summaries and compression stats
POST   /v1/conversations/{session_id}/analyze     — Run the analysis now
"""

import logging
from typing import Literal, Optional

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.auth import AuthenticatedUser
from ..core.dependencies import require_tenant, get_db
from ..models.conversation import Conversation
from ..services import conversation_store, summary_store
from ..services.conversation_analyzer import (
    analysis_lock,
    analyze_conversation,
    queue_conversation_analysis,
)
from ..services.memory_injector import build_chat_context

logger = logging.getLogger(__name__)

conversations_router = APIRouter(prefix="/conversations", tags=["conversations"])

DEFAULT_SYSTEM_PROMPT = "You are the GroosHub assistant for real-estate development projects."


class ConversationOut(BaseModel):
    id: str
    session_id: str
    title: Optional[str] = None
    project_id: Optional[str] = None
    locale: str = "nl"
    last_activity_at: Optional[str] = None
    last_summary_at: Optional[str] = None


class MessageIn(BaseModel):
    role: Literal["user", "assistant", "system", "tool"] = "user"
    content: str = Field(min_length=1)
    project_id: Optional[str] = None
    locale: Optional[Literal["nl", "en"]] = None
    metadata: dict = {}


class MessageOut(BaseModel):
    index: int
    role: str
    content: str
    metadata: dict = {}
    created_at: Optional[str] = None


class ConversationDetail(ConversationOut):
    messages: list[MessageOut] = []


def _conversation_out(c: Conversation) -> dict:
    return {
        "id": str(c.id),
        "session_id": c.session_id,
        "title": c.title,
        "project_id": c.project_id,
        "locale": c.locale,
        "last_activity_at": c.last_activity_at.isoformat() if c.last_activity_at else None,
        "last_summary_at": c.last_summary_at.isoformat() if c.last_summary_at else None,
    }


async def _get_or_404(db: AsyncSession, tenant_id: str, session_id: str) -> Conversation:
    convo = await conversation_store.get_conversation(db, tenant_id, session_id)
    if not convo:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return convo


@conversations_router.get("", response_model=list[ConversationOut])
async def list_conversations(
    user: AuthenticatedUser = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    limit: int = 50,
):
    """List conversations for the current user."""
    convos = await conversation_store.list_conversations(
        db, user.tenant_id, user.user_id, limit=max(1, min(limit, 200)),
    )
    return [ConversationOut(**_conversation_out(c)) for c in convos]


@conversations_router.post("/{session_id}/messages", status_code=201, response_model=MessageOut)
async def post_message(
    session_id: str,
    body: MessageIn,
    background_tasks: BackgroundTasks,
    user: AuthenticatedUser = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
):
    convo = await conversation_store.get_or_create_conversation(
        db, user.tenant_id, session_id,
        user_id=user.user_id,
        project_id=body.project_id,
        locale=body.locale or "nl",
    )
    msg = await conversation_store.add_message(db, convo, body.role, body.content, body.metadata)
    out = MessageOut(**conversation_store.message_to_dict(msg))
    await db.commit()

    background_tasks.add_task(
        queue_conversation_analysis, user.tenant_id, session_id, user.user_id,
    )
    return out


@conversations_router.get("/{session_id}", response_model=ConversationDetail)
async def get_conversation(
    session_id: str,
    user: AuthenticatedUser = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
):
    """Get a conversation with its messages."""
    convo = await _get_or_404(db, user.tenant_id, session_id)
    messages = await conversation_store.load_messages(db, convo)
    return ConversationDetail(
        **_conversation_out(convo),
        messages=[MessageOut(**m) for m in messages],
    )


@conversations_router.delete("/{session_id}")
async def delete_conversation(
    session_id: str,
    user: AuthenticatedUser = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
):
    """Delete a conversation with its messages and summaries."""
    if not await conversation_store.delete_conversation(db, user.tenant_id, session_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"deleted": True, "session_id": session_id}


@conversations_router.get("/{session_id}/context")
async def get_context(
    session_id: str,
    user: AuthenticatedUser = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    base_prompt: str = DEFAULT_SYSTEM_PROMPT,
):
    convo = await _get_or_404(db, user.tenant_id, session_id)
    context = await build_chat_context(db, convo, base_prompt, user.user_id)
    return {
        "system_prompt": context.system_prompt,
        "messages": context.messages,
        "summary_count": context.summary_count,
        "first_message_index": context.first_message_index,
        "memory_tokens": context.memory.token_estimate,
        "token_estimate": context.token_estimate,
    }


@conversations_router.get("/{session_id}/summaries")
async def get_summaries(
    session_id: str,
    user: AuthenticatedUser = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
):
    convo = await _get_or_404(db, user.tenant_id, session_id)
    summaries = await summary_store.get_chat_summaries(db, user.tenant_id, convo.id)
    stats = await summary_store.get_chat_compression_stats(db, user.tenant_id, convo.id)
    return {
        "summaries": [s.to_dict() for s in summaries],
        "stats": stats,
    }


@conversations_router.post("/{session_id}/analyze")
async def analyze_now(
    session_id: str,
    user: AuthenticatedUser = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
):
    """Run the threshold check and analysis synchronously."""
    try:
        async with analysis_lock(user.tenant_id, session_id):
            convo = await _get_or_404(db, user.tenant_id, session_id)
            result = await analyze_conversation(db, convo, user.user_id)
            await db.commit()
    except (httpx.HTTPError, ValueError) as e:
        logger.error("Analysis failed for %s: %s", session_id, e)
        raise HTTPException(status_code=502, detail=f"Analysis failed: {e}")

    return {
        "analyzed": result.analyzed,
        "summary": {
            "text": result.summary.text,
            "key_points": result.summary.key_points,
            "message_range_start": result.summary.message_range_start,
            "message_range_end": result.summary.message_range_end,
            "compression_ratio": result.summary.compression_ratio,
        } if result.summary else None,
        "memory_update": {
            "should_update": result.memory_update.should_update,
            "reason": result.memory_update.reason,
            "memory_updated": result.memory_update.memory_updated,
            "identity_updated": result.memory_update.identity_updated,
            "preferences": result.memory_update.preferences,
            "project_facts_added": result.memory_update.project_facts_added,
        } if result.memory_update else None,
    }
