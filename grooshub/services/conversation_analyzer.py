"""
Conversation analyzer — summary and memory from a single LLM call.

After each exchange we check two cheap thresholds:
  - summary: more than 10 messages, with at least 3 unsummarized messages
    older than the 10 most recent (those stay verbatim). One summary covers
    at most 15 messages.
  - memory: should_update_memory() on the user's message count.

If either is due, one prompt asks for both parts and the JSON answer is applied:
summary stored with its exact message range, memory text updated, preferences
merged through the confidence system, project facts added as soft context.
Nothing due means no LLM call.
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..core.database import session_scope
from ..core.flags import get_flags
from ..core.redis import notify_tenant, notify_user
from ..models.base import utcnow
from ..models.conversation import Conversation
from . import llm
from .conversation_store import get_conversation, load_messages
from .memory_prompts import unified_analysis_prompt, summarization_prompt
from .memory_store import (
    MEMORY_TOKEN_TARGET,
    get_user_memory,
    create_user_memory,
    update_user_memory,
    update_identity,
    update_preference,
    mark_analyzed,
    format_memory_for_prompt,
    should_update_memory,
)
from .project_memory import add_soft_context
from .summary_store import (
    create_chat_summary,
    get_latest_chat_summary,
    next_unsummarized_index,
    calculate_compression_ratio,
)

logger = logging.getLogger(__name__)

ANALYSIS_SYSTEM_PROMPT = (
    "You are the memory component of an AI assistant for real-estate development "
    "professionals. Answer with valid JSON only."
)


@dataclass
class ConversationSummary:
    text: str
    key_points: list[str]
    message_range_start: int
    message_range_end: int
    token_count: int = 0
    compression_ratio: Optional[float] = None
    summary_id: Optional[str] = None

    @property
    def message_count(self) -> int:
        return self.message_range_end - self.message_range_start + 1


@dataclass
class MemoryUpdateResult:
    should_update: bool
    reason: str = ""
    memory_updated: bool = False
    identity_updated: bool = False
    preferences: list[dict] = field(default_factory=list)  # [{key, action}]
    project_facts_added: int = 0


@dataclass
class ConversationAnalysisResult:
    summary: Optional[ConversationSummary] = None
    memory_update: Optional[MemoryUpdateResult] = None

    @property
    def analyzed(self) -> bool:
        return self.summary is not None or self.memory_update is not None


# ── Thresholds ───────────────────────────────────────────────────────

def plan_summary_range(
    total_messages: int,
    next_index: int,
    summarize_after: int = 10,
    keep_recent: int = 10,
    chunk_size: int = 15,
    min_messages: int = 3,
) -> Optional[tuple[int, int]]:
    """
    Inclusive (start, end) of the next chunk to summarize, or None.
    The last keep_recent messages are never summarized.
    """
    if total_messages <= summarize_after:
        return None

    last_eligible = total_messages - keep_recent - 1
    pending = last_eligible - next_index + 1
    if pending < min_messages:
        return None

    return next_index, min(last_eligible, next_index + chunk_size - 1)


def _plan_from_settings(total_messages: int, next_index: int) -> Optional[tuple[int, int]]:
    s = get_settings()
    return plan_summary_range(
        total_messages, next_index,
        summarize_after=s.summarize_after_messages,
        keep_recent=s.keep_recent_messages,
        chunk_size=s.summary_chunk_size,
        min_messages=s.min_messages_to_summarize,
    )


# ── Parsing ──────────────────────────────────────────────────────────

def _clean_points(points) -> list[str]:
    if not isinstance(points, list):
        return []
    return [str(p).strip() for p in points if str(p).strip()]


def parse_summary_section(parsed: Optional[dict], raw: str) -> tuple[str, list[str]]:
    """
    (text, key_points) from the answer. An unparseable answer becomes the
    summary text as-is, without key points.
    """
    if parsed is None:
        return raw.strip(), []

    section = parsed.get("summary") if isinstance(parsed.get("summary"), dict) else parsed
    text = section.get("text") or ""
    return str(text).strip(), _clean_points(section.get("keyPoints"))


# ── Summary ──────────────────────────────────────────────────────────

async def _store_summary(
    db: AsyncSession,
    convo: Conversation,
    messages: list[dict],
    start: int,
    end: int,
    text: str,
    key_points: list[str],
    model: str,
) -> Optional[ConversationSummary]:
    """Store the summary unless another run already covered its range."""
    latest = await get_latest_chat_summary(db, convo.tenant_id, convo.id)
    if next_unsummarized_index(latest) > start:
        logger.info(
            "Messages %d-%d of conversation %s already summarized, dropping result",
            start, end, convo.id,
        )
        return None

    original_tokens = llm.estimate_messages_tokens(messages)
    summary_tokens = llm.estimate_tokens(text) + sum(llm.estimate_tokens(p) for p in key_points)
    ratio = calculate_compression_ratio(original_tokens, summary_tokens)

    summary_id = await create_chat_summary(
        db, convo.tenant_id, convo.id,
        summary_text=text,
        key_points=key_points,
        message_range_start=start,
        message_range_end=end,
        token_count=summary_tokens,
        compression_ratio=ratio,
        model_used=model,
    )
    convo.last_summary_at = utcnow()
    await db.flush()

    await notify_tenant(convo.tenant_id, "summary.created", {
        "conversation_id": convo.id,
        "summary_id": summary_id,
        "message_range": [start, end],
    })
    return ConversationSummary(
        text=text,
        key_points=key_points,
        message_range_start=start,
        message_range_end=end,
        token_count=summary_tokens,
        compression_ratio=ratio,
        summary_id=summary_id,
    )


async def summarize_pending_messages(
    db: AsyncSession,
    convo: Conversation,
) -> Optional[ConversationSummary]:
    """Summarize the next due chunk with the summarization-only prompt."""
    messages = await load_messages(db, convo)
    latest = await get_latest_chat_summary(db, convo.tenant_id, convo.id)
    planned = _plan_from_settings(len(messages), next_unsummarized_index(latest))
    if planned is None:
        return None

    start, end = planned
    chunk = [m for m in messages if start <= m["index"] <= end]
    answer = await llm.complete(
        summarization_prompt(chunk, convo.locale),
        system=ANALYSIS_SYSTEM_PROMPT,
        temperature=0.3,
        max_tokens=1024,
    )
    raw = answer.text
    text, key_points = parse_summary_section(llm.extract_json(raw), raw)
    if not text:
        logger.warning("Empty summary for conversation %s, skipping", convo.id)
        return None

    return await _store_summary(db, convo, chunk, start, end, text, key_points, answer.model)


# ── Memory ───────────────────────────────────────────────────────────

async def _apply_memory_section(
    db: AsyncSession,
    convo: Conversation,
    user_id: str,
    section: dict,
    current_content: str,
    has_memory: bool,
) -> MemoryUpdateResult:
    tenant_id = convo.tenant_id
    result = MemoryUpdateResult(
        should_update=bool(section.get("shouldUpdate")),
        reason=str(section.get("reason") or ""),
    )
    if not result.should_update:
        return result

    content = str(section.get("memoryContent") or "").strip()
    if content and content != current_content:
        if has_memory and current_content:
            await update_user_memory(
                db, tenant_id, user_id, content,
                change_summary=result.reason or None,
                trigger_source="chat",
                trigger_id=convo.id,
            )
        else:
            await create_user_memory(db, tenant_id, user_id, content)
        result.memory_updated = True

    identity = section.get("identity") or {}
    if isinstance(identity, dict) and (identity.get("name") or identity.get("role")):
        before = await get_user_memory(db, tenant_id, user_id)
        after = await update_identity(
            db, tenant_id, user_id,
            name=identity.get("name"), role=identity.get("role"),
        )
        result.identity_updated = (before.user_name, before.user_role) != (after.user_name, after.user_role)

    for pref in section.get("preferences") or []:
        if not isinstance(pref, dict) or not pref.get("key") or pref.get("value") in (None, ""):
            continue
        merged = await update_preference(
            db, tenant_id, user_id,
            key=str(pref["key"]),
            value=str(pref["value"]),
            source="chat",
            source_ref=convo.id,
            source_text=pref.get("sourceText"),
            is_explicit=bool(pref.get("isExplicit")),
        )
        result.preferences.append({"key": pref["key"], "action": merged.action})

    if convo.project_id and get_flags().enable_project_memory:
        for fact in section.get("projectFacts") or []:
            if not isinstance(fact, dict) or not fact.get("content"):
                continue
            await add_soft_context(
                db, tenant_id, convo.project_id,
                category=str(fact.get("category") or "note"),
                content=str(fact["content"]),
                source="chat",
                source_ref=convo.id,
            )
            result.project_facts_added += 1

    return result


# ── Entry points ─────────────────────────────────────────────────────

# One analysis at a time per conversation in this process. The row lock taken
# in queue_conversation_analysis covers other workers on Postgres.
_analysis_locks: "weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock]" = weakref.WeakValueDictionary()


def analysis_lock(tenant_id: str, session_id: str) -> asyncio.Lock:
    key = (tenant_id, session_id)
    lock = _analysis_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _analysis_locks[key] = lock
    return lock


async def analyze_conversation(
    db: AsyncSession,
    convo: Conversation,
    user_id: Optional[str] = None,
) -> ConversationAnalysisResult:
    """Check thresholds and run the unified analysis when anything is due."""
    settings = get_settings()
    flags = get_flags()
    user_id = user_id or convo.user_id

    messages = await load_messages(db, convo)

    summary_range = None
    if flags.enable_summarization:
        latest = await get_latest_chat_summary(db, convo.tenant_id, convo.id)
        summary_range = _plan_from_settings(len(messages), next_unsummarized_index(latest))

    memory = None
    if flags.enable_memory and user_id:
        memory = await get_user_memory(db, convo.tenant_id, user_id)
        user_messages = sum(1 for m in messages if m["role"] == "user")
        # Only new user messages can trigger another look at this conversation
        if user_messages <= (convo.analyzed_user_messages or 0):
            memory = None
        elif not should_update_memory(memory, user_messages):
            memory = None

    if summary_range is None and memory is None:
        return ConversationAnalysisResult()

    summary_messages = None
    if summary_range:
        start, end = summary_range
        summary_messages = [m for m in messages if start <= m["index"] <= end]
    recent = messages[-settings.memory_recent_messages:] if memory is not None else None

    prompt = unified_analysis_prompt(
        summary_messages,
        recent,
        current_memory=format_memory_for_prompt(memory) if memory is not None else "",
        locale=convo.locale,
        memory_token_target=MEMORY_TOKEN_TARGET,
    )
    answer = await llm.complete(
        prompt,
        system=ANALYSIS_SYSTEM_PROMPT,
        temperature=0.3,
        max_tokens=settings.default_llm_max_tokens,
    )
    raw = answer.text
    parsed = llm.extract_json(raw)
    if parsed is None:
        logger.warning("Unparseable analysis answer for conversation %s", convo.id)

    result = ConversationAnalysisResult()

    if summary_range:
        text, key_points = parse_summary_section(parsed, raw)
        if text:
            result.summary = await _store_summary(
                db, convo, summary_messages, summary_range[0], summary_range[1],
                text, key_points, answer.model,
            )
        else:
            logger.warning("Analysis returned no summary text for conversation %s", convo.id)

    if memory is not None:
        section = parsed.get("memory") if parsed else None
        if isinstance(section, dict):
            result.memory_update = await _apply_memory_section(
                db, convo, user_id, section, memory.memory_content, memory.exists,
            )
        else:
            result.memory_update = MemoryUpdateResult(should_update=False, reason="no memory section")
        await mark_analyzed(db, convo.tenant_id, user_id)
        convo.analyzed_user_messages = user_messages
        await db.flush()

        update = result.memory_update
        if update.memory_updated or update.identity_updated or update.preferences:
            await notify_user(convo.tenant_id, user_id, "memory.updated", {
                "reason": update.reason,
                "preferences": update.preferences,
            })

    logger.info(
        "Analyzed conversation %s: summary=%s memory=%s",
        convo.id,
        f"{result.summary.message_range_start}-{result.summary.message_range_end}" if result.summary else "-",
        result.memory_update.should_update if result.memory_update else "-",
    )
    return result


async def queue_conversation_analysis(
    tenant_id: str,
    session_id: str,
    user_id: Optional[str] = None,
) -> None:
    """
    Background task: analyze in a fresh session. Runs for the same conversation
    are serialized, so the second one plans from what the first committed.
    Failures are logged and never reach the request that queued the work.
    """
    try:
        async with analysis_lock(tenant_id, session_id):
            async with session_scope() as db:
                convo = await get_conversation(db, tenant_id, session_id, for_update=True)
                if convo is None:
                    logger.warning("Analysis skipped: conversation %s not found", session_id)
                    return
                await analyze_conversation(db, convo, user_id)
    except Exception as e:
        logger.error("Background analysis failed for %s: %s", session_id, e, exc_info=True)
