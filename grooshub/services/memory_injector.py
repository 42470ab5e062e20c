"""
Builds the context the chat model sees: system prompt + memory + summaries +
the messages no summary covers yet.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..core.flags import get_flags
from ..models.conversation import Conversation
from .conversation_store import load_messages
from .llm import estimate_tokens, estimate_messages_tokens
from .memory_prompts import MEMORY_SECTION_HEADERS, MEMORY_USAGE_INSTRUCTIONS, normalize_locale
from .memory_store import get_user_memory, format_memory_for_prompt
from .project_memory import get_project_memory, format_project_memory_for_prompt
from .summary_store import (
    get_chat_summaries,
    next_unsummarized_index,
    format_summaries_for_context,
)

logger = logging.getLogger(__name__)

PERSONAL_SHARE = 0.4
PROJECT_SHARE = 0.6


@dataclass
class MemoryInjection:
    prompt_section: str = ""
    token_estimate: int = 0
    included_personal: bool = False
    included_project: bool = False

    @property
    def is_empty(self) -> bool:
        return not (self.included_personal or self.included_project)


@dataclass
class ChatContext:
    system_prompt: str
    messages: list[dict]
    summary_count: int
    first_message_index: int
    memory: MemoryInjection

    @property
    def token_estimate(self) -> int:
        return estimate_messages_tokens(
            [{"role": "system", "content": self.system_prompt}] + self.messages
        )


def trim_to_tokens(text: str, max_tokens: int) -> str:
    """Cut text to roughly max_tokens, preferring a line boundary."""
    limit = max_tokens * 4
    if len(text) <= limit:
        return text
    cut = text.rfind("\n", 0, limit)
    return text[: cut if cut > 0 else limit].rstrip()


def compose_memory_section(
    personal_text: str,
    project_text: str,
    locale: str = "nl",
    max_tokens: int = 1500,
) -> MemoryInjection:
    """Assemble the memory block; over budget, personal gets 40% and project 60%."""
    personal_text = (personal_text or "").strip()
    project_text = (project_text or "").strip()
    if not personal_text and not project_text:
        return MemoryInjection()

    total = estimate_tokens(personal_text) + estimate_tokens(project_text)
    if total > max_tokens:
        logger.warning("Memory tokens (%d) exceed budget (%d), trimming", total, max_tokens)
        personal_text = trim_to_tokens(personal_text, int(max_tokens * PERSONAL_SHARE))
        project_text = trim_to_tokens(project_text, int(max_tokens * PROJECT_SHARE))

    locale = normalize_locale(locale)
    headers = MEMORY_SECTION_HEADERS[locale]
    parts = [headers["section"]]
    if personal_text:
        parts.append(f"{headers['personal']}\n{personal_text}")
    if project_text:
        parts.append(f"{headers['project']}\n{project_text}")
    parts.append(MEMORY_USAGE_INSTRUCTIONS[locale])

    section = "\n\n".join(parts)
    return MemoryInjection(
        prompt_section=section,
        token_estimate=estimate_tokens(section),
        included_personal=bool(personal_text),
        included_project=bool(project_text),
    )


async def build_memory_section(
    db: AsyncSession,
    tenant_id: str,
    user_id: Optional[str],
    project_id: Optional[str] = None,
    locale: str = "nl",
    max_tokens: Optional[int] = None,
) -> MemoryInjection:
    flags = get_flags()

    personal_text = ""
    if user_id and flags.enable_memory:
        memory = await get_user_memory(db, tenant_id, user_id)
        if memory.exists:
            personal_text = format_memory_for_prompt(memory)

    project_text = ""
    if project_id and flags.enable_project_memory:
        project = await get_project_memory(db, tenant_id, project_id)
        if project:
            project_text = format_project_memory_for_prompt(project)

    return compose_memory_section(
        personal_text, project_text, locale,
        max_tokens or get_settings().memory_max_prompt_tokens,
    )


async def build_chat_context(
    db: AsyncSession,
    convo: Conversation,
    base_prompt: str,
    user_id: Optional[str] = None,
) -> ChatContext:
    """
    Prompt for the next turn. Summarized messages are replaced by their
    summaries; everything after the latest summary is sent verbatim.
    """
    locale = normalize_locale(convo.locale)
    memory = await build_memory_section(
        db, convo.tenant_id, user_id or convo.user_id, convo.project_id, locale,
    )

    summaries = await get_chat_summaries(db, convo.tenant_id, convo.id)
    latest = max(summaries, key=lambda s: s.message_range_end) if summaries else None
    first_index = next_unsummarized_index(latest)

    parts = [base_prompt]
    if not memory.is_empty:
        parts.append(memory.prompt_section)
    if summaries:
        header = MEMORY_SECTION_HEADERS[locale]["summaries"]
        parts.append(f"{header}\n\n{format_summaries_for_context(summaries)}")

    messages = await load_messages(db, convo, start=first_index)
    return ChatContext(
        system_prompt="\n\n".join(p for p in parts if p),
        messages=[{"role": m["role"], "content": m["content"]} for m in messages],
        summary_count=len(summaries),
        first_message_index=first_index,
        memory=memory,
    )
