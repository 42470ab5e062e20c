"""
Project memory — what the assistant knows about one project.

Hard values are the numbers and labels a project is defined by (BVO, GO, units,
phase, budget, ...). Soft context is categorized free text learned from chats,
each snippet with its own confidence. Changes go to the shared audit log.
"""

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, delete as sql_delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import flag_modified

from ..models.base import new_uuid, utcnow, as_utc
from ..models.memory import MemoryUpdate
from ..models.project_memory import ProjectMemory
from .llm import estimate_tokens
from .memory_store import record_memory_update, get_update_history

logger = logging.getLogger(__name__)

MAX_PROJECT_MEMORY_TOKENS = 800
PROMPT_MIN_CONFIDENCE = 0.4
NEW_CONTEXT_CONFIDENCE = 0.5
REINFORCE_STEP = 0.1
MAX_CONFIDENCE = 0.95
MANUAL_EDIT_CONFIDENCE = 0.8
MAX_SYNTHESIS_SOURCES = 50

SOFT_CONTEXT_CATEGORIES = (
    "requirement", "constraint", "decision", "stakeholder", "risk", "preference", "note",
)

HARD_VALUE_LABELS = {
    "bvo": ("BVO", "m²"),
    "go": ("GO", "m²"),
    "units": ("Units", ""),
    "target_groups": ("Target groups", ""),
    "phase": ("Phase", ""),
    "location": ("Location", ""),
    "mpg_target": ("MPG target", ""),
    "budget": ("Budget", "EUR"),
    "building_type": ("Building type", ""),
}


@dataclass
class ProjectMemoryRecord:
    project_id: str
    hard_values: dict = field(default_factory=dict)
    soft_context: list[dict] = field(default_factory=list)
    synthesis_sources: list[dict] = field(default_factory=list)
    memory_content: str = ""
    project_summary: Optional[str] = None
    token_count: int = 0
    last_synthesized_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "hard_values": self.hard_values,
            "soft_context": self.soft_context,
            "synthesis_sources": self.synthesis_sources,
            "memory_content": self.memory_content,
            "project_summary": self.project_summary,
            "token_count": self.token_count,
            "last_synthesized_at": (
                self.last_synthesized_at.isoformat() if self.last_synthesized_at else None
            ),
        }


def _to_record(row: ProjectMemory) -> ProjectMemoryRecord:
    return ProjectMemoryRecord(
        project_id=row.project_id,
        hard_values=dict(row.hard_values or {}),
        soft_context=copy.deepcopy(row.soft_context or []),
        synthesis_sources=list(row.synthesis_sources or []),
        memory_content=row.memory_content or "",
        project_summary=row.project_summary,
        token_count=row.token_count or 0,
        last_synthesized_at=as_utc(row.last_synthesized_at),
    )


async def _get_row(db: AsyncSession, tenant_id: str, project_id: str) -> Optional[ProjectMemory]:
    result = await db.execute(
        select(ProjectMemory).where(
            ProjectMemory.tenant_id == tenant_id,
            ProjectMemory.project_id == project_id,
        )
    )
    return result.scalar_one_or_none()


async def _get_or_create_row(db: AsyncSession, tenant_id: str, project_id: str) -> ProjectMemory:
    row = await _get_row(db, tenant_id, project_id)
    if row is None:
        row = ProjectMemory(
            tenant_id=tenant_id,
            project_id=project_id,
            hard_values={},
            soft_context=[],
            synthesis_sources=[],
            memory_content="",
            project_summary=None,
            token_count=0,
            last_synthesized_at=None,
        )
        db.add(row)
        await db.flush()
        logger.info("Created project memory for project %s", project_id)
    return row


async def get_project_memory(
    db: AsyncSession, tenant_id: str, project_id: str,
) -> Optional[ProjectMemoryRecord]:
    row = await _get_row(db, tenant_id, project_id)
    return _to_record(row) if row else None


async def get_or_create_project_memory(
    db: AsyncSession, tenant_id: str, project_id: str,
) -> ProjectMemoryRecord:
    return _to_record(await _get_or_create_row(db, tenant_id, project_id))


def _add_source(sources: list[dict], source_type: str, ref: Optional[str]) -> list[dict]:
    """Append a (type, ref) pair once, keeping the last 50."""
    if not ref:
        return sources
    kept = [s for s in sources if not (s["type"] == source_type and s["ref"] == ref)]
    kept.append({"type": source_type, "ref": ref, "contributed_at": utcnow().isoformat()})
    return kept[-MAX_SYNTHESIS_SOURCES:]


async def _save(db: AsyncSession, row: ProjectMemory, record: ProjectMemoryRecord) -> ProjectMemoryRecord:
    record.memory_content = format_project_memory_for_prompt(record, min_confidence=0.0)
    record.token_count = estimate_tokens(record.memory_content)
    if record.token_count > MAX_PROJECT_MEMORY_TOKENS:
        logger.warning(
            "Project memory for %s exceeds token limit (%d > %d)",
            record.project_id, record.token_count, MAX_PROJECT_MEMORY_TOKENS,
        )
    record.last_synthesized_at = utcnow()

    row.hard_values = dict(record.hard_values)
    row.soft_context = copy.deepcopy(record.soft_context)
    row.synthesis_sources = list(record.synthesis_sources)
    for attr in ("hard_values", "soft_context", "synthesis_sources"):
        flag_modified(row, attr)
    row.memory_content = record.memory_content
    row.project_summary = record.project_summary
    row.token_count = record.token_count
    row.last_synthesized_at = record.last_synthesized_at
    await db.flush()
    return record


async def update_hard_values(
    db: AsyncSession,
    tenant_id: str,
    project_id: str,
    values: dict[str, Any],
    source: str = "manual",
    source_ref: Optional[str] = None,
    updated_by: Optional[str] = None,
) -> ProjectMemoryRecord:
    """Merge hard values. None values are ignored; use remove_hard_value to clear."""
    row = await _get_or_create_row(db, tenant_id, project_id)
    record = _to_record(row)

    changes = {k: v for k, v in values.items() if v is not None and record.hard_values.get(k) != v}
    if not changes:
        return record

    previous = {k: record.hard_values.get(k) for k in changes}
    record.hard_values.update(changes)
    record.synthesis_sources = _add_source(record.synthesis_sources, source, source_ref)
    await _save(db, row, record)

    await record_memory_update(
        db, tenant_id, "project", project_id, "modification",
        previous_value=previous,
        new_value=changes,
        field_path="hard_values",
        change_summary="Updated " + ", ".join(sorted(changes)),
        source=source,
        source_ref=source_ref,
        updated_by=updated_by,
    )
    logger.info("Updated hard values for project %s: %s", project_id, sorted(changes))
    return record


async def remove_hard_value(
    db: AsyncSession,
    tenant_id: str,
    project_id: str,
    key: str,
    updated_by: Optional[str] = None,
) -> bool:
    row = await _get_row(db, tenant_id, project_id)
    if row is None:
        return False
    record = _to_record(row)
    if key not in record.hard_values:
        return False

    previous = record.hard_values.pop(key)
    await _save(db, row, record)
    await record_memory_update(
        db, tenant_id, "project", project_id, "removal",
        previous_value={key: previous},
        field_path=f"hard_values.{key}",
        source="manual",
        updated_by=updated_by,
    )
    return True


async def add_soft_context(
    db: AsyncSession,
    tenant_id: str,
    project_id: str,
    category: str,
    content: str,
    source: str = "chat",
    source_ref: Optional[str] = None,
) -> dict:
    """
    Learn a snippet. An existing snippet with the same category and content
    (case-insensitive) gains 0.1 confidence instead of being duplicated.
    """
    category = category if category in SOFT_CONTEXT_CATEGORIES else "note"
    content = content.strip()
    row = await _get_or_create_row(db, tenant_id, project_id)
    record = _to_record(row)

    existing = next(
        (c for c in record.soft_context
         if c["category"] == category and c["content"].lower() == content.lower()),
        None,
    )
    if existing is not None:
        old_confidence = existing["confidence"]
        existing["confidence"] = round(min(MAX_CONFIDENCE, old_confidence + REINFORCE_STEP), 2)
        entry, update_type = existing, "reinforced"
    else:
        old_confidence = None
        entry = {
            "id": new_uuid(),
            "category": category,
            "content": content,
            "source": source,
            "source_ref": source_ref,
            "confidence": NEW_CONTEXT_CONFIDENCE,
            "learned_at": utcnow().isoformat(),
        }
        record.soft_context.append(entry)
        update_type = "addition"

    record.synthesis_sources = _add_source(record.synthesis_sources, source, source_ref)
    await _save(db, row, record)

    await record_memory_update(
        db, tenant_id, "project", project_id, update_type,
        new_value={"category": category, "content": content},
        field_path=f"soft_context.{entry['id']}",
        old_confidence=old_confidence,
        new_confidence=entry["confidence"],
        source=source,
        source_ref=source_ref,
    )
    return entry


async def update_soft_context(
    db: AsyncSession,
    tenant_id: str,
    project_id: str,
    context_id: str,
    content: Optional[str] = None,
    category: Optional[str] = None,
    updated_by: Optional[str] = None,
) -> Optional[dict]:
    """Manual edit of a snippet; confidence becomes 0.8."""
    row = await _get_row(db, tenant_id, project_id)
    if row is None:
        return None
    record = _to_record(row)
    entry = next((c for c in record.soft_context if c["id"] == context_id), None)
    if entry is None:
        return None

    previous = {"category": entry["category"], "content": entry["content"]}
    old_confidence = entry["confidence"]
    if content:
        entry["content"] = content.strip()
    if category in SOFT_CONTEXT_CATEGORIES:
        entry["category"] = category
    entry["confidence"] = MANUAL_EDIT_CONFIDENCE
    entry["source"] = "manual"
    await _save(db, row, record)

    await record_memory_update(
        db, tenant_id, "project", project_id, "user_edit",
        previous_value=previous,
        new_value={"category": entry["category"], "content": entry["content"]},
        field_path=f"soft_context.{context_id}",
        old_confidence=old_confidence,
        new_confidence=entry["confidence"],
        source="manual",
        updated_by=updated_by,
    )
    return entry


async def remove_soft_context(
    db: AsyncSession,
    tenant_id: str,
    project_id: str,
    context_id: str,
    updated_by: Optional[str] = None,
) -> bool:
    row = await _get_row(db, tenant_id, project_id)
    if row is None:
        return False
    record = _to_record(row)
    entry = next((c for c in record.soft_context if c["id"] == context_id), None)
    if entry is None:
        return False

    record.soft_context = [c for c in record.soft_context if c["id"] != context_id]
    await _save(db, row, record)
    await record_memory_update(
        db, tenant_id, "project", project_id, "user_delete",
        previous_value={"category": entry["category"], "content": entry["content"]},
        field_path=f"soft_context.{context_id}",
        old_confidence=entry["confidence"],
        source="manual",
        updated_by=updated_by,
    )
    return True


async def update_project_summary(
    db: AsyncSession,
    tenant_id: str,
    project_id: str,
    summary: str,
    source: str = "manual",
    source_ref: Optional[str] = None,
) -> ProjectMemoryRecord:
    row = await _get_or_create_row(db, tenant_id, project_id)
    record = _to_record(row)
    previous = record.project_summary
    record.project_summary = summary
    record.synthesis_sources = _add_source(record.synthesis_sources, source, source_ref)
    await _save(db, row, record)

    await record_memory_update(
        db, tenant_id, "project", project_id, "modification",
        previous_value=previous,
        new_value=summary,
        field_path="project_summary",
        source=source,
        source_ref=source_ref,
    )
    return record


async def clear_project_memory(db: AsyncSession, tenant_id: str, project_id: str) -> None:
    """Drop the project's memory and its audit trail."""
    await db.execute(
        sql_delete(ProjectMemory).where(
            ProjectMemory.tenant_id == tenant_id,
            ProjectMemory.project_id == project_id,
        )
    )
    await db.execute(
        sql_delete(MemoryUpdate).where(
            MemoryUpdate.tenant_id == tenant_id,
            MemoryUpdate.memory_type == "project",
            MemoryUpdate.memory_id == project_id,
        )
    )
    await db.flush()
    logger.info("Cleared project memory for %s", project_id)


async def get_project_memory_history(
    db: AsyncSession, tenant_id: str, project_id: str, limit: int = 20,
) -> list[dict]:
    return await get_update_history(db, tenant_id, "project", project_id, limit)


def _format_value(key: str, value: Any) -> str:
    label, unit = HARD_VALUE_LABELS.get(key, (key.replace("_", " ").capitalize(), ""))
    if isinstance(value, list):
        value = ", ".join(str(v) for v in value)
    return f"{label}: {value}{' ' + unit if unit else ''}"


def format_project_memory_for_prompt(
    memory: ProjectMemoryRecord,
    min_confidence: float = PROMPT_MIN_CONFIDENCE,
) -> str:
    """Hard values first, then confident soft context, highest confidence first."""
    parts = []

    if memory.project_summary:
        parts.append(memory.project_summary)

    if memory.hard_values:
        known = [k for k in HARD_VALUE_LABELS if k in memory.hard_values]
        extra = sorted(k for k in memory.hard_values if k not in HARD_VALUE_LABELS)
        parts.append("Project facts:\n" + "\n".join(
            f"- {_format_value(k, memory.hard_values[k])}" for k in known + extra
        ))

    context = sorted(
        (c for c in memory.soft_context if c.get("confidence", 0) >= min_confidence),
        key=lambda c: c["confidence"],
        reverse=True,
    )
    if context:
        parts.append("Project context:\n" + "\n".join(
            f"- [{c['category']}] {c['content']}" for c in context
        ))

    return "\n\n".join(parts)
