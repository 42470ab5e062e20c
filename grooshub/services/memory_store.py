"""
User memory — load, save, score and format what we know about a user.

A user's memory has three layers:
  - memory_content: a short free-text profile written by the analyzer (~500 tokens)
  - structured fields: name, role, interests, patterns, time-boxed context
  - preferences: key/value facts with confidence scoring

Confidence = reinforcements / (reinforcements + contradictions + 1). A single
contradicting remark does not overwrite an established preference; an explicit
correction ("actually, I prefer ...") replaces a weak one.

Every change is written to the memory_updates audit log. memory_content and the
audit values are encrypted with the organization key when configured.
"""

import copy
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import select, delete as sql_delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import flag_modified

from ..core.encryption import encrypt_for_storage, decrypt_from_storage, is_encryption_configured
from ..models.base import new_uuid, utcnow, as_utc
from ..models.memory import UserMemory, MemoryUpdate
from .llm import estimate_tokens

logger = logging.getLogger(__name__)

# Soft cap: prompts ask for ~500 tokens, we warn past 600
MEMORY_TOKEN_TARGET = 500
MEMORY_TOKEN_WARN_LIMIT = 600

# Update trigger
MIN_MESSAGES_BEFORE_FIRST_UPDATE = 3
UPDATE_EVERY_N_MESSAGES = 10
REANALYZE_AFTER = timedelta(hours=24)

# Confidence system
ESTABLISHED_CONFIDENCE_THRESHOLD = 0.7
MIN_REINFORCEMENTS_FOR_CONTRADICTION = 3
CONTRADICTION_THRESHOLD_FOR_REVIEW = 3
NEW_PREFERENCE_CONFIDENCE = 0.3
EXPLICIT_PREFERENCE_CONFIDENCE = 0.5
MANUAL_REINFORCEMENTS = 5
PROMPT_MIN_CONFIDENCE = 0.5


@dataclass
class UserMemoryRecord:
    """Decrypted view of a user's memory. Empty defaults when no row exists."""
    user_id: str
    memory_content: str = ""
    user_name: Optional[str] = None
    user_role: Optional[str] = None
    interests: list[str] = field(default_factory=list)
    patterns: list[dict] = field(default_factory=list)
    context: list[dict] = field(default_factory=list)
    preferences: list[dict] = field(default_factory=list)
    token_count: int = 0
    total_updates: int = 0
    last_analysis_at: Optional[datetime] = None
    content_encrypted: bool = False
    exists: bool = False

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "memory_content": self.memory_content,
            "user_name": self.user_name,
            "user_role": self.user_role,
            "interests": self.interests,
            "patterns": self.patterns,
            "context": self.context,
            "preferences": self.preferences,
            "token_count": self.token_count,
            "total_updates": self.total_updates,
            "last_analysis_at": self.last_analysis_at.isoformat() if self.last_analysis_at else None,
            "content_encrypted": self.content_encrypted,
        }


@dataclass
class PreferenceUpdateResult:
    action: str  # created, reinforced, contradicted, updated
    preference: dict
    previous_value: Optional[str] = None
    previous_confidence: Optional[float] = None


# ── Confidence ───────────────────────────────────────────────────────

def calculate_confidence(reinforcements: int, contradictions: int) -> float:
    """
    reinforcements / (reinforcements + contradictions + 1)

    0 reinforcements → 0.00, 1 → 0.50, 5 → 0.83, 25 → 0.96;
    25 reinforcements with 5 contradictions → 0.81.
    """
    return reinforcements / (reinforcements + contradictions + 1)


def _reset_preference(pref: dict, value: str, reinforcements: int, confidence: float,
                      source: str, source_text: Optional[str], now: datetime) -> None:
    pref["value"] = value
    pref["reinforcements"] = reinforcements
    pref["contradictions"] = 0
    pref["confidence"] = confidence
    pref["learned_from"] = source
    pref["learned_from_text"] = source_text
    pref["learned_at"] = now.isoformat()
    pref["last_reinforced_at"] = None


def _add_contradiction(pref: dict) -> None:
    pref["contradictions"] += 1
    pref["confidence"] = calculate_confidence(pref["reinforcements"], pref["contradictions"])


def merge_preference(
    preferences: list[dict],
    key: str,
    value: str,
    source: str = "chat",
    source_text: Optional[str] = None,
    is_explicit: bool = False,
    now: Optional[datetime] = None,
) -> PreferenceUpdateResult:
    """
    Merge one observed preference into the list (mutates it).

    New key → created. Same value → reinforced. Different value → one of:
      - explicit correction: replaces unless the old value is still well supported
      - established (confidence >= 0.7): contradiction counted, value kept
      - weak (< 3 reinforcements): replaced
      - otherwise: contradiction counted, value kept
    """
    now = now or utcnow()
    existing = next((p for p in preferences if p["key"] == key), None)

    if existing is None:
        pref = {
            "id": new_uuid(),
            "key": key,
            "value": value,
            "confidence": EXPLICIT_PREFERENCE_CONFIDENCE if is_explicit else NEW_PREFERENCE_CONFIDENCE,
            # Explicit statements count as two reinforcements
            "reinforcements": 2 if is_explicit else 1,
            "contradictions": 0,
            "learned_from": source,
            "learned_from_text": source_text,
            "learned_at": now.isoformat(),
            "last_reinforced_at": None,
        }
        preferences.append(pref)
        return PreferenceUpdateResult(action="created", preference=pref)

    previous_value = existing["value"]
    previous_confidence = existing["confidence"]

    if existing["value"] == value:
        existing["reinforcements"] += 1
        existing["confidence"] = calculate_confidence(existing["reinforcements"], existing["contradictions"])
        existing["last_reinforced_at"] = now.isoformat()
        return PreferenceUpdateResult(
            action="reinforced", preference=existing,
            previous_confidence=previous_confidence,
        )

    if is_explicit:
        _add_contradiction(existing)
        if (existing["confidence"] < 0.5
                or existing["reinforcements"] < MIN_REINFORCEMENTS_FOR_CONTRADICTION):
            _reset_preference(existing, value, 2, EXPLICIT_PREFERENCE_CONFIDENCE,
                              source, source_text, now)
            return PreferenceUpdateResult("updated", existing, previous_value, previous_confidence)
        return PreferenceUpdateResult("contradicted", existing, previous_value, previous_confidence)

    if existing["confidence"] >= ESTABLISHED_CONFIDENCE_THRESHOLD:
        _add_contradiction(existing)
        if existing["contradictions"] >= CONTRADICTION_THRESHOLD_FOR_REVIEW:
            logger.info(
                "Preference %s has %d contradictions - may need review",
                key, existing["contradictions"],
            )
        return PreferenceUpdateResult("contradicted", existing, previous_value, previous_confidence)

    if existing["reinforcements"] < MIN_REINFORCEMENTS_FOR_CONTRADICTION:
        _reset_preference(existing, value, 1, NEW_PREFERENCE_CONFIDENCE, source, source_text, now)
        return PreferenceUpdateResult("updated", existing, previous_value, previous_confidence)

    _add_contradiction(existing)
    return PreferenceUpdateResult("contradicted", existing, previous_value, previous_confidence)


# ── Audit log ────────────────────────────────────────────────────────

def _dump(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value if isinstance(value, str) else json.dumps(value)


async def record_memory_update(
    db: AsyncSession,
    tenant_id: str,
    memory_type: str,
    memory_id: str,
    update_type: str,
    previous_value: Any = None,
    new_value: Any = None,
    field_path: Optional[str] = None,
    preference_key: Optional[str] = None,
    old_confidence: Optional[float] = None,
    new_confidence: Optional[float] = None,
    change_summary: Optional[str] = None,
    source: str = "system",
    source_ref: Optional[str] = None,
    updated_by: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> MemoryUpdate:
    """Append one row to the audit log. Both values are encrypted, or neither."""
    encrypted = is_encryption_configured()
    prev, new = _dump(previous_value), _dump(new_value)
    if encrypted:
        prev = encrypt_for_storage(prev, tenant_id)[0] if prev is not None else None
        new = encrypt_for_storage(new, tenant_id)[0] if new is not None else None

    entry = MemoryUpdate(
        tenant_id=tenant_id,
        memory_type=memory_type,
        memory_id=memory_id,
        update_type=update_type,
        field_path=field_path,
        preference_key=preference_key,
        previous_value=prev,
        new_value=new,
        content_encrypted=encrypted,
        old_confidence=old_confidence,
        new_confidence=new_confidence,
        change_summary=change_summary,
        source=source,
        source_ref=source_ref,
        updated_by=updated_by,
        metadata_=metadata or {},
    )
    db.add(entry)
    await db.flush()
    return entry


def audit_entry_to_dict(entry: MemoryUpdate) -> dict:
    def _open(value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return decrypt_from_storage(value, entry.content_encrypted, entry.tenant_id)

    return {
        "id": entry.id,
        "memory_type": entry.memory_type,
        "memory_id": entry.memory_id,
        "update_type": entry.update_type,
        "field_path": entry.field_path,
        "preference_key": entry.preference_key,
        "previous_value": _open(entry.previous_value),
        "new_value": _open(entry.new_value),
        "old_confidence": entry.old_confidence,
        "new_confidence": entry.new_confidence,
        "change_summary": entry.change_summary,
        "source": entry.source,
        "source_ref": entry.source_ref,
        "metadata": entry.metadata_ or {},
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def get_update_history(
    db: AsyncSession,
    tenant_id: str,
    memory_type: str,
    memory_id: str,
    limit: int = 10,
) -> list[dict]:
    result = await db.execute(
        select(MemoryUpdate)
        .where(
            MemoryUpdate.tenant_id == tenant_id,
            MemoryUpdate.memory_type == memory_type,
            MemoryUpdate.memory_id == memory_id,
        )
        .order_by(MemoryUpdate.created_at.desc(), MemoryUpdate.id.desc())
        .limit(limit)
    )
    return [audit_entry_to_dict(e) for e in result.scalars().all()]


# ── Load / save ──────────────────────────────────────────────────────

async def _get_row(db: AsyncSession, tenant_id: str, user_id: str) -> Optional[UserMemory]:
    result = await db.execute(
        select(UserMemory).where(
            UserMemory.tenant_id == tenant_id,
            UserMemory.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


def _to_record(row: UserMemory) -> UserMemoryRecord:
    return UserMemoryRecord(
        user_id=row.user_id,
        memory_content=decrypt_from_storage(row.memory_content or "", row.content_encrypted, row.tenant_id),
        user_name=row.user_name,
        user_role=row.user_role,
        interests=list(row.interests or []),
        patterns=list(row.patterns or []),
        context=list(row.context or []),
        preferences=copy.deepcopy(row.preferences or []),
        token_count=row.token_count or 0,
        total_updates=row.total_updates or 0,
        last_analysis_at=as_utc(row.last_analysis_at),
        content_encrypted=row.content_encrypted,
        exists=True,
    )


async def get_user_memory(db: AsyncSession, tenant_id: str, user_id: str) -> UserMemoryRecord:
    """Decrypted memory for a user; an empty record if nothing is stored yet."""
    row = await _get_row(db, tenant_id, user_id)
    if row is None:
        return UserMemoryRecord(user_id=user_id)
    return _to_record(row)


async def _save(
    db: AsyncSession,
    tenant_id: str,
    user_id: str,
    record: UserMemoryRecord,
    row: Optional[UserMemory] = None,
) -> UserMemory:
    """Write a record back: re-encrypts content, refreshes the token estimate."""
    if row is None:
        row = await _get_row(db, tenant_id, user_id)
    if row is None:
        row = UserMemory(tenant_id=tenant_id, user_id=user_id)
        db.add(row)

    token_count = estimate_tokens(format_memory_for_prompt(record))
    if token_count > MEMORY_TOKEN_WARN_LIMIT:
        logger.warning(
            "Memory for user %s exceeds recommended token limit (%d > %d)",
            user_id, token_count, MEMORY_TOKEN_WARN_LIMIT,
        )

    stored, is_encrypted = encrypt_for_storage(record.memory_content or "", tenant_id)
    row.memory_content = stored
    row.content_encrypted = is_encrypted
    row.user_name = record.user_name
    row.user_role = record.user_role
    row.interests = list(record.interests)
    row.patterns = list(record.patterns)
    row.context = list(record.context)
    row.preferences = copy.deepcopy(record.preferences)
    for attr in ("interests", "patterns", "context", "preferences"):
        flag_modified(row, attr)
    row.token_count = token_count
    row.total_updates = record.total_updates
    row.last_analysis_at = record.last_analysis_at

    await db.flush()
    record.token_count = token_count
    record.content_encrypted = is_encrypted
    record.exists = True
    return row


async def create_user_memory(
    db: AsyncSession,
    tenant_id: str,
    user_id: str,
    memory_content: str,
    user_name: Optional[str] = None,
    user_role: Optional[str] = None,
    interests: Optional[list[str]] = None,
    patterns: Optional[list[dict]] = None,
    context: Optional[list[dict]] = None,
) -> UserMemoryRecord:
    """Create (or overwrite) a user's memory and log it as the initial version."""
    current = await get_user_memory(db, tenant_id, user_id)
    record = UserMemoryRecord(
        user_id=user_id,
        memory_content=memory_content,
        user_name=user_name or current.user_name,
        user_role=user_role or current.user_role,
        interests=interests if interests is not None else current.interests,
        patterns=patterns if patterns is not None else current.patterns,
        context=context if context is not None else current.context,
        preferences=current.preferences,
        total_updates=current.total_updates + 1,
        last_analysis_at=utcnow(),
    )
    await _save(db, tenant_id, user_id, record)

    await record_memory_update(
        db, tenant_id, "personal", user_id, "initial",
        previous_value=None,
        new_value=memory_content,
        field_path="memory_content",
        change_summary="Initial memory creation",
        source="system",
    )
    logger.info("Created memory for user %s (%d tokens)", user_id, record.token_count)
    return record


async def update_user_memory(
    db: AsyncSession,
    tenant_id: str,
    user_id: str,
    memory_content: str,
    change_summary: Optional[str] = None,
    change_type: str = "modification",
    trigger_source: str = "manual",
    trigger_id: Optional[str] = None,
    metadata: Optional[dict] = None,
    user_name: Optional[str] = None,
    user_role: Optional[str] = None,
    interests: Optional[list[str]] = None,
    patterns: Optional[list[dict]] = None,
    context: Optional[list[dict]] = None,
) -> UserMemoryRecord:
    """Replace the free-text memory; structured fields only change when passed."""
    record = await get_user_memory(db, tenant_id, user_id)
    previous = record.memory_content

    record.memory_content = memory_content
    record.user_name = user_name or record.user_name
    record.user_role = user_role or record.user_role
    if interests is not None:
        record.interests = interests
    if patterns is not None:
        record.patterns = patterns
    if context is not None:
        record.context = context
    record.total_updates += 1
    record.last_analysis_at = utcnow()

    await _save(db, tenant_id, user_id, record)

    await record_memory_update(
        db, tenant_id, "personal", user_id, change_type,
        previous_value=previous or None,
        new_value=memory_content,
        field_path="memory_content",
        change_summary=change_summary,
        source=trigger_source,
        source_ref=trigger_id,
        metadata=metadata,
    )
    logger.info("Updated memory for user %s (%d tokens)", user_id, record.token_count)
    return record


async def delete_user_memory(db: AsyncSession, tenant_id: str, user_id: str) -> None:
    """Remove a user's memory entirely (GDPR erasure). The audit trail goes too."""
    await db.execute(
        sql_delete(UserMemory).where(
            UserMemory.tenant_id == tenant_id,
            UserMemory.user_id == user_id,
        )
    )
    await db.execute(
        sql_delete(MemoryUpdate).where(
            MemoryUpdate.tenant_id == tenant_id,
            MemoryUpdate.memory_type == "personal",
            MemoryUpdate.memory_id == user_id,
        )
    )
    await db.flush()
    logger.info("Deleted memory for user %s", user_id)


async def get_memory_history(
    db: AsyncSession, tenant_id: str, user_id: str, limit: int = 10,
) -> list[dict]:
    return await get_update_history(db, tenant_id, "personal", user_id, limit)


async def mark_analyzed(db: AsyncSession, tenant_id: str, user_id: str) -> None:
    """Stamp last_analysis_at so the update trigger counts from now."""
    row = await _get_row(db, tenant_id, user_id)
    if row is None:
        record = UserMemoryRecord(user_id=user_id, last_analysis_at=utcnow())
        await _save(db, tenant_id, user_id, record)
        return
    row.last_analysis_at = utcnow()
    await db.flush()


# ── Preferences & identity ───────────────────────────────────────────

async def update_preference(
    db: AsyncSession,
    tenant_id: str,
    user_id: str,
    key: str,
    value: str,
    source: str = "chat",
    source_ref: Optional[str] = None,
    source_text: Optional[str] = None,
    is_explicit: bool = False,
) -> PreferenceUpdateResult:
    """Merge an observed preference through the confidence system and persist it."""
    record = await get_user_memory(db, tenant_id, user_id)
    result = merge_preference(
        record.preferences, key, value,
        source=source, source_text=source_text, is_explicit=is_explicit,
    )
    record.total_updates += 1
    await _save(db, tenant_id, user_id, record)

    update_type = {
        "created": "learned",
        "updated": "learned",
        "reinforced": "reinforced",
    }.get(result.action, "contradicted")

    old = None
    if result.action != "created":
        old = {
            "value": result.previous_value if result.previous_value is not None else value,
            "confidence": result.previous_confidence,
        }
    await record_memory_update(
        db, tenant_id, "personal", user_id, update_type,
        previous_value=old,
        new_value={"value": result.preference["value"], "confidence": result.preference["confidence"]},
        preference_key=key,
        old_confidence=result.previous_confidence,
        new_confidence=result.preference["confidence"],
        source=source,
        source_ref=source_ref,
        updated_by=user_id,
        metadata={"source_text": source_text} if source_text else None,
    )

    logger.info(
        "Preference %s for user %s: %s = %r (confidence %.2f)",
        result.action, user_id, key, result.preference["value"], result.preference["confidence"],
    )
    return result


async def update_identity(
    db: AsyncSession,
    tenant_id: str,
    user_id: str,
    name: Optional[str] = None,
    role: Optional[str] = None,
) -> UserMemoryRecord:
    record = await get_user_memory(db, tenant_id, user_id)
    old = {"name": record.user_name, "role": record.user_role}
    record.user_name = name or record.user_name
    record.user_role = role or record.user_role
    if old == {"name": record.user_name, "role": record.user_role}:
        return record

    await _save(db, tenant_id, user_id, record)
    await record_memory_update(
        db, tenant_id, "personal", user_id, "learned",
        previous_value=old,
        new_value={"name": record.user_name, "role": record.user_role},
        field_path="identity",
        source="chat",
    )
    logger.info("Updated identity for user %s", user_id)
    return record


async def edit_preference(
    db: AsyncSession,
    tenant_id: str,
    user_id: str,
    preference_id: str,
    new_value: str,
) -> Optional[dict]:
    """User override: new value with an established baseline (5 reinforcements)."""
    record = await get_user_memory(db, tenant_id, user_id)
    pref = next((p for p in record.preferences if p["id"] == preference_id), None)
    if pref is None:
        return None

    old = {"value": pref["value"], "confidence": pref["confidence"]}
    _reset_preference(
        pref, new_value, MANUAL_REINFORCEMENTS,
        calculate_confidence(MANUAL_REINFORCEMENTS, 0), "manual", None, utcnow(),
    )
    record.total_updates += 1
    await _save(db, tenant_id, user_id, record)

    await record_memory_update(
        db, tenant_id, "personal", user_id, "user_edit",
        previous_value=old,
        new_value={"value": new_value, "confidence": pref["confidence"]},
        preference_key=pref["key"],
        old_confidence=old["confidence"],
        new_confidence=pref["confidence"],
        source="manual",
        updated_by=user_id,
    )
    return pref


async def add_preference_manually(
    db: AsyncSession,
    tenant_id: str,
    user_id: str,
    key: str,
    value: str,
) -> dict:
    record = await get_user_memory(db, tenant_id, user_id)
    existing = next((p for p in record.preferences if p["key"] == key), None)
    if existing is not None:
        return await edit_preference(db, tenant_id, user_id, existing["id"], value)

    pref = {"id": new_uuid(), "key": key}
    _reset_preference(
        pref, value, MANUAL_REINFORCEMENTS,
        calculate_confidence(MANUAL_REINFORCEMENTS, 0), "manual", None, utcnow(),
    )
    record.preferences.append(pref)
    record.total_updates += 1
    await _save(db, tenant_id, user_id, record)

    await record_memory_update(
        db, tenant_id, "personal", user_id, "learned",
        new_value={"value": value, "confidence": pref["confidence"]},
        preference_key=key,
        new_confidence=pref["confidence"],
        source="manual",
        updated_by=user_id,
    )
    return pref


async def delete_preference(
    db: AsyncSession,
    tenant_id: str,
    user_id: str,
    preference_id: str,
) -> bool:
    record = await get_user_memory(db, tenant_id, user_id)
    pref = next((p for p in record.preferences if p["id"] == preference_id), None)
    if pref is None:
        return False

    record.preferences = [p for p in record.preferences if p["id"] != preference_id]
    await _save(db, tenant_id, user_id, record)

    await record_memory_update(
        db, tenant_id, "personal", user_id, "user_delete",
        previous_value={"value": pref["value"], "confidence": pref["confidence"]},
        preference_key=pref["key"],
        old_confidence=pref["confidence"],
        source="manual",
        updated_by=user_id,
    )
    logger.info("Deleted preference %s for user %s", pref["key"], user_id)
    return True


# ── Prompt formatting & triggers ─────────────────────────────────────

def _context_is_live(entry: dict, now: datetime) -> bool:
    expires = entry.get("expires_at")
    if not expires:
        return True
    try:
        return as_utc(datetime.fromisoformat(expires)) > now
    except ValueError:
        return True


def format_memory_for_prompt(memory: UserMemoryRecord) -> str:
    """Concise text form of a user's memory for the system prompt."""
    parts = []

    if memory.user_name:
        role = f" ({memory.user_role})" if memory.user_role else ""
        parts.append(f"User: {memory.user_name}{role}")

    established = sorted(
        (p for p in memory.preferences if p.get("confidence", 0) >= PROMPT_MIN_CONFIDENCE),
        key=lambda p: p["confidence"],
        reverse=True,
    )
    if established:
        parts.append("Known preferences:\n" + "\n".join(f"- {p['key']}: {p['value']}" for p in established))

    if memory.memory_content:
        parts.append(memory.memory_content)
    else:
        if memory.interests:
            parts.append(f"Interests: {', '.join(memory.interests)}")
        if memory.patterns:
            parts.append("Patterns: " + "; ".join(
                f"{p.get('type', 'general')}: {p.get('description', '')}" for p in memory.patterns
            ))
        now = utcnow()
        live = [c for c in memory.context if _context_is_live(c, now)]
        if live:
            parts.append("Context: " + "; ".join(f"{c['key']}: {c['value']}" for c in live))

    return "\n\n".join(parts)


def should_update_memory(
    memory: UserMemoryRecord,
    message_count: int,
    now: Optional[datetime] = None,
) -> bool:
    """
    Whether the analyzer should look at this conversation for memory.
    message_count is the number of user messages in the conversation.
    """
    if memory.last_analysis_at is None:
        return message_count >= MIN_MESSAGES_BEFORE_FIRST_UPDATE

    if message_count > 0 and message_count % UPDATE_EVERY_N_MESSAGES == 0:
        return True

    now = now or utcnow()
    return now - as_utc(memory.last_analysis_at) > REANALYZE_AFTER
