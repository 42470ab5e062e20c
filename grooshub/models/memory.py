"""
User memory persistence.

One UserMemory row per (tenant, user): a short free-text memory (~500 tokens,
optionally encrypted) plus structured fields and confidence-scored preferences.
MemoryUpdate is the append-only audit log for personal and project memory.
"""

from datetime import datetime

from sqlalchemy import String, Text, Boolean, Integer, Float, JSON, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import TenantBase


class UserMemory(TenantBase):
    __tablename__ = "user_memories"
    __table_args__ = (UniqueConstraint("tenant_id", "user_id", name="uq_user_memories_user"),)

    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    memory_content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    content_encrypted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    user_name: Mapped[str] = mapped_column(String, nullable=True)
    user_role: Mapped[str] = mapped_column(String, nullable=True)
    interests: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    # [{type, description, frequency?, examples?}]
    patterns: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    # [{key, value, expires_at?}]
    context: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    # [{id, key, value, confidence, reinforcements, contradictions, learned_from, ...}]
    preferences: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_updates: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_analysis_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)


class MemoryUpdate(TenantBase):
    __tablename__ = "memory_updates"

    memory_type: Mapped[str] = mapped_column(String, nullable=False, index=True)  # personal, project
    memory_id: Mapped[str] = mapped_column(String, nullable=False, index=True)    # user_id or project_id
    update_type: Mapped[str] = mapped_column(String, nullable=False)
    field_path: Mapped[str] = mapped_column(String, nullable=True)
    preference_key: Mapped[str] = mapped_column(String, nullable=True)

    # JSON text, or ciphertext of that JSON when content_encrypted
    previous_value: Mapped[str] = mapped_column(Text, nullable=True)
    new_value: Mapped[str] = mapped_column(Text, nullable=True)
    content_encrypted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    old_confidence: Mapped[float] = mapped_column(Float, nullable=True)
    new_confidence: Mapped[float] = mapped_column(Float, nullable=True)

    change_summary: Mapped[str] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String, nullable=False, default="system")
    source_ref: Mapped[str] = mapped_column(String, nullable=True)
    updated_by: Mapped[str] = mapped_column(String, nullable=True)
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, nullable=True, default=dict)
