"""
Project memory: hard numeric facts plus confidence-scored soft context.
"""

from datetime import datetime

from sqlalchemy import String, Text, Integer, JSON, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import TenantBase


class ProjectMemory(TenantBase):
    __tablename__ = "project_memories"
    __table_args__ = (UniqueConstraint("tenant_id", "project_id", name="uq_project_memories_project"),)

    project_id: Mapped[str] = mapped_column(String, nullable=False, index=True)

    # {bvo, go, units, target_groups, phase, location, mpg_target, budget, building_type, ...}
    hard_values: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    # [{id, category, content, source, source_ref, confidence, learned_at}]
    soft_context: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    # [{type, ref, contributed_at}], last 50
    synthesis_sources: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    memory_content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    project_summary: Mapped[str] = mapped_column(Text, nullable=True)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_synthesized_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
