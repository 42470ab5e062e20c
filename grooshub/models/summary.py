"""
Conversation summaries. Each row replaces an exact, inclusive range of message
indices so those messages can be dropped from the prompt.
"""

from datetime import datetime

from sqlalchemy import String, Text, Integer, Float, Boolean, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import TenantBase, utcnow


class ChatSummary(TenantBase):
    __tablename__ = "chat_summaries"
    __table_args__ = (
        Index("ix_chat_summaries_conversation_range", "conversation_id", "message_range_end"),
        UniqueConstraint("conversation_id", "message_range_start", name="uq_chat_summaries_range_start"),
    )

    conversation_id: Mapped[str] = mapped_column(
        String, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )

    summary_text: Mapped[str] = mapped_column(Text, nullable=False)
    # JSON list of strings, or its ciphertext when content_encrypted
    key_points: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    content_encrypted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    message_range_start: Mapped[int] = mapped_column(Integer, nullable=False)
    message_range_end: Mapped[int] = mapped_column(Integer, nullable=False)

    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    compression_ratio: Mapped[float] = mapped_column(Float, nullable=True)
    model_used: Mapped[str] = mapped_column(String, nullable=False, default="claude-haiku")
    generation_timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    @property
    def message_count(self) -> int:
        return self.message_range_end - self.message_range_start + 1
