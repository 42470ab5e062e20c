"""
Conversations and messages. The log the memory pipeline reads from.
Message content may be ciphertext; content_encrypted says which.
"""

from datetime import datetime

from sqlalchemy import String, Text, Integer, Boolean, JSON, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import TenantBase, utcnow


class Conversation(TenantBase):
    __tablename__ = "conversations"

    session_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String, nullable=True, index=True)
    project_id: Mapped[str] = mapped_column(String, nullable=True, index=True)
    title: Mapped[str] = mapped_column(String, nullable=True)
    locale: Mapped[str] = mapped_column(String, nullable=False, default="nl")

    # Inactivity summarization looks at these two
    last_activity_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    last_summary_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    # User messages seen by the last memory analysis of this conversation
    analyzed_user_messages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    messages: Mapped[list["Message"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.sequence_number",
    )


class Message(TenantBase):
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("conversation_id", "sequence_number", name="uq_messages_sequence"),
    )

    conversation_id: Mapped[str] = mapped_column(
        String, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role: Mapped[str] = mapped_column(String, nullable=False)  # user, assistant, system, tool
    content: Mapped[str] = mapped_column(Text, nullable=True)
    content_encrypted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # 0-based position in the conversation; summary ranges refer to it
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    metadata_: Mapped[dict] = mapped_column(
        "metadata", JSON, nullable=True, default=dict
    )

    conversation: Mapped["Conversation"] = relationship(back_populates="messages")
