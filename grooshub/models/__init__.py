"""
All database models. Imported here so Base.metadata sees them for create_all().
"""

from .base import TenantBase
from .conversation import Conversation, Message
from .memory import UserMemory, MemoryUpdate
from .summary import ChatSummary
from .project_memory import ProjectMemory

__all__ = [
    "TenantBase",
    "Conversation", "Message",
    "UserMemory", "MemoryUpdate",
    "ChatSummary",
    "ProjectMemory",
]
