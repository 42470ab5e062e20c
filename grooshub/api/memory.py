"""
Personal memory API.

GET    /v1/memory                       — Current user's memory
PUT    /v1/memory                       — Replace memory text / identity
DELETE /v1/memory                       — Erase memory and its history
GET    /v1/memory/history               — Audit log
POST   /v1/memory/preferences           — Add a preference manually
PUT    /v1/memory/preferences/{id}      — Edit a preference
DELETE /v1/memory/preferences/{id}      — Delete a preference
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.auth import AuthenticatedUser
from ..core.dependencies import require_tenant, get_db
from ..core.redis import notify_user
from ..services import memory_store

logger = logging.getLogger(__name__)

memory_router = APIRouter(prefix="/memory", tags=["memory"])


class MemoryUpdateIn(BaseModel):
    # None keeps the stored text
    memory_content: Optional[str] = None
    user_name: Optional[str] = None
    user_role: Optional[str] = None
    interests: Optional[list[str]] = None


class PreferenceIn(BaseModel):
    key: str = Field(min_length=1, max_length=100)
    value: str = Field(min_length=1)


class PreferenceEditIn(BaseModel):
    value: str = Field(min_length=1)


@memory_router.get("")
async def get_memory(
    user: AuthenticatedUser = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
):
    memory = await memory_store.get_user_memory(db, user.tenant_id, user.user_id)
    return memory.to_dict()


@memory_router.put("")
async def put_memory(
    body: MemoryUpdateIn,
    user: AuthenticatedUser = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
):
    """Manual edit from the memory panel. Omitted fields keep their value."""
    current = await memory_store.get_user_memory(db, user.tenant_id, user.user_id)
    content = current.memory_content if body.memory_content is None else body.memory_content
    if current.exists:
        memory = await memory_store.update_user_memory(
            db, user.tenant_id, user.user_id, content,
            change_summary="Edited by user",
            change_type="manual",
            trigger_source="manual",
            user_name=body.user_name,
            user_role=body.user_role,
            interests=body.interests,
        )
    else:
        memory = await memory_store.create_user_memory(
            db, user.tenant_id, user.user_id, content,
            user_name=body.user_name,
            user_role=body.user_role,
            interests=body.interests,
        )
    await notify_user(user.tenant_id, user.user_id, "memory.updated", {"source": "manual"})
    return memory.to_dict()


@memory_router.delete("")
async def delete_memory(
    user: AuthenticatedUser = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
):
    await memory_store.delete_user_memory(db, user.tenant_id, user.user_id)
    await notify_user(user.tenant_id, user.user_id, "memory.updated", {"source": "delete"})
    return {"deleted": True}


@memory_router.get("/history")
async def get_history(
    user: AuthenticatedUser = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    limit: int = 10,
):
    limit = max(1, min(limit, 100))
    return await memory_store.get_memory_history(db, user.tenant_id, user.user_id, limit)


@memory_router.post("/preferences", status_code=201)
async def add_preference(
    body: PreferenceIn,
    user: AuthenticatedUser = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
):
    pref = await memory_store.add_preference_manually(
        db, user.tenant_id, user.user_id, body.key.strip(), body.value.strip(),
    )
    await notify_user(user.tenant_id, user.user_id, "memory.updated", {"preference": pref["key"]})
    return pref


@memory_router.put("/preferences/{preference_id}")
async def edit_preference(
    preference_id: str,
    body: PreferenceEditIn,
    user: AuthenticatedUser = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
):
    pref = await memory_store.edit_preference(
        db, user.tenant_id, user.user_id, preference_id, body.value.strip(),
    )
    if pref is None:
        raise HTTPException(status_code=404, detail="Preference not found")
    await notify_user(user.tenant_id, user.user_id, "memory.updated", {"preference": pref["key"]})
    return pref


@memory_router.delete("/preferences/{preference_id}")
async def delete_preference(
    preference_id: str,
    user: AuthenticatedUser = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
):
    if not await memory_store.delete_preference(db, user.tenant_id, user.user_id, preference_id):
        raise HTTPException(status_code=404, detail="Preference not found")
    await notify_user(user.tenant_id, user.user_id, "memory.updated", {"deleted": preference_id})
    return {"deleted": True, "id": preference_id}
