"""
Project memory API.

GET    /v1/projects/{project_id}/memory          — Project memory (empty if none yet)
PUT    /v1/projects/{project_id}/memory          — Apply edits
DELETE /v1/projects/{project_id}/memory          — Clear project memory
GET    /v1/projects/{project_id}/memory/history  — Audit log
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.auth import AuthenticatedUser
from ..core.dependencies import require_tenant, get_db
from ..core.flags import get_flags
from ..core.redis import notify_tenant
from ..services import project_memory
from ..services.project_memory import ProjectMemoryRecord

logger = logging.getLogger(__name__)

projects_router = APIRouter(prefix="/projects", tags=["project-memory"])


class SoftContextIn(BaseModel):
    category: str = "note"
    content: str


class SoftContextEditIn(BaseModel):
    id: str
    content: Optional[str] = None
    category: Optional[str] = None


class ProjectMemoryUpdateIn(BaseModel):
    hard_values: dict[str, Any] = {}
    remove_hard_values: list[str] = []
    project_summary: Optional[str] = None
    add_soft_context: list[SoftContextIn] = []
    update_soft_context: list[SoftContextEditIn] = []
    remove_soft_context: list[str] = []


def _require_enabled() -> None:
    if not get_flags().enable_project_memory:
        raise HTTPException(status_code=404, detail="Project memory is disabled")


@projects_router.get("/{project_id}/memory")
async def get_project_memory(
    project_id: str,
    user: AuthenticatedUser = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
):
    _require_enabled()
    memory = await project_memory.get_project_memory(db, user.tenant_id, project_id)
    return (memory or ProjectMemoryRecord(project_id=project_id)).to_dict()


@projects_router.put("/{project_id}/memory")
async def update_project_memory(
    project_id: str,
    body: ProjectMemoryUpdateIn,
    user: AuthenticatedUser = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
):
    _require_enabled()
    tenant_id = user.tenant_id

    if body.hard_values:
        await project_memory.update_hard_values(
            db, tenant_id, project_id, body.hard_values,
            source="manual", updated_by=user.user_id,
        )
    for key in body.remove_hard_values:
        await project_memory.remove_hard_value(db, tenant_id, project_id, key, updated_by=user.user_id)
    if body.project_summary is not None:
        await project_memory.update_project_summary(db, tenant_id, project_id, body.project_summary)
    for item in body.add_soft_context:
        await project_memory.add_soft_context(
            db, tenant_id, project_id, item.category, item.content, source="manual",
        )
    for item in body.update_soft_context:
        updated = await project_memory.update_soft_context(
            db, tenant_id, project_id, item.id,
            content=item.content, category=item.category, updated_by=user.user_id,
        )
        if updated is None:
            raise HTTPException(status_code=404, detail=f"Soft context {item.id} not found")
    for context_id in body.remove_soft_context:
        if not await project_memory.remove_soft_context(
            db, tenant_id, project_id, context_id, updated_by=user.user_id,
        ):
            raise HTTPException(status_code=404, detail=f"Soft context {context_id} not found")

    memory = await project_memory.get_or_create_project_memory(db, tenant_id, project_id)
    await notify_tenant(tenant_id, "project_memory.updated", {"project_id": project_id})
    return memory.to_dict()


@projects_router.delete("/{project_id}/memory")
async def clear_project_memory(
    project_id: str,
    user: AuthenticatedUser = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
):
    _require_enabled()
    await project_memory.clear_project_memory(db, user.tenant_id, project_id)
    return {"deleted": True, "project_id": project_id}


@projects_router.get("/{project_id}/memory/history")
async def get_project_memory_history(
    project_id: str,
    user: AuthenticatedUser = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    limit: int = 20,
):
    _require_enabled()
    limit = max(1, min(limit, 100))
    return await project_memory.get_project_memory_history(db, user.tenant_id, project_id, limit)
