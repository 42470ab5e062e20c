"""
Main API router. Mounts all sub-routers.
"""

from fastapi import APIRouter, Depends

from ..core.dependencies import require_tenant

router = APIRouter()


# ── Health (no auth) ─────────────────────────────────────────────────

@router.get("/health")
async def health():
    from ..core.encryption import is_encryption_configured

    return {
        "status": "ok",
        "service": "grooshub-memory",
        "encryption": is_encryption_configured(),
    }


# ── V1 routes ────────────────────────────────────────────────────────

from .memory import memory_router
from .projects import projects_router
from .conversations import conversations_router
from .summaries import summaries_router
from .tools import tools_router

router.include_router(memory_router, prefix="/v1", dependencies=[Depends(require_tenant)])
router.include_router(projects_router, prefix="/v1", dependencies=[Depends(require_tenant)])
router.include_router(conversations_router, prefix="/v1", dependencies=[Depends(require_tenant)])
router.include_router(tools_router, prefix="/v1", dependencies=[Depends(require_tenant)])
# Cron calls carry a secret instead of a user; the route checks it itself
router.include_router(summaries_router, prefix="/v1")
