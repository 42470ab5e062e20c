"""
Summaries API.

POST /v1/summaries/inactivity — Summarize conversations idle for an hour or more.
Called hourly by cron (X-Cron-Secret) or manually by an admin.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import require_cron_or_admin, get_db
from ..core.flags import get_flags
from ..services.inactivity import summarize_inactive_conversations

logger = logging.getLogger(__name__)

summaries_router = APIRouter(prefix="/summaries", tags=["summaries"])


@summaries_router.post("/inactivity")
async def summarize_inactive(
    caller: str = Depends(require_cron_or_admin),
    db: AsyncSession = Depends(get_db),
):
    logger.info("Inactivity summarization triggered by %s", caller)
    if not get_flags().enable_summarization:
        return {"success": True, "message": "Summarization is disabled", "processed": 0, "results": []}

    results = await summarize_inactive_conversations(db)
    if not results:
        return {"success": True, "message": "No inactive conversations to summarize", "processed": 0, "results": []}

    return {
        "success": True,
        "message": f"Processed {len(results)} inactive conversations",
        "processed": len(results),
        "succeeded": sum(1 for r in results if r.success),
        "failed": sum(1 for r in results if not r.success),
        "results": [r.to_dict() for r in results],
    }
