"""
Tools API.

GET  /v1/tools         — Registered tools in OpenAI function format
POST /v1/tools/{name}  — Execute a tool for the current user
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.auth import AuthenticatedUser
from ..core.dependencies import require_tenant, get_db
from ..tools.registry import get_tools_for_llm, get_tool_handler, get_tool_risk, validate_arguments

logger = logging.getLogger(__name__)

tools_router = APIRouter(prefix="/tools", tags=["tools"])


class ToolCallIn(BaseModel):
    arguments: dict = {}
    project_id: Optional[str] = None
    conversation_id: Optional[str] = None


@tools_router.get("")
async def list_tools():
    tools = get_tools_for_llm()
    for t in tools:
        t["risk"] = get_tool_risk(t["function"]["name"])
    return tools


@tools_router.post("/{name}")
async def execute_tool(
    name: str,
    body: ToolCallIn,
    user: AuthenticatedUser = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
):
    handler = get_tool_handler(name)
    if handler is None:
        raise HTTPException(status_code=404, detail=f"Unknown tool: {name}")

    reserved = {"db", "tenant_id", "user_id", "project_id", "conversation_id"}
    arguments = {k: v for k, v in body.arguments.items() if k not in reserved}
    errors = validate_arguments(name, arguments)
    if errors:
        raise HTTPException(status_code=422, detail=f"Invalid arguments for {name}: {'; '.join(errors)}")

    result = await handler(
        **arguments,
        db=db,
        tenant_id=user.tenant_id,
        user_id=user.user_id,
        project_id=body.project_id,
        conversation_id=body.conversation_id,
    )

    logger.info("Tool %s executed for user %s", name, user.user_id)
    return {"tool": name, "result": result}
