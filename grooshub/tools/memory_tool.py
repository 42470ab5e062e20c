"""
Memory tools — let the assistant store what the user says explicitly.

Example: user says "Ik wil altijd korte antwoorden" → remember(
    key="response_style", value="concise"
)
"""

import logging

from .registry import tool, ToolRisk
from ..services.project_memory import SOFT_CONTEXT_CATEGORIES

logger = logging.getLogger(__name__)


@tool(
    name="remember",
    description=(
        "Store a preference the user stated explicitly, so it applies in future conversations. "
        "\n\nWhen to use: the user tells you how they want to work or be answered "
        "(response length, language, units, formatting, focus areas). "
        "\n\nExamples:"
        "\n- 'Keep your answers short' → key=response_style, value=concise"
        "\n- 'Always show areas in m² GO' → key=area_unit, value=m² GO"
        "\n\nDo NOT store: one-off requests or facts about a project (use remember_project_fact)."
    ),
    parameters={
        "type": "object",
        "properties": {
            "key": {
                "type": "string",
                "description": "Short snake_case key (response_style, language, area_unit, ...)",
            },
            "value": {
                "type": "string",
                "description": "The preferred value, concise",
            },
            "source_text": {
                "type": "string",
                "description": "The user's own words, quoted",
            },
        },
        "required": ["key", "value"],
    },
    risk=ToolRisk.WRITE,
)
async def remember(
    key: str, value: str, source_text: str = "",
    db=None, tenant_id: str = "", **kwargs
) -> str:
    user_id = kwargs.get("user_id", "")
    if not db or not tenant_id or not user_id:
        return "Cannot save memory — no user context."

    from ..services.memory_store import update_preference

    result = await update_preference(
        db, tenant_id, user_id, key, value,
        source="tool",
        source_text=source_text or None,
        is_explicit=True,
    )
    if result.action == "contradicted":
        return (
            f"Noted, but kept {key}: {result.preference['value']} for now "
            f"(confidence {result.preference['confidence']:.2f})."
        )
    return f"Got it — I'll remember that {key}: {result.preference['value']}"


@tool(
    name="remember_project_fact",
    description=(
        "Store a fact about the current project: a requirement, constraint, decision, "
        "stakeholder, risk or preference that should inform later answers about this project. "
        "\n\nExamples:"
        "\n- 'The municipality requires 30% social housing' → category=requirement"
        "\n- 'We chose timber frame construction' → category=decision"
        "\n\nOnly available inside a project."
    ),
    parameters={
        "type": "object",
        "properties": {
            "category": {
                "type": "string",
                "enum": list(SOFT_CONTEXT_CATEGORIES),
                "description": "Kind of fact",
            },
            "content": {
                "type": "string",
                "description": "The fact, one sentence",
            },
        },
        "required": ["category", "content"],
    },
    risk=ToolRisk.WRITE,
)
async def remember_project_fact(
    category: str, content: str,
    db=None, tenant_id: str = "", **kwargs
) -> str:
    project_id = kwargs.get("project_id")
    if not db or not tenant_id or not project_id:
        return "Cannot save project fact — no project context."

    from ..services.project_memory import add_soft_context

    entry = await add_soft_context(
        db, tenant_id, project_id, category, content,
        source="tool",
        source_ref=kwargs.get("conversation_id"),
    )
    logger.info("Stored project fact for %s via tool", project_id)
    return f"Saved to project memory ({entry['category']}): {entry['content']}"
