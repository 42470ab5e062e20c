"""
Tool registry.

Collects the assistant's memory tools and formats them for OpenAI function
calling. Handlers receive the tool arguments plus db, tenant_id, user_id,
project_id and conversation_id as keyword context.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from ..core.flags import get_flags

logger = logging.getLogger(__name__)


class ToolRisk(str, Enum):
    READ = "read"
    WRITE = "write"


@dataclass
class RegisteredTool:
    name: str
    description: str
    parameters: dict
    handler: Callable
    risk: ToolRisk = ToolRisk.READ

    def to_openai(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
                "strict": False,
            },
        }


_tools: dict[str, RegisteredTool] = {}


def tool(
    name: str,
    description: str,
    parameters: dict,
    risk: ToolRisk = ToolRisk.READ,
):
    """
    Register an async function as an LLM-callable tool.

    Args:
        name:        Tool name, unique across the registry
        description: What it does, when to use it, what it returns
        parameters:  JSON Schema for the tool's arguments
        risk:        Whether the tool writes data
    """

    def decorator(func: Callable):
        if name in _tools:
            raise ValueError(f"Tool {name!r} is already registered")
        schema = {"type": "object", "additionalProperties": False, **parameters}
        _tools[name] = RegisteredTool(name, description, schema, func, risk)
        logger.debug("Registered tool: %s [%s]", name, risk.value)
        return func

    return decorator


def get_tools_for_llm() -> list[dict]:
    return [t.to_openai() for t in _tools.values()]


def get_tool_handler(name: str) -> Optional[Callable]:
    registered = _tools.get(name)
    return registered.handler if registered else None


def get_tool_names() -> list[str]:
    return list(_tools)


def get_tool_risk(name: str) -> str:
    registered = _tools.get(name)
    return (registered.risk if registered else ToolRisk.READ).value


_JSON_TYPES = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
}


def validate_arguments(name: str, arguments: dict) -> list[str]:
    """
    Check arguments against the tool's registered schema.
    Returns the problems found; an empty list means the call may go ahead.
    """
    registered = _tools.get(name)
    if registered is None:
        return [f"Unknown tool: {name}"]

    schema = registered.parameters
    properties = schema.get("properties", {})
    errors = [f"missing argument '{key}'" for key in schema.get("required", []) if key not in arguments]

    for key, value in arguments.items():
        prop = properties.get(key)
        if prop is None:
            if schema.get("additionalProperties") is False:
                errors.append(f"unknown argument '{key}'")
            continue
        expected = _JSON_TYPES.get(prop.get("type"))
        # bool is an int subclass, so it never counts as a number here
        if expected and (not isinstance(value, expected) or (isinstance(value, bool) and prop["type"] != "boolean")):
            errors.append(f"'{key}' must be of type {prop['type']}")
        elif "enum" in prop and value not in prop["enum"]:
            errors.append(f"'{key}' must be one of {', '.join(map(str, prop['enum']))}")
    return errors


def init_tools() -> None:
    """Import tool modules so their decorators run. Safe to call more than once."""
    flags = get_flags()
    if flags.enable_memory or flags.enable_project_memory:
        from . import memory_tool  # noqa: F401

    logger.info("Tools ready: %d tools [%s]", len(_tools), ", ".join(get_tool_names()))
