"""Tool execution dispatch: lookup, argument validation and error conversion."""

import asyncio
import dataclasses
import json
import logging
from typing import Any, Dict, List, Optional

from agent.events import AgentCancelled, ClientDisconnected
from tools._common import ToolContext, ToolResult
from tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

_JSON_TYPES = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
}


def validate_arguments(schema: Dict[str, Any], args: Dict[str, Any]) -> List[str]:
    """Structural check of tool arguments against a JSON schema (top level only)."""
    problems = []
    if not isinstance(args, dict):
        return ["arguments must be an object"]
    properties = schema.get("properties", {})
    for name in schema.get("required", []):
        if args.get(name) is None:
            problems.append(f"missing required argument '{name}'")
    for name, value in args.items():
        prop = properties.get(name)
        if prop is None or value is None:
            continue
        expected = _JSON_TYPES.get(prop.get("type"))
        if expected is not None:
            # bool is an int subclass; keep them apart
            if isinstance(value, bool) and prop.get("type") in ("integer", "number"):
                problems.append(f"'{name}' must be {prop['type']}")
                continue
            if not isinstance(value, expected):
                problems.append(f"'{name}' must be {prop['type']}")
                continue
        if "enum" in prop and value not in prop["enum"]:
            problems.append(f"'{name}' must be one of {', '.join(map(str, prop['enum']))}")
    return problems


def _coerce(value: Any) -> ToolResult:
    if isinstance(value, ToolResult):
        return value
    if isinstance(value, str):
        return ToolResult(success=True, output=value)
    if value is None:
        return ToolResult(success=True, output="")
    return ToolResult(success=True, output=json.dumps(value, ensure_ascii=False, default=str))


async def execute_tool(
    registry: ToolRegistry,
    name: str,
    inputs: Dict[str, Any],
    context: ToolContext,
    tool_call_id: Optional[str] = None,
) -> ToolResult:
    """Execute a tool by name. Failures come back as error results, never exceptions.

    Only cancellation and client disconnects propagate: they unwind the whole run.
    """
    descriptor = registry.get(name)
    if descriptor is None:
        return ToolResult(success=False, output="", error=f"Unknown tool: {name}")

    problems = validate_arguments(descriptor.input_schema, inputs)
    if problems:
        return ToolResult(
            success=False, output="",
            error=f"Invalid arguments for {descriptor.name}: {'; '.join(problems)}",
        )

    if tool_call_id is not None:
        context = dataclasses.replace(context, tool_call_id=tool_call_id)
    try:
        if descriptor.is_async:
            value = await descriptor.execute(inputs, context)
        else:
            value = await asyncio.to_thread(descriptor.execute, inputs, context)
    except (AgentCancelled, ClientDisconnected):
        raise
    except Exception as e:
        logger.exception(f"Tool execution error: {descriptor.name}")
        return ToolResult(success=False, output="", error=f"Tool error: {e}")
    return _coerce(value)
