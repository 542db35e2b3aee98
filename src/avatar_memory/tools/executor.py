"""Tool execution helpers."""

from __future__ import annotations

import json
from typing import Any, Dict

from . import ToolContext, ToolExecutionError, ToolResult, lookup_tool


def parse_arguments(name: str, arguments: str | Dict[str, Any] | None) -> Dict[str, Any]:
    """Decode the model's argument payload (JSON text or an already parsed dict)."""

    if arguments is None:
        return {}
    if not isinstance(arguments, str):
        return dict(arguments)
    if not arguments.strip():
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as exc:
        raise ToolExecutionError(
            f"Invalid JSON arguments for tool '{name}': {exc}", code="invalid_arguments"
        ) from exc
    if not isinstance(parsed, dict):
        raise ToolExecutionError(
            f"Arguments for tool '{name}' must be a JSON object", code="invalid_arguments"
        )
    return parsed


async def execute_tool(
    name: str, arguments: str | Dict[str, Any] | None, *, context: ToolContext
) -> ToolResult:
    """
    Run the memory tool ``name`` against ``context``.

    Failures are raised as :class:`ToolExecutionError` with a ``code`` the
    caller can report back to the model.
    """

    tool = lookup_tool(name)
    parsed_args = parse_arguments(name, arguments)
    try:
        return await tool(context, parsed_args)
    except ToolExecutionError:
        raise
    except TypeError as exc:
        raise ToolExecutionError(str(exc), code="invalid_arguments") from exc
    except Exception as exc:
        raise ToolExecutionError(f"Tool '{name}' execution failed: {exc}") from exc
