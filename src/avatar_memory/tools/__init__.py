"""
Memory tools offered to the conversational model.

Handler modules in ``tools/handlers`` declare tools with::

    from avatar_memory.tools import Tool, ToolSpec, register_tool

    @register_tool(ToolSpec(...))
    class MyTool(Tool):
        async def run(self, memory, session_id, *, query: str) -> ToolResult: ...

Handlers are imported on first lookup. Every call goes through
:meth:`Tool.__call__`, which refuses to run without a memory and a session.
"""

from __future__ import annotations

from dataclasses import dataclass
from importlib import import_module
from pkgutil import iter_modules
from typing import TYPE_CHECKING, Any, ClassVar, Dict, List, Mapping, Tuple, Type

if TYPE_CHECKING:
    from avatar_memory.memory import AssociativeMemory

__all__ = [
    "Tool",
    "ToolContext",
    "ToolResult",
    "ToolSpec",
    "ToolExecutionError",
    "lookup_tool",
    "register_tool",
    "registered_tools",
    "tool_definitions",
]


class ToolExecutionError(RuntimeError):
    """A tool call that could not be completed; ``code`` is machine-readable."""

    def __init__(self, message: str, *, code: str = "tool_failed") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True, slots=True)
class ToolSpec:
    name: str
    description: str
    parameters: Dict[str, Any]

    def as_function(self) -> Dict[str, Any]:
        """Function-calling entry for the chat completions ``tools`` list."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(slots=True)
class ToolContext:
    """The memory and conversation a tool call operates on."""

    memory: "AssociativeMemory | None"
    session_id: str | None

    def require(self) -> Tuple["AssociativeMemory", str]:
        if self.memory is None or not self.session_id:
            raise ToolExecutionError("Memory system not available", code="memory_unavailable")
        return self.memory, self.session_id


@dataclass(slots=True)
class ToolResult:
    """Text handed back to the model as the tool message."""

    content: str


class Tool:
    spec: ClassVar[ToolSpec]

    async def __call__(self, context: ToolContext, arguments: Mapping[str, Any]) -> ToolResult:
        memory, session_id = context.require()
        return await self.run(memory, session_id, **arguments)

    async def run(self, memory: "AssociativeMemory", session_id: str, **arguments: Any) -> ToolResult:
        raise NotImplementedError


_tools: Dict[str, Type[Tool]] = {}
_handlers_loaded = False


def register_tool(spec: ToolSpec):
    """Class decorator binding ``spec`` to a :class:`Tool` subclass."""

    def decorator(cls: Type[Tool]) -> Type[Tool]:
        if not issubclass(cls, Tool):
            raise TypeError(f"{cls.__name__} is not a Tool")
        if spec.name in _tools:
            raise ValueError(f"Duplicate tool name {spec.name!r}")
        cls.spec = spec
        _tools[spec.name] = cls
        return cls

    return decorator


def _load_handlers() -> None:
    global _handlers_loaded
    if _handlers_loaded:
        return
    _handlers_loaded = True

    from . import handlers

    for module in iter_modules(handlers.__path__):
        if not module.name.startswith("_"):
            import_module(f"{handlers.__name__}.{module.name}")


def registered_tools() -> List[ToolSpec]:
    _load_handlers()
    return [cls.spec for cls in _tools.values()]


def tool_definitions() -> List[Dict[str, Any]]:
    """Every memory tool in the shape the chat API expects."""
    return [spec.as_function() for spec in registered_tools()]


def lookup_tool(name: str) -> Tool:
    """Instantiate the tool registered as ``name``."""
    _load_handlers()
    cls = _tools.get(name)
    if cls is None:
        raise ToolExecutionError(f"Unknown tool '{name}'", code="unknown_tool")
    return cls()
