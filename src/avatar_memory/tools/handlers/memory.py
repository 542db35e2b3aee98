"""Tools that let the assistant store, load and recall memories."""

from __future__ import annotations

from pathlib import Path
import re

from avatar_memory.config import memory as memory_cfg
from avatar_memory.memory import QueryOptions

from .. import Tool, ToolExecutionError, ToolResult, ToolSpec, register_tool

import logging
logger = logging.getLogger(__name__)

_EXPLICIT_SOURCE = "user_explicit"
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_MAX_RESULTS = max(1, memory_cfg.SESSION_LIMIT + memory_cfg.PERSISTENT_LIMIT)


def chunk_paragraphs(content: str) -> list[str]:
    """Split ``content`` on blank lines, dropping empty chunks."""
    return [c.strip() for c in _PARAGRAPH_BREAK.split(content) if c.strip()]


@register_tool(
    ToolSpec(
        name="remember_this",
        description="Store a specific piece of text in the assistant's memory (session or persistent). Use this when the user explicitly asks you to remember a fact or instruction.",
        parameters={
            "type": "object",
            "properties": {
                "content": {
                    "type": "string",
                    "description": "The text content to be remembered.",
                },
                "target_memory": {
                    "type": "string",
                    "enum": ["session", "persistent"],
                    "description": "'session' (default) lasts for this conversation, 'persistent' is long-term.",
                    "default": "session",
                },
            },
            "required": ["content"],
        },
    )
)
class RememberThisTool(Tool):
    async def run(self, memory, session_id, *, content=None, target_memory="session") -> ToolResult:
        if not content or not isinstance(content, str):
            raise ToolExecutionError("'content' must be supplied as a string", code="invalid_arguments")

        if target_memory not in ("session", "persistent"):
            raise ToolExecutionError("'target_memory' must be 'session' or 'persistent'", code="invalid_arguments")

        try:
            if target_memory == "persistent":
                result = await memory.add_persistent_items(
                    [{"text": content, "source_ids": [_EXPLICIT_SOURCE]}]
                )
                if not result.added:
                    return ToolResult(content="Already remembered a very similar fact.")
            else:
                await memory.add_session_items(
                    session_id, [{"text": content, "source": _EXPLICIT_SOURCE}]
                )
        except Exception as exc:
            raise ToolExecutionError(
                f"Failed to store content in {target_memory} memory: {exc}", code="memory_store_failed"
            ) from exc

        return ToolResult(content=f"Stored in {target_memory} memory.")


@register_tool(
    ToolSpec(
        name="load_document_to_session_memory",
        description="Load a text document from a file path, split it into paragraphs and store them in the current session's memory for context.",
        parameters={
            "type": "object",
            "properties": {
                "file_path": {
                    "type": "string",
                    "description": "Path to the document, relative to the working directory.",
                },
            },
            "required": ["file_path"],
        },
    )
)
class LoadDocumentTool(Tool):
    async def run(self, memory, session_id, *, file_path=None) -> ToolResult:
        if not file_path or not isinstance(file_path, str):
            raise ToolExecutionError("'file_path' must be supplied as a string", code="invalid_arguments")

        path = Path(file_path).expanduser().resolve()
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise ToolExecutionError(f"File not found at path: {file_path}", code="file_not_found") from exc
        except OSError as exc:
            raise ToolExecutionError(
                f"Failed to load document {file_path!r}: {exc}", code="load_document_failed"
            ) from exc

        chunks = chunk_paragraphs(text)
        if not chunks:
            return ToolResult(content=f"File {file_path!r} was empty or contained no text paragraphs.")

        logger.info("Storing %d chunks from %s", len(chunks), file_path)
        await memory.add_session_items(
            session_id, [{"text": chunk, "source": file_path} for chunk in chunks]
        )
        return ToolResult(
            content=f"Loaded {len(chunks)} chunks from {file_path!r} into session memory."
        )


@register_tool(
    ToolSpec(
        name="commit_session_memory_to_persistent",
        description="Move the facts gathered in this conversation's memory into long-term persistent memory, skipping ones already known.",
        parameters={"type": "object", "properties": {}},
    )
)
class CommitSessionTool(Tool):
    async def run(self, memory, session_id) -> ToolResult:
        try:
            result = await memory.commit_session_to_persistent(session_id)
        except Exception as exc:
            raise ToolExecutionError(
                f"Failed to commit session memory: {exc}", code="memory_commit_failed"
            ) from exc
        return ToolResult(
            content=f"Committed session memory: {result.added} added, {result.skipped} skipped."
        )


@register_tool(
    ToolSpec(
        name="search_memory",
        description="Search session and long-term memory for facts related to a query. Use this when the user refers to something they told you before.",
        parameters={
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Natural language search query.",
                },
                "limit": {
                    "type": "integer",
                    "description": f"Results per memory tier (capped at {_MAX_RESULTS}).",
                    "minimum": 1,
                    "maximum": _MAX_RESULTS,
                },
                "scope": {
                    "type": "string",
                    "enum": ["all", "session", "persistent"],
                    "default": "all",
                },
            },
            "required": ["query"],
        },
    )
)
class SearchMemoryTool(Tool):
    async def run(self, memory, session_id, *, query=None, limit=None, scope="all") -> ToolResult:
        if not query or not isinstance(query, str):
            raise ToolExecutionError("'query' must be supplied as a string", code="invalid_arguments")

        if limit is not None and not isinstance(limit, int):
            raise ToolExecutionError("'limit' must be an integer", code="invalid_arguments")
        if scope not in ("all", "session", "persistent"):
            raise ToolExecutionError("'scope' must be all, session or persistent", code="invalid_arguments")

        options = QueryOptions(
            session_limit=memory_cfg.SESSION_LIMIT if limit is None else max(1, min(_MAX_RESULTS, limit)),
            persistent_limit=memory_cfg.PERSISTENT_LIMIT if limit is None else max(1, min(_MAX_RESULTS, limit)),
            filter_type=scope,
        )
        results = await memory.query_memories(query, session_id, options)
        if not results:
            return ToolResult(content="No related memories were found.")

        lines: list[str] = []
        for idx, item in enumerate(results, start=1):
            source = ", ".join(item.source) if isinstance(item.source, list) else item.source
            lines.append(f"{idx}. {item.text} ({item.tier}, source: {source}, distance: {item.score:.3f})")
        return ToolResult(content="\n".join(lines))
