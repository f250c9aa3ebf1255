#!/usr/bin/env python3
"""
Headless Swarm Stream Parsers

Functions for decoding the external process's line-delimited JSON output
into classified StreamEvents.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional

from errors import ParseError
from models import EventKind, StreamEvent, ToolCategory

logger = logging.getLogger("swarm")

# Strips "mcp__<server>__" so categories match regardless of server name
MCP_PREFIX_PATTERN = re.compile(r"^mcp__.+?__")

AGENT_SPAWN_TOOLS = {"agent_spawn", "agent-spawn", "spawn_agent", "agents_spawn"}
TASK_CREATE_TOOLS = {"task_create", "task-create", "create_task", "task_orchestrate"}
MEMORY_STORE_TOOLS = {"memory_store", "memory-store", "store_memory"}
MEMORY_USAGE_TOOLS = {"memory_usage", "memory"}

# Longest line buffered before it is rejected as malformed
MAX_LINE_BYTES = 16 * 1024 * 1024

# Keys that may carry a tool call's arguments, in preference order
PAYLOAD_KEYS = ("input", "arguments", "payload", "params")


def bare_tool_name(name: str) -> str:
    """Tool name without its MCP server prefix, lowercased."""
    return MCP_PREFIX_PATTERN.sub("", name).lower()


def classify_tool(name: str, payload: Optional[Dict[str, Any]] = None) -> ToolCategory:
    """Route a tool name to a known category, GENERIC if unmatched."""
    bare = bare_tool_name(name)
    if bare in AGENT_SPAWN_TOOLS:
        return ToolCategory.AGENT_SPAWN
    if bare in TASK_CREATE_TOOLS:
        return ToolCategory.TASK_CREATE
    if bare in MEMORY_STORE_TOOLS:
        return ToolCategory.MEMORY_STORE
    if bare in MEMORY_USAGE_TOOLS and (payload or {}).get("action") == "store":
        return ToolCategory.MEMORY_STORE
    return ToolCategory.GENERIC


def _payload_of(obj: Dict[str, Any], skip: tuple) -> Dict[str, Any]:
    for key in PAYLOAD_KEYS:
        value = obj.get(key)
        if isinstance(value, dict):
            return value
        if isinstance(value, str):
            # Some emitters double-encode arguments
            try:
                decoded = json.loads(value)
            except json.JSONDecodeError:
                continue
            if isinstance(decoded, dict):
                return decoded
    return {k: v for k, v in obj.items() if k not in skip}


def _tool_event(name: str, payload: Dict[str, Any], line_no: int, raw: Dict[str, Any]) -> StreamEvent:
    return StreamEvent(
        kind=EventKind.TOOL_CALL,
        line_no=line_no,
        tool=name,
        category=classify_tool(name, payload),
        payload=payload,
        raw=raw,
    )


def _error_message(obj: Dict[str, Any]) -> str:
    for key in ("message", "error", "result"):
        value = obj.get(key)
        if isinstance(value, str) and value:
            return value
        if isinstance(value, dict) and value.get("message"):
            return str(value["message"])
    return json.dumps(obj, ensure_ascii=False, sort_keys=True)


def decode_line(line: str, line_no: int = 0) -> List[StreamEvent]:
    """Decode one output line into its StreamEvents.

    Most lines give exactly one event. A Claude "assistant" message gives one
    tool_call per tool_use block it carries.

    Raises:
        ParseError: If the line is not a JSON object, or a tool call in it
            carries arguments that are not an object
    """
    try:
        obj = json.loads(line)
    except json.JSONDecodeError as e:
        raise ParseError(f"invalid JSON: {e}", line_no=line_no, line=line) from e

    if not isinstance(obj, dict):
        raise ParseError(
            f"expected a JSON object, got {type(obj).__name__}", line_no=line_no, line=line
        )

    event_type = obj.get("type")

    if event_type == "tool_call":
        name = obj.get("tool") or obj.get("name")
        if not isinstance(name, str) or not name:
            raise ParseError("tool_call without a tool name", line_no=line_no, line=line)
        return [_tool_event(name, _payload_of(obj, ("type", "tool", "name")), line_no, obj)]

    if event_type == "error":
        return [StreamEvent(
            kind=EventKind.ERROR, line_no=line_no, message=_error_message(obj), raw=obj,
        )]

    if event_type == "assistant":
        message = obj.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, list):
            events = []
            for block in content:
                if not (
                    isinstance(block, dict)
                    and block.get("type") == "tool_use"
                    and isinstance(block.get("name"), str)
                ):
                    continue
                tool_input = block.get("input") or {}
                if not isinstance(tool_input, dict):
                    raise ParseError(
                        f"tool_use '{block['name']}' input must be an object, "
                        f"got {type(tool_input).__name__}",
                        line_no=line_no, line=line,
                    )
                events.append(_tool_event(block["name"], tool_input, line_no, block))
            if events:
                return events

    if event_type == "result" and obj.get("is_error"):
        return [StreamEvent(
            kind=EventKind.ERROR, line_no=line_no, message=_error_message(obj), raw=obj,
        )]

    return [StreamEvent(kind=EventKind.OTHER, line_no=line_no, raw=obj)]


class StreamParser:
    """Line-oriented parser resilient to arbitrary chunking.

    Malformed lines are logged, recorded in `errors`, and skipped. A line
    longer than max_line_bytes counts as one malformed line and is discarded
    up to its terminating newline, so buffering stays bounded.
    """

    def __init__(self, max_line_bytes: int = MAX_LINE_BYTES) -> None:
        self.errors: List[ParseError] = []
        self.line_count = 0
        self.max_line_bytes = max_line_bytes
        self._buffer = b""
        self._discarding = False

    def _record(self, error: ParseError) -> None:
        logger.warning(f"Skipping malformed stream line: {error}")
        self.errors.append(error)

    def _reject_oversized(self) -> None:
        self.line_count += 1
        self._record(ParseError(
            f"line exceeds {self.max_line_bytes} bytes", line_no=self.line_count,
        ))

    def feed(self, line: str) -> List[StreamEvent]:
        """Decode one complete line. Blank lines give no events."""
        line = line.strip()
        if not line:
            return []
        self.line_count += 1
        try:
            return decode_line(line, self.line_count)
        except ParseError as e:
            self._record(e)
            return []

    def feed_bytes(self, chunk: bytes) -> List[StreamEvent]:
        """Buffer raw bytes and decode every complete line they finish."""
        self._buffer += chunk
        events: List[StreamEvent] = []
        while b"\n" in self._buffer:
            raw_line, self._buffer = self._buffer.split(b"\n", 1)
            if self._discarding:
                # Tail of an oversized line already counted
                self._discarding = False
                continue
            if len(raw_line) > self.max_line_bytes:
                self._reject_oversized()
                continue
            events.extend(self.feed(raw_line.decode("utf-8", errors="replace")))

        if self._discarding:
            self._buffer = b""
        elif len(self._buffer) > self.max_line_bytes:
            self._reject_oversized()
            self._buffer = b""
            self._discarding = True
        return events

    def close(self) -> List[StreamEvent]:
        """Flush a trailing line that had no newline."""
        rest, self._buffer = self._buffer, b""
        if self._discarding:
            self._discarding = False
            return []
        if not rest:
            return []
        return self.feed(rest.decode("utf-8", errors="replace"))


async def iter_events(
    chunks: AsyncIterable[bytes], parser: Optional[StreamParser] = None
) -> AsyncIterator[StreamEvent]:
    """Yield classified events in arrival order until the source is exhausted.

    `chunks` is any async iterable of bytes: an asyncio.StreamReader, or a
    queue drained by the caller. Chunk boundaries need not match lines.
    """
    parser = parser or StreamParser()
    async for chunk in chunks:
        for event in parser.feed_bytes(chunk):
            yield event
    for event in parser.close():
        yield event
