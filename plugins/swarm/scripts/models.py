#!/usr/bin/env python3
"""
Headless Swarm Data Models

Data classes for headless orchestration: sessions, execution config,
stream events, and the orchestration summary folded from them.
"""
from __future__ import annotations

import dataclasses
import json
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger("swarm")

# Bound applied to headless runs when the caller gives none
DEFAULT_MAX_TURNS = 50
DEFAULT_COMMAND: Tuple[str, ...] = ("claude",)


class SessionStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SessionStatus.COMPLETE, SessionStatus.FAILED)


# Allowed status transitions; terminal states have none
SESSION_TRANSITIONS: Dict[SessionStatus, Tuple[SessionStatus, ...]] = {
    SessionStatus.CREATED: (SessionStatus.RUNNING, SessionStatus.FAILED),
    SessionStatus.RUNNING: (SessionStatus.COMPLETE, SessionStatus.FAILED),
    SessionStatus.COMPLETE: (),
    SessionStatus.FAILED: (),
}


class OutputFormat(str, Enum):
    STREAM_JSON = "stream-json"


class EventKind(str, Enum):
    TOOL_CALL = "tool_call"
    ERROR = "error"
    OTHER = "other"


class ToolCategory(str, Enum):
    AGENT_SPAWN = "agent_spawn"
    TASK_CREATE = "task_create"
    MEMORY_STORE = "memory_store"
    GENERIC = "generic"


@dataclasses.dataclass
class Session:
    """One tracked invocation of the launcher."""
    session_id: str
    created_at: str
    output_path: Path
    error_path: Path
    summary_path: Path
    status: SessionStatus = SessionStatus.CREATED
    task: str = ""
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    exit_code: Optional[int] = None
    pid: Optional[int] = None
    finished_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "created_at": self.created_at,
            "output_path": str(self.output_path),
            "error_path": str(self.error_path),
            "summary_path": str(self.summary_path),
            "status": self.status.value,
            "task": self.task,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "exit_code": self.exit_code,
            "pid": self.pid,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Session":
        return cls(
            session_id=d["session_id"],
            created_at=d.get("created_at", ""),
            output_path=Path(d["output_path"]),
            error_path=Path(d["error_path"]),
            summary_path=Path(d["summary_path"]),
            status=SessionStatus(d.get("status", "created")),
            task=d.get("task", ""),
            error_kind=d.get("error_kind"),
            error_message=d.get("error_message"),
            exit_code=d.get("exit_code"),
            pid=d.get("pid"),
            finished_at=d.get("finished_at"),
        )


@dataclasses.dataclass(frozen=True)
class McpServer:
    """One collaborator server entry from the MCP descriptor."""
    name: str
    command: str
    args: Tuple[str, ...] = ()
    type: str = "stdio"

    def to_dict(self) -> Dict[str, Any]:
        return {"command": self.command, "args": list(self.args), "type": self.type}


@dataclasses.dataclass(frozen=True)
class ExecutionConfig:
    """Everything the launcher needs to invoke the external agent process."""
    headless: bool
    mcp_servers: Tuple[McpServer, ...] = ()
    allowed_tools: Tuple[str, ...] = ()
    max_turns: Optional[int] = None
    fallback_model: Optional[str] = None
    output_format: Optional[OutputFormat] = None
    command: Tuple[str, ...] = DEFAULT_COMMAND
    model: Optional[str] = None
    skip_permissions: bool = False
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if self.max_turns is not None and self.max_turns <= 0:
            raise ValueError(f"max_turns must be a positive integer, got {self.max_turns}")
        if not self.command:
            raise ValueError("command must name the external agent binary")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")


@dataclasses.dataclass
class StreamEvent:
    """One classified unit decoded from the external process's output."""
    kind: EventKind
    line_no: int
    tool: Optional[str] = None
    category: Optional[ToolCategory] = None
    payload: Dict[str, Any] = dataclasses.field(default_factory=dict)
    message: Optional[str] = None
    raw: Dict[str, Any] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass(frozen=True)
class AgentRecord:
    name: str
    type: str


@dataclasses.dataclass(frozen=True)
class TaskRecord:
    description: str
    dependencies: Tuple[str, ...] = ()


@dataclasses.dataclass(frozen=True)
class MemoryRecord:
    key: str
    value: Any
    namespace: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class ToolCallRecord:
    tool: str
    payload: Dict[str, Any]


@dataclasses.dataclass(frozen=True)
class ErrorRecord:
    kind: str
    message: str
    line_no: Optional[int] = None


@dataclasses.dataclass
class OrchestrationSummary:
    """Aggregated view of what the external process did during a session."""
    agents: List[AgentRecord] = dataclasses.field(default_factory=list)
    tasks: List[TaskRecord] = dataclasses.field(default_factory=list)
    memory: List[MemoryRecord] = dataclasses.field(default_factory=list)
    tool_calls: List[ToolCallRecord] = dataclasses.field(default_factory=list)
    other: List[Dict[str, Any]] = dataclasses.field(default_factory=list)
    errors: List[ErrorRecord] = dataclasses.field(default_factory=list)
    tool_call_count: int = 0
    event_count: int = 0
    finalized: bool = False

    def is_empty(self) -> bool:
        """True when nothing was orchestrated (no agents, tasks or memory)."""
        return not (self.agents or self.tasks or self.memory)

    def counts(self) -> Dict[str, int]:
        return {
            "agents": len(self.agents),
            "tasks": len(self.tasks),
            "memory": len(self.memory),
            "tool_calls": self.tool_call_count,
            "errors": len(self.errors),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agents": [{"name": a.name, "type": a.type} for a in self.agents],
            "tasks": [
                {"description": t.description, "dependencies": list(t.dependencies)}
                for t in self.tasks
            ],
            "memory": [
                {"key": m.key, "value": m.value, "namespace": m.namespace}
                for m in self.memory
            ],
            "tool_calls": [{"tool": c.tool, "payload": c.payload} for c in self.tool_calls],
            "other": self.other,
            "errors": [
                {"kind": e.kind, "message": e.message, "line_no": e.line_no}
                for e in self.errors
            ],
            "counts": self.counts(),
            "event_count": self.event_count,
            "finalized": self.finalized,
        }

    def to_json(self) -> str:
        """Stable serialization: equal summaries give byte-identical text."""
        return json.dumps(self.to_dict(), indent=2, sort_keys=True, ensure_ascii=False, default=str)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "OrchestrationSummary":
        return cls(
            agents=[AgentRecord(a.get("name", ""), a.get("type", "")) for a in d.get("agents", [])],
            tasks=[
                TaskRecord(t.get("description", ""), tuple(t.get("dependencies", [])))
                for t in d.get("tasks", [])
            ],
            memory=[
                MemoryRecord(m.get("key", ""), m.get("value"), m.get("namespace"))
                for m in d.get("memory", [])
            ],
            tool_calls=[
                ToolCallRecord(c.get("tool", ""), c.get("payload", {}))
                for c in d.get("tool_calls", [])
            ],
            other=d.get("other", []),
            errors=[
                ErrorRecord(e.get("kind", ""), e.get("message", ""), e.get("line_no"))
                for e in d.get("errors", [])
            ],
            tool_call_count=d.get("counts", {}).get("tool_calls", 0),
            event_count=d.get("event_count", 0),
            finalized=d.get("finalized", False),
        )
