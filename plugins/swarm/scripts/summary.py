#!/usr/bin/env python3
"""
Orchestration Summary Reconstruction

Folds classified stream events into an OrchestrationSummary. Accumulation
follows arrival order with no deduplication: a tool called twice is recorded
twice, mirroring the external process's action log.
"""
from __future__ import annotations

import copy
import logging
from typing import Any, Dict, Iterable, Optional

from models import (
    AgentRecord, ErrorRecord, EventKind, MemoryRecord,
    OrchestrationSummary, StreamEvent, TaskRecord, ToolCallRecord, ToolCategory,
)

logger = logging.getLogger("swarm")


def _first_str(payload: Dict[str, Any], *keys: str, default: str = "") -> str:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return default


def _agent_record(payload: Dict[str, Any]) -> AgentRecord:
    agent_type = _first_str(payload, "type", "agent_type", "agentType", "role", default="unknown")
    name = _first_str(payload, "name", "agent_name", "id", default=agent_type)
    return AgentRecord(name=name, type=agent_type)


def _task_record(payload: Dict[str, Any]) -> TaskRecord:
    description = _first_str(payload, "description", "task", "title", "objective")
    deps = payload.get("dependencies") or payload.get("depends_on") or []
    if isinstance(deps, str):
        deps = [deps]
    elif not isinstance(deps, (list, tuple)):
        logger.debug(f"Ignoring non-list task dependencies: {deps!r}")
        deps = []
    return TaskRecord(description=description, dependencies=tuple(str(d) for d in deps))


def _memory_record(payload: Dict[str, Any]) -> MemoryRecord:
    return MemoryRecord(
        key=_first_str(payload, "key", "name"),
        value=payload.get("value"),
        namespace=payload.get("namespace"),
    )


class SummaryBuilder:
    """Incremental fold of StreamEvents into an OrchestrationSummary.

    The summary only grows until finalize(); afterwards it is frozen and
    finalize() keeps returning the same summary.
    """

    def __init__(self) -> None:
        self._summary = OrchestrationSummary()

    @property
    def finalized(self) -> bool:
        return self._summary.finalized

    @property
    def event_count(self) -> int:
        return self._summary.event_count

    @property
    def tool_call_count(self) -> int:
        return self._summary.tool_call_count

    def _check_open(self) -> None:
        if self._summary.finalized:
            raise RuntimeError("summary already finalized")

    def apply(self, event: StreamEvent) -> None:
        self._check_open()
        summary = self._summary
        summary.event_count += 1

        if event.kind is EventKind.TOOL_CALL:
            summary.tool_call_count += 1
            if event.category is ToolCategory.AGENT_SPAWN:
                summary.agents.append(_agent_record(event.payload))
            elif event.category is ToolCategory.TASK_CREATE:
                summary.tasks.append(_task_record(event.payload))
            elif event.category is ToolCategory.MEMORY_STORE:
                summary.memory.append(_memory_record(event.payload))
            else:
                summary.tool_calls.append(ToolCallRecord(tool=event.tool or "", payload=event.payload))
        elif event.kind is EventKind.ERROR:
            summary.errors.append(ErrorRecord(
                kind="StreamError", message=event.message or "", line_no=event.line_no,
            ))
        else:
            summary.other.append(event.raw)

    def record_error(self, kind: str, message: str, line_no: Optional[int] = None) -> None:
        """Record a local error (parse, process, cancellation) on the summary."""
        self._check_open()
        self._summary.errors.append(ErrorRecord(kind=kind, message=message, line_no=line_no))

    def snapshot(self) -> OrchestrationSummary:
        """Copy of the summary so far, safe to serialize while folding continues."""
        return copy.deepcopy(self._summary)

    def finalize(self) -> OrchestrationSummary:
        if not self._summary.finalized:
            self._summary.finalized = True
            logger.debug(f"Summary finalized: {self._summary.counts()}")
        return self._summary


def fold_events(events: Iterable[StreamEvent]) -> OrchestrationSummary:
    """Fold a complete event sequence into a finalized summary."""
    builder = SummaryBuilder()
    for event in events:
        builder.apply(event)
    return builder.finalize()
