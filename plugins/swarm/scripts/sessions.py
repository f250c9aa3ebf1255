#!/usr/bin/env python3
"""
Headless Swarm Session Tracking

Issues session identifiers, lays out per-session files, and owns every
status transition. All paths include the session id so concurrent sessions
never collide on disk.
"""
from __future__ import annotations

import logging
import re
import secrets
from pathlib import Path
from typing import Dict, List, Optional

from models import (
    SESSION_TRANSITIONS, OrchestrationSummary, Session, SessionStatus,
)
from utils import ensure_secure_dir, load_json, save_json_atomic, utc_now_iso, write_text_atomic

logger = logging.getLogger("swarm")

SESSION_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")
LATEST = "latest"

OUTPUT_FILE = "stream.jsonl"
ERROR_FILE = "errors.log"
SUMMARY_FILE = "summary.json"
SESSION_FILE = "session.json"
MCP_FILE = "mcp.json"
LIVE_FILE = "live.log"


def validate_session_id(session_id: str) -> None:
    """Reject anything that is not a 128-bit hex token (path traversal guard)."""
    if not SESSION_ID_PATTERN.match(session_id):
        raise ValueError(f"Invalid session id '{session_id}': expected 32 hex characters")


class SessionTracker:
    """Filesystem-backed registry of sessions under <state_dir>/sessions/."""

    def __init__(self, state_dir: Path):
        self.state_dir = state_dir
        self.sessions_dir = state_dir / "sessions"

    def new_session_id(self) -> str:
        while True:
            session_id = secrets.token_hex(16)
            if not (self.sessions_dir / session_id).exists():
                return session_id

    def session_dir(self, session_id: str) -> Path:
        validate_session_id(session_id)
        return self.sessions_dir / session_id

    def paths_for(self, session_id: str) -> Dict[str, Path]:
        """Deterministic file names for a session."""
        base = self.session_dir(session_id)
        return {
            "dir": base,
            "output": base / OUTPUT_FILE,
            "error": base / ERROR_FILE,
            "summary": base / SUMMARY_FILE,
            "session": base / SESSION_FILE,
            "mcp": base / MCP_FILE,
            "live": base / LIVE_FILE,
        }

    def _save(self, session: Session) -> None:
        save_json_atomic(self.paths_for(session.session_id)["session"], session.to_dict())

    def _transition(self, session: Session, status: SessionStatus) -> None:
        if session.status.terminal:
            raise ValueError(
                f"Session {session.session_id} is already {session.status.value}"
            )
        if status not in SESSION_TRANSITIONS[session.status]:
            raise ValueError(
                f"Session {session.session_id}: cannot go from {session.status.value} to {status.value}"
            )
        logger.debug(f"Session {session.session_id}: {session.status.value} -> {status.value}")
        session.status = status

    def _update_latest(self, session_id: str) -> None:
        latest_link = self.sessions_dir / LATEST
        if latest_link.is_symlink() or latest_link.exists():
            latest_link.unlink()
        latest_link.symlink_to(session_id)  # relative symlink within sessions/

    def create(self, task: str, session_id: Optional[str] = None) -> Session:
        """Create a session in the `created` state.

        A pre-issued id (background runs) is adopted if its record is still
        `created`; any other existing record is an error.
        """
        if session_id is None:
            session_id = self.new_session_id()
        paths = self.paths_for(session_id)

        if paths["session"].exists():
            existing = self.get(session_id)
            if existing is None or existing.status is not SessionStatus.CREATED:
                state = "finished" if existing is not None and existing.status.terminal else "started"
                raise ValueError(f"Session {session_id} already exists ({state})")
            return existing

        ensure_secure_dir(self.sessions_dir)
        ensure_secure_dir(paths["dir"])
        session = Session(
            session_id=session_id,
            created_at=utc_now_iso(),
            output_path=paths["output"],
            error_path=paths["error"],
            summary_path=paths["summary"],
            task=task,
        )
        self._save(session)
        self._update_latest(session_id)
        logger.info(f"Session {session_id} created")
        return session

    def mark_running(self, session: Session, pid: Optional[int] = None) -> None:
        self._transition(session, SessionStatus.RUNNING)
        session.pid = pid
        self._save(session)

    def write_summary(self, session: Session, summary: OrchestrationSummary) -> None:
        """Persist the summary (a snapshot while running, final afterwards)."""
        write_text_atomic(session.summary_path, summary.to_json() + "\n")

    def finalize(
        self,
        session: Session,
        summary: OrchestrationSummary,
        exit_code: Optional[int],
        error_kind: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Session:
        """Write the final summary and settle the session's terminal status.

        A zero exit with nothing orchestrated is a failure (EmptyOutput),
        never a success.
        """
        if error_kind is None and exit_code not in (0, None):
            error_kind = "ProcessError"
            error_message = error_message or f"external process exited with code {exit_code}"
        if error_kind is None and summary.is_empty():
            error_kind = "EmptyOutput"
            error_message = "external process produced no agents, tasks or memory entries"

        status = SessionStatus.FAILED if error_kind else SessionStatus.COMPLETE
        self._transition(session, status)
        session.exit_code = exit_code
        session.error_kind = error_kind
        session.error_message = error_message
        session.finished_at = utc_now_iso()

        self.write_summary(session, summary)
        self._save(session)
        logger.info(f"Session {session.session_id} {status.value}: {summary.counts()}")
        return session

    def fail(self, session: Session, error_kind: str, message: str) -> Session:
        """Fail a session that never reached `running` (launch failure)."""
        self._transition(session, SessionStatus.FAILED)
        session.error_kind = error_kind
        session.error_message = message
        session.finished_at = utc_now_iso()
        self._save(session)
        logger.error(f"Session {session.session_id} failed: {error_kind}: {message}")
        return session

    def get(self, session_id: str) -> Optional[Session]:
        """Current state of a session, or None if unknown. Accepts 'latest'."""
        if session_id == LATEST:
            latest_link = self.sessions_dir / LATEST
            if not latest_link.is_symlink():
                return None
            session_id = latest_link.resolve().name
        data = load_json(self.paths_for(session_id)["session"], None)
        if not data:
            return None
        return Session.from_dict(data)

    def load_summary(self, session: Session) -> Optional[OrchestrationSummary]:
        data = load_json(session.summary_path, None)
        if data is None:
            return None
        return OrchestrationSummary.from_dict(data)

    def list_sessions(self) -> List[Session]:
        """All known sessions, newest first."""
        if not self.sessions_dir.exists():
            return []
        sessions = []
        for child in self.sessions_dir.iterdir():
            if child.is_symlink() or not SESSION_ID_PATTERN.match(child.name):
                continue
            session = self.get(child.name)
            if session:
                sessions.append(session)
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return sessions
