#!/usr/bin/env python3
"""
Headless Swarm Utilities

Common helpers for file I/O, validation, and the per-session live log.
"""
from __future__ import annotations

import datetime as dt
import json
import logging
import os
import re
import stat
import tempfile
from pathlib import Path
from typing import Any, IO, Optional

logger = logging.getLogger("swarm")

# Valid characters for profile names (security: prevent path traversal)
VALID_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


class LiveLog:
    """Timestamped progress log for real-time monitoring via tail -f.

    One instance per session so concurrent sessions never share a handle.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = path
        self._file: Optional[IO[str]] = None

    def open(self) -> "LiveLog":
        if self.path is not None and self._file is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self.path, "a", encoding="utf-8")
        return self

    def write(self, msg: str, prefix: str = "") -> None:
        if self._file:
            ts = dt.datetime.now().strftime("%H:%M:%S")
            line = f"[{ts}] {prefix}{msg}\n" if prefix else f"[{ts}] {msg}\n"
            self._file.write(line)
            self._file.flush()

    def close(self) -> None:
        if self._file:
            self._file.close()
            self._file = None

    def __enter__(self) -> "LiveLog":
        return self.open()

    def __exit__(self, *exc: Any) -> None:
        self.close()


def utc_now_iso() -> str:
    """Return current UTC time in ISO format."""
    return dt.datetime.now(dt.timezone.utc).isoformat()


def read_text(path: Path) -> str:
    """Read text from file, return empty string if file doesn't exist."""
    return path.read_text(encoding="utf-8") if path.exists() else ""


def tail_text(path: Path, max_chars: int = 500) -> str:
    """Return the last max_chars of a text file, stripped."""
    text = read_text(path)
    return text[-max_chars:].strip()


def ensure_secure_dir(path: Path) -> None:
    """Create directory with 0700 permissions (owner only) for security."""
    path.mkdir(parents=True, exist_ok=True)
    path.chmod(stat.S_IRWXU)  # 0700: rwx for owner only


def write_text_atomic(path: Path, text: str) -> None:
    """Atomic write: write to temp file, fsync, then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def load_json(path: Path, default: Any) -> Any:
    """Load JSON from file. Returns default if file missing or invalid."""
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        logger.warning(f"Invalid JSON in {path}: {e}")
        return default


def save_json_atomic(path: Path, obj: Any) -> None:
    """Save object as JSON with atomic write."""
    write_text_atomic(path, json.dumps(obj, indent=2, ensure_ascii=False))


def validate_name(name: str, kind: str) -> None:
    """Validate profile name to prevent path traversal."""
    if not VALID_NAME_PATTERN.match(name):
        raise ValueError(
            f"Invalid {kind} name '{name}': must contain only alphanumeric, underscore, or hyphen"
        )


def env_flag(value: Optional[str]) -> bool:
    """Interpret an environment variable value as a boolean signal."""
    if value is None:
        return False
    return value.strip().lower() not in ("", "0", "false", "no", "off")
