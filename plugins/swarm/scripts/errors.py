#!/usr/bin/env python3
"""
Headless Swarm Error Taxonomy

Fatal errors (configuration, launch) abort an invocation before the external
process runs. The rest are recorded on the session and consumption continues.
"""
from __future__ import annotations

from typing import Optional


class SwarmError(Exception):
    """Base for all launcher errors."""

    kind = "SwarmError"


class ConfigurationError(SwarmError):
    """MCP descriptor or launcher settings missing or malformed."""

    kind = "ConfigurationError"


class LaunchError(SwarmError):
    """The external agent process could not be started."""

    kind = "LaunchError"


class ParseError(SwarmError):
    """A single output line could not be decoded.

    Attributes:
        line_no: 1-based line number within the session's stream
        line: The offending line, truncated for logging
    """

    kind = "ParseError"

    def __init__(self, message: str, line_no: Optional[int] = None, line: str = "") -> None:
        self.line_no = line_no
        self.line = line[:200]
        if line_no is not None:
            message = f"line {line_no}: {message}"
        super().__init__(message)


class ProcessError(SwarmError):
    """The external process exited non-zero after streaming began."""

    kind = "ProcessError"

    def __init__(self, exit_code: int, stderr_tail: str = "") -> None:
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        message = f"external process exited with code {exit_code}"
        if stderr_tail:
            message = f"{message}: {stderr_tail}"
        super().__init__(message)


class Cancelled(SwarmError):
    """The session was terminated before natural completion."""

    kind = "Cancelled"

    def __init__(self, reason: str = "cancelled") -> None:
        self.reason = reason
        super().__init__(reason)


class InternalError(SwarmError):
    """Consuming a session's output failed unexpectedly."""

    kind = "InternalError"
