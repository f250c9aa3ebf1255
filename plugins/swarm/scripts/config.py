#!/usr/bin/env python3
"""
Headless Swarm Configuration Loading

Functions for loading launcher settings, profiles, and the MCP server
descriptor, and for building the ExecutionConfig handed to the launcher.
"""
from __future__ import annotations

import json
import logging
import shlex
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import yaml

from errors import ConfigurationError
from models import (
    DEFAULT_COMMAND, DEFAULT_MAX_TURNS,
    ExecutionConfig, McpServer, OutputFormat,
)
from utils import save_json_atomic, validate_name

logger = logging.getLogger("swarm")

DEFAULT_SETTINGS: Dict[str, Any] = {
    "state_dir": ".swarm",
    "command": list(DEFAULT_COMMAND),
    "mcp_config": ".mcp.json",
    "required_server": None,
    "max_turns": None,
    "allowed_tools": [],
    "fallback_model": None,
    "model": None,
    "timeout": None,
    "skip_permissions": False,
    "detect_ci": True,
    "strategy": "auto",
    "mode": "centralized",
    "max_agents": 5,
}

# Server written by `swarm init`
DEFAULT_SERVER = McpServer(
    name="claude-flow",
    command="npx",
    args=("claude-flow@alpha", "mcp", "start"),
)


def _load_mapping(path: Path) -> Any:
    """Parse a YAML or JSON file by extension."""
    text = path.read_text(encoding="utf-8")
    if path.suffix in (".yaml", ".yml"):
        return yaml.safe_load(text)
    return json.loads(text)


def load_settings(path: Optional[Path]) -> Dict[str, Any]:
    """Load launcher settings merged over defaults. Missing file gives defaults."""
    settings = dict(DEFAULT_SETTINGS)
    if path is None or not path.exists():
        return settings

    try:
        raw = _load_mapping(path)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Invalid settings file {path}: {e}") from e

    if raw is None:
        return settings
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Settings file must be a mapping, got: {type(raw).__name__}")

    unknown = sorted(set(raw) - set(DEFAULT_SETTINGS))
    if unknown:
        logger.warning(f"Ignoring unknown settings in {path}: {', '.join(unknown)}")
    settings.update({k: v for k, v in raw.items() if k in DEFAULT_SETTINGS})
    logger.debug(f"Loaded settings from {path}")
    return settings


def load_profile(state_dir: Path, profile_name: str) -> Dict[str, Any]:
    """Load a named profile from <state_dir>/profiles/. Missing profile is an error."""
    validate_name(profile_name, "profile")
    for suffix in (".yaml", ".yml", ".json"):
        profile_path = state_dir / "profiles" / f"{profile_name}{suffix}"
        if profile_path.exists():
            try:
                profile = _load_mapping(profile_path) or {}
            except (yaml.YAMLError, json.JSONDecodeError) as e:
                raise ConfigurationError(f"Invalid profile {profile_path}: {e}") from e
            if not isinstance(profile, dict):
                raise ConfigurationError(f"Profile '{profile_name}' must be a mapping")
            return profile
    raise ConfigurationError(f"Profile '{profile_name}' not found in {state_dir / 'profiles'}")


def merge_settings(settings: Dict[str, Any], *overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge overrides left to right. None values never override."""
    merged = settings.copy()
    for override in overrides:
        for key, value in override.items():
            if value is None:
                continue
            if key not in DEFAULT_SETTINGS:
                logger.debug(f"Ignoring unknown setting '{key}'")
                continue
            merged[key] = value
    return merged


def _parse_server(name: str, entry: Any) -> McpServer:
    if not isinstance(entry, dict):
        raise ConfigurationError(f"MCP server '{name}' must be an object")

    command = entry.get("command")
    if not isinstance(command, str) or not command.strip():
        raise ConfigurationError(f"MCP server '{name}' needs a non-empty 'command' string")

    args = entry.get("args", [])
    if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
        raise ConfigurationError(f"MCP server '{name}': 'args' must be a list of strings")

    server_type = entry.get("type", "stdio")
    if server_type != "stdio":
        raise ConfigurationError(
            f"MCP server '{name}': unsupported type '{server_type}' (only 'stdio')"
        )

    return McpServer(name=name, command=command, args=tuple(args), type=server_type)


def load_mcp_descriptor(path: Path, required: Optional[str] = None) -> Tuple[McpServer, ...]:
    """Load and validate the MCP server descriptor.

    Accepts the Claude CLI shape ({"mcpServers": {...}}) or a bare mapping of
    server names to {command, args, type}.

    Raises:
        ConfigurationError: If the file is missing, malformed, empty, or does
            not define the required server
    """
    if not path.exists():
        raise ConfigurationError(f"MCP descriptor not found: {path}")

    try:
        raw = _load_mapping(path)
    except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read MCP descriptor {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError(
            f"MCP descriptor must be a JSON object, got: {type(raw).__name__}"
        )

    entries = raw.get("mcpServers", raw)
    if not isinstance(entries, dict):
        raise ConfigurationError("'mcpServers' must be an object")
    if not entries:
        raise ConfigurationError(f"MCP descriptor {path} defines no servers")

    servers = tuple(_parse_server(name, entry) for name, entry in entries.items())

    if required and required not in {s.name for s in servers}:
        raise ConfigurationError(
            f"MCP descriptor {path} does not define required server '{required}'"
        )

    logger.debug(f"Loaded {len(servers)} MCP server(s) from {path}")
    return servers


def write_mcp_descriptor(path: Path, servers: Iterable[McpServer]) -> None:
    """Write servers as a Claude CLI MCP config file."""
    save_json_atomic(path, {"mcpServers": {s.name: s.to_dict() for s in servers}})


def _as_command(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        return tuple(shlex.split(value))
    return tuple(str(part) for part in value)


def build_execution_config(
    headless: bool,
    options: Mapping[str, Any],
    mcp_servers: Tuple[McpServer, ...],
) -> ExecutionConfig:
    """Build the ExecutionConfig for one invocation.

    Headless runs always stream machine-readable output and are bounded by
    DEFAULT_MAX_TURNS unless the caller set max_turns. Without an allow-list
    every configured server's tools are allowed.

    Raises:
        ConfigurationError: If a headless run has no MCP server to talk to
    """
    if headless and not mcp_servers:
        raise ConfigurationError("Headless execution requires an MCP server descriptor")

    allowed_tools = tuple(options.get("allowed_tools") or ())
    if not allowed_tools:
        allowed_tools = tuple(f"mcp__{s.name}__*" for s in mcp_servers)

    max_turns = options.get("max_turns")
    if headless and max_turns is None:
        max_turns = DEFAULT_MAX_TURNS

    try:
        return ExecutionConfig(
            headless=headless,
            mcp_servers=tuple(mcp_servers),
            allowed_tools=allowed_tools,
            max_turns=max_turns,
            fallback_model=options.get("fallback_model"),
            output_format=OutputFormat.STREAM_JSON if headless else None,
            command=_as_command(options.get("command") or DEFAULT_COMMAND),
            model=options.get("model"),
            skip_permissions=bool(options.get("skip_permissions", False)),
            timeout=options.get("timeout"),
        )
    except ValueError as e:
        raise ConfigurationError(str(e)) from e
