"""Shared fixtures: script-module path setup and a fake external agent."""

import json
import sys
from pathlib import Path

import pytest

# Sibling-module imports resolve against the scripts directory
SCRIPTS_DIR = Path(__file__).resolve().parent.parent / "plugins" / "swarm" / "scripts"
if str(SCRIPTS_DIR) in sys.path:
    sys.path.remove(str(SCRIPTS_DIR))
sys.path.insert(0, str(SCRIPTS_DIR))


FAKE_AGENT_TEMPLATE = """\
import sys
import time

sys.stdin.read()
for line in {lines!r}:
    sys.stdout.write(line + "\\n")
    sys.stdout.flush()
sys.stderr.write({stderr!r})
sys.stderr.flush()
time.sleep({hang!r})
sys.exit({exit_code!r})
"""


def tool_line(tool, **payload):
    return json.dumps({"type": "tool_call", "tool": tool, "input": payload})


@pytest.fixture
def make_agent(tmp_path):
    """Write a fake agent script; returns the command tuple that runs it."""
    counter = {"n": 0}

    def _make(lines, exit_code=0, stderr="", hang=0):
        counter["n"] += 1
        script = tmp_path / f"fake_agent_{counter['n']}.py"
        script.write_text(
            FAKE_AGENT_TEMPLATE.format(lines=list(lines), stderr=stderr, hang=hang, exit_code=exit_code),
            encoding="utf-8",
        )
        return (sys.executable, str(script))

    return _make


@pytest.fixture
def mcp_file(tmp_path):
    path = tmp_path / ".mcp.json"
    path.write_text(json.dumps({
        "mcpServers": {
            "claude-flow": {
                "command": "npx",
                "args": ["claude-flow@alpha", "mcp", "start"],
                "type": "stdio",
            }
        }
    }), encoding="utf-8")
    return path


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / ".swarm"


@pytest.fixture
def rest_api_lines():
    return [
        tool_line("agent_spawn", type="coordinator"),
        tool_line("agent_spawn", type="coder"),
        tool_line("task_create", description="Design API spec"),
    ]
