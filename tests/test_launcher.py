"""Launcher tests against a fake external agent process."""

import asyncio
import json

import pytest

from config import DEFAULT_SERVER, build_execution_config
from conftest import tool_line
from errors import LaunchError
from launcher import SessionRunner, build_command, run_session
from models import ExecutionConfig, OutputFormat, SessionStatus
from parsers import StreamParser
from sessions import SessionTracker


def _config(command, **options):
    return build_execution_config(True, {"command": command, **options}, (DEFAULT_SERVER,))


@pytest.fixture
def tracker(state_dir):
    return SessionTracker(state_dir)


class TestBuildCommand:
    def test_headless_command(self, tmp_path):
        config = ExecutionConfig(
            headless=True,
            mcp_servers=(DEFAULT_SERVER,),
            allowed_tools=("mcp__claude-flow__*", "Bash"),
            max_turns=50,
            fallback_model="sonnet",
            output_format=OutputFormat.STREAM_JSON,
        )
        cmd = build_command(config, tmp_path / "mcp.json")
        assert cmd == [
            "claude", "--print", "--output-format", "stream-json", "--verbose",
            "--mcp-config", str(tmp_path / "mcp.json"),
            "--allowedTools", "mcp__claude-flow__*,Bash",
            "--max-turns", "50",
            "--fallback-model", "sonnet",
        ]

    def test_headless_prompt_goes_to_stdin_not_argv(self, tmp_path):
        config = _config(["claude"])
        cmd = build_command(config, tmp_path / "mcp.json", prompt="do the thing")
        assert "do the thing" not in cmd

    def test_interactive_command_takes_prompt(self, tmp_path):
        config = build_execution_config(False, {}, (DEFAULT_SERVER,))
        cmd = build_command(config, tmp_path / "mcp.json", prompt="do the thing")
        assert "--print" not in cmd
        assert "--output-format" not in cmd
        assert cmd[-1] == "do the thing"

    def test_optional_flags(self, tmp_path):
        config = _config(["npx", "claude"], model="opus", skip_permissions=True)
        cmd = build_command(config, None)
        assert cmd[:2] == ["npx", "claude"]
        assert "--mcp-config" not in cmd
        assert cmd[cmd.index("--model") + 1] == "opus"
        assert "--dangerously-skip-permissions" in cmd


class TestSessionRunner:
    def test_requires_headless_config(self, tracker):
        config = build_execution_config(False, {}, (DEFAULT_SERVER,))
        with pytest.raises(ValueError):
            SessionRunner(config, tracker, "task", "prompt")

    async def test_rest_api_scenario(self, tracker, make_agent, rest_api_lines):
        config = _config(make_agent(rest_api_lines))
        result = await run_session(config, tracker, "Build a REST API", "prompt")

        assert result.session.status is SessionStatus.COMPLETE
        assert len(result.summary.agents) == 2
        assert len(result.summary.tasks) == 1
        assert result.session.exit_code == 0

        stored = tracker.get(result.session.session_id)
        assert stored.status is SessionStatus.COMPLETE
        saved = json.loads(stored.summary_path.read_text())
        assert saved["counts"]["agents"] == 2
        assert saved["finalized"] is True

    async def test_stream_copied_to_output_file(self, tracker, make_agent, rest_api_lines):
        config = _config(make_agent(rest_api_lines, stderr="warming up\n"))
        result = await run_session(config, tracker, "task", "prompt")
        assert result.session.output_path.read_text().splitlines() == rest_api_lines
        assert result.session.error_path.read_text() == "warming up\n"

    async def test_per_session_mcp_descriptor(self, tracker, make_agent, rest_api_lines):
        config = _config(make_agent(rest_api_lines))
        result = await run_session(config, tracker, "task", "prompt")
        mcp = tracker.paths_for(result.session.session_id)["mcp"]
        assert json.loads(mcp.read_text())["mcpServers"]["claude-flow"]["command"] == "npx"

    async def test_malformed_line_is_skipped(self, tracker, make_agent, rest_api_lines):
        lines = rest_api_lines[:1] + ["{not json"] + rest_api_lines[1:]
        result = await run_session(config=_config(make_agent(lines)), tracker=tracker, task="t", prompt="p")
        assert result.session.status is SessionStatus.COMPLETE
        assert len(result.parse_errors) == 1
        assert result.summary.event_count == 3
        assert [e.kind for e in result.summary.errors] == ["ParseError"]

    async def test_empty_output_is_failure(self, tracker, make_agent):
        lines = [json.dumps({"type": "system", "subtype": "init"})]
        result = await run_session(_config(make_agent(lines)), tracker, "task", "prompt")
        assert result.session.status is SessionStatus.FAILED
        assert result.session.error_kind == "EmptyOutput"

    async def test_no_output_at_all_is_failure(self, tracker, make_agent):
        result = await run_session(_config(make_agent([])), tracker, "task", "prompt")
        assert result.session.status is SessionStatus.FAILED
        assert result.session.error_kind == "EmptyOutput"

    async def test_non_zero_exit_preserves_partial_summary(self, tracker, make_agent):
        lines = [tool_line("agent_spawn", type="coordinator")]
        config = _config(make_agent(lines, exit_code=3, stderr="crashed hard\n"))
        result = await run_session(config, tracker, "task", "prompt")
        assert result.session.status is SessionStatus.FAILED
        assert result.session.error_kind == "ProcessError"
        assert result.session.exit_code == 3
        assert "crashed hard" in result.session.error_message
        assert len(result.summary.agents) == 1
        assert result.summary.errors[-1].kind == "ProcessError"

    async def test_missing_binary_raises_launch_error(self, tracker, tmp_path):
        runner = SessionRunner(_config([str(tmp_path / "no-such-agent")]), tracker, "task", "prompt")
        with pytest.raises(LaunchError):
            await runner.run()
        session = tracker.get(runner.session.session_id)
        assert session.status is SessionStatus.FAILED
        assert session.error_kind == "LaunchError"
        assert not session.output_path.exists()
        assert not session.error_path.exists()

    async def test_cancel_keeps_partial_summary(self, tracker, make_agent, rest_api_lines):
        runner = SessionRunner(_config(make_agent(rest_api_lines, hang=60)), tracker, "task", "prompt")

        async def cancel_once_streaming():
            while runner.builder.event_count < len(rest_api_lines):
                await asyncio.sleep(0.02)
            runner.cancel("user request")

        result, _ = await asyncio.wait_for(
            asyncio.gather(runner.run(), cancel_once_streaming()), timeout=30,
        )
        assert result.session.status is SessionStatus.FAILED
        assert result.session.error_kind == "Cancelled"
        assert result.session.error_message == "user request"
        assert len(result.summary.agents) == 2
        assert result.summary.finalized
        assert result.summary.errors[-1].kind == "Cancelled"

    async def test_timeout_cancels(self, tracker, make_agent, rest_api_lines):
        config = _config(make_agent(rest_api_lines, hang=60), timeout=1.0)
        result = await asyncio.wait_for(run_session(config, tracker, "task", "prompt"), timeout=30)
        assert result.session.status is SessionStatus.FAILED
        assert result.session.error_kind == "Cancelled"
        assert "timed out" in result.session.error_message

    async def test_concurrent_sessions_do_not_collide(self, tracker, make_agent, rest_api_lines):
        config_a = _config(make_agent(rest_api_lines))
        config_b = _config(make_agent(rest_api_lines[:1] + [tool_line("memory_store", key="k", value=1)]))
        a, b = await asyncio.gather(
            run_session(config_a, tracker, "a", "prompt"),
            run_session(config_b, tracker, "b", "prompt"),
        )
        assert a.session.session_id != b.session.session_id
        assert a.session.output_path != b.session.output_path
        assert len(a.summary.tasks) == 1 and len(b.summary.memory) == 1
        assert {s.status for s in (a.session, b.session)} == {SessionStatus.COMPLETE}

    async def test_unexpected_payload_shapes_do_not_abort(self, tracker, make_agent, rest_api_lines):
        lines = rest_api_lines + [
            json.dumps({"type": "tool_call", "tool": "task_create",
                        "input": {"description": "x", "dependencies": 3}}),
            json.dumps({"type": "assistant", "message": {"content": [
                {"type": "tool_use", "name": "mcp__claude-flow__agent_spawn", "input": "coder"},
            ]}}),
        ]
        result = await asyncio.wait_for(
            run_session(_config(make_agent(lines)), tracker, "task", "prompt"), timeout=30,
        )
        assert result.session.status is SessionStatus.COMPLETE
        assert len(result.summary.tasks) == 2
        assert result.summary.tasks[1].dependencies == ()
        assert len(result.summary.agents) == 2
        assert [e.line_no for e in result.parse_errors] == [5]
        assert tracker.get(result.session.session_id).status is SessionStatus.COMPLETE

    async def test_consumer_failure_fails_session_and_stops_process(
        self, tracker, make_agent, rest_api_lines, monkeypatch,
    ):
        runner = SessionRunner(_config(make_agent(rest_api_lines, hang=60)), tracker, "task", "prompt")

        def broken_apply(event):
            raise RuntimeError("fold exploded")

        monkeypatch.setattr(runner.builder, "apply", broken_apply)
        result = await asyncio.wait_for(runner.run(), timeout=30)

        assert result.session.status is SessionStatus.FAILED
        assert result.session.error_kind == "InternalError"
        assert "fold exploded" in result.session.error_message
        assert result.session.exit_code is not None
        assert result.summary.finalized
        stored = tracker.get(result.session.session_id)
        assert stored.status is SessionStatus.FAILED
        saved = json.loads(stored.summary_path.read_text())
        assert saved["errors"][-1]["kind"] == "InternalError"

    async def test_cancel_before_run_is_honored(self, tracker, make_agent, rest_api_lines):
        runner = SessionRunner(_config(make_agent(rest_api_lines)), tracker, "task", "prompt")
        runner.cancel("shutdown requested")
        result = await runner.run()

        assert result.session.status is SessionStatus.FAILED
        assert result.session.error_kind == "Cancelled"
        assert result.session.error_message == "shutdown requested"
        assert result.session.pid is None
        assert not result.session.output_path.exists()
        assert tracker.load_summary(result.session).errors[-1].kind == "Cancelled"

    async def test_oversized_line_counts_once(self, tracker, make_agent, rest_api_lines):
        huge = json.dumps({"type": "system", "blob": "x" * 300_000})
        runner = SessionRunner(
            _config(make_agent([huge] + rest_api_lines)), tracker, "task", "prompt",
        )
        runner.parser = StreamParser(max_line_bytes=1024)
        result = await asyncio.wait_for(runner.run(), timeout=30)

        assert result.session.status is SessionStatus.COMPLETE
        assert len(result.parse_errors) == 1
        assert result.parse_errors[0].line_no == 1
        assert [e.kind for e in result.summary.errors] == ["ParseError"]
        assert len(result.summary.agents) == 2
        assert result.session.output_path.read_text().splitlines()[1:] == rest_api_lines
