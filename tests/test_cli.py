"""End-to-end CLI tests through swarm.main()."""

import json
import shlex

import pytest

import swarm
from models import SessionStatus
from sessions import SessionTracker


@pytest.fixture
def base_args(tmp_path, state_dir):
    return ["--config", str(tmp_path / "absent.yaml"), "--state-dir", str(state_dir)]


def _agent_command(command):
    return " ".join(shlex.quote(part) for part in command)


def _run_args(base_args, mcp_file, command, *extra):
    return base_args + [
        "run", "Build a REST API", "--executor",
        "--mcp-config", str(mcp_file),
        "--agent-command", _agent_command(command),
        *extra,
    ]


def test_run_complete_exits_zero(base_args, mcp_file, make_agent, rest_api_lines, state_dir, capsys):
    rc = swarm.main(_run_args(base_args, mcp_file, make_agent(rest_api_lines)))
    assert rc == swarm.EXIT_OK

    out = capsys.readouterr().out
    assert "Status:   complete" in out
    assert "2 agents, 1 tasks" in out

    [session] = SessionTracker(state_dir).list_sessions()
    assert session.status is SessionStatus.COMPLETE


def test_run_empty_output_exits_non_zero(base_args, mcp_file, make_agent):
    rc = swarm.main(_run_args(base_args, mcp_file, make_agent([])))
    assert rc == swarm.EXIT_FAILED


def test_run_process_failure_exits_non_zero(base_args, mcp_file, make_agent, rest_api_lines):
    rc = swarm.main(_run_args(base_args, mcp_file, make_agent(rest_api_lines, exit_code=1)))
    assert rc == swarm.EXIT_FAILED


def test_missing_binary(base_args, mcp_file, tmp_path, state_dir):
    rc = swarm.main(_run_args(base_args, mcp_file, [str(tmp_path / "missing-claude")]))
    assert rc == swarm.EXIT_LAUNCH

    [session] = SessionTracker(state_dir).list_sessions()
    assert session.status is SessionStatus.FAILED
    assert session.error_kind == "LaunchError"
    assert not session.output_path.exists()


def test_missing_descriptor_is_configuration_error(base_args, tmp_path, make_agent, rest_api_lines, state_dir):
    rc = swarm.main(_run_args(base_args, tmp_path / "absent.json", make_agent(rest_api_lines)))
    assert rc == swarm.EXIT_CONFIG
    assert SessionTracker(state_dir).list_sessions() == []


def test_timeout_exits_cancelled(base_args, mcp_file, make_agent, rest_api_lines):
    command = make_agent(rest_api_lines, hang=60)
    rc = swarm.main(_run_args(base_args, mcp_file, command, "--timeout", "1"))
    assert rc == swarm.EXIT_CANCELLED


def test_status_latest_json(base_args, mcp_file, make_agent, rest_api_lines, capsys):
    swarm.main(_run_args(base_args, mcp_file, make_agent(rest_api_lines)))
    capsys.readouterr()

    rc = swarm.main(base_args + ["status", "latest", "--json"])
    assert rc == swarm.EXIT_OK
    data = json.loads(capsys.readouterr().out)
    assert data["status"] == "complete"
    assert data["counts"]["agents"] == 2
    assert data["counts"]["tasks"] == 1


def test_status_unknown_session(base_args):
    assert swarm.main(base_args + ["status", "0" * 32]) == swarm.EXIT_FAILED


def test_status_rejects_malformed_id(base_args):
    assert swarm.main(base_args + ["status", "../../etc"]) == swarm.EXIT_CONFIG


def test_sessions_listing(base_args, mcp_file, make_agent, rest_api_lines, capsys):
    swarm.main(base_args + ["sessions"])
    assert "No sessions" in capsys.readouterr().out

    swarm.main(_run_args(base_args, mcp_file, make_agent(rest_api_lines)))
    capsys.readouterr()
    swarm.main(base_args + ["sessions"])
    out = capsys.readouterr().out
    assert "complete" in out
    assert "Build a REST API" in out


def test_init_writes_descriptor(base_args, tmp_path):
    target = tmp_path / "new" / ".mcp.json"
    assert swarm.main(base_args + ["init", "--mcp-config", str(target)]) == swarm.EXIT_OK
    assert "claude-flow" in json.loads(target.read_text())["mcpServers"]
    assert swarm.main(base_args + ["init", "--mcp-config", str(target)]) == swarm.EXIT_CONFIG
    assert swarm.main(base_args + ["init", "--mcp-config", str(target), "--force"]) == swarm.EXIT_OK


def test_profile_overrides_settings(base_args, mcp_file, state_dir):
    (state_dir / "profiles").mkdir(parents=True)
    (state_dir / "profiles" / "quick.yaml").write_text("max_turns: 5\nstrategy: research\n")
    args = swarm.build_parser().parse_args(
        base_args + ["run", "task", "--profile", "quick", "--mcp-config", str(mcp_file)]
    )
    settings = swarm.resolve_settings(args)
    assert settings["max_turns"] == 5
    assert settings["strategy"] == "research"
    assert settings["mcp_config"] == str(mcp_file)


def test_cli_flags_beat_profile(base_args, state_dir):
    (state_dir / "profiles").mkdir(parents=True)
    (state_dir / "profiles" / "quick.yaml").write_text("max_turns: 5\n")
    args = swarm.build_parser().parse_args(
        base_args + ["run", "task", "--profile", "quick", "--max-turns", "9"]
    )
    assert swarm.resolve_settings(args)["max_turns"] == 9


def test_max_turns_must_be_positive(base_args):
    with pytest.raises(SystemExit):
        swarm.build_parser().parse_args(base_args + ["run", "task", "--max-turns", "0"])


def test_background_run_returns_session_id(base_args, mcp_file, make_agent, rest_api_lines, state_dir, capsys):
    rc = swarm.main(
        _run_args(base_args, mcp_file, make_agent(rest_api_lines)) + ["--background"]
    )
    assert rc == swarm.EXIT_OK
    out = capsys.readouterr().out
    assert "Session:" in out

    [session] = SessionTracker(state_dir).list_sessions()
    assert session.status in (SessionStatus.CREATED, SessionStatus.RUNNING, SessionStatus.COMPLETE)
    assert (session.output_path.parent / "launcher.log").exists()
