#!/usr/bin/env python3
"""
Headless Swarm Process Launcher

Spawns the external agent process for one session and runs it as a
producer/consumer pair: a reader copies stdout lines to the session's output
file and onto a bounded queue, and the consumer folds them into the summary.
Memory stays bounded by summary size, not by total output size.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from pathlib import Path
from typing import AsyncIterator, List, Mapping, Optional

from config import write_mcp_descriptor
from errors import Cancelled, InternalError, LaunchError, ParseError, ProcessError, SwarmError
from models import ExecutionConfig, OrchestrationSummary, Session
from parsers import StreamParser, iter_events
from sessions import SessionTracker
from summary import SummaryBuilder
from utils import LiveLog, tail_text

logger = logging.getLogger("swarm")

# Bytes per stdout read; line splitting happens in the parser
READ_CHUNK = 64 * 1024
QUEUE_SIZE = 256
TERMINATE_GRACE_SECONDS = 5
# Persist a summary snapshot every N events so `status` sees progress
SNAPSHOT_EVERY = 25


def build_command(
    config: ExecutionConfig,
    mcp_config_path: Optional[Path],
    prompt: Optional[str] = None,
) -> List[str]:
    """Translate an ExecutionConfig into the external CLI's arguments.

    Headless runs read the prompt from stdin; interactive runs take it as the
    trailing positional argument.
    """
    cmd = list(config.command)
    if config.headless:
        cmd.append("--print")
        if config.output_format is not None:
            cmd.extend(["--output-format", config.output_format.value])
            # Claude CLI refuses stream-json in print mode without --verbose
            cmd.append("--verbose")
    if mcp_config_path is not None:
        cmd.extend(["--mcp-config", str(mcp_config_path)])
    if config.allowed_tools:
        cmd.extend(["--allowedTools", ",".join(config.allowed_tools)])
    if config.max_turns is not None:
        cmd.extend(["--max-turns", str(config.max_turns)])
    if config.fallback_model:
        cmd.extend(["--fallback-model", config.fallback_model])
    if config.model:
        cmd.extend(["--model", config.model])
    if config.skip_permissions:
        cmd.append("--dangerously-skip-permissions")
    if not config.headless and prompt:
        cmd.append(prompt)
    return cmd


async def spawn(
    cmd: List[str],
    cwd: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> asyncio.subprocess.Process:
    """Start the external process with piped stdio.

    Raises:
        LaunchError: If the binary is missing or cannot be executed
    """
    try:
        return await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env is not None else None,
        )
    except FileNotFoundError as e:
        raise LaunchError(f"External agent binary not found: {cmd[0]}") from e
    except PermissionError as e:
        raise LaunchError(f"Permission denied starting {cmd[0]}") from e
    except OSError as e:
        raise LaunchError(f"Cannot start {cmd[0]}: {e}") from e


async def _write_stdin(proc: asyncio.subprocess.Process, text: str) -> None:
    if not proc.stdin:
        return
    try:
        proc.stdin.write(text.encode("utf-8"))
        await proc.stdin.drain()
        proc.stdin.close()
        await proc.stdin.wait_closed()
    except (BrokenPipeError, ConnectionResetError) as e:
        # Process exited before reading its input; its exit code tells the story
        logger.warning(f"External process closed stdin early: {e}")


async def terminate(proc: asyncio.subprocess.Process) -> None:
    """Graceful shutdown: terminate first, then kill."""
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
        await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_SECONDS)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
    except ProcessLookupError:
        pass


async def _drain(queue: "asyncio.Queue[Optional[bytes]]") -> AsyncIterator[bytes]:
    """Yield queued chunks until the producer's None sentinel."""
    while True:
        chunk = await queue.get()
        if chunk is None:
            return
        yield chunk


@dataclasses.dataclass
class SessionResult:
    """Outcome of one session run."""
    session: Session
    summary: OrchestrationSummary
    parse_errors: List[ParseError]


class SessionRunner:
    """Runs one session: spawn, stream, fold, finalize.

    The ExecutionConfig is passed in explicitly; nothing is shared between
    runners except the tracker's directory namespace.
    """

    def __init__(
        self,
        config: ExecutionConfig,
        tracker: SessionTracker,
        task: str,
        prompt: str,
        session_id: Optional[str] = None,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
    ):
        if not config.headless:
            raise ValueError("SessionRunner requires a headless ExecutionConfig")
        self.config = config
        self.tracker = tracker
        self.task = task
        self.prompt = prompt
        self.session_id = session_id
        self.cwd = cwd
        self.env = env
        self.session: Optional[Session] = None
        self.parser = StreamParser()
        self.builder = SummaryBuilder()
        self._cancel_event: Optional[asyncio.Event] = None
        self._cancel_reason = "cancelled"
        self._errors_seen = 0
        self._cancel_requested = False

    def cancel(self, reason: str = "cancelled") -> None:
        """Request termination. Safe to call from a signal handler on the loop.

        A request made before run() starts is honored: the session fails as
        Cancelled without spawning the process.
        """
        self._cancel_reason = reason
        self._cancel_requested = True
        if self._cancel_event is not None:
            self._cancel_event.set()

    def _sweep_parse_errors(self) -> None:
        for err in self.parser.errors[self._errors_seen:]:
            self.builder.record_error(err.kind, str(err), err.line_no)
        self._errors_seen = len(self.parser.errors)

    async def _produce(
        self,
        proc: asyncio.subprocess.Process,
        queue: "asyncio.Queue[Optional[bytes]]",
    ) -> None:
        """Copy stdout verbatim to the output file and pass chunks on."""
        assert self.session is not None and proc.stdout is not None
        with open(self.session.output_path, "wb") as out:
            while True:
                chunk = await proc.stdout.read(READ_CHUNK)
                if not chunk:
                    break
                out.write(chunk)
                out.flush()
                await queue.put(chunk)
        await queue.put(None)

    async def _pump_stderr(self, proc: asyncio.subprocess.Process, live: LiveLog) -> None:
        assert self.session is not None and proc.stderr is not None
        with open(self.session.error_path, "w", encoding="utf-8") as err:
            while True:
                line_bytes = await proc.stderr.readline()
                if not line_bytes:
                    break
                line = line_bytes.decode("utf-8", errors="replace")
                err.write(line)
                err.flush()
                live.write(line.rstrip("\n\r"), prefix="stderr: ")

    async def _consume(self, queue: "asyncio.Queue[Optional[bytes]]", live: LiveLog) -> None:
        assert self.session is not None
        async for event in iter_events(_drain(queue), self.parser):
            self._sweep_parse_errors()
            self.builder.apply(event)
            if event.tool:
                live.write(f"{event.category.value if event.category else 'tool'}: {event.tool}")
            elif event.message:
                live.write(event.message, prefix="error: ")
            if self.builder.event_count % SNAPSHOT_EVERY == 0:
                self.tracker.write_summary(self.session, self.builder.snapshot())
        self._sweep_parse_errors()

    async def _pipeline(self, proc: asyncio.subprocess.Process, live: LiveLog) -> int:
        queue: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue(maxsize=QUEUE_SIZE)
        stages = [
            asyncio.ensure_future(stage)
            for stage in (
                _write_stdin(proc, self.prompt),
                self._produce(proc, queue),
                self._pump_stderr(proc, live),
                self._consume(queue, live),
            )
        ]
        try:
            await asyncio.gather(*stages)
        except BaseException:
            # A failed or cancelled stage stops the rest
            for stage in stages:
                stage.cancel()
            await asyncio.gather(*stages, return_exceptions=True)
            raise
        return await proc.wait()

    def _finish_unstarted(self, session: Session, error: SwarmError, live: LiveLog) -> None:
        """Fail a session that never reached `running`."""
        self.builder.record_error(error.kind, str(error))
        self.tracker.write_summary(session, self.builder.finalize())
        self.tracker.fail(session, error.kind, str(error))
        live.write(f"SESSION FAILED BEFORE START: {error}")

    async def run(self) -> SessionResult:
        """Run the session to a terminal state.

        Every path that gets past session creation leaves the session
        `complete` or `failed` with its summary written.

        Raises:
            LaunchError: If the process could not be started (the session is
                already recorded as failed)
        """
        self._cancel_event = asyncio.Event()
        session = self.tracker.create(self.task, self.session_id)
        self.session = session
        paths = self.tracker.paths_for(session.session_id)
        write_mcp_descriptor(paths["mcp"], self.config.mcp_servers)
        cmd = build_command(self.config, paths["mcp"])

        with LiveLog(paths["live"]) as live:
            live.write("=" * 60)
            live.write(f"SWARM SESSION {session.session_id}")
            live.write(f"Task: {self.task}")
            live.write("=" * 60)

            if self._cancel_requested:
                self._finish_unstarted(session, Cancelled(self._cancel_reason), live)
                return SessionResult(
                    session=session, summary=self.builder.finalize(), parse_errors=[],
                )

            logger.debug(f"Command: {' '.join(cmd)}")
            try:
                proc = await spawn(cmd, self.cwd, self.env)
            except LaunchError as e:
                self._finish_unstarted(session, e, live)
                raise

            self.tracker.mark_running(session, proc.pid)
            logger.info(f"Session {session.session_id} running (pid {proc.pid})")
            live.write(f"Started pid {proc.pid}")

            failure: Optional[SwarmError] = None
            try:
                failure = await self._await_completion(proc, live)
            except asyncio.CancelledError:
                # Interrupted from outside: keep the partial summary, then propagate
                self._sweep_parse_errors()
                self.builder.record_error(Cancelled.kind, "interrupted")
                self.tracker.finalize(
                    session, self.builder.finalize(), proc.returncode, Cancelled.kind, "interrupted"
                )
                raise
            except Exception as e:
                logger.exception(f"Session {session.session_id}: consuming output failed")
                await terminate(proc)
                failure = InternalError(f"{type(e).__name__}: {e}")
            self._sweep_parse_errors()

            if failure is None and proc.returncode:
                failure = ProcessError(proc.returncode, tail_text(session.error_path, 300))
            if failure is not None:
                self.builder.record_error(failure.kind, str(failure))
            summary = self.builder.finalize()
            self.tracker.finalize(
                session,
                summary,
                proc.returncode,
                failure.kind if failure is not None else None,
                str(failure) if failure is not None else None,
            )

            live.write(f"SESSION {session.status.value.upper()}: {summary.counts()}")

        return SessionResult(session=session, summary=summary, parse_errors=list(self.parser.errors))

    async def _await_completion(
        self, proc: asyncio.subprocess.Process, live: LiveLog
    ) -> Optional[Cancelled]:
        """Wait for the pipeline, a cancel request, or the timeout.

        Returns a Cancelled error if the session was cut short, else None.
        """
        assert self._cancel_event is not None
        pipeline = asyncio.ensure_future(self._pipeline(proc, live))
        cancel_wait = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {pipeline, cancel_wait},
                timeout=self.config.timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await terminate(proc)
            pipeline.cancel()
            cancel_wait.cancel()
            await asyncio.gather(pipeline, cancel_wait, return_exceptions=True)
            raise
        cancel_wait.cancel()
        await asyncio.gather(cancel_wait, return_exceptions=True)

        if pipeline in done:
            pipeline.result()
            return None

        if cancel_wait in done:
            reason = self._cancel_reason
        else:
            reason = f"timed out after {self.config.timeout}s"
        logger.warning(f"Session {self.session.session_id if self.session else '?'} cancelled: {reason}")
        live.write(f"CANCELLING: {reason}")

        await terminate(proc)
        pipeline.cancel()
        await asyncio.gather(pipeline, return_exceptions=True)
        return Cancelled(reason)


async def run_session(
    config: ExecutionConfig,
    tracker: SessionTracker,
    task: str,
    prompt: str,
    session_id: Optional[str] = None,
) -> SessionResult:
    """Run one headless session with a fresh runner."""
    runner = SessionRunner(config, tracker, task, prompt, session_id=session_id)
    return await runner.run()


async def run_interactive(
    config: ExecutionConfig,
    prompt: str,
    mcp_config_path: Optional[Path],
) -> int:
    """Run the external CLI attached to this terminal. Returns its exit code.

    Interactive runs have no machine-readable stream, so they are not tracked
    as sessions.
    """
    cmd = build_command(config, mcp_config_path, prompt=prompt)
    try:
        proc = await asyncio.create_subprocess_exec(*cmd)
    except FileNotFoundError as e:
        raise LaunchError(f"External agent binary not found: {cmd[0]}") from e
    except OSError as e:
        raise LaunchError(f"Cannot start {cmd[0]}: {e}") from e
    return await proc.wait()
