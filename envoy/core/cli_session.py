"""Local CLI session handle.

A CLISession wraps one spawned agent process. Two reader tasks copy stdout and
stderr into the session's OutputLog in arrival order; a waiter task turns the
process exit into the single terminal event. All state transitions happen on
the event loop thread, so status, exit code and log stay consistent without
locks.

Lifecycle:
    pending -> running -> completed | failed | terminated
    pending -> failed       (spawn failure, exit code 127)
    pending -> terminated   (terminated before the process started)
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Callable, Mapping, NoReturn, Optional

from envoy.config import AgentConfig
from envoy.constants import (
    AGENT_FORCED_ENV,
    OUTPUT_READ_CHUNK_SIZE,
    SPAWN_FAILED_EXIT_CODE,
    TERMINATE_GRACE_PERIOD,
)
from envoy.core.agents import build_interactive_args, resolve_cli_executable
from envoy.core.errors import ProcessSpawnFailed, SessionAlreadyStarted, SessionNotInteractive
from envoy.core.models import (
    CLIType,
    ControlCharacter,
    OutputType,
    SessionInfo,
    SessionOutput,
    SessionStatus,
)
from envoy.core.output_log import OutputLog
from envoy.core.task_registry import TaskRegistry

logger = logging.getLogger(__name__)

# Readers get this long to drain pipes after the process exited (grandchildren may hold them open)
READER_DRAIN_TIMEOUT_S = 1.0

StatusListener = Callable[["CLISession"], None]


class CLISession:  # pylint: disable=too-many-instance-attributes  # Process handle owns pipes, tasks and lifecycle state
    """An interactive CLI agent session that can be viewed and controlled remotely."""

    def __init__(
        self,
        task_id: str,
        cli: CLIType,
        *,
        session_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        agents: Optional[Mapping[str, AgentConfig]] = None,
        task_registry: Optional[TaskRegistry] = None,
        terminate_grace_period: float = TERMINATE_GRACE_PERIOD,
        on_status_change: Optional[StatusListener] = None,
    ) -> None:
        self._id = session_id or str(uuid.uuid4())
        self._task_id = task_id
        self._cli = cli
        self._created_at = created_at or datetime.now(timezone.utc)
        self._agents = agents
        self._tasks = task_registry or TaskRegistry()
        self._grace_period = terminate_grace_period
        self._on_status_change = on_status_change

        self._status = SessionStatus.PENDING
        self._exit_code: Optional[int] = None
        self._starting = False
        self._process: Optional[asyncio.subprocess.Process] = None
        self._log = OutputLog(self._id)
        self._done = asyncio.Event()
        self._timeout_task: Optional[asyncio.Task[None]] = None

    @property
    def id(self) -> str:
        return self._id

    @property
    def task_id(self) -> str:
        return self._task_id

    @property
    def cli(self) -> CLIType:
        return self._cli

    @property
    def created_at(self) -> datetime:
        return self._created_at

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def exit_code(self) -> Optional[int]:
        return self._exit_code

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def subscriber_count(self) -> int:
        return self._log.subscriber_count

    # ==================== Lifecycle ====================

    async def start(
        self,
        prompt: str,
        working_directory: Optional[str | Path] = None,
        environment: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Spawn the agent process.

        Args:
            prompt: Initial prompt passed to the agent
            working_directory: Process cwd (defaults to the current directory)
            environment: Extra environment merged over the parent environment
            timeout: Terminate the session if it is still running after this many seconds

        Raises:
            SessionAlreadyStarted: If the session left the pending state
            ProcessSpawnFailed: If the executable is missing or could not be started
        """
        if self._status != SessionStatus.PENDING or self._starting:
            raise SessionAlreadyStarted(self._id)
        self._starting = True

        executable = resolve_cli_executable(self._cli, self._agents)
        if not executable:
            self._fail_spawn(f"{self._cli.display_name} executable not found")

        args = build_interactive_args(self._cli, prompt, self._agents)
        env = dict(os.environ)
        env.update(environment or {})
        env.update(AGENT_FORCED_ENV)
        cwd = str(Path(working_directory).expanduser()) if working_directory else None

        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            if self._status.is_terminal:
                logger.debug("Session %s terminated before spawn failed: %s", self._id[:8], e)
                return
            self._fail_spawn(str(e))

        self._process = process
        if self._status.is_terminal:
            # terminate() won the race while the process was being spawned
            logger.info("Session %s terminated during startup; stopping pid %s", self._id[:8], process.pid)
            await self._stop_process(process, grace_period=0)
            return

        self._set_status(SessionStatus.RUNNING)
        logger.info(
            "Started session %s (%s, task %s, pid %s)",
            self._id[:8],
            self._cli.value,
            self._task_id[:8],
            process.pid,
        )

        assert process.stdout is not None and process.stderr is not None
        readers = [
            self._tasks.spawn(self._pump(process.stdout, OutputType.STDOUT), name=f"session-{self._id[:8]}-stdout"),
            self._tasks.spawn(self._pump(process.stderr, OutputType.STDERR), name=f"session-{self._id[:8]}-stderr"),
        ]
        self._tasks.spawn(self._wait_for_exit(process, readers), name=f"session-{self._id[:8]}-exit")
        if timeout is not None:
            self._timeout_task = self._tasks.spawn(
                self._expire_after(timeout), name=f"session-{self._id[:8]}-timeout"
            )

    async def terminate(self) -> None:
        """Terminate the session (SIGTERM, then SIGKILL after the grace period). Idempotent."""
        await self._shutdown(self._grace_period)

    async def kill(self) -> None:
        """Kill the session immediately. Idempotent."""
        await self._shutdown(0)

    async def wait(self) -> SessionInfo:
        """Wait until the session reaches a terminal state."""
        await self._done.wait()
        return await self.get_info()

    # ==================== Interaction ====================

    async def send_input(self, data: str | bytes) -> None:
        """Send raw input to the process's stdin.

        Raises:
            SessionNotInteractive: If the session is not running
        """
        process = self._process
        if self._status != SessionStatus.RUNNING or not process or not process.stdin:
            raise SessionNotInteractive(self._id, self._status.value)

        payload = data.encode("utf-8") if isinstance(data, str) else data
        try:
            process.stdin.write(payload)
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning("Input to session %s failed: %s", self._id[:8], e)
            raise SessionNotInteractive(self._id, self._status.value) from e

    async def send_control(self, character: ControlCharacter) -> None:
        await self.send_input(character.to_bytes())

    # ==================== Streaming ====================

    def output_stream(self) -> AsyncIterator[SessionOutput]:
        return self._log.subscribe()

    async def get_output_buffer(self) -> bytes:
        return self._log.get_buffer()

    async def get_info(self) -> SessionInfo:
        return self.snapshot()

    def snapshot(self) -> SessionInfo:
        return SessionInfo(
            id=self._id,
            task_id=self._task_id,
            cli=self._cli,
            status=self._status,
            created_at=self._created_at,
            output_size=self._log.size,
            exit_code=self._exit_code,
        )

    # ==================== Private ====================

    def _set_status(self, status: SessionStatus) -> None:
        self._status = status
        if status.is_terminal:
            self._done.set()
            timeout_task = self._timeout_task
            if timeout_task and not timeout_task.done() and timeout_task is not asyncio.current_task():
                timeout_task.cancel()
        if self._on_status_change:
            try:
                self._on_status_change(self)
            except Exception as e:  # listener bugs must not break the session
                logger.error("Status listener failed for session %s: %s", self._id[:8], e, exc_info=True)

    def _fail_spawn(self, reason: str) -> NoReturn:
        logger.error("Failed to start session %s (%s): %s", self._id[:8], self._cli.value, reason)
        self._exit_code = SPAWN_FAILED_EXIT_CODE
        self._set_status(SessionStatus.FAILED)
        self._log.append(SessionOutput.exit(SPAWN_FAILED_EXIT_CODE))
        raise ProcessSpawnFailed(self._id, reason)

    async def _pump(self, stream: asyncio.StreamReader, output_type: OutputType) -> None:
        while True:
            chunk = await stream.read(OUTPUT_READ_CHUNK_SIZE)
            if not chunk:
                return
            self._log.append(SessionOutput(type=output_type, data=chunk))

    async def _wait_for_exit(self, process: asyncio.subprocess.Process, readers: list[asyncio.Task[None]]) -> None:
        exit_code = await process.wait()

        # Output written just before exit must land before the exit event.
        _, pending = await asyncio.wait(readers, timeout=READER_DRAIN_TIMEOUT_S)
        for reader in pending:
            reader.cancel()

        if self._status.is_terminal:
            return

        self._exit_code = exit_code
        self._set_status(SessionStatus.COMPLETED if exit_code == 0 else SessionStatus.FAILED)
        self._log.append(SessionOutput.exit(exit_code))
        logger.info("Session %s exited with code %d", self._id[:8], exit_code)

    async def _expire_after(self, timeout: float) -> None:
        await asyncio.sleep(timeout)
        if self._status == SessionStatus.RUNNING:
            logger.warning("Session %s exceeded timeout of %.1fs; terminating", self._id[:8], timeout)
            await self.terminate()

    async def _shutdown(self, grace_period: float) -> None:
        if self._status.is_terminal:
            return

        process = self._process
        self._set_status(SessionStatus.TERMINATED)
        self._log.append(SessionOutput.terminated())
        logger.info("Session %s terminated", self._id[:8])

        if process and process.returncode is None:
            await self._stop_process(process, grace_period)

    async def _stop_process(self, process: asyncio.subprocess.Process, grace_period: float) -> None:
        if process.stdin and not process.stdin.is_closing():
            process.stdin.close()

        if grace_period > 0:
            self._signal(process, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=grace_period)
                return
            except asyncio.TimeoutError:
                logger.warning(
                    "Session %s pid %s ignored SIGTERM for %.1fs; sending SIGKILL",
                    self._id[:8],
                    process.pid,
                    grace_period,
                )

        self._signal(process, signal.SIGKILL)
        await process.wait()

    @staticmethod
    def _signal(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        """Signal the whole process group (agents spawn their own children)."""
        try:
            os.killpg(os.getpgid(process.pid), sig)
        except (ProcessLookupError, PermissionError):
            try:
                process.send_signal(sig)
            except ProcessLookupError:
                pass
