"""Supervision of the long-lived solver subprocess."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from captcha_worker.orchestrator import protocol
from captcha_worker.orchestrator.errors import (
    AlreadyRunning,
    NotRunning,
    ProtocolDecodeError,
    SpawnError,
)
from captcha_worker.orchestrator.models import (
    ProtocolMessage,
    SolverState,
    StatusKind,
    StatusMessage,
    Task,
)

logger = logging.getLogger(__name__)

MessageHandler = Callable[[ProtocolMessage], None]
ExitHandler = Callable[[int | None], None]

# asyncio's default 64 KiB line limit is too small for tasks carrying page payloads.
_STREAM_LIMIT = 1024 * 1024


class SolverSupervisor:
    """Owns at most one solver process and its stdin/stdout/stderr channels."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        env: Mapping[str, str] | None = None,
        stop_timeout_seconds: float = 2.0,
    ) -> None:
        if not command:
            raise ValueError("Solver command must not be empty.")
        self.command = tuple(command)
        self.env = dict(env) if env is not None else None
        self.stop_timeout_seconds = stop_timeout_seconds
        self.state = SolverState.ABSENT
        self.spawn_count = 0
        self._process: asyncio.subprocess.Process | None = None
        self._message_handlers: list[MessageHandler] = []
        self._exit_handlers: list[ExitHandler] = []
        self._stdout_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._exit_task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        process = self._process
        return process is not None and process.returncode is None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def add_message_handler(self, handler: MessageHandler) -> None:
        self._message_handlers.append(handler)

    def add_exit_handler(self, handler: ExitHandler) -> None:
        self._exit_handlers.append(handler)

    async def start(self, credential: str) -> None:
        """Spawn the solver and write the handshake line.

        Raises:
            AlreadyRunning: A solver process is still alive.
            SpawnError: The executable is missing or cannot be started.
        """

        if self._process is not None:
            raise AlreadyRunning(f"Solver already running (pid={self._process.pid}).")

        self.state = SolverState.STARTING
        env = os.environ.copy()
        if self.env:
            env.update(self.env)
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=_STREAM_LIMIT,
            )
        except FileNotFoundError as error:
            self.state = SolverState.ABSENT
            raise SpawnError(
                f"Solver executable not found: {self.command[0]}",
                command=self.command,
            ) from error
        except PermissionError as error:
            self.state = SolverState.ABSENT
            raise SpawnError(
                f"Solver executable is not runnable: {self.command[0]}",
                command=self.command,
            ) from error
        except OSError as error:
            self.state = SolverState.ABSENT
            raise SpawnError(f"Solver failed to start: {error}", command=self.command) from error

        self._process = process
        self.spawn_count += 1
        logger.info("Solver started: pid=%s command=%s", process.pid, self.command[0])

        self._stdout_task = asyncio.create_task(
            self._read_stdout(process),
            name=f"solver-stdout-{process.pid}",
        )
        self._stderr_task = asyncio.create_task(
            self._read_stderr(process),
            name=f"solver-stderr-{process.pid}",
        )
        self._exit_task = asyncio.create_task(
            self._watch_exit(process),
            name=f"solver-exit-{process.pid}",
        )
        try:
            self.send(protocol.handshake(credential))
        except NotRunning:
            logger.warning("Solver exited before the handshake could be written")

    def send(self, command: dict[str, Any]) -> None:
        """Write one command line to the solver.

        Raises:
            NotRunning: No live process or its stdin is no longer writable.
        """

        process = self._process
        if process is None or process.returncode is not None:
            raise NotRunning("Solver is not running.")
        stdin = process.stdin
        if stdin is None or stdin.is_closing():
            raise NotRunning("Solver stdin is closed.")
        # No drain(): commands are single short lines and a dead reader shows up
        # as stdout EOF, which the exit watcher already handles.
        try:
            stdin.write(protocol.encode_command(command).encode("utf-8"))
        except (BrokenPipeError, ConnectionResetError) as error:
            raise NotRunning(f"Solver stdin write failed: {error}") from error

        name = command.get("command")
        if name == protocol.GET_TASK_COMMAND:
            self.state = SolverState.AWAITING_TASK
        logger.debug("-> solver: %s", name or "handshake")

    async def stop(self, timeout_seconds: float | None = None) -> int | None:
        """Close stdin, wait, then terminate and kill if needed."""

        process = self._process
        if process is None:
            return None

        timeout = self.stop_timeout_seconds if timeout_seconds is None else timeout_seconds
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except TimeoutError:
            _terminate(process)
            try:
                await asyncio.wait_for(process.wait(), timeout=timeout)
            except TimeoutError:
                _kill(process)
                await process.wait()

        exit_task = self._exit_task
        if exit_task is not None:
            await exit_task
        return process.returncode

    async def wait_closed(self) -> None:
        if self._exit_task is not None:
            await self._exit_task

    async def _read_stdout(self, process: asyncio.subprocess.Process) -> None:
        stream = process.stdout
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                logger.warning("Dropping oversized solver output line")
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                message = protocol.decode_line(line)
            except ProtocolDecodeError as error:
                logger.warning("%s: %.200s", error, error.line)
                continue
            self._track(message)
            self._dispatch(message)

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        stream = process.stderr
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                continue
            if not raw:
                return
            text = raw.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.info("solver stderr: %s", text)

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        # Every stdout line is delivered before the exit is reported.
        if self._stdout_task is not None:
            await self._stdout_task
        returncode = await process.wait()
        if self._stderr_task is not None:
            await self._stderr_task

        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        self._process = None
        self.state = SolverState.EXITED
        logger.info("Solver exited with code %s", returncode)

        for handler in list(self._exit_handlers):
            try:
                handler(returncode)
            except Exception:
                logger.exception("Solver exit handler failed")

    def _track(self, message: ProtocolMessage) -> None:
        if isinstance(message, Task):
            self.state = SolverState.TASK_IN_FLIGHT
        elif isinstance(message, StatusMessage):
            if message.status is StatusKind.OK and self.state is SolverState.STARTING:
                self.state = SolverState.AUTHENTICATED
            elif message.status in (StatusKind.SOLUTION_SAVED, StatusKind.ERROR):
                self.state = SolverState.IDLE

    def _dispatch(self, message: ProtocolMessage) -> None:
        for handler in list(self._message_handlers):
            try:
                handler(message)
            except Exception:
                logger.exception("Solver message handler failed")


def _terminate(process: asyncio.subprocess.Process) -> None:
    try:
        process.terminate()
    except ProcessLookupError:
        return


def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        return
