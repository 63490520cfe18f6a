"""Controllers for solver CLI commands."""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass, field

from captcha_worker.config import Settings
from captcha_worker.orchestrator.errors import SolverError
from captcha_worker.orchestrator.models import DispatchSummary
from captcha_worker.orchestrator.runtime import WorkerRuntime
from captcha_worker.presentation.base import SurfaceFactory

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AuthCommand:
    api_key: str


@dataclass(slots=True)
class BalanceCommand:
    api_key: str


@dataclass(slots=True)
class SolveCommand:
    api_key: str
    max_tasks: int | None = None
    headless: bool | None = None


@dataclass(slots=True)
class WorkerCommandResult:
    lines: list[str] = field(default_factory=list)
    success: bool = True


class WorkerCliController:
    """Runs login, balance and solve loops for the CLI."""

    def __init__(self, *, surface_factory: SurfaceFactory | None = None) -> None:
        self.surface_factory = surface_factory

    def auth(self, command: AuthCommand) -> WorkerCommandResult:
        try:
            runtime = self._runtime()
        except ValueError as error:
            return _invalid_settings(error)
        try:
            session = asyncio.run(runtime.login(command.api_key))
        except SolverError as error:
            return WorkerCommandResult(lines=[f"Authentication failed: {error}"], success=False)
        return WorkerCommandResult(lines=[f"Authenticated. Balance: {session.balance}"])

    def balance(self, command: BalanceCommand) -> WorkerCommandResult:
        try:
            runtime = self._runtime()
        except ValueError as error:
            return _invalid_settings(error)

        async def _lookup() -> str:
            await runtime.login(command.api_key)
            balance = await runtime.refresh_balance()
            return str(balance)

        try:
            balance = asyncio.run(_lookup())
        except SolverError as error:
            return WorkerCommandResult(lines=[f"Balance lookup failed: {error}"], success=False)
        return WorkerCommandResult(lines=[f"Balance: {balance}"])

    def solve(self, command: SolveCommand) -> WorkerCommandResult:
        try:
            runtime = self._runtime(headless=command.headless)
        except ValueError as error:
            return _invalid_settings(error)

        try:
            summary = asyncio.run(_solve_loop(runtime, command))
        except SolverError as error:
            return WorkerCommandResult(lines=[f"Solve session failed: {error}"], success=False)

        lines = [
            "Solve summary: "
            f"presented={summary.presented} submitted={summary.submitted} "
            f"rejected={summary.rejected} abandoned={summary.abandoned} "
            f"stale={summary.stale} solver_exits={summary.solver_exits}",
        ]
        if runtime.dispatcher.last_error:
            lines.append(f"Last solver error: {runtime.dispatcher.last_error}")
        return WorkerCommandResult(lines=lines)

    def _runtime(self, *, headless: bool | None = None) -> WorkerRuntime:
        settings = Settings.from_env()
        if headless is not None:
            settings.presentation.headless = headless
        settings.validate()
        return WorkerRuntime.from_settings(settings, surface_factory=self.surface_factory)


async def _solve_loop(runtime: WorkerRuntime, command: SolveCommand) -> DispatchSummary:
    await runtime.login(command.api_key)
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, runtime.request_stop)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(signum)
    try:
        return await runtime.run(max_tasks=command.max_tasks)
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)
        await runtime.shutdown()
        logger.info("Solve session closed")


def _invalid_settings(error: ValueError) -> WorkerCommandResult:
    logger.error("Invalid configuration: %s", error)
    return WorkerCommandResult(lines=[f"Invalid configuration: {error}"], success=False)
