"""Explicit owner of the session, the solver process and the task loop."""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal

from captcha_worker.config import Settings
from captcha_worker.orchestrator.auth import AuthGateway, HttpAuthGateway, ProcessAuthGateway
from captcha_worker.orchestrator.dispatcher import TaskDispatcher
from captcha_worker.orchestrator.errors import AuthError
from captcha_worker.orchestrator.models import (
    DispatcherState,
    DispatchSummary,
    Session,
    SolveOutcome,
)
from captcha_worker.orchestrator.supervisor import SolverSupervisor
from captcha_worker.presentation.base import SurfaceFactory
from captcha_worker.presentation.browser import BrowserSurface
from captcha_worker.presentation.manager import PresentationManager

logger = logging.getLogger(__name__)


class WorkerRuntime:
    """Wires supervisor, dispatcher, presentation and auth for one user."""

    def __init__(
        self,
        *,
        supervisor: SolverSupervisor,
        auth_gateway: AuthGateway,
        presentation: PresentationManager,
        handshake_ack: bool = False,
        auto_next_task: bool = True,
    ) -> None:
        self.supervisor = supervisor
        self.auth_gateway = auth_gateway
        self.presentation = presentation
        self.dispatcher = TaskDispatcher(
            solver=supervisor,
            presenter=presentation,
            handshake_ack=handshake_ack,
            auto_next_task=auto_next_task,
        )
        supervisor.add_message_handler(self.dispatcher.handle_message)
        supervisor.add_exit_handler(self.dispatcher.handle_exit)
        presentation.on_solved(self.dispatcher.handle_solution)
        presentation.on_abandoned(self.dispatcher.handle_abandon_request)
        self.dispatcher.add_listener(self._on_dispatcher_change)
        self._changed = asyncio.Event()
        self._stop_requested = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        surface_factory: SurfaceFactory | None = None,
    ) -> WorkerRuntime:
        auth_gateway: AuthGateway
        if settings.auth.mode == "http":
            auth_gateway = HttpAuthGateway(
                base_url=settings.auth.url,
                timeout_seconds=settings.auth.timeout_seconds,
            )
        else:
            auth_gateway = ProcessAuthGateway(
                command=settings.solver.auth_command,
                timeout_seconds=settings.auth.timeout_seconds,
            )

        if surface_factory is None:
            surface_factory = _browser_surface_factory(settings)

        return cls(
            supervisor=SolverSupervisor(
                command=settings.solver.command,
                stop_timeout_seconds=settings.solver.stop_timeout_seconds,
            ),
            auth_gateway=auth_gateway,
            presentation=PresentationManager(surface_factory=surface_factory),
            handshake_ack=settings.solver.handshake_ack,
            auto_next_task=settings.solver.auto_next_task,
        )

    @property
    def session(self) -> Session | None:
        return self.dispatcher.session

    @property
    def summary(self) -> DispatchSummary:
        return self.dispatcher.summary

    async def login(self, credential: str) -> Session:
        """Validate ``credential`` and open the session."""

        if not credential.strip():
            raise AuthError("credential is empty")
        self.dispatcher.begin_authentication()
        try:
            session = await self.auth_gateway.authenticate(credential)
        except Exception:
            self.dispatcher.authentication_failed()
            raise
        self.dispatcher.authenticated(session)
        logger.info("Authenticated, balance=%s", session.balance)
        return session

    async def refresh_balance(self) -> Decimal:
        session = self.session
        if session is None:
            raise AuthError("not authenticated")
        refreshed = await self.auth_gateway.authenticate(session.credential)
        session.balance = refreshed.balance
        return session.balance

    async def solve(self) -> SolveOutcome:
        return await self.dispatcher.request_solve()

    async def abandon(self) -> bool:
        return await self.dispatcher.abandon()

    def request_stop(self) -> None:
        self._stop_requested = True
        self._changed.set()

    async def run(self, *, max_tasks: int | None = None) -> DispatchSummary:
        """Solve tasks until stopped, ``max_tasks`` submitted, or no task is left.

        The loop also ends when the solver exits or answers a task request
        with an error such as ``no_tasks``.
        """

        self._stop_requested = False
        outcome = await self.solve()
        logger.info("Solve request: %s", outcome.value)
        while True:
            if self._stop_requested:
                logger.info("Stop requested")
                break
            if max_tasks is not None and self.summary.submitted >= max_tasks:
                break
            dispatcher = self.dispatcher
            if dispatcher.state is DispatcherState.READY and not self.supervisor.is_running:
                break
            if dispatcher.is_idle:
                if dispatcher.task_request_error is not None:
                    logger.info("No task available: %s", dispatcher.task_request_error)
                    break
                # auto_next_task is off or the last request could not be sent
                if await self.solve() is not SolveOutcome.IGNORED:
                    continue
            self._changed.clear()
            await self._changed.wait()
        return self.summary

    async def logout(self) -> None:
        await self.shutdown()
        self.dispatcher.reset()

    async def shutdown(self) -> None:
        """Stop the solver and close any open surface."""

        await self.supervisor.stop()
        await self.dispatcher.wait_background()
        await self.presentation.close()

    def _on_dispatcher_change(self, _dispatcher: TaskDispatcher) -> None:
        self._changed.set()


def _browser_surface_factory(settings: Settings) -> SurfaceFactory:
    presentation = settings.presentation

    def factory() -> BrowserSurface:
        return BrowserSurface(
            browser_name=presentation.browser,
            headless=presentation.headless,
            width=presentation.width,
            height=presentation.height,
            navigation_timeout_seconds=presentation.navigation_timeout_seconds,
        )

    return factory
