"""State machine driving the request -> present -> solve -> submit cycle."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Coroutine
from typing import Any, Protocol

from captcha_worker.orchestrator import protocol
from captcha_worker.orchestrator.errors import (
    AlreadyRunning,
    AuthError,
    NotRunning,
    StaleMessage,
)
from captcha_worker.orchestrator.models import (
    DispatcherState,
    DispatchSummary,
    ProtocolMessage,
    Session,
    Solution,
    SolveOutcome,
    StatusKind,
    StatusMessage,
    Task,
)

logger = logging.getLogger(__name__)

_IN_FLIGHT_STATES = (DispatcherState.PRESENTING, DispatcherState.AWAITING_SOLUTION)
_PRE_SOLVER_STATES = (
    DispatcherState.IDLE,
    DispatcherState.AUTHENTICATING,
    DispatcherState.READY,
)


class SolverChannel(Protocol):
    """Subset of the supervisor used by the dispatcher."""

    @property
    def is_running(self) -> bool:
        """Whether a live solver process exists."""

    async def start(self, credential: str) -> None:
        """Spawn the solver and send the handshake."""

    def send(self, command: dict[str, Any]) -> None:
        """Write one command to the solver."""

    async def stop(self, timeout_seconds: float | None = None) -> int | None:
        """Stop the solver process."""


class Presenter(Protocol):
    """Subset of the presentation manager used by the dispatcher."""

    async def present(self, task: Task) -> None:
        """Show the task to the human."""

    async def close(self) -> None:
        """Close the current surface."""


Listener = Callable[["TaskDispatcher"], None]


class TaskDispatcher:
    """Consumes solver messages and presentation events, issues solver commands.

    A solve request on a live solver is always a ``get_task``, never a second
    spawn, and a started solver receives exactly one handshake. The next task
    is requested only after the solver acknowledges the previous submission.
    """

    def __init__(
        self,
        *,
        solver: SolverChannel,
        presenter: Presenter,
        handshake_ack: bool = False,
        auto_next_task: bool = True,
    ) -> None:
        self.solver = solver
        self.presenter = presenter
        self.handshake_ack = handshake_ack
        self.auto_next_task = auto_next_task
        self.state = DispatcherState.IDLE
        self.session: Session | None = None
        self.summary = DispatchSummary()
        self.last_error: str | None = None
        self.task_request_error: str | None = None
        self._current_task: Task | None = None
        self._submitted_keys: set[str] = set()
        self._awaiting_handshake = False
        self._get_task_outstanding = False
        self._next_task_queued = False
        self._listeners: list[Listener] = []
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def current_task(self) -> Task | None:
        return self._current_task

    @property
    def is_idle(self) -> bool:
        """Waiting for a task with no request outstanding."""

        return (
            self.state is DispatcherState.WAITING_FOR_TASK
            and not self._awaiting_handshake
            and not self._get_task_outstanding
        )

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    # -- session lifecycle ---------------------------------------------------

    def begin_authentication(self) -> None:
        if self.state in (DispatcherState.IDLE, DispatcherState.READY):
            self._set_state(DispatcherState.AUTHENTICATING)

    def authenticated(self, session: Session) -> None:
        self.session = session
        if self.state in (DispatcherState.IDLE, DispatcherState.AUTHENTICATING):
            self._set_state(DispatcherState.READY)
        else:
            self._notify()

    def authentication_failed(self) -> None:
        if self.state is DispatcherState.AUTHENTICATING:
            self.session = None
            self._set_state(DispatcherState.IDLE)

    def reset(self) -> None:
        """Forget the session and all task bookkeeping (logout)."""

        self.session = None
        self._current_task = None
        self._awaiting_handshake = False
        self._get_task_outstanding = False
        self._next_task_queued = False
        self._set_state(DispatcherState.IDLE)

    # -- user requests -------------------------------------------------------

    async def request_solve(self) -> SolveOutcome:
        """Start the solver or ask the running one for the next task."""

        if self.session is None or self.state in (
            DispatcherState.IDLE,
            DispatcherState.AUTHENTICATING,
        ):
            raise AuthError("not authenticated")

        if self.state is DispatcherState.READY:
            return await self._start_solver()

        if self.state is DispatcherState.WAITING_FOR_TASK:
            if not self.solver.is_running:
                logger.info("Solver exit is pending; solve request ignored")
                return SolveOutcome.IGNORED
            if self._awaiting_handshake and self.handshake_ack:
                return SolveOutcome.PENDING
            if self._get_task_outstanding:
                return SolveOutcome.PENDING
            return SolveOutcome.REQUESTED if self._send_get_task() else SolveOutcome.IGNORED

        if self.state is DispatcherState.SUBMITTING:
            self._next_task_queued = True
            return SolveOutcome.QUEUED

        logger.info("Task %r is still in flight; solve request ignored", self._current_task_id())
        return SolveOutcome.IGNORED

    async def abandon(self) -> bool:
        """Drop the presented task without submitting and request another."""

        if self.state not in _IN_FLIGHT_STATES or self._current_task is None:
            return False

        task = self._current_task
        self._current_task = None
        self.summary.abandoned += 1
        logger.info("Task %r abandoned", task.task_id)
        self._set_state(DispatcherState.WAITING_FOR_TASK)
        await self.presenter.close()
        if self.state is DispatcherState.WAITING_FOR_TASK and not self._get_task_outstanding:
            self._send_get_task()
        return True

    # -- event sources -------------------------------------------------------

    def handle_message(self, message: ProtocolMessage) -> None:
        """Supervisor callback for each decoded solver line, in read order."""

        try:
            if isinstance(message, StatusMessage):
                self._handle_status(message)
            elif isinstance(message, Task):
                self._handle_task(message)
            else:
                if not self.handshake_ack:
                    self._awaiting_handshake = False
                logger.debug("Ignoring unrecognized solver message")
        except StaleMessage as error:
            self.summary.stale += 1
            logger.warning("Discarding stale message: %s", error)

    def handle_solution(self, solution: Solution) -> None:
        """Presentation callback carrying the human's token."""

        task = self._current_task
        if (
            task is None
            or self.state not in _IN_FLIGHT_STATES
            or _task_key(solution.task_id) != _task_key(task.task_id)
        ):
            self.summary.stale += 1
            logger.warning(
                "Discarding solution for task %r in state %s",
                solution.task_id,
                self.state.value,
            )
            return

        key = _task_key(task.task_id)
        if task.task_id is not None and key in self._submitted_keys:
            self.summary.stale += 1
            logger.warning("Task %r was already submitted", task.task_id)
            return

        self._set_state(DispatcherState.SUBMITTING)
        self._current_task = None
        try:
            self.solver.send(protocol.submit_solution(task.task_id, solution.token))
        except NotRunning as error:
            logger.warning("Cannot submit solution for task %r: %s", task.task_id, error)
            self._set_state(DispatcherState.WAITING_FOR_TASK)
            self._spawn(self.presenter.close())
            return

        if task.task_id is not None:
            self._submitted_keys.add(key)
        self.summary.submitted += 1
        logger.info("Solution submitted for task %r", task.task_id)
        self._spawn(self.presenter.close())
        self._notify()

    def handle_abandon_request(self, task_id: Any) -> None:
        """Presentation callback: the human closed or left the challenge."""

        task = self._current_task
        if task is None or _task_key(task.task_id) != _task_key(task_id):
            logger.debug("Ignoring abandon request for task %r", task_id)
            return
        self._spawn(self.abandon())

    def handle_exit(self, returncode: int | None) -> None:
        """Supervisor callback once the solver process is gone."""

        self.summary.solver_exits += 1
        if self._awaiting_handshake and (self.handshake_ack or returncode):
            self.last_error = (
                self.last_error
                or f"Solver exited with code {returncode} before authentication completed"
            )
            logger.error("%s", self.last_error)
        elif self._awaiting_handshake:
            # The solver reports a rejected credential on stderr and exits cleanly.
            self.last_error = (
                self.last_error or "Solver exited before its first reply; check the API key"
            )
            logger.warning("%s", self.last_error)
        elif self.state in (*_IN_FLIGHT_STATES, DispatcherState.SUBMITTING):
            logger.warning(
                "Solver exited with code %s while task %r was in flight",
                returncode,
                self._current_task_id(),
            )

        had_presentation = self._current_task is not None or self.state in _IN_FLIGHT_STATES
        self._current_task = None
        self._awaiting_handshake = False
        self._get_task_outstanding = False
        self._next_task_queued = False
        if had_presentation:
            self._spawn(self.presenter.close())
        if self.state not in _PRE_SOLVER_STATES:
            self._set_state(DispatcherState.READY)
        else:
            self._notify()

    async def wait_background(self) -> None:
        """Wait for scheduled presentation steps to finish."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # -- internals -----------------------------------------------------------

    async def _start_solver(self) -> SolveOutcome:
        assert self.session is not None
        self.last_error = None
        self.task_request_error = None
        self._awaiting_handshake = True
        try:
            await self.solver.start(self.session.credential)
        except AlreadyRunning:
            self._awaiting_handshake = False
            logger.warning("Solver already running; requesting the next task instead")
            self._set_state(DispatcherState.WAITING_FOR_TASK)
            if self._get_task_outstanding:
                return SolveOutcome.PENDING
            return SolveOutcome.REQUESTED if self._send_get_task() else SolveOutcome.IGNORED
        except Exception:
            self._awaiting_handshake = False
            raise

        self._set_state(DispatcherState.WAITING_FOR_TASK)
        if not self.handshake_ack:
            self._send_get_task()
        return SolveOutcome.STARTED

    def _handle_status(self, status: StatusMessage) -> None:
        if self._awaiting_handshake:
            if status.status is StatusKind.OK:
                self._awaiting_handshake = False
                self._accept_handshake(status)
                return
            if not self.handshake_ack:
                # Without an ack the first reply belongs to the initial get_task.
                self._awaiting_handshake = False
            elif status.status is StatusKind.ERROR:
                self._awaiting_handshake = False
                self._reject_handshake(status)
                return

        if self.state is DispatcherState.SUBMITTING:
            if status.status is StatusKind.ERROR:
                self.summary.rejected += 1
                logger.warning("Solver rejected the solution: %s", status.message or "no message")
            else:
                logger.info("Solution acknowledged by solver")
            self._finish_submission()
            return

        if (
            self.state is DispatcherState.WAITING_FOR_TASK
            and self._get_task_outstanding
            and status.status is StatusKind.ERROR
        ):
            self._get_task_outstanding = False
            self.task_request_error = status.message or "task request failed"
            logger.warning("Task request failed: %s", self.task_request_error)
            self._notify()
            return

        raise StaleMessage(f"status {status.status.value!r} in state {self.state.value}")

    def _accept_handshake(self, status: StatusMessage) -> None:
        if status.balance is not None and self.session is not None:
            self.session.balance = status.balance
        logger.info("Solver accepted the credential")
        if self.handshake_ack and self.state is DispatcherState.WAITING_FOR_TASK:
            self._send_get_task()
        self._notify()

    def _reject_handshake(self, status: StatusMessage) -> None:
        self.last_error = status.message or "credential rejected by solver"
        self.task_request_error = self.last_error
        logger.error("Solver rejected the credential: %s", self.last_error)
        self._spawn(self.solver.stop())

    def _handle_task(self, task: Task) -> None:
        if self._awaiting_handshake:
            if self.handshake_ack:
                raise StaleMessage(f"task {task.task_id!r} before handshake acknowledgment")
            self._awaiting_handshake = False

        if self.state is not DispatcherState.WAITING_FOR_TASK:
            raise StaleMessage(f"task {task.task_id!r} in state {self.state.value}")
        if task.task_id is not None and _task_key(task.task_id) in self._submitted_keys:
            raise StaleMessage(f"task {task.task_id!r} was already submitted")

        self._get_task_outstanding = False
        self._current_task = task
        self.summary.presented += 1
        logger.info("Task %r received: %s", task.task_id, task.url)
        self._set_state(DispatcherState.PRESENTING)
        self._spawn(self._present(task))

    async def _present(self, task: Task) -> None:
        try:
            await self.presenter.present(task)
        except Exception as error:
            logger.exception("Presenting task %r failed", task.task_id)
            if self._current_task is task:
                self.last_error = f"presentation failed: {error}"
                self._current_task = None
                self._set_state(DispatcherState.WAITING_FOR_TASK)
            return

        if self._current_task is task and self.state is DispatcherState.PRESENTING:
            self._set_state(DispatcherState.AWAITING_SOLUTION)

    def _finish_submission(self) -> None:
        self._set_state(DispatcherState.WAITING_FOR_TASK)
        if self.auto_next_task or self._next_task_queued:
            self._next_task_queued = False
            self._send_get_task()

    def _send_get_task(self) -> bool:
        try:
            self.solver.send(protocol.get_task())
        except NotRunning as error:
            logger.warning("Cannot request a task: %s", error)
            return False
        self._get_task_outstanding = True
        self.task_request_error = None
        return True

    def _current_task_id(self) -> Any:
        return self._current_task.task_id if self._current_task is not None else None

    def _set_state(self, state: DispatcherState) -> None:
        if state is not self.state:
            logger.debug("Dispatcher %s -> %s", self.state.value, state.value)
            self.state = state
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Dispatcher listener failed")

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background dispatcher step failed", exc_info=error)


def _task_key(task_id: Any) -> str:
    return json.dumps(task_id, sort_keys=True, default=str)
