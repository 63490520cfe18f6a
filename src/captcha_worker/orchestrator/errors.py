"""Error taxonomy for the solver orchestrator."""

from __future__ import annotations


class SolverError(RuntimeError):
    """Base class for orchestrator errors."""


class SpawnError(SolverError):
    """Solver executable is missing or cannot be started."""

    def __init__(self, message: str, *, command: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.command = command


class ProtocolDecodeError(SolverError):
    """A line from the solver is not a JSON object."""

    def __init__(self, message: str, *, line: str) -> None:
        super().__init__(message)
        self.line = line


class AuthError(SolverError):
    """Credential rejected or auth response unusable."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotRunning(SolverError):
    """No live solver process to write to."""


class AlreadyRunning(SolverError):
    """A solver process is already live."""


class StaleMessage(SolverError):
    """Message arrived outside the state in which it is actionable."""
