"""Domain models for the solver orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

DEFAULT_CAPTCHA_TYPE = "recaptcha"


class SolverState(str, Enum):
    """Lifecycle of the supervised solver process."""

    ABSENT = "absent"
    STARTING = "starting"
    AUTHENTICATED = "authenticated"
    IDLE = "idle"
    AWAITING_TASK = "awaiting_task"
    TASK_IN_FLIGHT = "task_in_flight"
    EXITED = "exited"


class DispatcherState(str, Enum):
    """Task dispatch cycle states."""

    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    WAITING_FOR_TASK = "waiting_for_task"
    PRESENTING = "presenting"
    AWAITING_SOLUTION = "awaiting_solution"
    SUBMITTING = "submitting"


class SolveOutcome(str, Enum):
    """What a solve request did."""

    STARTED = "started"
    REQUESTED = "requested"
    PENDING = "pending"
    QUEUED = "queued"
    IGNORED = "ignored"


class StatusKind(str, Enum):
    """Recognized non-task statuses."""

    OK = "ok"
    ERROR = "error"
    SOLUTION_SAVED = "solution_saved"


@dataclass(slots=True)
class Session:
    """Authenticated user session.

    The credential lives in memory only.
    """

    credential: str
    balance: Decimal = Decimal("0")
    authenticated: bool = True


@dataclass(slots=True, frozen=True)
class Task:
    """One challenge emitted by the solver."""

    url: str
    sitekey: str
    task_id: Any = None
    captcha_type: str = DEFAULT_CAPTCHA_TYPE
    raw: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(slots=True, frozen=True)
class Solution:
    """Human-provided token for a task."""

    task_id: Any
    token: str


@dataclass(slots=True, frozen=True)
class StatusMessage:
    """Acknowledgment or rejection emitted by the solver."""

    status: StatusKind
    message: str | None = None
    balance: Decimal | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(slots=True, frozen=True)
class UnrecognizedMessage:
    """Well-formed JSON that is neither a status nor a task."""

    raw: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


ProtocolMessage = StatusMessage | Task | UnrecognizedMessage


@dataclass(slots=True)
class DispatchSummary:
    """Counters for CLI reporting."""

    presented: int = 0
    submitted: int = 0
    rejected: int = 0
    abandoned: int = 0
    stale: int = 0
    solver_exits: int = 0
