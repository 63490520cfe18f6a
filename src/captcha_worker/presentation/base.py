"""Presentation surface interface."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from captcha_worker.orchestrator.models import DEFAULT_CAPTCHA_TYPE, Task


class ChallengeLoadError(RuntimeError):
    """Challenge page failed to load or the widget could not be injected."""


class ChallengeAbandoned(RuntimeError):
    """The human closed the surface or returned to the menu."""


@dataclass(slots=True, frozen=True)
class Challenge:
    """What a surface needs to show one task."""

    url: str
    sitekey: str
    task_id: Any = None
    captcha_type: str = DEFAULT_CAPTCHA_TYPE

    @classmethod
    def from_task(cls, task: Task) -> Challenge:
        return cls(
            url=task.url,
            sitekey=task.sitekey,
            task_id=task.task_id,
            captcha_type=task.captcha_type,
        )


class PresentationSurface(Protocol):
    """One on-screen surface able to load a page and host the challenge widget."""

    @property
    def is_open(self) -> bool:
        """Whether the surface can still be reused."""

    async def load_challenge(self, challenge: Challenge) -> None:
        """Load the challenge page, inject the widget and show the surface.

        Raises:
            ChallengeLoadError: Navigation or injection failed.
        """

    async def next_solution(self) -> str:
        """Wait for the token of the currently loaded challenge.

        Raises:
            ChallengeAbandoned: The human closed the surface or left the challenge.
        """

    async def close(self) -> None:
        """Destroy the surface."""


SurfaceFactory = Callable[[], PresentationSurface]
