"""Presentation surface lifecycle around the active task."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from captcha_worker.orchestrator.models import Solution, Task
from captcha_worker.presentation.base import (
    Challenge,
    ChallengeAbandoned,
    ChallengeLoadError,
    PresentationSurface,
    SurfaceFactory,
)

logger = logging.getLogger(__name__)

SolvedCallback = Callable[[Solution], None]
AbandonedCallback = Callable[[Any], None]


class PresentationManager:
    """Keeps at most one live surface and relays its outcome once per task."""

    def __init__(self, *, surface_factory: SurfaceFactory) -> None:
        self._surface_factory = surface_factory
        self._surface: PresentationSurface | None = None
        self._active_task: Task | None = None
        self._watcher: asyncio.Task[None] | None = None
        self._loading: asyncio.Task[None] | None = None
        self._generation = 0
        self._solved_callbacks: list[SolvedCallback] = []
        self._abandoned_callbacks: list[AbandonedCallback] = []
        self.surfaces_created = 0

    @property
    def surface(self) -> PresentationSurface | None:
        return self._surface

    @property
    def active_task(self) -> Task | None:
        return self._active_task

    def on_solved(self, callback: SolvedCallback) -> None:
        self._solved_callbacks.append(callback)

    def on_abandoned(self, callback: AbandonedCallback) -> None:
        self._abandoned_callbacks.append(callback)

    async def present(self, task: Task) -> None:
        """Show ``task`` on the live surface, creating one if needed.

        A ``close()`` issued while the challenge is still loading cancels the
        load, and the surface it was loading into is never reused.
        """

        generation = self._generation
        await self._cancel_watcher()
        await self._cancel_loading()
        surface = await self._ensure_surface()
        if generation != self._generation:
            await self._discard(surface)
            logger.info("Presentation closed before task %r was shown", task.task_id)
            return
        self._active_task = task

        loading = asyncio.create_task(
            surface.load_challenge(Challenge.from_task(task)),
            name=f"load-{task.task_id}",
        )
        self._loading = loading
        try:
            await asyncio.wait({loading})
        except asyncio.CancelledError:
            loading.cancel()
            raise
        finally:
            if self._loading is loading:
                self._loading = None

        error = None if loading.cancelled() else loading.exception()
        if generation != self._generation:
            await self._discard(surface)
            logger.info("Challenge for task %r was closed while loading", task.task_id)
            return
        if loading.cancelled():
            logger.info("Challenge for task %r was superseded while loading", task.task_id)
            return
        if isinstance(error, ChallengeLoadError):
            # The surface stays up so the human can leave it explicitly.
            logger.warning("Challenge for task %r failed to load: %s", task.task_id, error)
        elif error is not None:
            raise error

        if self._active_task is task:
            self._watcher = asyncio.create_task(
                self._watch(surface, task),
                name=f"challenge-{task.task_id}",
            )

    async def close(self) -> None:
        """Destroy the current surface; no-op when there is none."""

        self._generation += 1
        self._active_task = None
        await self._cancel_watcher()
        await self._cancel_loading()
        surface = self._surface
        self._surface = None
        if surface is not None:
            await _close_quietly(surface)

    async def _ensure_surface(self) -> PresentationSurface:
        surface = self._surface
        if surface is not None and surface.is_open:
            return surface
        self._surface = None
        if surface is not None:
            await _close_quietly(surface)
        self._surface = self._surface_factory()
        self.surfaces_created += 1
        return self._surface

    async def _discard(self, surface: PresentationSurface) -> None:
        if self._surface is surface:
            self._surface = None
        if surface.is_open:
            await _close_quietly(surface)

    async def _watch(self, surface: PresentationSurface, task: Task) -> None:
        try:
            token = await surface.next_solution()
        except ChallengeAbandoned:
            if self._release(task):
                logger.info("Challenge for task %r abandoned", task.task_id)
                self._fire(self._abandoned_callbacks, task.task_id)
            return
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Challenge surface failed for task %r", task.task_id)
            return

        if self._release(task):
            self._fire(self._solved_callbacks, Solution(task_id=task.task_id, token=token))

    def _release(self, task: Task) -> bool:
        # Only the task still on screen may report an outcome, and only once.
        if self._active_task is not task:
            return False
        self._active_task = None
        self._watcher = None
        return True

    async def _cancel_watcher(self) -> None:
        watcher = self._watcher
        self._watcher = None
        if watcher is None or watcher.done() or watcher is asyncio.current_task():
            return
        watcher.cancel()
        try:
            await watcher
        except asyncio.CancelledError:
            pass

    async def _cancel_loading(self) -> None:
        loading = self._loading
        self._loading = None
        if loading is None or loading.done() or loading is asyncio.current_task():
            return
        loading.cancel()
        await asyncio.wait({loading})

    @staticmethod
    def _fire(callbacks: list[Callable[[Any], None]], payload: Any) -> None:
        for callback in list(callbacks):
            try:
                callback(payload)
            except Exception:
                logger.exception("Presentation callback failed")


async def _close_quietly(surface: PresentationSurface) -> None:
    try:
        await surface.close()
    except Exception:
        logger.exception("Closing presentation surface failed")
