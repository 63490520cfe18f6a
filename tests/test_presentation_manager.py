from __future__ import annotations

import asyncio
from typing import Any

import allure

from captcha_worker.orchestrator.models import Solution, Task
from captcha_worker.presentation.base import Challenge, ChallengeAbandoned, ChallengeLoadError
from captcha_worker.presentation.manager import PresentationManager

pytestmark = [
    allure.epic("Presentation"),
    allure.feature("Surface Lifecycle"),
]

TASK_7 = Task(url="https://x", sitekey="abc", task_id=7)
TASK_8 = Task(url="https://y", sitekey="def", task_id=8, captcha_type="hcaptcha")


class FakeSurface:
    def __init__(self, *, fail_load: bool = False, slow_load: bool = False) -> None:
        self.loaded: list[Challenge] = []
        self.closes = 0
        self.open = True
        self.fail_load = fail_load
        self.slow_load = slow_load
        self.release = asyncio.Event()
        self.finished_loads = 0
        self._outcome: asyncio.Future[str] | None = None

    @property
    def is_open(self) -> bool:
        return self.open

    async def load_challenge(self, challenge: Challenge) -> None:
        self.loaded.append(challenge)
        self._outcome = asyncio.get_running_loop().create_future()
        if self.slow_load:
            await self.release.wait()
            self.finished_loads += 1
        if self.fail_load:
            raise ChallengeLoadError("net::ERR_NAME_NOT_RESOLVED")

    async def next_solution(self) -> str:
        assert self._outcome is not None
        return await self._outcome

    async def close(self) -> None:
        self.closes += 1
        self.open = False
        if self._outcome is not None and not self._outcome.done():
            self._outcome.cancel()

    def solve(self, token: str) -> None:
        assert self._outcome is not None
        self._outcome.set_result(token)

    def abandon(self) -> None:
        assert self._outcome is not None
        self._outcome.set_exception(ChallengeAbandoned("returned to menu"))


class _Harness:
    def __init__(self, **surface_kwargs: Any) -> None:
        self.surfaces: list[FakeSurface] = []
        self.solved: list[Solution] = []
        self.abandoned: list[Any] = []
        self._surface_kwargs = surface_kwargs
        self.manager = PresentationManager(surface_factory=self._create)
        self.manager.on_solved(self.solved.append)
        self.manager.on_abandoned(self.abandoned.append)

    def _create(self) -> FakeSurface:
        surface = FakeSurface(**self._surface_kwargs)
        self.surfaces.append(surface)
        return surface


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def test_present_creates_surface_lazily_and_reuses_it() -> None:
    async def scenario() -> None:
        harness = _Harness()
        assert harness.manager.surface is None

        await harness.manager.present(TASK_7)
        await harness.manager.present(TASK_8)

        assert harness.manager.surfaces_created == 1
        assert [challenge.task_id for challenge in harness.surfaces[0].loaded] == [7, 8]
        assert harness.surfaces[0].loaded[1].captcha_type == "hcaptcha"
        assert harness.manager.active_task == TASK_8
        await harness.manager.close()

    asyncio.run(scenario())


def test_solution_is_relayed_exactly_once() -> None:
    async def scenario() -> None:
        harness = _Harness()
        await harness.manager.present(TASK_7)

        harness.surfaces[0].solve("tok")
        await _settle()

        assert harness.solved == [Solution(task_id=7, token="tok")]
        assert harness.manager.active_task is None

        await harness.manager.close()
        await _settle()
        assert harness.solved == [Solution(task_id=7, token="tok")]
        assert harness.abandoned == []

    asyncio.run(scenario())


def test_replacing_the_task_drops_the_previous_watcher() -> None:
    async def scenario() -> None:
        harness = _Harness()
        await harness.manager.present(TASK_7)
        await harness.manager.present(TASK_8)

        harness.surfaces[0].solve("tok-8")
        await _settle()

        assert harness.solved == [Solution(task_id=8, token="tok-8")]
        await harness.manager.close()

    asyncio.run(scenario())


def test_abandon_is_reported_with_task_id() -> None:
    async def scenario() -> None:
        harness = _Harness()
        await harness.manager.present(TASK_7)

        harness.surfaces[0].abandon()
        await _settle()

        assert harness.abandoned == [7]
        assert harness.solved == []
        await harness.manager.close()

    asyncio.run(scenario())


def test_close_is_idempotent() -> None:
    async def scenario() -> None:
        harness = _Harness()
        await harness.manager.close()

        await harness.manager.present(TASK_7)
        await harness.manager.close()
        await harness.manager.close()

        assert harness.surfaces[0].closes == 1
        assert harness.manager.surface is None
        assert harness.manager.active_task is None
        await _settle()
        assert harness.solved == []
        assert harness.abandoned == []

    asyncio.run(scenario())


def test_failed_load_keeps_surface_open_for_return_to_menu() -> None:
    async def scenario() -> None:
        harness = _Harness(fail_load=True)

        await harness.manager.present(TASK_7)

        surface = harness.surfaces[0]
        assert harness.manager.surface is surface
        assert surface.closes == 0
        assert harness.manager.active_task == TASK_7

        surface.abandon()
        await _settle()
        assert harness.abandoned == [7]
        await harness.manager.close()

    asyncio.run(scenario())


def test_closed_surface_is_recreated_on_next_task() -> None:
    async def scenario() -> None:
        harness = _Harness()
        await harness.manager.present(TASK_7)
        harness.surfaces[0].open = False

        await harness.manager.present(TASK_8)

        assert harness.manager.surfaces_created == 2
        assert harness.surfaces[0].closes == 1
        assert harness.manager.surface is harness.surfaces[1]
        await harness.manager.close()

    asyncio.run(scenario())


def test_close_during_load_cancels_it_and_keeps_no_surface() -> None:
    async def scenario() -> None:
        harness = _Harness(slow_load=True)
        presenting = asyncio.create_task(harness.manager.present(TASK_7))
        await _settle()
        surface = harness.surfaces[0]
        assert len(surface.loaded) == 1

        await harness.manager.close()
        surface.release.set()
        await presenting
        await _settle()

        assert surface.finished_loads == 0
        assert surface.closes == 1
        assert not surface.is_open
        assert harness.manager.surface is None
        assert harness.manager.active_task is None
        assert harness.manager.surfaces_created == 1
        assert harness.solved == []
        assert harness.abandoned == []

    asyncio.run(scenario())


def test_present_after_close_during_load_opens_a_fresh_surface() -> None:
    async def scenario() -> None:
        harness = _Harness(slow_load=True)
        presenting = asyncio.create_task(harness.manager.present(TASK_7))
        await _settle()
        await harness.manager.close()
        await presenting

        harness._surface_kwargs = {}
        await harness.manager.present(TASK_8)

        assert harness.manager.surfaces_created == 2
        assert harness.manager.surface is harness.surfaces[1]
        assert harness.manager.active_task == TASK_8
        await harness.manager.close()

    asyncio.run(scenario())
