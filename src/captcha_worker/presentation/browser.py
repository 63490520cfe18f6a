"""Playwright-backed presentation surface.

Each surface owns a dedicated browser context created with ``bypass_csp`` so
the third-party widget script and its callback can run on the challenge page.
Nothing else shares that context.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from captcha_worker.presentation.base import Challenge, ChallengeAbandoned, ChallengeLoadError

logger = logging.getLogger(__name__)

SOLVED_BINDING = "__captchaWorkerSolved"
ABANDON_BINDING = "__captchaWorkerAbandon"

_WIDGET_SCRIPTS = {
    "recaptcha": ("g-recaptcha", "https://www.google.com/recaptcha/api.js"),
    "hcaptcha": ("h-captcha", "https://js.hcaptcha.com/1/api.js"),
}

_WIDGET_SCRIPT = """
(args) => {
  const existing = document.getElementById("captcha-worker-wrapper");
  if (existing) existing.remove();

  const wrapper = document.createElement("div");
  wrapper.id = "captcha-worker-wrapper";
  wrapper.style.cssText =
    "position:fixed;inset:0;z-index:2147483647;background:#0f172a;" +
    "display:flex;align-items:center;justify-content:center;";

  const panel = document.createElement("div");
  panel.style.cssText =
    "background:#fff;padding:20px;border-radius:10px;box-shadow:0 0 20px rgba(0,0,0,.3);";

  const title = document.createElement("h2");
  title.textContent = "Solve the challenge";
  title.style.cssText = "text-align:center;margin:0 0 16px;font-family:sans-serif;";
  panel.appendChild(title);

  const widget = document.createElement("div");
  widget.className = args.widgetClass;
  widget.setAttribute("data-sitekey", args.sitekey);
  widget.setAttribute("data-callback", "__captchaWorkerOnToken");
  panel.appendChild(widget);

  const back = document.createElement("button");
  back.textContent = "Return to menu";
  back.style.cssText = "display:block;margin:16px auto 0;";
  back.addEventListener("click", () => window.__captchaWorkerAbandon(args.taskId));
  panel.appendChild(back);

  wrapper.appendChild(panel);
  document.body.appendChild(wrapper);

  let fired = false;
  window.__captchaWorkerOnToken = (token) => {
    if (fired) return;
    fired = true;
    window.__captchaWorkerSolved({ taskId: args.taskId, token: token });
    wrapper.remove();
  };

  const script = document.createElement("script");
  script.src = args.scriptUrl;
  script.async = true;
  script.onerror = () => console.error("captcha widget script failed to load");
  document.body.appendChild(script);
}
"""


class BrowserSurface:
    """One headed browser page reused across challenges."""

    def __init__(
        self,
        *,
        browser_name: str = "chromium",
        headless: bool = False,
        width: int = 1000,
        height: int = 800,
        navigation_timeout_seconds: float = 30.0,
    ) -> None:
        self.browser_name = browser_name
        self.headless = headless
        self.width = width
        self.height = height
        self.navigation_timeout_seconds = navigation_timeout_seconds
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None
        self._outcome: asyncio.Future[str] | None = None
        self._task_id: Any = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        # A page closed by the human is replaced on the next challenge.
        return not self._closed

    async def load_challenge(self, challenge: Challenge) -> None:
        page = await self._ensure_page()
        self._task_id = challenge.task_id
        self._outcome = asyncio.get_running_loop().create_future()

        widget_class, script_url = _WIDGET_SCRIPTS.get(
            challenge.captcha_type.lower(),
            _WIDGET_SCRIPTS["recaptcha"],
        )
        try:
            await page.goto(
                challenge.url,
                wait_until="load",
                timeout=self.navigation_timeout_seconds * 1000,
            )
        except PlaywrightError as error:
            raise ChallengeLoadError(f"Navigation to {challenge.url} failed: {error}") from error

        try:
            await page.evaluate(
                _WIDGET_SCRIPT,
                {
                    "sitekey": challenge.sitekey,
                    "taskId": challenge.task_id,
                    "widgetClass": widget_class,
                    "scriptUrl": script_url,
                },
            )
            await page.bring_to_front()
        except PlaywrightError as error:
            raise ChallengeLoadError(f"Widget injection failed: {error}") from error

    async def next_solution(self) -> str:
        if self._outcome is None:
            raise ChallengeAbandoned("No challenge loaded.")
        return await self._outcome

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._outcome is not None and not self._outcome.done():
            self._outcome.cancel()
        try:
            if self._context is not None:
                await self._context.close()
            if self._browser is not None:
                await self._browser.close()
        except PlaywrightError as error:
            logger.debug("Browser shutdown error: %s", error)
        finally:
            if self._playwright is not None:
                await self._playwright.stop()
            self._page = None
            self._context = None
            self._browser = None
            self._playwright = None

    async def _ensure_page(self) -> Page:
        # close() may run during any await below; nothing launched after it survives.
        self._check_open()
        if self._page is not None and not self._page.is_closed():
            return self._page

        if self._playwright is None:
            playwright = await async_playwright().start()
            if self._closed:
                await playwright.stop()
                self._check_open()
            self._playwright = playwright
        if self._browser is not None and not self._browser.is_connected():
            self._browser = None
            self._context = None
        if self._browser is None:
            browser_type = getattr(self._playwright, self.browser_name)
            browser = await browser_type.launch(headless=self.headless)
            if self._closed:
                await browser.close()
                self._check_open()
            self._browser = browser
        if self._context is None:
            context = await self._browser.new_context(
                bypass_csp=True,
                viewport={"width": self.width, "height": self.height},
            )
            if self._closed:
                await context.close()
                self._check_open()
            self._context = context
            await context.expose_binding(SOLVED_BINDING, self._on_solved)
            await context.expose_binding(ABANDON_BINDING, self._on_abandon)
            self._check_open()

        page = await self._context.new_page()
        self._check_open()
        page.on("close", self._on_page_closed)
        page.on("console", self._on_console)
        self._page = page
        return page

    def _check_open(self) -> None:
        if self._closed:
            raise ChallengeLoadError("Surface is closed.")

    def _on_solved(self, _source: Any, payload: Any) -> None:
        if not isinstance(payload, dict):
            logger.warning("Ignoring malformed widget payload: %r", payload)
            return
        if payload.get("taskId") != self._task_id:
            logger.warning("Ignoring token for task %r", payload.get("taskId"))
            return
        token = payload.get("token")
        if not isinstance(token, str) or not token:
            logger.warning("Ignoring empty token for task %r", self._task_id)
            return
        outcome = self._outcome
        if outcome is not None and not outcome.done():
            outcome.set_result(token)

    def _on_abandon(self, _source: Any, _task_id: Any = None) -> None:
        self._abandon("returned to menu")

    def _on_page_closed(self, _page: Page) -> None:
        self._abandon("window closed")

    def _on_console(self, message: Any) -> None:
        if message.type == "error":
            logger.info("challenge page console: %s", message.text)

    def _abandon(self, reason: str) -> None:
        outcome = self._outcome
        if outcome is not None and not outcome.done():
            outcome.set_exception(ChallengeAbandoned(reason))
