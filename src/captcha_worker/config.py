"""Runtime configuration for the solver client."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

AUTH_MODES = ("process", "http")
BROWSERS = ("chromium", "firefox", "webkit")


@dataclass(slots=True)
class SolverSettings:
    """Solver executable and dispatch behaviour."""

    path: str = "captcha_cli"
    args: tuple[str, ...] = ()
    auth_args: tuple[str, ...] = ("auth",)
    handshake_ack: bool = False
    auto_next_task: bool = True
    stop_timeout_seconds: float = 2.0

    @property
    def command(self) -> tuple[str, ...]:
        return (self.path, *self.args)

    @property
    def auth_command(self) -> tuple[str, ...]:
        return (self.path, *self.auth_args)


@dataclass(slots=True)
class AuthSettings:
    """Credential validation settings."""

    mode: str = "process"
    url: str = "http://127.0.0.1:8080"
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class PresentationSettings:
    """Challenge window settings."""

    browser: str = "chromium"
    headless: bool = False
    width: int = 1000
    height: int = 800
    navigation_timeout_seconds: float = 30.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    solver: SolverSettings = field(default_factory=SolverSettings)
    auth: AuthSettings = field(default_factory=AuthSettings)
    presentation: PresentationSettings = field(default_factory=PresentationSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from ``CAPTCHA_WORKER_*`` environment variables."""

        return cls(
            solver=SolverSettings(
                path=os.getenv("CAPTCHA_WORKER_SOLVER_PATH", "captcha_cli"),
                args=_env_args("CAPTCHA_WORKER_SOLVER_ARGS", default=()),
                auth_args=_env_args("CAPTCHA_WORKER_SOLVER_AUTH_ARGS", default=("auth",)),
                handshake_ack=_env_bool("CAPTCHA_WORKER_HANDSHAKE_ACK", default=False),
                auto_next_task=_env_bool("CAPTCHA_WORKER_AUTO_NEXT_TASK", default=True),
                stop_timeout_seconds=_env_number("CAPTCHA_WORKER_STOP_TIMEOUT_SECONDS", 2.0),
            ),
            auth=AuthSettings(
                mode=os.getenv("CAPTCHA_WORKER_AUTH_MODE", "process").strip().lower(),
                url=os.getenv("CAPTCHA_WORKER_AUTH_URL", "http://127.0.0.1:8080"),
                timeout_seconds=_env_number("CAPTCHA_WORKER_AUTH_TIMEOUT_SECONDS", 30.0),
            ),
            presentation=PresentationSettings(
                browser=os.getenv("CAPTCHA_WORKER_BROWSER", "chromium").strip().lower(),
                headless=_env_bool("CAPTCHA_WORKER_HEADLESS", default=False),
                width=_env_number("CAPTCHA_WORKER_WINDOW_WIDTH", 1000, kind=int),
                height=_env_number("CAPTCHA_WORKER_WINDOW_HEIGHT", 800, kind=int),
                navigation_timeout_seconds=_env_number(
                    "CAPTCHA_WORKER_NAVIGATION_TIMEOUT_SECONDS",
                    30.0,
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for unusable values."""

        if not self.solver.path.strip():
            raise ValueError("CAPTCHA_WORKER_SOLVER_PATH must not be empty.")
        if self.solver.stop_timeout_seconds <= 0:
            raise ValueError("CAPTCHA_WORKER_STOP_TIMEOUT_SECONDS must be > 0.")
        if self.auth.mode not in AUTH_MODES:
            raise ValueError(
                f"CAPTCHA_WORKER_AUTH_MODE must be one of {', '.join(AUTH_MODES)}: "
                f"{self.auth.mode!r}",
            )
        if self.auth.mode == "http":
            parsed = urlparse(self.auth.url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(
                    "Invalid CAPTCHA_WORKER_AUTH_URL: "
                    f"{self.auth.url!r}. Expected an absolute http:// or https:// URL.",
                )
        if self.auth.timeout_seconds <= 0:
            raise ValueError("CAPTCHA_WORKER_AUTH_TIMEOUT_SECONDS must be > 0.")
        if self.presentation.browser not in BROWSERS:
            raise ValueError(
                f"CAPTCHA_WORKER_BROWSER must be one of {', '.join(BROWSERS)}: "
                f"{self.presentation.browser!r}",
            )
        if self.presentation.width <= 0 or self.presentation.height <= 0:
            raise ValueError("CAPTCHA_WORKER_WINDOW_WIDTH/HEIGHT must be positive.")


def _env_args(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return tuple(shlex.split(value))
    except ValueError as error:
        raise ValueError(f"Invalid argument list for {name}: {error}") from error


def _env_number(name: str, default: float, *, kind: type = float) -> Any:
    value = os.getenv(name)
    if value is None:
        return kind(default)
    try:
        return kind(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
