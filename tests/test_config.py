from __future__ import annotations

import allure
import pytest

from captcha_worker.config import AuthSettings, PresentationSettings, Settings, SolverSettings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]

_ENV_NAMES = (
    "CAPTCHA_WORKER_SOLVER_PATH",
    "CAPTCHA_WORKER_SOLVER_ARGS",
    "CAPTCHA_WORKER_SOLVER_AUTH_ARGS",
    "CAPTCHA_WORKER_HANDSHAKE_ACK",
    "CAPTCHA_WORKER_AUTO_NEXT_TASK",
    "CAPTCHA_WORKER_STOP_TIMEOUT_SECONDS",
    "CAPTCHA_WORKER_AUTH_MODE",
    "CAPTCHA_WORKER_AUTH_URL",
    "CAPTCHA_WORKER_AUTH_TIMEOUT_SECONDS",
    "CAPTCHA_WORKER_BROWSER",
    "CAPTCHA_WORKER_HEADLESS",
    "CAPTCHA_WORKER_WINDOW_WIDTH",
    "CAPTCHA_WORKER_WINDOW_HEIGHT",
    "CAPTCHA_WORKER_NAVIGATION_TIMEOUT_SECONDS",
)


@pytest.fixture()
def clean_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_from_env_defaults(clean_env) -> None:
    settings = Settings.from_env()

    assert settings.solver.command == ("captcha_cli",)
    assert settings.solver.auth_command == ("captcha_cli", "auth")
    assert settings.solver.handshake_ack is False
    assert settings.solver.auto_next_task is True
    assert settings.auth.mode == "process"
    assert settings.presentation.browser == "chromium"
    assert settings.presentation.headless is False
    assert (settings.presentation.width, settings.presentation.height) == (1000, 800)
    settings.validate()


def test_from_env_reads_overrides(clean_env) -> None:
    clean_env.setenv("CAPTCHA_WORKER_SOLVER_PATH", "/opt/solver/captcha_cli")
    clean_env.setenv("CAPTCHA_WORKER_SOLVER_ARGS", "--profile 'my profile'")
    clean_env.setenv("CAPTCHA_WORKER_SOLVER_AUTH_ARGS", "auth --quiet")
    clean_env.setenv("CAPTCHA_WORKER_HANDSHAKE_ACK", "yes")
    clean_env.setenv("CAPTCHA_WORKER_AUTO_NEXT_TASK", "0")
    clean_env.setenv("CAPTCHA_WORKER_AUTH_MODE", " HTTP ")
    clean_env.setenv("CAPTCHA_WORKER_AUTH_URL", "https://auth.example.com")
    clean_env.setenv("CAPTCHA_WORKER_BROWSER", "Firefox")
    clean_env.setenv("CAPTCHA_WORKER_HEADLESS", "true")

    settings = Settings.from_env()

    assert settings.solver.command == ("/opt/solver/captcha_cli", "--profile", "my profile")
    assert settings.solver.auth_command == ("/opt/solver/captcha_cli", "auth", "--quiet")
    assert settings.solver.handshake_ack is True
    assert settings.solver.auto_next_task is False
    assert settings.auth.mode == "http"
    assert settings.presentation.browser == "firefox"
    assert settings.presentation.headless is True
    settings.validate()


def test_invalid_boolean_is_rejected(clean_env) -> None:
    clean_env.setenv("CAPTCHA_WORKER_HEADLESS", "sometimes")

    with pytest.raises(ValueError, match="CAPTCHA_WORKER_HEADLESS"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "match"),
    [
        (Settings(solver=SolverSettings(path="  ")), "SOLVER_PATH"),
        (Settings(solver=SolverSettings(stop_timeout_seconds=0)), "STOP_TIMEOUT"),
        (Settings(auth=AuthSettings(mode="carrier-pigeon")), "AUTH_MODE"),
        (Settings(auth=AuthSettings(mode="http", url="ftp://auth")), "AUTH_URL"),
        (Settings(auth=AuthSettings(timeout_seconds=-1)), "AUTH_TIMEOUT"),
        (Settings(presentation=PresentationSettings(browser="netscape")), "BROWSER"),
        (Settings(presentation=PresentationSettings(width=0)), "WIDTH"),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, match: str) -> None:
    with pytest.raises(ValueError, match=match):
        settings.validate()


@pytest.mark.parametrize(
    "name",
    [
        "CAPTCHA_WORKER_STOP_TIMEOUT_SECONDS",
        "CAPTCHA_WORKER_AUTH_TIMEOUT_SECONDS",
        "CAPTCHA_WORKER_WINDOW_WIDTH",
        "CAPTCHA_WORKER_NAVIGATION_TIMEOUT_SECONDS",
    ],
)
def test_non_numeric_value_names_the_variable(clean_env, name: str) -> None:
    clean_env.setenv(name, "soon")

    with pytest.raises(ValueError, match=name):
        Settings.from_env()


def test_unbalanced_quotes_in_solver_args_name_the_variable(clean_env) -> None:
    clean_env.setenv("CAPTCHA_WORKER_SOLVER_ARGS", "--profile 'unterminated")

    with pytest.raises(ValueError, match="CAPTCHA_WORKER_SOLVER_ARGS"):
        Settings.from_env()
