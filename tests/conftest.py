"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

ECHO_SOLVER_MODULE = "captcha_worker.orchestrator.echo_solver"
ECHO_SOLVER_COMMAND = (sys.executable, "-m", ECHO_SOLVER_MODULE)

_SRC_DIR = Path(__file__).resolve().parents[1] / "src"


@pytest.fixture(autouse=True)
def _solver_pythonpath(monkeypatch):
    """Let spawned echo solvers import the package without an install."""
    existing = os.environ.get("PYTHONPATH")
    value = str(_SRC_DIR) if not existing else os.pathsep.join((str(_SRC_DIR), existing))
    monkeypatch.setenv("PYTHONPATH", value)


@pytest.fixture()
def echo_solver():
    """Build an echo solver command line with extra arguments."""

    def _command(*args: str) -> tuple[str, ...]:
        return (*ECHO_SOLVER_COMMAND, *args)

    return _command
