"""CLI entrypoint for captcha-worker."""

import logging

import rich_click as click

from captcha_worker import __version__
from captcha_worker.orchestrator.controllers import (
    AuthCommand,
    BalanceCommand,
    SolveCommand,
    WorkerCliController,
    WorkerCommandResult,
)

click.rich_click.USE_MARKDOWN = True
WORKER_CONTROLLER = WorkerCliController()

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="captcha-worker")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    envvar="CAPTCHA_WORKER_LOG_LEVEL",
    help="Logging verbosity.",
)
def captcha_worker(log_level: str) -> None:
    """Human-in-the-loop captcha solving client.

    Solver executable and behaviour are configured with `CAPTCHA_WORKER_*`
    environment variables.
    """

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@captcha_worker.command("auth")
@click.option(
    "--api-key",
    envvar="CAPTCHA_WORKER_API_KEY",
    required=True,
    help="Credential to validate. Defaults to CAPTCHA_WORKER_API_KEY.",
)
def auth(api_key: str) -> None:
    """Validate the credential and print the balance."""

    _emit_result(WORKER_CONTROLLER.auth(AuthCommand(api_key=api_key)))


@captcha_worker.command("balance")
@click.option(
    "--api-key",
    envvar="CAPTCHA_WORKER_API_KEY",
    required=True,
    help="Credential to look up. Defaults to CAPTCHA_WORKER_API_KEY.",
)
def balance(api_key: str) -> None:
    """Print the current balance for the credential."""

    _emit_result(WORKER_CONTROLLER.balance(BalanceCommand(api_key=api_key)))


@captcha_worker.command("solve")
@click.option(
    "--api-key",
    envvar="CAPTCHA_WORKER_API_KEY",
    required=True,
    help="Credential for the solver session. Defaults to CAPTCHA_WORKER_API_KEY.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many submitted solutions.",
)
@click.option(
    "--headless/--no-headless",
    default=None,
    help="Override CAPTCHA_WORKER_HEADLESS for the challenge browser.",
)
def solve(api_key: str, max_tasks: int | None, headless: bool | None) -> None:
    """Start the solver and present challenges until stopped (Ctrl+C)."""

    _emit_result(
        WORKER_CONTROLLER.solve(
            SolveCommand(
                api_key=api_key,
                max_tasks=max_tasks,
                headless=headless,
            ),
        ),
    )


def _emit_result(result: WorkerCommandResult) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Solver command failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    captcha_worker()
