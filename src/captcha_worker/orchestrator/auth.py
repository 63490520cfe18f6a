"""Credential validation and balance lookup."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Sequence
from decimal import Decimal
from typing import Any, Protocol

import httpx

from captcha_worker.orchestrator import protocol
from captcha_worker.orchestrator.errors import AuthError, SpawnError
from captcha_worker.orchestrator.models import Session

logger = logging.getLogger(__name__)

INVALID_RESPONSE_MESSAGE = "invalid response"


class AuthGateway(Protocol):
    """Validates a credential and reports the balance."""

    async def authenticate(self, credential: str) -> Session:
        """Return a session or raise ``AuthError``/``SpawnError``."""


class ProcessAuthGateway:
    """Runs a dedicated short-lived solver invocation per call."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        timeout_seconds: float | None = 30.0,
    ) -> None:
        if not command:
            raise ValueError("Auth command must not be empty.")
        self.command = tuple(command)
        self.timeout_seconds = timeout_seconds

    async def authenticate(self, credential: str) -> Session:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=os.environ.copy(),
            )
        except FileNotFoundError as error:
            raise SpawnError(
                f"Solver executable not found: {self.command[0]}",
                command=self.command,
            ) from error
        except OSError as error:
            raise SpawnError(
                f"Solver failed to start for authentication: {error}",
                command=self.command,
            ) from error

        payload = protocol.encode_command(protocol.handshake(credential)).encode("utf-8")
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(payload),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as error:
            _kill(process)
            await process.wait()
            raise AuthError("authentication timed out") from error

        for line in stderr.decode("utf-8", errors="replace").splitlines():
            if line.strip():
                logger.info("auth stderr: %s", line.rstrip())

        return session_from_response(credential, stdout.decode("utf-8", errors="replace"))


class HttpAuthGateway:
    """Posts the credential to the auth service over HTTP."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def authenticate(self, credential: str) -> Session:
        url = f"{self.base_url}/auth"
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                transport=self._transport,
            ) as client:
                response = await client.post(url, json=protocol.handshake(credential))
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling auth service %s", url)
            raise AuthError("authentication timed out") from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error calling auth service %s: %s", url, error)
            raise AuthError(f"auth service unreachable: {error}") from error

        return session_from_response(credential, response.text)


def session_from_response(credential: str, body: str) -> Session:
    """Turn one ``{status, balance?, message?}`` document into a session.

    Raises:
        AuthError: Status is not ``ok`` or the body is not a JSON object.
    """

    try:
        response: Any = json.loads(body.strip())
    except json.JSONDecodeError as error:
        logger.warning("Unparseable auth response: %.200s", body.strip())
        raise AuthError(INVALID_RESPONSE_MESSAGE) from error
    if not isinstance(response, dict):
        raise AuthError(INVALID_RESPONSE_MESSAGE)

    if response.get("status") == "ok":
        balance = protocol.parse_balance(response.get("balance"))
        return Session(
            credential=credential,
            balance=balance if balance is not None else Decimal("0"),
            authenticated=True,
        )

    message = response.get("message")
    raise AuthError(str(message) if message else INVALID_RESPONSE_MESSAGE)


def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        return
