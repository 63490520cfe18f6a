from __future__ import annotations

import asyncio
import json
import sys
from decimal import Decimal

import allure
import httpx
import pytest

from captcha_worker.orchestrator.auth import (
    INVALID_RESPONSE_MESSAGE,
    HttpAuthGateway,
    ProcessAuthGateway,
    session_from_response,
)
from captcha_worker.orchestrator.errors import AuthError, SpawnError

pytestmark = [
    allure.epic("Authentication"),
    allure.feature("Auth Gateway"),
]


def test_good_credential_yields_session_with_balance(echo_solver) -> None:
    gateway = ProcessAuthGateway(command=echo_solver("auth", "--valid-key", "GOOD"))

    session = asyncio.run(gateway.authenticate("GOOD"))

    assert session.credential == "GOOD"
    assert session.balance == Decimal("42.5")
    assert session.authenticated is True


def test_bad_credential_raises_auth_error_with_message(echo_solver) -> None:
    gateway = ProcessAuthGateway(command=echo_solver("auth", "--valid-key", "GOOD"))

    with pytest.raises(AuthError) as error:
        asyncio.run(gateway.authenticate("BAD"))

    assert error.value.message == "invalid"


def test_authentication_can_be_repeated(echo_solver) -> None:
    gateway = ProcessAuthGateway(command=echo_solver("auth", "--balance", "7"))

    async def scenario() -> list[Decimal]:
        first = await gateway.authenticate("GOOD")
        second = await gateway.authenticate("GOOD")
        return [first.balance, second.balance]

    assert asyncio.run(scenario()) == [Decimal("7"), Decimal("7")]


def test_missing_binary_raises_spawn_error() -> None:
    gateway = ProcessAuthGateway(command=("/nonexistent/captcha_cli_missing", "auth"))

    with pytest.raises(SpawnError):
        asyncio.run(gateway.authenticate("GOOD"))


def test_unparseable_output_is_invalid_response() -> None:
    gateway = ProcessAuthGateway(command=(sys.executable, "-c", "print('definitely not json')"))

    with pytest.raises(AuthError) as error:
        asyncio.run(gateway.authenticate("GOOD"))

    assert error.value.message == INVALID_RESPONSE_MESSAGE


def test_hung_auth_process_times_out() -> None:
    gateway = ProcessAuthGateway(
        command=(sys.executable, "-c", "import time; time.sleep(30)"),
        timeout_seconds=0.5,
    )

    with pytest.raises(AuthError) as error:
        asyncio.run(gateway.authenticate("GOOD"))

    assert error.value.message == "authentication timed out"


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ('{"status":"error"}', INVALID_RESPONSE_MESSAGE),
        ('{"status":"error","message":"expired"}', "expired"),
        ('["ok"]', INVALID_RESPONSE_MESSAGE),
        ("", INVALID_RESPONSE_MESSAGE),
    ],
)
def test_non_ok_responses_raise_auth_error(body: str, message: str) -> None:
    with pytest.raises(AuthError) as error:
        session_from_response("GOOD", body)

    assert error.value.message == message


def test_ok_without_balance_defaults_to_zero() -> None:
    session = session_from_response("GOOD", '{"status":"ok"}\n')

    assert session.balance == Decimal("0")


def test_http_gateway_posts_credential() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"status": "ok", "balance": 10.25})

    gateway = HttpAuthGateway(
        base_url="https://auth.example.com/",
        transport=httpx.MockTransport(handler),
    )

    session = asyncio.run(gateway.authenticate("GOOD"))

    assert session.balance == Decimal("10.25")
    assert seen[0].method == "POST"
    assert str(seen[0].url) == "https://auth.example.com/auth"
    assert json.loads(seen[0].content) == {"api_key": "GOOD"}


def test_http_gateway_rejection_carries_message() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"status": "error", "message": "invalid"})

    gateway = HttpAuthGateway(
        base_url="https://auth.example.com",
        transport=httpx.MockTransport(handler),
    )

    with pytest.raises(AuthError) as error:
        asyncio.run(gateway.authenticate("BAD"))

    assert error.value.message == "invalid"


def test_http_gateway_transport_failure_is_auth_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    gateway = HttpAuthGateway(
        base_url="https://auth.example.com",
        transport=httpx.MockTransport(handler),
    )

    with pytest.raises(AuthError) as error:
        asyncio.run(gateway.authenticate("GOOD"))

    assert "unreachable" in error.value.message
