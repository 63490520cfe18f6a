"""Line-delimited JSON codec for the solver stdin/stdout protocol.

Outbound commands are compact JSON objects terminated by ``\\n``. Inbound
lines are decoded independently and classified into a closed set of message
variants (status, task, unrecognized). Status wins over task so that an
authentication acknowledgment is never mistaken for a challenge.
"""

from __future__ import annotations

import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from captcha_worker.orchestrator.errors import ProtocolDecodeError
from captcha_worker.orchestrator.models import (
    DEFAULT_CAPTCHA_TYPE,
    ProtocolMessage,
    StatusKind,
    StatusMessage,
    Task,
    UnrecognizedMessage,
)

logger = logging.getLogger(__name__)

GET_TASK_COMMAND = "get_task"
SUBMIT_SOLUTION_COMMAND = "submit_solution"

_STATUS_VALUES = {kind.value: kind for kind in StatusKind}


def handshake(credential: str) -> dict[str, Any]:
    return {"api_key": credential}


def get_task() -> dict[str, Any]:
    return {"command": GET_TASK_COMMAND}


def submit_solution(task_id: Any, token: str) -> dict[str, Any]:
    return {"command": SUBMIT_SOLUTION_COMMAND, "task_id": task_id, "solution": token}


def encode_command(payload: dict[str, Any]) -> str:
    """Serialize one command as a single JSON line."""

    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n"


def decode_line(line: str) -> ProtocolMessage:
    """Parse and classify one line of solver output.

    Raises:
        ProtocolDecodeError: The line is not valid JSON or not a JSON object.
    """

    text = line.strip()
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as error:
        raise ProtocolDecodeError(f"Invalid JSON from solver: {error}", line=text) from error
    if not isinstance(payload, dict):
        raise ProtocolDecodeError(
            f"Expected JSON object from solver, got {type(payload).__name__}",
            line=text,
        )
    return classify(payload)


def classify(payload: dict[str, Any]) -> ProtocolMessage:
    has_url = _present(payload.get("url"))
    has_sitekey = _present(payload.get("sitekey"))

    status = payload.get("status")
    if isinstance(status, str) and status in _STATUS_VALUES and not has_url and not has_sitekey:
        message = payload.get("message")
        return StatusMessage(
            status=_STATUS_VALUES[status],
            message=str(message) if message is not None else None,
            balance=parse_balance(payload.get("balance")),
            raw=payload,
        )

    if has_url and has_sitekey:
        captcha_type = payload.get("type")
        return Task(
            url=str(payload["url"]),
            sitekey=str(payload["sitekey"]),
            task_id=payload.get("task_id"),
            captcha_type=str(captcha_type) if _present(captcha_type) else DEFAULT_CAPTCHA_TYPE,
            raw=payload,
        )

    logger.warning("Unrecognized solver message: %s", _preview(payload))
    return UnrecognizedMessage(raw=payload)


def parse_balance(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        logger.warning("Ignoring non-numeric balance: %r", value)
        return None


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def _preview(payload: dict[str, Any], *, limit: int = 200) -> str:
    text = json.dumps(payload, ensure_ascii=False)
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
