"""JSON datagram codec for the WiZ bulb LAN protocol.

Every exchange is a single UDP datagram holding one JSON object. Requests carry
``method`` and ``params``; replies echo ``method`` and carry either a
``result`` object or an ``error`` object with ``code`` and ``message``::

    -> {"method": "setPilot", "params": {"state": true}}
    <- {"method": "setPilot", "env": "pro", "result": {"success": true}}

Discovery uses the ``registration`` method, to which bulbs answer with their
MAC address in ``result.mac``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

METHOD_SET_PILOT = "setPilot"
METHOD_GET_PILOT = "getPilot"
METHOD_REGISTRATION = "registration"

KNOWN_METHODS = frozenset({METHOD_SET_PILOT, METHOD_GET_PILOT, METHOD_REGISTRATION})

PROBE_PARAMS: Mapping[str, Any] = {
    "phoneMac": "AAAAAAAAAAAA",
    "register": False,
    "phoneIp": "1.2.3.4",
    "id": "1",
}


class Command(Enum):
    """Requests a bulb understands."""

    TURN_ON = "turn_on"
    TURN_OFF = "turn_off"
    QUERY_STATE = "query_state"
    DISCOVERY_PROBE = "discovery_probe"


class DecodeError(ValueError):
    """Raised when a datagram cannot be interpreted as a protocol response."""


class MalformedMessage(DecodeError):
    """The payload is not a well-formed response object."""


class UnexpectedMethod(DecodeError):
    """The response names a method this codec does not know."""

    def __init__(self, method: str) -> None:
        super().__init__(f"Unexpected method in response: {method!r}")
        self.method = method


@dataclass(frozen=True)
class ResponseError:
    """Error object reported by a bulb."""

    code: int
    message: str


@dataclass(frozen=True)
class Response:
    """Decoded reply datagram."""

    method: str
    result: Optional[Mapping[str, Any]] = None
    error: Optional[ResponseError] = None
    env: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def method_for(command: Command) -> str:
    """Return the wire method a command is sent as."""

    if command in (Command.TURN_ON, Command.TURN_OFF):
        return METHOD_SET_PILOT
    if command is Command.QUERY_STATE:
        return METHOD_GET_PILOT
    if command is Command.DISCOVERY_PROBE:
        return METHOD_REGISTRATION
    raise TypeError(f"Unsupported command: {command!r}")


def _params_for(command: Command) -> Dict[str, Any]:
    if command is Command.TURN_ON:
        return {"state": True}
    if command is Command.TURN_OFF:
        return {"state": False}
    if command is Command.DISCOVERY_PROBE:
        return dict(PROBE_PARAMS)
    return {}


def encode(command: Command) -> bytes:
    """Encode a command into a request datagram."""

    if not isinstance(command, Command):
        raise TypeError(f"Unsupported command: {command!r}")
    message = {"method": method_for(command), "params": _params_for(command)}
    return json.dumps(message, separators=(",", ":")).encode("utf-8")


def decode(data: bytes) -> Response:
    """Decode a reply datagram.

    Raises:
        MalformedMessage: the payload is not a well-formed response.
        UnexpectedMethod: the response method is not a known command shape.
    """

    try:
        text = bytes(data).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedMessage("Payload is not valid UTF-8") from exc
    try:
        payload = json.loads(text)
    except (ValueError, RecursionError) as exc:
        raise MalformedMessage("Payload is not valid JSON") from exc
    if not isinstance(payload, Mapping):
        raise MalformedMessage("Payload is not a JSON object")

    method = payload.get("method")
    if not isinstance(method, str):
        raise MalformedMessage("Response is missing a method")
    if method not in KNOWN_METHODS:
        raise UnexpectedMethod(method)

    env = payload.get("env")
    result = payload.get("result")
    error = payload.get("error")
    if error is not None:
        return Response(method=method, error=_parse_error(error), env=_optional_str(env))
    if result is None:
        raise MalformedMessage(f"{method} response carries neither result nor error")
    if not isinstance(result, Mapping):
        raise MalformedMessage(f"{method} result is not an object")
    return Response(method=method, result=dict(result), env=_optional_str(env))


def _parse_error(error: Any) -> ResponseError:
    if not isinstance(error, Mapping):
        raise MalformedMessage("Error is not an object")
    code = error.get("code")
    if isinstance(code, bool) or not isinstance(code, int):
        raise MalformedMessage("Error code is not an integer")
    message = error.get("message", "")
    return ResponseError(code=code, message=str(message))


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def power_state(response: Response) -> bool:
    """Return the power state reported in a getPilot result."""

    state = (response.result or {}).get("state")
    if not isinstance(state, bool):
        raise MalformedMessage(f"{response.method} result has no boolean state")
    return state


def reported_id(response: Response) -> str:
    """Return the manufacturer identifier (MAC) reported by a bulb."""

    mac = (response.result or {}).get("mac")
    if not isinstance(mac, str) or not mac:
        raise MalformedMessage(f"{response.method} result has no mac")
    return mac.lower()


def command_succeeded(response: Response) -> bool:
    """Return the bulb's self-reported success flag for a setPilot reply."""

    return bool((response.result or {}).get("success", response.ok))
