import asyncio
import contextlib
import json
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

import pytest

from wiz_bulb_registry.config import Config


class FakeBulb(asyncio.DatagramProtocol):
    """Simulated WiZ bulb answering on a loopback address.

    ``mode`` selects the behaviour: ``normal`` answers like a bulb, ``silent``
    never replies, ``garbage`` replies with undecodable bytes, ``reject``
    answers every request with an error object and ``refuse`` answers setPilot
    with ``success: false`` without changing power. ``reply_delay`` holds each
    reply back for that many seconds.
    """

    def __init__(self, mac: str = "a8bb50000001", power: bool = False, mode: str = "normal") -> None:
        self.mac = mac
        self.power = power
        self.mode = mode
        self.reply_delay = 0.0
        self.requests: List[Dict[str, Any]] = []
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.port = 0

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]
        self.port = transport.get_extra_info("sockname")[1]

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        try:
            request = json.loads(data)
        except ValueError:
            return
        self.requests.append(request)
        if self.mode == "silent" or self.transport is None:
            return
        if self.mode == "garbage":
            payload = b"\xff\xfenot json"
        else:
            payload = json.dumps(self._reply(request)).encode("utf-8")
        if self.reply_delay:
            asyncio.get_running_loop().call_later(self.reply_delay, self.transport.sendto, payload, addr)
        else:
            self.transport.sendto(payload, addr)

    def _reply(self, request: Dict[str, Any]) -> Dict[str, Any]:
        method = request.get("method")
        params = request.get("params") or {}
        if self.mode == "reject":
            return {"method": method, "env": "pro", "error": {"code": -32601, "message": "Method not found"}}
        if method == "setPilot" and self.mode == "refuse":
            return {"method": "setPilot", "env": "pro", "result": {"success": False}}
        if method == "setPilot":
            self.power = bool(params.get("state"))
            return {"method": "setPilot", "env": "pro", "result": {"success": True}}
        if method == "getPilot":
            return {
                "method": "getPilot",
                "env": "pro",
                "result": {"mac": self.mac, "rssi": -61, "state": self.power, "sceneId": 0, "dimming": 100},
            }
        if method == "registration":
            return {"method": "registration", "env": "pro", "result": {"mac": self.mac, "success": True}}
        return {"method": method, "env": "pro", "error": {"code": -32601, "message": "Method not found"}}

    def close(self) -> None:
        if self.transport is not None:
            self.transport.close()


@contextlib.asynccontextmanager
async def running_bulb(
    host: str = "127.0.0.1", port: int = 0, reply_delay: float = 0.0, **kwargs: Any
) -> AsyncIterator[FakeBulb]:
    loop = asyncio.get_running_loop()
    bulb = FakeBulb(**kwargs)
    bulb.reply_delay = reply_delay
    await loop.create_datagram_endpoint(lambda: bulb, local_addr=(host, port))
    try:
        yield bulb
    finally:
        bulb.close()


def build_config(port: int = 38899, **overrides: Any) -> Config:
    values: Dict[str, Any] = {
        "store_url": "sqlite:///:memory:",
        "bulb_port": port,
        "command_timeout": 0.5,
        "resolve_mac_timeout": 0.3,
        "discovery_subnet": "127.0.0.1/32",
        "discovery_broadcast": False,
        "discovery_timeout": 0.3,
        "refresh_enabled": False,
    }
    values.update(overrides)
    return Config(**values)


@pytest.fixture
def fake_bulb() -> Callable[..., Any]:
    return running_bulb


@pytest.fixture
def make_config() -> Callable[..., Config]:
    return build_config
