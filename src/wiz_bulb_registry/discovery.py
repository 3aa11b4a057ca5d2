"""LAN discovery of WiZ bulbs."""

from __future__ import annotations

import asyncio
import ipaddress
import socket
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from . import codec
from .codec import Command, DecodeError
from .config import WIZ_PORT
from .logging import get_logger
from .metrics import (
    observe_discovery_scan,
    record_discovery_error,
    record_discovery_response,
)

Subnet = Union[str, ipaddress.IPv4Network]

_RECV_BUFFER = 4096


class DiscoveryError(RuntimeError):
    """Raised when a scan cannot start at all."""


@dataclass(frozen=True)
class DiscoveredBulb:
    """A bulb that answered a discovery probe."""

    address: str
    reported_id: str

    def as_dict(self) -> Dict[str, Any]:
        return {"address": self.address, "reported_id": self.reported_id}


def _create_probe_socket(broadcast: bool) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        if broadcast:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.bind(("", 0))
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


def _parse_reply(data: bytes, addr: Tuple[str, int]) -> Optional[DiscoveredBulb]:
    response = codec.decode(data)
    if response.method != codec.METHOD_REGISTRATION or response.error is not None:
        return None
    return DiscoveredBulb(address=addr[0], reported_id=codec.reported_id(response))


class DiscoveryScan:
    """Replies to one round of probes, yielded as they arrive.

    The sequence ends when the collection window closes. It cannot be
    iterated a second time; start a new scan for a fresh view.
    """

    def __init__(
        self,
        sock: socket.socket,
        deadline: float,
        mode: str,
        failures: Dict[str, str],
        started: float,
    ) -> None:
        self._sock = sock
        self._deadline = deadline
        self._mode = mode
        self._started = started
        self._seen: Set[str] = set()
        self._closed = False
        self.failures = failures
        self.discarded = 0
        self.logger = get_logger("wiz.discovery")

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "DiscoveryScan":
        return self

    async def __anext__(self) -> DiscoveredBulb:
        loop = asyncio.get_running_loop()
        while not self._closed:
            remaining = self._deadline - loop.time()
            if remaining <= 0:
                break
            try:
                data, addr = await asyncio.wait_for(
                    loop.sock_recvfrom(self._sock, _RECV_BUFFER), timeout=remaining
                )
            except asyncio.TimeoutError:
                break
            except OSError as exc:
                # ICMP errors from unicast probes surface on receive
                record_discovery_error("receive_error")
                self.logger.debug("Discovery receive error", extra={"error": str(exc)})
                continue
            found = self._accept(data, addr)
            if found is not None:
                return found
        self.close()
        raise StopAsyncIteration

    def _accept(self, data: bytes, addr: Tuple[str, int]) -> Optional[DiscoveredBulb]:
        try:
            found = _parse_reply(data, addr)
        except DecodeError as exc:
            self.discarded += 1
            record_discovery_error(type(exc).__name__)
            self.logger.debug(
                "Ignoring undecodable discovery reply",
                extra={"from": addr, "error": str(exc)},
            )
            return None
        if found is None:
            self.discarded += 1
            record_discovery_error("not_a_probe_reply")
            return None
        if found.address in self._seen:
            self.logger.debug("Ignoring duplicate discovery reply", extra={"from": addr})
            return None
        self._seen.add(found.address)
        record_discovery_response(self._mode)
        self.logger.info(
            "Discovered bulb",
            extra={"ip": found.address, "reported_id": found.reported_id},
        )
        return found

    async def collect(self) -> Set[DiscoveredBulb]:
        """Drain the scan into a set; the socket is released even if cancelled."""

        try:
            return {found async for found in self}
        finally:
            self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._sock.close()
        observe_discovery_scan(
            "partial" if self.failures else "ok", time.perf_counter() - self._started
        )
        self.logger.debug(
            "Discovery scan finished",
            extra={
                "replies": len(self._seen),
                "discarded": self.discarded,
                "send_failures": len(self.failures),
            },
        )


class DiscoveryScanner:
    """Send registration probes to a subnet and collect replies."""

    def __init__(
        self,
        port: int = WIZ_PORT,
        *,
        broadcast: bool = True,
        max_hosts: int = 1024,
    ) -> None:
        self.port = port
        self.broadcast = broadcast
        self.max_hosts = max_hosts
        self.logger = get_logger("wiz.discovery")
        self._probe = codec.encode(Command.DISCOVERY_PROBE)

    def destinations(self, subnet: Subnet) -> List[str]:
        network = ipaddress.IPv4Network(subnet, strict=False)
        if self.broadcast:
            return [str(network.broadcast_address)]
        if network.num_addresses <= 2:
            hosts = list(network)
        else:
            hosts = list(network.hosts())
        return [str(host) for host in hosts[: self.max_hosts]]

    async def scan(self, subnet: Subnet, timeout: float) -> DiscoveryScan:
        """Probe ``subnet`` and return the lazily collected replies.

        Raises:
            DiscoveryError: the local socket could not be created or bound.
        """

        started = time.perf_counter()
        mode = "broadcast" if self.broadcast else "range"
        try:
            targets = self.destinations(subnet)
        except ValueError as exc:
            raise DiscoveryError(f"Invalid discovery subnet {subnet!r}: {exc}") from exc
        try:
            sock = _create_probe_socket(self.broadcast)
        except OSError as exc:
            record_discovery_error("socket_setup")
            observe_discovery_scan("error", time.perf_counter() - started)
            self.logger.error(
                "Cannot open discovery socket",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
            raise DiscoveryError(f"Cannot open discovery socket: {exc}") from exc

        failures: Dict[str, str] = {}
        loop = asyncio.get_running_loop()
        for target in targets:
            try:
                await self._send_probe(loop, sock, target)
            except OSError as exc:
                failures[target] = str(exc)
                record_discovery_error("send_failed")
                self.logger.debug(
                    "Discovery probe failed",
                    extra={"target": target, "error": str(exc)},
                )
        self.logger.info(
            "Discovery probes sent",
            extra={
                "subnet": str(subnet),
                "mode": mode,
                "targets": len(targets),
                "failures": len(failures),
                "timeout": timeout,
            },
        )
        return DiscoveryScan(sock, loop.time() + timeout, mode, failures, started)

    async def _send_probe(
        self, loop: asyncio.AbstractEventLoop, sock: socket.socket, target: str
    ) -> None:
        await loop.sock_sendto(sock, self._probe, (target, self.port))
