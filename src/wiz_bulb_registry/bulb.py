"""Device handle for a single WiZ bulb."""

from __future__ import annotations

import asyncio
import time
from typing import Optional, Tuple

from . import codec
from .codec import Command, DecodeError, Response
from .config import WIZ_PORT
from .logging import get_logger
from .metrics import observe_device_command, record_protocol_anomaly
from .models import BulbRecord, Identifier, validate_address

DEFAULT_TIMEOUT = 1.0


class DeviceError(Exception):
    """Base class for failed exchanges with a bulb."""

    kind = "device"

    def __init__(self, address: str, message: str) -> None:
        super().__init__(f"{address}: {message}")
        self.address = address
        self.reason = message


class DeviceTimeout(DeviceError):
    """No reply arrived within the exchange window."""

    kind = "timeout"


class DeviceUnreachable(DeviceError):
    """The request could not be delivered."""

    kind = "unreachable"


class DeviceProtocolError(DeviceError):
    """The bulb answered with something we could not use."""

    kind = "protocol"

    def __init__(
        self, address: str, message: str, decode_error: Optional[DecodeError] = None
    ) -> None:
        super().__init__(address, message)
        self.decode_error = decode_error


class DeviceRejected(DeviceProtocolError):
    """The bulb replied with an error object."""

    def __init__(self, address: str, method: str, code: int, message: str) -> None:
        super().__init__(address, f"{method} rejected with code {code}: {message}")
        self.code = code


class _ReplyProtocol(asyncio.DatagramProtocol):
    """Resolve a future with the first datagram from the expected address."""

    def __init__(self, address: str, reply: asyncio.Future[bytes]) -> None:
        self.address = address
        self.reply = reply

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        if addr[0] != self.address or self.reply.done():
            return
        self.reply.set_result(data)

    def error_received(self, exc: Exception) -> None:
        if not self.reply.done():
            self.reply.set_exception(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc is not None and not self.reply.done():
            self.reply.set_exception(exc)


class Bulb:
    """In-process representative of one physical bulb.

    The identifier and address are fixed for the lifetime of the handle. The
    cached power state is whatever the last successful exchange reported and
    may lag behind the physical device.
    """

    def __init__(
        self,
        id: Identifier,
        name: str,
        address: str,
        *,
        mac: Optional[str] = None,
        power: Optional[bool] = None,
        port: int = WIZ_PORT,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._id = id
        self._address = validate_address(address)
        self.name = name
        self.mac = mac.lower() if mac else None
        self.port = port
        self.timeout = timeout
        self.power = power
        self.online: Optional[bool] = None
        self.last_seen: Optional[float] = None
        self.command_lock = asyncio.Lock()
        self.logger = get_logger("wiz.bulb")

    @classmethod
    def from_record(
        cls, record: BulbRecord, *, port: int = WIZ_PORT, timeout: float = DEFAULT_TIMEOUT
    ) -> "Bulb":
        if record.id is None:
            raise ValueError("Cannot build a bulb handle from a record without an id")
        return cls(
            record.id,
            record.name,
            record.address,
            mac=record.mac,
            power=record.power,
            port=port,
            timeout=timeout,
        )

    @property
    def id(self) -> Identifier:
        return self._id

    @property
    def address(self) -> str:
        return self._address

    def __repr__(self) -> str:
        return f"Bulb(id={self._id}, name={self.name!r}, address={self._address}, power={self.power})"

    async def send(self, command: Command, timeout: Optional[float] = None) -> Response:
        """Send one request and wait for a single reply from this bulb.

        Raises:
            DeviceTimeout: no reply within ``timeout`` seconds.
            DeviceUnreachable: the datagram could not be sent.
            DeviceProtocolError: the reply could not be decoded, answered a
                different method, or carried an error object.
        """

        window = self.timeout if timeout is None else timeout
        method = codec.method_for(command)
        payload = codec.encode(command)
        started = time.perf_counter()
        result = "error"
        try:
            data = await self._exchange(payload, window)
            response = self._interpret(method, data)
            result = "success"
            return response
        except DeviceError as exc:
            result = exc.kind
            raise
        finally:
            observe_device_command(method, result, time.perf_counter() - started)

    async def _exchange(self, payload: bytes, window: float) -> bytes:
        loop = asyncio.get_running_loop()
        reply: asyncio.Future[bytes] = loop.create_future()
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _ReplyProtocol(self._address, reply),
                remote_addr=(self._address, self.port),
            )
        except OSError as exc:
            raise DeviceUnreachable(self._address, f"cannot open socket: {exc}") from exc
        try:
            try:
                transport.sendto(payload)
            except OSError as exc:
                raise DeviceUnreachable(self._address, f"send failed: {exc}") from exc
            try:
                return await asyncio.wait_for(reply, timeout=window)
            except asyncio.TimeoutError as exc:
                raise DeviceTimeout(
                    self._address, f"no reply within {window:.3f}s"
                ) from exc
            except OSError as exc:
                raise DeviceUnreachable(self._address, f"transport error: {exc}") from exc
        finally:
            transport.close()

    def _interpret(self, method: str, data: bytes) -> Response:
        try:
            response = codec.decode(data)
        except DecodeError as exc:
            record_protocol_anomaly(type(exc).__name__)
            self.logger.warning(
                "Undecodable reply from bulb",
                extra={"bulb_id": str(self._id), "ip": self._address, "error": str(exc)},
            )
            raise DeviceProtocolError(self._address, str(exc), exc) from exc
        if response.method != method:
            record_protocol_anomaly("method_mismatch")
            self.logger.warning(
                "Reply method does not match request",
                extra={
                    "bulb_id": str(self._id),
                    "ip": self._address,
                    "expected": method,
                    "received": response.method,
                },
            )
            raise DeviceProtocolError(
                self._address,
                f"expected {method} reply, got {response.method}",
                codec.UnexpectedMethod(response.method),
            )
        if response.error is not None:
            record_protocol_anomaly("device_error")
            self.logger.warning(
                "Bulb rejected request",
                extra={
                    "bulb_id": str(self._id),
                    "ip": self._address,
                    "method": method,
                    "code": response.error.code,
                    "message": response.error.message,
                },
            )
            raise DeviceRejected(
                self._address, method, response.error.code, response.error.message
            )
        return response

    async def set_power(self, power: bool, timeout: Optional[float] = None) -> Response:
        """Send a power command without touching the cached state."""

        return await self.send(Command.TURN_ON if power else Command.TURN_OFF, timeout)

    async def query_power(self, timeout: Optional[float] = None) -> bool:
        """Ask the bulb for its power state without touching the cached state."""

        response = await self.send(Command.QUERY_STATE, timeout)
        try:
            return codec.power_state(response)
        except DecodeError as exc:
            record_protocol_anomaly(type(exc).__name__)
            raise DeviceProtocolError(self._address, str(exc), exc) from exc

    async def resolve_mac(self, timeout: Optional[float] = None) -> str:
        """Return the manufacturer identifier the bulb reports for itself."""

        response = await self.send(Command.DISCOVERY_PROBE, timeout)
        try:
            return codec.reported_id(response)
        except DecodeError as exc:
            raise DeviceProtocolError(self._address, str(exc), exc) from exc

    def apply_power(self, power: bool) -> None:
        self.power = power
        self.online = True
        self.last_seen = time.monotonic()

    def mark_unreachable(self) -> None:
        self.online = False

    async def on(self, timeout: Optional[float] = None) -> Response:
        return await self._switch(True, timeout)

    async def off(self, timeout: Optional[float] = None) -> Response:
        return await self._switch(False, timeout)

    async def _switch(self, power: bool, timeout: Optional[float]) -> Response:
        response = await self.set_power(power, timeout)
        if codec.command_succeeded(response):
            self.apply_power(power)
        return response

    async def get_state(self, timeout: Optional[float] = None) -> bool:
        power = await self.query_power(timeout)
        self.apply_power(power)
        return power

    def snapshot(self) -> BulbRecord:
        return BulbRecord(
            id=self._id,
            name=self.name,
            address=self._address,
            power=self.power,
            mac=self.mac,
            online=self.online,
        )
