import time

import pytest

from wiz_bulb_registry.bulb import (
    Bulb,
    DeviceProtocolError,
    DeviceRejected,
    DeviceTimeout,
)
from wiz_bulb_registry.codec import MalformedMessage
from wiz_bulb_registry.models import Identifier


def _bulb(port: int, timeout: float = 0.5) -> Bulb:
    return Bulb(Identifier.numeric(1), "desk", "127.0.0.1", port=port, timeout=timeout)


@pytest.mark.asyncio
async def test_turn_on_then_get_state_reports_on(fake_bulb) -> None:
    async with fake_bulb(power=False) as device:
        bulb = _bulb(device.port)
        await bulb.on()
        assert bulb.power is True
        assert await bulb.get_state() is True
        assert bulb.online is True
        assert device.requests[0] == {"method": "setPilot", "params": {"state": True}}


@pytest.mark.asyncio
async def test_silent_bulb_times_out_within_bound(fake_bulb) -> None:
    async with fake_bulb(mode="silent") as device:
        bulb = _bulb(device.port, timeout=0.2)
        started = time.monotonic()
        with pytest.raises(DeviceTimeout):
            await bulb.on()
        assert time.monotonic() - started < 1.0
        assert bulb.power is None


@pytest.mark.asyncio
async def test_garbage_reply_is_protocol_error(fake_bulb) -> None:
    async with fake_bulb(mode="garbage") as device:
        bulb = _bulb(device.port)
        with pytest.raises(DeviceProtocolError) as excinfo:
            await bulb.get_state()
        assert excinfo.value.kind == "protocol"
        assert isinstance(excinfo.value.decode_error, MalformedMessage)


@pytest.mark.asyncio
async def test_error_object_is_rejection(fake_bulb) -> None:
    async with fake_bulb(mode="reject") as device:
        bulb = _bulb(device.port)
        with pytest.raises(DeviceRejected) as excinfo:
            await bulb.off()
        assert excinfo.value.code == -32601
        assert bulb.power is None


@pytest.mark.asyncio
async def test_resolve_mac_reads_registration_reply(fake_bulb) -> None:
    async with fake_bulb(mac="A8BB50ABCDEF") as device:
        bulb = _bulb(device.port)
        assert await bulb.resolve_mac() == "a8bb50abcdef"


def test_identity_is_read_only() -> None:
    bulb = _bulb(38899)
    with pytest.raises(AttributeError):
        bulb.id = Identifier.numeric(2)  # type: ignore[misc]
    with pytest.raises(AttributeError):
        bulb.address = "10.0.0.2"  # type: ignore[misc]


def test_snapshot_reflects_cache() -> None:
    bulb = _bulb(38899)
    bulb.apply_power(True)
    record = bulb.snapshot()
    assert record.power is True
    assert record.online is True
    bulb.mark_unreachable()
    assert bulb.snapshot().online is False


@pytest.mark.asyncio
async def test_unconfirmed_switch_keeps_cached_power(fake_bulb) -> None:
    async with fake_bulb(power=False, mode="refuse") as device:
        bulb = _bulb(device.port)
        response = await bulb.on()
    assert response.result == {"success": False}
    assert bulb.power is None
    assert bulb.online is None
