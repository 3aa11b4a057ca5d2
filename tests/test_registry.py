import asyncio
from pathlib import Path

import pytest

from wiz_bulb_registry.metrics import get_registry
from wiz_bulb_registry.models import BulbRecord, Identifier
from wiz_bulb_registry.registry import (
    AlreadyExists,
    CommandFailed,
    DiscoveryFailed,
    NotFound,
    Registry,
    StorageFailure,
)
from wiz_bulb_registry.store import StoreError


@pytest.mark.asyncio
async def test_add_assigns_id_and_resolves_mac(fake_bulb, make_config) -> None:
    async with fake_bulb(mac="A8BB50000001") as device:
        registry = await Registry.from_url("sqlite:///:memory:", make_config(device.port))
        try:
            record = await registry.add(BulbRecord(name="desk", address="127.0.0.1"))
        finally:
            await registry.close()
    assert record.id == Identifier.numeric(1)
    assert record.mac == "a8bb50000001"


@pytest.mark.asyncio
async def test_add_without_reachable_bulb_still_registers(make_config) -> None:
    config = make_config(9, resolve_mac_timeout=0.1)
    registry = await Registry.from_url("sqlite:///:memory:", config)
    try:
        record = await registry.add(BulbRecord(name="desk", address="127.0.0.1"))
        assert record.mac is None
        assert await registry.ids() == [record.id]
    finally:
        await registry.close()


@pytest.mark.asyncio
async def test_duplicate_add_rejected_once(make_config) -> None:
    registry = await Registry.from_url(
        "sqlite:///:memory:", make_config(resolve_mac_on_add=False)
    )
    try:
        first = BulbRecord(name="desk", address="10.0.0.1", id=Identifier.numeric(1))
        second = BulbRecord(name="other", address="10.0.0.2", id=Identifier.numeric(1))
        results = await asyncio.gather(
            registry.add(first), registry.add(second), return_exceptions=True
        )
        assert sum(isinstance(item, AlreadyExists) for item in results) == 1
        assert len(await registry.ids()) == 1
        with pytest.raises(AlreadyExists):
            await registry.add(first)
        assert len(await registry.ids()) == 1
    finally:
        await registry.close()


@pytest.mark.asyncio
async def test_find_by_name(make_config) -> None:
    registry = await Registry.from_url(
        "sqlite:///:memory:", make_config(resolve_mac_on_add=False)
    )
    try:
        assert await registry.find_by_name("desk") is None
        await registry.add(BulbRecord(name="desk", address="10.0.0.1", id=Identifier.numeric(1)))
        await registry.add(BulbRecord(name="desk", address="10.0.0.2", id=Identifier.numeric(2)))
        found = await registry.find_by_name("desk")
        assert found is not None
        assert found.id == Identifier.numeric(1)
        assert await registry.find_by_name("porch") is None
    finally:
        await registry.close()


@pytest.mark.asyncio
async def test_commands_on_unknown_id_raise_not_found(make_config) -> None:
    registry = await Registry.from_url("sqlite:///:memory:", make_config())
    try:
        with pytest.raises(NotFound):
            await registry.turn_on_by_id(99)
        with pytest.raises(NotFound):
            await registry.remove("missing")
    finally:
        await registry.close()


@pytest.mark.asyncio
async def test_end_to_end_register_turn_on_find(fake_bulb, make_config) -> None:
    async with fake_bulb(power=False) as device:
        registry = await Registry.from_url("sqlite:///:memory:", make_config(device.port))
        try:
            await registry.add(BulbRecord(name="kitchen", address="127.0.0.1", id=Identifier.numeric(1)))
            status = await registry.turn_on_by_id(1)
            found = await registry.find_by_name("kitchen")
        finally:
            await registry.close()
    assert status.success is True
    assert status.describe() == "Turn on status for id 1: success"
    assert found is not None
    assert found.power is True
    assert found.online is True
    assert device.power is True


@pytest.mark.asyncio
async def test_back_to_back_commands_last_ack_wins(fake_bulb, make_config) -> None:
    async with fake_bulb(power=False) as device:
        registry = await Registry.from_url("sqlite:///:memory:", make_config(device.port))
        try:
            await registry.add(BulbRecord(name="lamp", address="127.0.0.1", id=Identifier.numeric(3)))
            on_task = asyncio.create_task(registry.turn_on_by_id(3))
            off_task = asyncio.create_task(registry.turn_off_by_id(3))
            await asyncio.gather(on_task, off_task)
            record = await registry.get(3)
            assert await registry.query_state_by_id(3) is False
        finally:
            await registry.close()
    assert record is not None
    assert record.power is False
    assert device.power is False


@pytest.mark.asyncio
async def test_toggle_flips_reported_state(fake_bulb, make_config) -> None:
    async with fake_bulb(power=True) as device:
        registry = await Registry.from_url("sqlite:///:memory:", make_config(device.port))
        try:
            await registry.add(BulbRecord(name="lamp", address="127.0.0.1", id=Identifier.numeric(1)))
            status = await registry.toggle_by_id(1)
        finally:
            await registry.close()
    assert status.action == "off"
    assert status.power is False
    assert device.power is False


@pytest.mark.asyncio
async def test_timeout_leaves_state_unchanged(fake_bulb, make_config) -> None:
    async with fake_bulb(mode="silent") as device:
        config = make_config(device.port, command_timeout=0.2, resolve_mac_on_add=False)
        registry = await Registry.from_url("sqlite:///:memory:", config)
        try:
            await registry.add(
                BulbRecord(name="lamp", address="127.0.0.1", id=Identifier.numeric(1), power=False)
            )
            with pytest.raises(CommandFailed) as excinfo:
                await registry.turn_on_by_id(1)
            record = await registry.get(1)
        finally:
            await registry.close()
    assert excinfo.value.kind == "timeout"
    assert record is not None
    assert record.power is False
    assert record.online is None


@pytest.mark.asyncio
async def test_protocol_failure_kind(fake_bulb, make_config) -> None:
    async with fake_bulb(mode="garbage") as device:
        config = make_config(device.port, resolve_mac_on_add=False)
        registry = await Registry.from_url("sqlite:///:memory:", config)
        try:
            await registry.add(BulbRecord(name="lamp", address="127.0.0.1", id=Identifier.numeric(1)))
            with pytest.raises(CommandFailed) as excinfo:
                await registry.query_state_by_id(1)
        finally:
            await registry.close()
    assert excinfo.value.kind == "protocol"


@pytest.mark.asyncio
async def test_discovery_never_reports_known_bulbs(fake_bulb, make_config) -> None:
    async with fake_bulb(mac="A8BB50000042") as device:
        registry = await Registry.from_url("sqlite:///:memory:", make_config(device.port))
        try:
            unknown = await registry.discover_unknown_bulbs()
            assert [item.reported_id for item in unknown] == ["a8bb50000042"]

            await registry.add(BulbRecord(name="desk", address="127.0.0.1"))
            assert await registry.discover_unknown_bulbs() == []
        finally:
            await registry.close()


@pytest.mark.asyncio
async def test_discovery_matches_reported_id_against_keys(fake_bulb, make_config) -> None:
    async with fake_bulb(mac="a8bb50000043") as device:
        config = make_config(device.port, resolve_mac_on_add=False)
        registry = await Registry.from_url("sqlite:///:memory:", config)
        try:
            await registry.add(
                BulbRecord(name="desk", address="127.0.0.1", id=Identifier.opaque("a8bb50000043"))
            )
            assert await registry.discover_unknown_bulbs() == []
        finally:
            await registry.close()


@pytest.mark.asyncio
async def test_discovery_failure_is_reported(make_config) -> None:
    registry = await Registry.from_url(
        "sqlite:///:memory:", make_config(discovery_subnet="not-a-subnet")
    )
    try:
        with pytest.raises(DiscoveryFailed):
            await registry.discover_unknown_bulbs()
    finally:
        await registry.close()


@pytest.mark.asyncio
async def test_storage_failure_leaves_registry_unchanged(make_config, monkeypatch) -> None:
    registry = await Registry.from_url(
        "sqlite:///:memory:", make_config(resolve_mac_on_add=False)
    )

    async def _fail(record: BulbRecord) -> Identifier:
        raise StoreError("disk full")

    try:
        monkeypatch.setattr(registry.store, "create", _fail)
        with pytest.raises(StorageFailure):
            await registry.add(BulbRecord(name="desk", address="10.0.0.1", id=Identifier.numeric(1)))
        assert await registry.ids() == []
        monkeypatch.undo()
        await registry.add(BulbRecord(name="desk", address="10.0.0.1", id=Identifier.numeric(1)))
        assert await registry.ids() == [Identifier.numeric(1)]
    finally:
        await registry.close()


@pytest.mark.asyncio
async def test_registry_hydrates_from_store(tmp_path: Path, make_config) -> None:
    url = f"sqlite:///{tmp_path / 'registry.sqlite3'}"
    config = make_config(resolve_mac_on_add=False)
    registry = await Registry.from_url(url, config)
    await registry.add(BulbRecord(name="desk", address="10.0.0.1", id=Identifier.opaque("desk")))
    await registry.add(BulbRecord(name="hall", address="10.0.0.2"))
    await registry.remove("desk")
    await registry.close()

    reopened = await Registry.from_url(url, config)
    try:
        records = await reopened.records()
    finally:
        await reopened.close()
    assert [(record.id, record.name) for record in records] == [(Identifier.numeric(1), "hall")]


@pytest.mark.asyncio
async def test_refresh_marks_unreachable(fake_bulb, make_config) -> None:
    async with fake_bulb(power=True) as device:
        config = make_config(device.port, resolve_mac_on_add=False)
        registry = await Registry.from_url("sqlite:///:memory:", config)
        try:
            await registry.add(BulbRecord(name="ok", address="127.0.0.1", id=Identifier.numeric(1)))
            outcomes = await registry.refresh()
            assert [(item.status, item.power) for item in outcomes] == [("ok", True)]
            device.mode = "silent"
            outcomes = await registry.refresh(timeout=0.1)
            assert outcomes[0].status == "timeout"
            record = await registry.get(1)
        finally:
            await registry.close()
    assert record is not None
    assert record.online is False
    assert record.power is True


@pytest.mark.asyncio
async def test_registry_size_gauge_tracks_adds_and_removes(make_config) -> None:
    registry = await Registry.from_url(
        "sqlite:///:memory:", make_config(resolve_mac_on_add=False)
    )
    try:
        await registry.add(BulbRecord(name="desk", address="10.0.0.1", id=Identifier.numeric(1)))
        await registry.add(BulbRecord(name="hall", address="10.0.0.2", id=Identifier.numeric(2)))
        assert get_registry().get_sample_value("wiz_registry_bulbs") == 2
        await registry.remove(1)
        assert get_registry().get_sample_value("wiz_registry_bulbs") == 1
    finally:
        await registry.close()


@pytest.mark.asyncio
async def test_unconfirmed_command_leaves_cached_power(fake_bulb, make_config) -> None:
    async with fake_bulb(power=False, mode="refuse") as device:
        config = make_config(device.port, resolve_mac_on_add=False)
        registry = await Registry.from_url("sqlite:///:memory:", config)
        try:
            await registry.add(
                BulbRecord(name="lamp", address="127.0.0.1", id=Identifier.numeric(1), power=False)
            )
            status = await registry.turn_on_by_id(1)
            after_on = await registry.get(1)
            toggled = await registry.toggle_by_id(1)
            after_toggle = await registry.get(1)
        finally:
            await registry.close()
    assert status.success is False
    assert status.describe() == "Turn on status for id 1: not acknowledged"
    assert after_on is not None
    assert after_on.power is False
    assert toggled.success is False
    assert toggled.action == "on"
    assert after_toggle is not None
    assert after_toggle.power is False
    assert device.power is False


@pytest.mark.asyncio
async def test_pending_command_does_not_block_other_callers(fake_bulb, make_config) -> None:
    async with fake_bulb(power=False) as fast:
        async with fake_bulb(host="127.0.0.2", port=fast.port, reply_delay=0.6) as slow:
            config = make_config(fast.port, command_timeout=2.0, resolve_mac_on_add=False)
            registry = await Registry.from_url("sqlite:///:memory:", config)
            try:
                await registry.add(BulbRecord(name="slow", address="127.0.0.2", id=Identifier.numeric(1)))
                await registry.add(BulbRecord(name="fast", address="127.0.0.1", id=Identifier.numeric(2)))
                pending = asyncio.create_task(registry.turn_on_by_id(1))
                await asyncio.sleep(0.1)
                assert slow.requests and not pending.done()

                found = await asyncio.wait_for(registry.find_by_name("slow"), timeout=0.1)
                record = await asyncio.wait_for(registry.get(2), timeout=0.1)
                status = await asyncio.wait_for(registry.turn_on_by_id(2), timeout=0.4)
                assert not pending.done()

                slow_status = await pending
            finally:
                await registry.close()
    assert found is not None and found.id == Identifier.numeric(1)
    assert record is not None
    assert status.success is True
    assert fast.power is True
    assert slow_status.success is True
    assert slow.power is True
