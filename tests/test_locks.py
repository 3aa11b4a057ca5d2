import asyncio

import pytest

from wiz_bulb_registry.locks import ReadWriteLock


@pytest.mark.asyncio
async def test_readers_share_the_lock() -> None:
    lock = ReadWriteLock()
    async with lock.read():
        async with lock.read():
            assert lock.readers == 2
    assert lock.readers == 0


@pytest.mark.asyncio
async def test_writer_excludes_readers() -> None:
    lock = ReadWriteLock()
    order: list[str] = []

    async def reader() -> None:
        async with lock.read():
            order.append("read")

    async with lock.write():
        assert lock.write_locked
        task = asyncio.create_task(reader())
        await asyncio.sleep(0.01)
        assert order == []
        order.append("write")
    await task
    assert order == ["write", "read"]


@pytest.mark.asyncio
async def test_waiting_writer_blocks_new_readers() -> None:
    lock = ReadWriteLock()
    order: list[str] = []

    async def writer() -> None:
        async with lock.write():
            order.append("write")

    async def late_reader() -> None:
        async with lock.read():
            order.append("late-read")

    async with lock.read():
        writer_task = asyncio.create_task(writer())
        await asyncio.sleep(0.01)
        reader_task = asyncio.create_task(late_reader())
        await asyncio.sleep(0.01)
        assert order == []
    await asyncio.gather(writer_task, reader_task)
    assert order == ["write", "late-read"]


@pytest.mark.asyncio
async def test_cancelled_writer_releases_readers() -> None:
    lock = ReadWriteLock()

    async def writer() -> None:
        async with lock.write():
            pass

    async with lock.read():
        writer_task = asyncio.create_task(writer())
        await asyncio.sleep(0.01)
        writer_task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await writer_task
        await asyncio.wait_for(_read_once(lock), timeout=1.0)


async def _read_once(lock: ReadWriteLock) -> None:
    async with lock.read():
        pass
