"""
Tests for channels and the shutdown signal.
"""

import asyncio

import pytest

from src.voicebot.channel import Channel, Overflow, ShutdownSignal, receive, send
from src.voicebot.errors import ChannelClosed, ResourceError, SessionClosing


class TestChannel:
    """Tests for the bounded FIFO."""

    @pytest.mark.asyncio
    async def test_fifo_order(self):
        channel = Channel("test")
        for i in range(3):
            await channel.put(i)

        assert [await channel.get() for _ in range(3)] == [0, 1, 2]

    def test_close_returns_true_only_once(self):
        channel = Channel("test")

        assert channel.close() is True
        assert channel.close() is False
        assert channel.closed

    @pytest.mark.asyncio
    async def test_get_drains_buffer_after_close(self):
        channel = Channel("test")
        await channel.put("a")
        await channel.put("b")
        channel.close()

        assert await channel.get() == "a"
        assert await channel.get() == "b"
        with pytest.raises(ChannelClosed):
            await channel.get()

    @pytest.mark.asyncio
    async def test_put_after_close_raises(self):
        channel = Channel("test")
        channel.close()

        with pytest.raises(ChannelClosed):
            await channel.put("late")
        with pytest.raises(ChannelClosed):
            channel.put_nowait("late")

    @pytest.mark.asyncio
    async def test_close_wakes_blocked_getter(self):
        channel = Channel("test")
        getter = asyncio.create_task(channel.get())
        await asyncio.sleep(0)

        channel.close()

        with pytest.raises(ChannelClosed):
            await asyncio.wait_for(getter, timeout=1.0)

    @pytest.mark.asyncio
    async def test_close_wakes_blocked_putter(self):
        channel = Channel("test", maxsize=1)
        await channel.put("first")
        putter = asyncio.create_task(channel.put("second"))
        await asyncio.sleep(0)
        assert not putter.done()

        channel.close()

        with pytest.raises(ChannelClosed):
            await asyncio.wait_for(putter, timeout=1.0)

    @pytest.mark.asyncio
    async def test_blocking_put_waits_for_room(self):
        channel = Channel("test", maxsize=1)
        await channel.put("first")
        putter = asyncio.create_task(channel.put("second"))
        await asyncio.sleep(0)
        assert not putter.done()

        assert await channel.get() == "first"
        assert await asyncio.wait_for(putter, timeout=1.0) is True
        assert await channel.get() == "second"

    def test_block_policy_put_nowait_raises_when_full(self):
        channel = Channel("test", maxsize=1)
        channel.put_nowait(1)

        with pytest.raises(asyncio.QueueFull):
            channel.put_nowait(2)

    @pytest.mark.asyncio
    async def test_drop_newest(self):
        channel = Channel("test", maxsize=2, overflow=Overflow.DROP_NEWEST)
        assert channel.put_nowait(1)
        assert channel.put_nowait(2)
        assert channel.put_nowait(3) is False
        assert await channel.put(4) is False

        assert channel.dropped == 2
        assert [channel.get_nowait(), channel.get_nowait()] == [1, 2]

    @pytest.mark.asyncio
    async def test_drop_oldest(self):
        channel = Channel("test", maxsize=2, overflow=Overflow.DROP_OLDEST)
        for i in range(4):
            await channel.put(i)

        assert channel.dropped == 2
        assert channel.qsize() == 2
        assert [await channel.get(), await channel.get()] == [2, 3]

    def test_get_nowait_empty(self):
        channel = Channel("test")
        with pytest.raises(asyncio.QueueEmpty):
            channel.get_nowait()

        channel.close()
        with pytest.raises(ChannelClosed):
            channel.get_nowait()

    def test_channel_closed_is_resource_error(self):
        assert issubclass(ChannelClosed, ResourceError)
        assert issubclass(SessionClosing, ResourceError)


class TestShutdownSignal:
    """Tests for the fire-once signal and guarded channel operations."""

    @pytest.mark.asyncio
    async def test_first_reason_wins(self):
        signal = ShutdownSignal()

        assert signal.fire("stop event") is True
        assert signal.fire("stage failed") is False
        assert signal.fired
        assert signal.reason == "stop event"
        assert await signal.wait() == "stop event"

    @pytest.mark.asyncio
    async def test_receive_unblocks_when_signal_fires(self):
        signal = ShutdownSignal()
        channel = Channel("test")
        waiter = asyncio.create_task(receive(channel, signal))
        await asyncio.sleep(0)

        signal.fire("hangup")

        with pytest.raises(SessionClosing):
            await asyncio.wait_for(waiter, timeout=1.0)

    @pytest.mark.asyncio
    async def test_send_after_fire_raises(self):
        signal = ShutdownSignal()
        channel = Channel("test")
        signal.fire("hangup")

        with pytest.raises(SessionClosing):
            await send(channel, "late", signal)
        assert channel.empty()

    @pytest.mark.asyncio
    async def test_blocked_send_unblocks_when_signal_fires(self):
        signal = ShutdownSignal()
        channel = Channel("test", maxsize=1)
        await send(channel, "first", signal)
        sender = asyncio.create_task(send(channel, "second", signal))
        await asyncio.sleep(0)

        signal.fire("hangup")

        with pytest.raises(SessionClosing):
            await asyncio.wait_for(sender, timeout=1.0)
        assert channel.qsize() == 1

    @pytest.mark.asyncio
    async def test_guard_returns_result(self):
        signal = ShutdownSignal()
        channel = Channel("test")
        await channel.put("hello")

        assert await receive(channel, signal) == "hello"

    @pytest.mark.asyncio
    async def test_guard_cancels_pending_operation(self):
        signal = ShutdownSignal()
        cancelled = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        guarded = asyncio.create_task(signal.guard(slow()))
        await asyncio.sleep(0)
        signal.fire("hangup")

        with pytest.raises(SessionClosing):
            await guarded
        assert cancelled.is_set()
