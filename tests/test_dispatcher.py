"""Tests for per-contact inbound mailboxes."""
import asyncio
import pytest

from config.settings import DispatcherConfig
from job_queue.dispatcher import InboundDispatcher
from models.schemas import InboundMessage


def _msg(contact_id, text, message_id=None):
    return InboundMessage(contact_id=contact_id, text=text, message_id=message_id)


class TestInboundDispatcher:
    @pytest.mark.asyncio
    async def test_per_contact_order(self):
        seen = []

        async def handler(message):
            await asyncio.sleep(0.001 * (3 - int(message.text)))
            seen.append((message.contact_id, message.text))

        dispatcher = InboundDispatcher(handler)
        for text in ("1", "2", "3"):
            await dispatcher.submit(_msg("a", text))
            await dispatcher.submit(_msg("b", text))
        await dispatcher.drain(timeout=5)
        await dispatcher.stop()

        assert [t for c, t in seen if c == "a"] == ["1", "2", "3"]
        assert [t for c, t in seen if c == "b"] == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_one_event_at_a_time_per_contact(self):
        running = {"a": 0}
        peak = []

        async def handler(message):
            running["a"] += 1
            peak.append(running["a"])
            await asyncio.sleep(0.001)
            running["a"] -= 1

        dispatcher = InboundDispatcher(handler)
        for i in range(10):
            await dispatcher.submit(_msg("a", str(i)))
        await dispatcher.drain(timeout=5)
        await dispatcher.stop()
        assert max(peak) == 1

    @pytest.mark.asyncio
    async def test_slow_contact_does_not_block_others(self):
        gate = asyncio.Event()
        done = []

        async def handler(message):
            if message.contact_id == "slow":
                await gate.wait()
            done.append(message.contact_id)

        dispatcher = InboundDispatcher(handler)
        await dispatcher.submit(_msg("slow", "x"))
        await dispatcher.submit(_msg("fast", "y"))
        for _ in range(100):
            if "fast" in done:
                break
            await asyncio.sleep(0.001)
        assert done == ["fast"]

        gate.set()
        await dispatcher.drain(timeout=5)
        await dispatcher.stop()
        assert done == ["fast", "slow"]

    @pytest.mark.asyncio
    async def test_handler_error_does_not_kill_worker(self):
        handled = []

        async def handler(message):
            if message.text == "boom":
                raise RuntimeError("boom")
            handled.append(message.text)

        dispatcher = InboundDispatcher(handler)
        await dispatcher.submit(_msg("a", "boom"))
        await dispatcher.submit(_msg("a", "ok"))
        await dispatcher.drain(timeout=5)
        await dispatcher.stop()
        assert handled == ["ok"]

    @pytest.mark.asyncio
    async def test_idle_worker_exits(self):
        async def handler(message):
            pass

        dispatcher = InboundDispatcher(handler, idle_timeout=0.01)
        await dispatcher.submit(_msg("a", "hi"))
        await dispatcher.drain(timeout=5)
        assert dispatcher.active_contacts == 1
        for _ in range(100):
            if dispatcher.active_contacts == 0:
                break
            await asyncio.sleep(0.01)
        assert dispatcher.active_contacts == 0

        # a new message after the worker left starts a fresh one
        await dispatcher.submit(_msg("a", "again"))
        await dispatcher.drain(timeout=5)
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_feeds_session_manager(self, manager, registry, gateway, greeting_record):
        await registry.publish(greeting_record)
        dispatcher = InboundDispatcher(manager.handle_message)
        await dispatcher.submit(_msg("c1", "hi", "m1"))
        await dispatcher.submit(_msg("c1", "Ann", "m2"))
        await dispatcher.submit(_msg("c1", "Ann", "m2"))
        await dispatcher.drain(timeout=5)
        await dispatcher.stop()
        assert gateway.texts("c1") == ["What's your name?", "Hello Ann"]

    def test_from_config(self):
        async def handler(message):
            pass

        dispatcher = InboundDispatcher.from_config(handler, DispatcherConfig(mailbox_size=5, idle_timeout_seconds=2))
        assert (dispatcher.mailbox_size, dispatcher.idle_timeout) == (5, 2)
