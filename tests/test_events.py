"""Unit tests for the streaming event bus."""
from __future__ import annotations

import asyncio
import unittest

from agent_runtime.errors import ProviderError
from agent_runtime.events import ChatResponse, EventStream

from tests.helpers import collect, text


class TestEventStream(unittest.IsolatedAsyncioTestCase):
    async def test_events_arrive_in_order_then_stream_ends(self) -> None:
        stream = EventStream(maxsize=8)
        for value in ("a", "b", "c"):
            await stream.emit(text(value))
        await stream.resolve()
        events = await collect(stream)
        self.assertEqual([e.value for e in events], ["a", "b", "c"])

    async def test_reject_raises_after_buffered_events(self) -> None:
        stream = EventStream(maxsize=8)
        await stream.emit(text("partial"))
        await stream.reject(ProviderError("boom"))
        seen = []
        with self.assertRaises(ProviderError):
            async for event in stream:
                seen.append(event.value)
        self.assertEqual(seen, ["partial"])

    async def test_completion_happens_once(self) -> None:
        stream = EventStream(maxsize=8)
        self.assertTrue(await stream.resolve())
        self.assertFalse(await stream.reject(ProviderError("late")))
        self.assertFalse(await stream.resolve())
        self.assertEqual(await collect(stream), [])

    async def test_emit_after_completion_is_an_error(self) -> None:
        stream = EventStream(maxsize=8)
        await stream.resolve()
        with self.assertRaises(RuntimeError):
            await stream.emit(text("late"))

    async def test_discard_unblocks_a_producer_on_a_full_queue(self) -> None:
        stream = EventStream(maxsize=1)

        async def produce() -> None:
            for i in range(5):
                await stream.emit(text(str(i)))
            await stream.resolve()

        task = asyncio.create_task(produce())
        await asyncio.sleep(0)
        stream.discard()
        await asyncio.wait_for(task, timeout=1)
        self.assertTrue(stream.completed)
        self.assertEqual(await collect(stream), [])


class TestChatResponse(unittest.IsolatedAsyncioTestCase):
    async def test_unawaited_task_failure_is_retrieved(self) -> None:
        stream = EventStream()

        async def fail() -> None:
            await stream.reject(ProviderError("boom"))
            raise ProviderError("boom")

        response = ChatResponse(stream=stream, result=asyncio.create_task(fail()))
        with self.assertRaises(ProviderError):
            await collect(response.stream)
        await asyncio.sleep(0)
        self.assertTrue(response.result.done())


if __name__ == "__main__":
    unittest.main()
