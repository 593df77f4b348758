"""Unit tests for the agent loop state machine."""
from __future__ import annotations

import asyncio
import itertools
import unittest

from agent_runtime.config import MAX_ITERATIONS_CEILING
from agent_runtime.loop import (
    AbortReason,
    AgentLoop,
    LoopOptions,
    LoopState,
    strip_completion_marker,
    streaming_display,
)
from agent_runtime.models import ChatMessage, ChatMessageRole, HistoryEntry, ThinkingDelta
from agent_runtime.prompts import ITERATION_LIMIT_NOTE, NUDGE_MESSAGE, REPETITION_NOTE, SILENCE_MESSAGE
from agent_runtime.tools import ToolRegistry

from tests.helpers import MODEL_ID, EchoTool, scripted_registry, text, tool_use


class FakeAPIError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


def user(value: str) -> list[ChatMessage]:
    return [ChatMessage.text(ChatMessageRole.USER, value)]


def count_nudges(messages: list[ChatMessage]) -> int:
    return sum(1 for m in messages if m.role == ChatMessageRole.USER and m.text_content() == NUDGE_MESSAGE)


class ReplacingTool(EchoTool):
    """Swaps itself out of the registry for ``replacement`` once invoked."""

    def __init__(self, tool_id: str, registry: ToolRegistry, replacement: EchoTool) -> None:
        super().__init__(tool_id)
        self._registry = registry
        self._replacement = replacement

    async def invoke(self, invocation, cancellation=None):
        result = await super().invoke(invocation, cancellation)
        self._registry.register(self._replacement)
        self._registry.unregister(self.id)
        return result


class TestMarkerHelpers(unittest.TestCase):
    def test_strip_completion_marker(self) -> None:
        self.assertEqual(strip_completion_marker("Done. [TASK_COMPLETE]"), "Done.")
        self.assertEqual(strip_completion_marker("A[TASK_COMPLETE]B"), "A B")
        self.assertEqual(strip_completion_marker("[TASK_COMPLETE]"), "")

    def test_streaming_display_withholds_partial_marker(self) -> None:
        self.assertEqual(streaming_display("All set. [TASK_"), "All set.")
        self.assertEqual(streaming_display("All set. ["), "All set.")
        self.assertEqual(streaming_display("Use a[0] here"), "Use a[0] here")

    def test_loop_options_clamp_iterations(self) -> None:
        self.assertEqual(LoopOptions(max_iterations=0).max_iterations, 1)
        self.assertEqual(LoopOptions(max_iterations=10_000).max_iterations, MAX_ITERATIONS_CEILING)


class TestAgentLoop(unittest.IsolatedAsyncioTestCase):
    def make_loop(self, turns, *, tools=(), **option_overrides):
        registry, adapter_cls = scripted_registry(turns)
        tool_registry = ToolRegistry()
        for tool in tools:
            tool_registry.register(tool)
        options = LoopOptions(progress_interval=0.1, **option_overrides)
        loop = AgentLoop(registry, tool_registry, options=options, clock=itertools.count().__next__)
        return loop, adapter_cls

    async def test_tool_call_then_completion(self) -> None:
        list_dir = EchoTool("listDirectory")
        loop, adapter = self.make_loop(
            [
                [tool_use("listDirectory", {"path": "."})],
                [text("Done. "), text("[TASK_COMPLETE]")],
            ],
            tools=[list_dir],
        )
        result = await loop.run(user("What is in this folder?"), MODEL_ID)

        self.assertEqual(result.state, LoopState.DONE)
        self.assertIsNone(result.abort_reason)
        self.assertEqual(result.iterations, 2)
        self.assertEqual(result.tool_invocations, 1)
        self.assertEqual(result.text, "Done.")
        self.assertEqual(result.reply, "Done.")
        self.assertEqual(len(list_dir.calls), 1)

        first_tools = adapter.requests[0]["options"].tools
        self.assertEqual([t["function"]["name"] for t in first_tools], ["listDirectory"])
        second_messages = adapter.requests[1]["messages"]
        self.assertEqual(second_messages[1].tool_uses()[0].name, "listDirectory")
        self.assertEqual(second_messages[2].tool_results()[0].text(), "listDirectory ok")
        self.assertEqual(result.messages[-1].text_content(), "Done. [TASK_COMPLETE]")

    async def test_repeated_identical_call_aborts(self) -> None:
        read = EchoTool("readFile")
        same_call = [tool_use("readFile", {"path": "a.txt"})]
        loop, adapter = self.make_loop([same_call, same_call, same_call, [text("never")]], tools=[read])
        result = await loop.run(user("read it"), MODEL_ID)

        self.assertEqual(result.state, LoopState.ABORTED)
        self.assertEqual(result.abort_reason, AbortReason.REPETITION)
        self.assertEqual(len(adapter.requests), 3)
        self.assertEqual(len(read.calls), 2)
        self.assertEqual(result.tool_invocations, 2)
        self.assertIn(REPETITION_NOTE, result.reply)

    async def test_parameter_order_does_not_hide_repetition(self) -> None:
        read = EchoTool("readFile")
        loop, adapter = self.make_loop(
            [
                [tool_use("readFile", {"path": "a", "line": 1})],
                [tool_use("readFile", {"line": 1, "path": "a"})],
                [tool_use("readFile", {"path": "a", "line": 1})],
            ],
            tools=[read],
        )
        result = await loop.run(user("read it"), MODEL_ID)
        self.assertEqual(result.abort_reason, AbortReason.REPETITION)
        self.assertEqual(len(read.calls), 2)

    async def test_iteration_limit_sends_exactly_max_requests(self) -> None:
        turns = [[tool_use("readFile", {"path": f"file{i}.txt"})] for i in range(10)]
        loop, adapter = self.make_loop(turns, tools=[EchoTool("readFile")], max_iterations=3)
        result = await loop.run(user("read everything"), MODEL_ID)

        self.assertEqual(result.abort_reason, AbortReason.ITERATION_LIMIT)
        self.assertEqual(result.iterations, 3)
        self.assertEqual(len(adapter.requests), 3)
        self.assertTrue(result.reply.endswith(ITERATION_LIMIT_NOTE))

    async def test_silent_model_gets_one_nudge_then_aborts(self) -> None:
        loop, adapter = self.make_loop([[], []])
        result = await loop.run(user("hello?"), MODEL_ID)

        self.assertEqual(result.abort_reason, AbortReason.SILENCE)
        self.assertEqual(len(adapter.requests), 2)
        self.assertEqual(count_nudges(adapter.requests[1]["messages"]), 1)
        self.assertEqual(result.reply, SILENCE_MESSAGE)

    async def test_nudge_then_completion(self) -> None:
        loop, adapter = self.make_loop([[text("I will look into it.")], [text("Here it is. [TASK_COMPLETE]")]])
        result = await loop.run(user("look"), MODEL_ID)

        self.assertEqual(result.state, LoopState.DONE)
        self.assertEqual(count_nudges(result.messages), 1)
        self.assertNotIn(SILENCE_MESSAGE, result.reply)
        self.assertEqual(result.text, "Here it is.")

    async def test_visible_text_without_marker_is_not_replaced_on_silence(self) -> None:
        loop, _ = self.make_loop([[text("Thinking out loud.")], [text("Still here.")]])
        result = await loop.run(user("go"), MODEL_ID)
        self.assertEqual(result.abort_reason, AbortReason.SILENCE)
        self.assertNotIn(SILENCE_MESSAGE, result.reply)

    async def test_cancellation_before_start_sends_nothing(self) -> None:
        cancellation = asyncio.Event()
        cancellation.set()
        loop, adapter = self.make_loop([[text("never")]])
        result = await loop.run(user("hi"), MODEL_ID, cancellation=cancellation)

        self.assertEqual(result.abort_reason, AbortReason.CANCELED)
        self.assertEqual(adapter.requests, [])
        self.assertEqual(result.progress, [])

    async def test_cancellation_during_stream(self) -> None:
        cancellation = asyncio.Event()
        read = EchoTool("readFile")
        loop, adapter = self.make_loop(
            [[text("a"), text("b"), tool_use("readFile", {"path": "x"})], [text("never")]],
            tools=[read],
        )
        result = await loop.run(
            user("hi"), MODEL_ID, progress=lambda item: cancellation.set(), cancellation=cancellation
        )

        self.assertEqual(result.state, LoopState.ABORTED)
        self.assertEqual(result.abort_reason, AbortReason.CANCELED)
        self.assertEqual(len(adapter.requests), 1)
        self.assertEqual(read.calls, [])
        self.assertIsNone(result.error)

    async def test_provider_error_is_reported_once(self) -> None:
        loop, _ = self.make_loop([FakeAPIError(429)])
        result = await loop.run(user("hi"), MODEL_ID)

        self.assertEqual(result.abort_reason, AbortReason.PROVIDER_ERROR)
        warnings = [p.content for p in result.progress if p.kind == "warning"]
        self.assertEqual(len(warnings), 1)
        self.assertIn("Rate limit exceeded", warnings[0])

    async def test_unknown_model_is_a_provider_error(self) -> None:
        loop, adapter = self.make_loop([])
        result = await loop.run(user("hi"), "")
        self.assertEqual(result.abort_reason, AbortReason.PROVIDER_ERROR)
        self.assertEqual(adapter.requests, [])

    async def test_progress_is_throttled_into_deltas(self) -> None:
        registry, _ = scripted_registry([[text("Hel"), text("lo"), text(" [TASK_COMPLETE]")]])
        loop = AgentLoop(registry, ToolRegistry(), options=LoopOptions(progress_interval=0.1), clock=lambda: 0.0)
        seen = []
        result = await loop.run(user("hi"), MODEL_ID, progress=lambda item: seen.append(item.content))

        self.assertEqual(seen, ["Hel", "lo"])
        self.assertEqual(result.reply, "Hello")

    async def test_partial_marker_is_never_shown(self) -> None:
        loop, _ = self.make_loop([[text("All set. [TASK"), text("_COMP"), text("LETE]")]])
        result = await loop.run(user("hi"), MODEL_ID)

        self.assertEqual(result.state, LoopState.DONE)
        for item in result.progress:
            self.assertNotIn("[", item.content)
        self.assertEqual(result.reply, "All set.")

    async def test_thinking_is_reported_separately(self) -> None:
        loop, _ = self.make_loop([[ThinkingDelta(value="hmm"), text("Hi! [TASK_COMPLETE]")]])
        result = await loop.run(user("hi"), MODEL_ID)
        self.assertEqual([p.content for p in result.progress if p.kind == "thinking"], ["hmm"])
        self.assertEqual(result.reply, "Hi!")

    async def test_disabled_tools_are_not_offered(self) -> None:
        loop, adapter = self.make_loop(
            [[text("ok [TASK_COMPLETE]")]],
            tools=[EchoTool("readFile"), EchoTool("runShell")],
            user_selected_tools={"runShell": False},
        )
        await loop.run(user("hi"), MODEL_ID)
        offered = [t["function"]["name"] for t in adapter.requests[0]["options"].tools]
        self.assertEqual(offered, ["readFile"])

    async def test_tool_catalog_is_reread_each_phase(self) -> None:
        new_tool = EchoTool("newTool")
        tools = ToolRegistry()
        old_tool = ReplacingTool("oldTool", tools, new_tool)
        tools.register(old_tool)
        registry, adapter = scripted_registry(
            [
                [tool_use("oldTool", {"step": 1}, call_id="c1")],
                [
                    tool_use("newTool", {"step": 2}, call_id="c2", index=0),
                    tool_use("oldTool", {"step": 2}, call_id="c3", index=1),
                ],
                [text("Finished. [TASK_COMPLETE]")],
            ]
        )
        cancellation = asyncio.Event()
        loop = AgentLoop(registry, tools, options=LoopOptions(), clock=itertools.count().__next__)
        result = await loop.run(user("go"), MODEL_ID, cancellation=cancellation)

        self.assertEqual(result.state, LoopState.DONE)
        self.assertEqual(len(old_tool.calls), 1)
        self.assertEqual([c.call_id for c in new_tool.calls], ["c2"])
        self.assertIs(old_tool.cancellations[0], cancellation)
        self.assertIs(new_tool.cancellations[0], cancellation)

        second_tools = [t["function"]["name"] for t in adapter.requests[1]["options"].tools]
        self.assertEqual(second_tools, ["newTool"])
        results = adapter.requests[2]["messages"][-1].tool_results()
        self.assertEqual([r.tool_call_id for r in results], ["c2", "c3"])
        self.assertEqual(results[0].text(), "newTool ok")
        self.assertTrue(results[1].is_error)
        self.assertEqual(results[1].text(), "Error executing tool: Tool oldTool not found")

    async def test_disabled_tool_named_by_the_model_is_refused(self) -> None:
        shell = EchoTool("runShell")
        loop, adapter = self.make_loop(
            [[tool_use("runShell", {"cmd": "ls"})], [text("Could not run it. [TASK_COMPLETE]")]],
            tools=[shell, EchoTool("readFile")],
            user_selected_tools={"runShell": False},
        )
        result = await loop.run(user("list files"), MODEL_ID)
        self.assertEqual(result.state, LoopState.DONE)
        self.assertEqual(shell.calls, [])
        tool_result = adapter.requests[1]["messages"][-1].tool_results()[0]
        self.assertTrue(tool_result.is_error)
        self.assertIn("is disabled", tool_result.text())

    async def test_failing_tool_does_not_stop_the_loop(self) -> None:
        loop, adapter = self.make_loop(
            [[tool_use("readFile", {"path": "gone"})], [text("The file is missing. [TASK_COMPLETE]")]],
            tools=[EchoTool("readFile", error=FileNotFoundError("gone"))],
        )
        result = await loop.run(user("read gone"), MODEL_ID)
        self.assertEqual(result.state, LoopState.DONE)
        tool_result = adapter.requests[1]["messages"][-1].tool_results()[0]
        self.assertTrue(tool_result.is_error)
        self.assertEqual(tool_result.text(), "Error executing tool: gone")

    async def test_run_turn_builds_system_history_and_user_messages(self) -> None:
        loop, adapter = self.make_loop([[text("Sure. [TASK_COMPLETE]")]])
        history = [HistoryEntry(request="first question", response="first answer")]
        result = await loop.run_turn("second question", MODEL_ID, history=history, system_prompt="Be terse.")

        self.assertEqual(result.state, LoopState.DONE)
        sent = adapter.requests[0]["messages"]
        self.assertEqual([m.role for m in sent], ["system", "user", "assistant", "user"])
        self.assertEqual(sent[0].text_content(), "Be terse.")
        self.assertEqual(sent[2].text_content(), "first answer")
        self.assertEqual(sent[3].text_content(), "second question")


if __name__ == "__main__":
    unittest.main()
