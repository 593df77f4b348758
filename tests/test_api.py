"""Tests for the /agent HTTP routes."""
from __future__ import annotations

import unittest

from fastapi.testclient import TestClient

from agent_runtime.api import create_app, get_agent_loop
from agent_runtime.loop import AgentLoop, LoopOptions
from agent_runtime.tools import ToolRegistry

from tests.helpers import MODEL_ID, EchoTool, scripted_registry, text, tool_use


class TestAgentRoutes(unittest.TestCase):
    def setUp(self) -> None:
        self.app = create_app()
        self.tools = ToolRegistry()
        self.tools.register(EchoTool("readFile"))
        self.tools.register(EchoTool("runShell"))

    def client_for(self, turns) -> tuple[TestClient, type]:
        registry, adapter = scripted_registry(turns)
        loop = AgentLoop(registry, self.tools, options=LoopOptions(max_iterations=5))
        self.app.dependency_overrides[get_agent_loop] = lambda: loop
        return TestClient(self.app), adapter

    def test_run_returns_reply_and_state(self) -> None:
        client, adapter = self.client_for(
            [[tool_use("readFile", {"path": "README.md"})], [text("It is a readme. [TASK_COMPLETE]")]]
        )
        resp = client.post(
            "/agent/run",
            json={
                "message": "Summarize README.md",
                "model": MODEL_ID,
                "history": [{"request": "hi", "response": "hello"}],
                "disabled_tools": ["runShell"],
            },
        )
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["state"], "done")
        self.assertIsNone(body["abort_reason"])
        self.assertEqual(body["reply"], "It is a readme.")
        self.assertEqual(body["iterations"], 2)
        self.assertEqual(body["tool_invocations"], 1)

        first = adapter.requests[0]
        self.assertEqual([t["function"]["name"] for t in first["options"].tools], ["readFile"])
        self.assertEqual([m.text_content() for m in first["messages"][1:]], ["hi", "hello", "Summarize README.md"])

    def test_abort_is_reported_not_raised(self) -> None:
        client, _ = self.client_for([[], []])
        resp = client.post("/agent/run", json={"message": "hello?", "model": MODEL_ID, "max_iterations": 1})
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["state"], "aborted")
        self.assertEqual(body["abort_reason"], "iteration-limit")
        self.assertEqual(body["iterations"], 1)

    def test_missing_model_is_rejected(self) -> None:
        client, _ = self.client_for([])
        resp = client.post("/agent/run", json={"message": "hi"})
        self.assertEqual(resp.status_code, 422)


if __name__ == "__main__":
    unittest.main()
