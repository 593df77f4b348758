"""Run the FastAPI app for the agent runtime."""

from __future__ import annotations

import logging

import uvicorn

from agent_runtime.api import create_app

app = create_app()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
