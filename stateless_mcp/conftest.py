"""Shared fixtures for stateless-mcp tests."""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Set

import pytest

from stateless_mcp.config import ServerConfig
from stateless_mcp.server import McpCore


class RecordingChannel:
    """Session channel double that records what it is sent.

    Args:
        fail_on: 1-based attempt numbers that raise ConnectionError
        delay: Seconds each send takes
        on_send: Called after every attempt with the attempt number
    """

    def __init__(
        self,
        fail_on: Optional[Set[int]] = None,
        delay: float = 0,
        on_send: Optional[Callable[[int], None]] = None
    ):
        self.fail_on = fail_on or set()
        self.delay = delay
        self.on_send = on_send
        self.attempts = 0
        self.messages: List[Dict[str, Any]] = []
        self.sent_at: List[float] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def send(self, message: Dict[str, Any]) -> None:
        self.attempts += 1
        attempt = self.attempts
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if attempt in self.fail_on:
                raise ConnectionError(f"transient failure on attempt {attempt}")
            self.messages.append(message)
            self.sent_at.append(asyncio.get_running_loop().time())
        finally:
            self.in_flight -= 1
            if self.on_send:
                self.on_send(attempt)

    @property
    def payloads(self) -> List[str]:
        return [m["params"]["data"] for m in self.messages]


@pytest.fixture
def recording_channel():
    """Provide a channel that accepts every message."""
    return RecordingChannel()


@pytest.fixture
def make_channel():
    """Provide a factory for configurable channels."""
    return RecordingChannel


@pytest.fixture
def config():
    """Provide a config with a known token."""
    return ServerConfig(auth_token="test-token-123", keepalive_seconds=0.2)


@pytest.fixture
def mcp_core(config):
    """Create MCP core instance."""
    core = McpCore(config)
    yield core
    core.cleanup()
