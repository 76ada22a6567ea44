"""Tests for MCP Server Core.

Tests the McpCore JSON-RPC handler and session management.
"""

import asyncio

import pytest

from stateless_mcp.config import ServerConfig
from stateless_mcp.server import ErrorCode, McpCore


def request(msg_id, method, params=None):
    return {"jsonrpc": "2.0", "id": msg_id, "method": method, "params": params or {}}


def call_stream(msg_id, **arguments):
    return request(msg_id, "tools/call", {
        "name": "start-notification-stream",
        "arguments": arguments
    })


async def open_recorded_session(core):
    """Initialize a session and record everything sent on its channel."""
    response = await core.handle(request(1, "initialize"))
    session_id = response["result"]["sessionId"]
    received = []

    async def sink(event_id, message):
        received.append(message["params"]["data"])

    core.get_session(session_id).channel.subscribe(sink)
    return session_id, received


class TestMcpCore:
    """Tests for McpCore class."""

    @pytest.mark.asyncio
    async def test_initialize(self, mcp_core):
        """Test initialize handshake."""
        message = request(1, "initialize", {
            "protocolVersion": "2025-03-26",
            "capabilities": {},
            "clientInfo": {"name": "test-client", "version": "0.0.1"}
        })

        response = await mcp_core.handle(message)

        assert response["jsonrpc"] == "2.0"
        assert response["id"] == 1
        result = response["result"]
        assert result["protocolVersion"] == "2025-03-26"
        assert result["serverInfo"] == {"name": "stateless-server", "version": "1.0.0"}
        assert "logging" in result["capabilities"]
        assert "tools" in result["capabilities"]
        session = mcp_core.get_session(result["sessionId"])
        assert session.client_info["name"] == "test-client"

    @pytest.mark.asyncio
    async def test_initialize_unknown_version_falls_back(self, mcp_core):
        response = await mcp_core.handle(request(1, "initialize", {"protocolVersion": "1999-01-01"}))

        assert response["result"]["protocolVersion"] == McpCore.MCP_PROTOCOL_VERSION

    @pytest.mark.asyncio
    async def test_initialized_notification(self, mcp_core):
        response = await mcp_core.handle(request(1, "initialize"))
        session_id = response["result"]["sessionId"]

        reply = await mcp_core.handle(
            {"jsonrpc": "2.0", "method": "notifications/initialized"}, session_id
        )

        assert reply is None
        assert mcp_core.get_session(session_id).initialized is True

    @pytest.mark.asyncio
    async def test_ping(self, mcp_core):
        """Test ping method."""
        response = await mcp_core.handle(request(2, "ping"))

        assert response["id"] == 2
        assert response["result"] == {}

    @pytest.mark.asyncio
    async def test_list_prompts(self, mcp_core):
        response = await mcp_core.handle(request(3, "prompts/list"))

        names = [p["name"] for p in response["result"]["prompts"]]
        assert names == ["greeting-template"]

    @pytest.mark.asyncio
    async def test_get_prompt(self, mcp_core):
        response = await mcp_core.handle(request(4, "prompts/get", {
            "name": "greeting-template",
            "arguments": {"name": "Grace"}
        }))

        message = response["result"]["messages"][0]
        assert message["role"] == "user"
        assert message["content"]["text"] == "Please greet Grace in a friendly manner."

    @pytest.mark.asyncio
    async def test_get_prompt_missing_argument(self, mcp_core):
        response = await mcp_core.handle(request(5, "prompts/get", {"name": "greeting-template"}))

        assert response["error"]["code"] == ErrorCode.INVALID_PARAMS.value
        assert response["error"]["data"][0]["loc"] == ["name"]

    @pytest.mark.asyncio
    async def test_get_unknown_prompt(self, mcp_core):
        response = await mcp_core.handle(request(6, "prompts/get", {"name": "nope"}))

        assert response["error"]["code"] == ErrorCode.INVALID_PARAMS.value

    @pytest.mark.asyncio
    async def test_non_object_prompt_arguments_rejected(self, mcp_core):
        response = await mcp_core.handle(request(3, "prompts/get", {
            "name": "greeting-template",
            "arguments": ["Ada"]
        }))

        assert response["error"]["code"] == ErrorCode.INVALID_PARAMS.value

    @pytest.mark.asyncio
    async def test_list_resources(self, mcp_core):
        """Test resources/list method."""
        response = await mcp_core.handle(request(7, "resources/list"))

        resources = response["result"]["resources"]
        assert [r["uri"] for r in resources] == ["https://wrapship.pro"]
        assert resources[0]["mimeType"] == "text/plain"

    @pytest.mark.asyncio
    async def test_read_resource(self, mcp_core):
        response = await mcp_core.handle(request(8, "resources/read", {"uri": "https://wrapship.pro"}))

        contents = response["result"]["contents"]
        assert contents[0]["mimeType"] == "text/plain"
        assert contents[0]["text"].startswith("# WrapShip Documentation")

    @pytest.mark.asyncio
    async def test_read_unknown_resource(self, mcp_core):
        response = await mcp_core.handle(request(9, "resources/read", {"uri": "https://nowhere"}))

        assert response["error"]["code"] == ErrorCode.RESOURCE_NOT_FOUND.value
        assert response["error"]["data"] == {"uri": "https://nowhere"}

    @pytest.mark.asyncio
    async def test_read_resource_missing_uri(self, mcp_core):
        response = await mcp_core.handle(request(10, "resources/read"))

        assert response["error"]["code"] == ErrorCode.INVALID_PARAMS.value

    @pytest.mark.asyncio
    async def test_list_tools(self, mcp_core):
        """Test tools/list method."""
        response = await mcp_core.handle(request(11, "tools/list"))

        tools = response["result"]["tools"]
        assert [t["name"] for t in tools] == ["start-notification-stream"]
        assert "inputSchema" in tools[0]

    @pytest.mark.asyncio
    async def test_method_not_found(self, mcp_core):
        """Test error for unknown method."""
        response = await mcp_core.handle(request(12, "unknown/method"))

        assert response["error"]["code"] == ErrorCode.METHOD_NOT_FOUND.value

    @pytest.mark.asyncio
    async def test_unknown_notification_ignored(self, mcp_core):
        response = await mcp_core.handle({"jsonrpc": "2.0", "method": "notifications/unknown"})

        assert response is None

    @pytest.mark.asyncio
    async def test_invalid_jsonrpc_version(self, mcp_core):
        """Test error for wrong JSON-RPC version."""
        message = request(13, "ping")
        message["jsonrpc"] = "1.0"

        response = await mcp_core.handle(message)

        assert response["error"]["code"] == ErrorCode.INVALID_REQUEST.value

    @pytest.mark.asyncio
    async def test_non_object_message(self, mcp_core):
        response = await mcp_core.handle([request(1, "ping")])

        assert response["error"]["code"] == ErrorCode.INVALID_REQUEST.value

    @pytest.mark.asyncio
    async def test_client_response_ignored(self, mcp_core):
        assert await mcp_core.handle({"jsonrpc": "2.0", "id": 5, "result": {}}) is None

    @pytest.mark.asyncio
    async def test_session_persistence(self, mcp_core):
        """Test session is reused with same ID."""
        resp1 = await mcp_core.handle(request(1, "initialize"))
        session_id = resp1["result"]["sessionId"]

        await mcp_core.handle(request(2, "ping"), session_id)

        assert session_id in mcp_core._sessions
        assert mcp_core.get_session(session_id).session_id == session_id

    def test_method_table_is_read_only(self, mcp_core):
        with pytest.raises(TypeError):
            mcp_core._handlers["evil"] = None

        assert "tools/call" in mcp_core.methods

    def test_custom_server_info(self):
        core = McpCore(ServerConfig(name="other", version="9.9"))

        assert core.config.name == "other"
        core.cleanup()


class TestCallTool:
    """Tests for tools/call on start-notification-stream."""

    @pytest.mark.asyncio
    async def test_paced_stream_then_result(self, mcp_core):
        session_id, received = await open_recorded_session(mcp_core)

        response = await mcp_core.handle(call_stream(2, interval=50, count=3), session_id)

        assert response["result"] == {
            "content": [{
                "type": "text",
                "text": "Started sending periodic notifications every 50ms"
            }]
        }
        assert len(received) == 3
        for n, data in enumerate(received, start=1):
            assert data.startswith(f"Periodic notification #{n} at ")

    @pytest.mark.asyncio
    async def test_defaults_applied(self, mcp_core):
        session_id, received = await open_recorded_session(mcp_core)

        response = await mcp_core.handle(request(2, "tools/call", {
            "name": "start-notification-stream"
        }), session_id)

        assert response["result"]["content"][0]["text"] == (
            "Started sending periodic notifications every 100ms"
        )
        assert len(received) == 10

    @pytest.mark.asyncio
    async def test_negative_count_rejected_before_start(self, mcp_core):
        session_id, received = await open_recorded_session(mcp_core)

        response = await mcp_core.handle(call_stream(2, interval=0, count=-1), session_id)

        assert response["error"]["code"] == ErrorCode.INVALID_PARAMS.value
        assert received == []

    @pytest.mark.asyncio
    async def test_non_numeric_interval_rejected(self, mcp_core):
        response = await mcp_core.handle(call_stream(2, interval="fast"))

        assert response["error"]["code"] == ErrorCode.INVALID_PARAMS.value

    @pytest.mark.asyncio
    async def test_unknown_tool(self, mcp_core):
        response = await mcp_core.handle(request(2, "tools/call", {"name": "launch"}))

        assert response["error"]["code"] == ErrorCode.METHOD_NOT_FOUND.value

    @pytest.mark.asyncio
    async def test_missing_tool_name(self, mcp_core):
        response = await mcp_core.handle(request(2, "tools/call", {}))

        assert response["error"]["code"] == ErrorCode.INVALID_PARAMS.value

    @pytest.mark.asyncio
    async def test_delivery_failure_reported_to_hook(self, config):
        failures = []
        core = McpCore(config, on_delivery_failure=failures.append)
        try:
            response = await core.handle(request(1, "initialize"))
            session_id = response["result"]["sessionId"]
            received = []

            async def flaky(event_id, message):
                if event_id == 2:
                    raise ConnectionError("transient")
                received.append(event_id)

            core.get_session(session_id).channel.subscribe(flaky)

            response = await core.handle(call_stream(2, interval=0, count=4), session_id)

            assert received == [1, 3, 4]
            assert [f.sequence_number for f in failures] == [2]
            assert "result" in response
        finally:
            core.cleanup()

    @pytest.mark.asyncio
    async def test_client_cancel_stops_stream_without_response(self, mcp_core):
        session_id, received = await open_recorded_session(mcp_core)

        task = asyncio.create_task(
            mcp_core.handle(call_stream("run-1", interval=10, count=0), session_id)
        )
        await asyncio.sleep(0.1)
        reply = await mcp_core.handle({
            "jsonrpc": "2.0",
            "method": "notifications/cancelled",
            "params": {"requestId": "run-1", "reason": "user stop"}
        }, session_id)
        response = await asyncio.wait_for(task, timeout=1)
        count_at_end = len(received)
        await asyncio.sleep(0.05)

        assert reply is None
        assert response is None
        assert count_at_end > 0
        assert len(received) == count_at_end
        assert mcp_core.get_session(session_id).in_flight == {}

    @pytest.mark.asyncio
    async def test_cancel_unknown_request_is_harmless(self, mcp_core):
        reply = await mcp_core.handle({
            "jsonrpc": "2.0",
            "method": "notifications/cancelled",
            "params": {"requestId": 999}
        })

        assert reply is None

    @pytest.mark.asyncio
    async def test_close_session_cancels_stream(self, mcp_core):
        session_id, received = await open_recorded_session(mcp_core)

        task = asyncio.create_task(
            mcp_core.handle(call_stream(2, interval=10, count=0), session_id)
        )
        await asyncio.sleep(0.05)

        assert mcp_core.close_session(session_id) is True
        assert await asyncio.wait_for(task, timeout=1) is None
        assert mcp_core.get_session(session_id) is None
        assert mcp_core.close_session(session_id) is False

    @pytest.mark.asyncio
    async def test_concurrent_calls_number_independently(self, mcp_core):
        first_id, first = await open_recorded_session(mcp_core)
        second_id, second = await open_recorded_session(mcp_core)

        await asyncio.gather(
            mcp_core.handle(call_stream(2, interval=1, count=3), first_id),
            mcp_core.handle(call_stream(2, interval=1, count=5), second_id),
        )

        assert [d.split(" ")[2] for d in first] == ["#1", "#2", "#3"]
        assert [d.split(" ")[2] for d in second] == ["#1", "#2", "#3", "#4", "#5"]

    @pytest.mark.asyncio
    async def test_stream_is_replayable(self, mcp_core):
        session_id, _ = await open_recorded_session(mcp_core)

        await mcp_core.handle(call_stream(2, interval=0, count=3), session_id)

        channel = mcp_core.get_session(session_id).channel
        replay = await channel.replay_since(1)
        assert [e["id"] for e in replay] == [2, 3]

    @pytest.mark.asyncio
    async def test_non_object_arguments_rejected(self, mcp_core):
        response = await mcp_core.handle(request(2, "tools/call", {
            "name": "start-notification-stream",
            "arguments": [1, 2]
        }))

        assert response["error"]["code"] == ErrorCode.INVALID_PARAMS.value

    @pytest.mark.asyncio
    async def test_duplicate_running_id_rejected(self, mcp_core):
        session_id, received = await open_recorded_session(mcp_core)

        first = asyncio.create_task(
            mcp_core.handle(call_stream("dup", interval=10, count=0), session_id)
        )
        await asyncio.sleep(0.05)
        second = await mcp_core.handle(call_stream("dup", interval=10, count=0), session_id)

        assert second["error"]["code"] == ErrorCode.INVALID_REQUEST.value

        # The first run is still tracked and can be cancelled
        await mcp_core.handle({
            "jsonrpc": "2.0",
            "method": "notifications/cancelled",
            "params": {"requestId": "dup"}
        }, session_id)
        assert await asyncio.wait_for(first, timeout=1) is None
        assert mcp_core.get_session(session_id).in_flight == {}


class TestSessionlessRequests:
    """Messages that arrive without a session id."""

    @pytest.mark.asyncio
    async def test_sessionless_requests_leave_no_session(self, mcp_core):
        for n in range(20):
            response = await mcp_core.handle(request(n, "tools/list"))
            assert "result" in response

        assert mcp_core._sessions == {}

    @pytest.mark.asyncio
    async def test_sessionless_tool_call_runs(self, mcp_core):
        response = await mcp_core.handle(call_stream(1, interval=0, count=2))

        assert response["result"]["content"][0]["text"] == (
            "Started sending periodic notifications every 0ms"
        )
        assert mcp_core._sessions == {}

    @pytest.mark.asyncio
    async def test_initialize_keeps_its_session(self, mcp_core):
        response = await mcp_core.handle(request(1, "initialize"))

        assert list(mcp_core._sessions) == [response["result"]["sessionId"]]
