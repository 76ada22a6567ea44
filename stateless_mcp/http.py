"""Streamable HTTP Transport for MCP Server.

Implements the Streamable HTTP transport for MCP with security requirements:
- Localhost binding only
- Origin header validation
- Bearer token authentication

Endpoints:
- POST /mcp: JSON-RPC message (responds JSON, or SSE when the client accepts it)
- GET /mcp: SSE stream of session notifications, resumable with Last-Event-ID
- DELETE /mcp: end a session
- GET /health: liveness, no auth
"""

import asyncio
import json
import logging
import re
import secrets
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Awaitable, Callable, Dict, List, Optional, Pattern, Tuple

from .config import ServerConfig
from .server import ErrorCode, JsonRpcError, McpCore, opens_session
from .session import McpSession


logger = logging.getLogger(__name__)

SESSION_HEADER = "MCP-Session-Id"


class SecurityError(Exception):
    """Request came from an origin that is not allowed."""
    pass


class AuthError(Exception):
    """Request carried no bearer token or the wrong one."""
    pass


@dataclass
class HttpRequest:
    """Parsed HTTP request. Header names are lower-cased."""
    method: str
    path: str
    headers: Dict[str, str]
    body: bytes
    query_params: Dict[str, str]

    @property
    def session_id(self) -> Optional[str]:
        return self.headers.get("mcp-session-id")

    def accepts_sse(self) -> bool:
        return "text/event-stream" in self.headers.get("accept", "")


@dataclass
class HttpResponse:
    """HTTP response with a fully buffered body."""
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @classmethod
    def json(cls, data: Any, status: int = 200) -> "HttpResponse":
        body = json.dumps(data).encode('utf-8')
        return cls(status, {"Content-Type": "application/json", "Content-Length": str(len(body))}, body)

    @classmethod
    def empty(cls, status: int = 202) -> "HttpResponse":
        return cls(status, {"Content-Length": "0"})

    @classmethod
    def error(cls, message: str, status: int = 400) -> "HttpResponse":
        return cls.json({"error": message}, status)

    def encode(self) -> bytes:
        head = [f"HTTP/1.1 {self.status} {HTTPStatus(self.status).phrase}"]
        head.extend(f"{name}: {value}" for name, value in self.headers.items())
        return ("\r\n".join(head) + "\r\n\r\n").encode('utf-8') + self.body


class HttpTransportSecurity:
    """Origin allow-list and bearer token check.

    Origin patterns are exact strings or contain a ``*`` standing for a
    port number, e.g. ``http://localhost:*``.
    """

    def __init__(self, auth_token: str, allowed_origins: Optional[List[str]] = None):
        self.auth_token = auth_token
        self.allowed_origins = allowed_origins or ["http://localhost:*", "http://127.0.0.1:*", "null"]
        self._origin_patterns: List[Pattern] = [
            re.compile(re.escape(origin).replace(r"\*", r"\d+") + r"\Z")
            for origin in self.allowed_origins
        ]

    def validate_request(self, request: HttpRequest) -> None:
        """Validate request security.

        Requests without an Origin header (non-browser clients) skip the
        origin check.

        Raises:
            SecurityError: If origin not allowed
            AuthError: If auth invalid
        """
        origin = request.headers.get("origin")
        if origin and not any(p.match(origin) for p in self._origin_patterns):
            raise SecurityError(f"Origin {origin} not allowed")

        scheme, _, token = request.headers.get("authorization", "").partition(" ")
        if scheme != "Bearer" or not secrets.compare_digest(token, self.auth_token):
            raise AuthError("Invalid or missing auth token")


class SseStream:
    """Server-Sent Events writer over a byte-writing coroutine."""

    def __init__(self, write_fn: Callable[[bytes], Awaitable[None]]):
        self._write = write_fn
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_event(
        self,
        data: Dict[str, Any],
        event_type: Optional[str] = None,
        event_id: Optional[int] = None
    ) -> None:
        fields = []
        if event_id is not None:
            fields.append(f"id: {event_id}")
        if event_type:
            fields.append(f"event: {event_type}")
        fields.append(f"data: {json.dumps(data)}")
        await self._send("\n".join(fields) + "\n\n")

    async def send_comment(self, text: str) -> None:
        await self._send(f": {text}\n\n")

    async def _send(self, chunk: str) -> None:
        if self._closed:
            raise ConnectionError("SSE stream is closed")
        await self._write(chunk.encode('utf-8'))

    def close(self) -> None:
        self._closed = True


def parse_request_line(request_line: str) -> Tuple[str, str, Dict[str, str]]:
    """Split ``METHOD /path?query HTTP/1.1`` into method, path and query params.

    Raises:
        ValueError: If the line has no method and target
    """
    parts = request_line.split()
    if len(parts) < 2:
        raise ValueError(f"Bad request line: {request_line!r}")

    method, target = parts[0], parts[1]
    path, _, query_string = target.partition("?")
    query_params = dict(
        pair.split("=", 1) for pair in query_string.split("&") if "=" in pair
    )
    return method, path, query_params


async def read_request(reader: asyncio.StreamReader) -> Optional[HttpRequest]:
    """Read one request from the stream; None if the client sent nothing.

    Raises:
        ValueError: On a malformed request line
    """
    request_line = await reader.readline()
    if not request_line:
        return None
    method, path, query_params = parse_request_line(request_line.decode('utf-8'))

    headers: Dict[str, str] = {}
    while True:
        line = (await reader.readline()).decode('utf-8').strip()
        if not line:
            break
        name, sep, value = line.partition(":")
        if sep:
            headers[name.strip().lower()] = value.strip()

    length = int(headers.get("content-length") or 0)
    body = await reader.readexactly(length) if length else b""
    return HttpRequest(method, path, headers, body, query_params)


class HttpTransport:
    """Streamable HTTP transport for MCP server."""

    def __init__(
        self,
        core: McpCore,
        port: Optional[int] = None,
        host: Optional[str] = None
    ):
        self.core = core
        self.port = core.config.port if port is None else port
        self.host = host or core.config.host
        self.keepalive_seconds = core.config.keepalive_seconds

        self.security = HttpTransportSecurity(core.auth_token, core.config.allowed_origins)
        self._server: Optional[asyncio.AbstractServer] = None
        self._sse_clients: List[SseStream] = []
        self._mcp_routes = {
            "POST": self._handle_mcp_post,
            "GET": self._handle_mcp_get,
            "DELETE": self._handle_mcp_delete,
        }

    async def handle_request(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter
    ) -> None:
        """Serve one request per connection, then close it."""
        try:
            try:
                request = await read_request(reader)
            except ValueError:
                request = None
                await self._send_response(writer, HttpResponse.error("Bad request", 400))

            if request is not None:
                response = await self._route_request(request, writer)
                if response is not None:
                    await self._send_response(writer, response)

        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.debug(f"Client went away: {e}")
        except Exception as e:
            logger.exception(f"Request handling error: {e}")
            if not writer.is_closing():
                await self._send_response(writer, HttpResponse.error(str(e), 500))
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def _route_request(
        self,
        request: HttpRequest,
        writer: asyncio.StreamWriter
    ) -> Optional[HttpResponse]:
        """Dispatch by path and method; None when the handler streamed its own reply."""
        if request.path == "/health":
            return HttpResponse.json({"status": "ok"})

        try:
            self.security.validate_request(request)
        except SecurityError as e:
            return HttpResponse.error(str(e), 403)
        except AuthError as e:
            response = HttpResponse.error(str(e), 401)
            response.headers["WWW-Authenticate"] = "Bearer"
            return response

        if request.path != "/mcp":
            return HttpResponse.error("Not found", 404)

        handler = self._mcp_routes.get(request.method)
        if handler is None:
            return HttpResponse.error("Method not allowed", 405)
        return await handler(request, writer)

    async def _handle_mcp_post(
        self,
        request: HttpRequest,
        writer: asyncio.StreamWriter
    ) -> Optional[HttpResponse]:
        """Handle POST /mcp - one JSON-RPC message."""
        try:
            message = json.loads(request.body.decode('utf-8'))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            error = JsonRpcError(ErrorCode.PARSE_ERROR.value, f"Parse error: {e}")
            return HttpResponse.json(error.to_response(None))

        # A sessionless message other than initialize gets a session for this
        # request only; it is closed with the reply and never announced
        transient = request.session_id is None and not opens_session(message)
        session = self.core.open_session(request.session_id)
        announced = None if transient else session.session_id
        is_request = isinstance(message, dict) and "id" in message and "method" in message

        try:
            if is_request and request.accepts_sse():
                await self._stream_post(message, session, writer, announced)
                return None
            reply = await self.core.handle(message, session.session_id)
        finally:
            if transient:
                self.core.close_session(session.session_id, "sessionless request completed")

        response = HttpResponse.empty(202) if reply is None else HttpResponse.json(reply)
        if announced:
            response.headers[SESSION_HEADER] = announced
        return response

    async def _stream_post(
        self,
        message: Dict[str, Any],
        session: McpSession,
        writer: asyncio.StreamWriter,
        announced: Optional[str]
    ) -> None:
        """Answer a POST with an SSE stream: session notifications, then the response."""
        stream = await self._open_sse(writer, announced)

        async def forward(event_id: int, notification: Dict[str, Any]) -> None:
            await stream.send_event(notification, event_id=event_id)

        unsubscribe = session.channel.subscribe(forward)
        try:
            reply = await self.core.handle(message, session.session_id)
        finally:
            unsubscribe()

        if reply is not None:
            try:
                await stream.send_event(reply)
            except ConnectionError:
                logger.info(f"Client disconnected before response to {message.get('id')}")
        stream.close()

    async def _handle_mcp_get(
        self,
        request: HttpRequest,
        writer: asyncio.StreamWriter
    ) -> Optional[HttpResponse]:
        """Handle GET /mcp - replay missed notifications, then stream live ones."""
        session = self.core.get_session(request.session_id) if request.session_id else None
        if session is None:
            return HttpResponse.error("Unknown or missing session", 404)

        try:
            cursor = int(request.headers.get("last-event-id", "0"))
        except ValueError:
            cursor = 0

        pending: asyncio.Queue = asyncio.Queue()

        async def enqueue(event_id: int, notification: Dict[str, Any]) -> None:
            pending.put_nowait((event_id, notification))

        # Subscribe before replaying so nothing falls between the two
        unsubscribe = session.channel.subscribe(enqueue)
        stream = await self._open_sse(writer, session.session_id)
        self._sse_clients.append(stream)

        try:
            for event in await session.channel.replay_since(cursor):
                await stream.send_event(event["message"], event_id=event["id"])
                cursor = event["id"]

            while not (stream.closed or session.channel.closed):
                try:
                    event_id, notification = await asyncio.wait_for(
                        pending.get(), timeout=self.keepalive_seconds
                    )
                except asyncio.TimeoutError:
                    await stream.send_comment("keepalive")
                    continue
                if event_id > cursor:
                    await stream.send_event(notification, event_id=event_id)
                    cursor = event_id

        except ConnectionError:
            logger.debug(f"SSE client for session {session.session_id} disconnected")
        finally:
            unsubscribe()
            stream.close()
            if stream in self._sse_clients:
                self._sse_clients.remove(stream)

        return None

    async def _handle_mcp_delete(
        self,
        request: HttpRequest,
        writer: asyncio.StreamWriter
    ) -> HttpResponse:
        """Handle DELETE /mcp - terminate a session."""
        if request.session_id and self.core.close_session(request.session_id, "closed by client"):
            return HttpResponse.empty(200)
        return HttpResponse.json({
            "error": "Unknown or missing session",
            "code": ErrorCode.SESSION_NOT_FOUND.value
        }, 404)

    async def _open_sse(self, writer: asyncio.StreamWriter, session_id: Optional[str]) -> SseStream:
        """Send SSE response headers and wrap the writer."""
        head = HttpResponse(200, {
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        })
        if session_id:
            head.headers[SESSION_HEADER] = session_id
        writer.write(head.encode())
        await writer.drain()

        async def write_fn(data: bytes) -> None:
            if writer.is_closing():
                raise ConnectionError("Connection closed")
            writer.write(data)
            await writer.drain()

        return SseStream(write_fn)

    async def _send_response(self, writer: asyncio.StreamWriter, response: HttpResponse) -> None:
        writer.write(response.encode())
        await writer.drain()

    async def start(self) -> None:
        """Start the HTTP server and serve until cancelled."""
        self._server = await asyncio.start_server(self.handle_request, self.host, self.port)
        logger.info(f"MCP HTTP server listening on http://{self.host}:{self.port}/mcp")

        async with self._server:
            await self._server.serve_forever()

    async def stop(self) -> None:
        """Stop the server, close open streams and all sessions."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()

        for stream in self._sse_clients:
            stream.close()
        self._sse_clients.clear()

        self.core.cleanup()


async def run_http_server(config: Optional[ServerConfig] = None) -> None:
    """Run MCP server with HTTP transport."""
    import sys

    core = McpCore(config)

    # Print connection details to stderr for the parent process
    print(f"AUTH_TOKEN={core.auth_token}", file=sys.stderr)
    print(f"MCP_URL=http://{core.config.host}:{core.config.port}/mcp", file=sys.stderr)
    sys.stderr.flush()

    transport = HttpTransport(core)

    try:
        await transport.start()
    except asyncio.CancelledError:
        pass
    finally:
        await transport.stop()
