"""MCP Server Core Implementation.

Transport-agnostic JSON-RPC dispatcher. Both the stdio and the HTTP
transport hand parsed messages to ``McpCore.handle`` together with the
session they arrived on, and write back whatever it returns.
"""

import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from .config import ServerConfig
from .notifications import FailureReporter
from .prompts import MCPPromptProvider
from .resources import MCPResourceProvider
from .session import McpSession, RequestId
from .tools import MCPToolProvider, TOOL_DEFINITIONS, TOOLS, ToolContext


logger = logging.getLogger(__name__)

Params = Dict[str, Any]

# Returned by dispatch when a message must not be answered
_NO_REPLY = object()


class ErrorCode(Enum):
    """Standard JSON-RPC and MCP error codes."""
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603
    # MCP-specific errors
    RESOURCE_NOT_FOUND = -32002
    SESSION_NOT_FOUND = -32001


class JsonRpcError(Exception):
    """JSON-RPC error with code and message."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(message)

    @classmethod
    def invalid_params(cls, message: str, data: Any = None) -> "JsonRpcError":
        return cls(ErrorCode.INVALID_PARAMS.value, message, data)

    @classmethod
    def from_validation(cls, e: ValidationError, what: str) -> "JsonRpcError":
        return cls.invalid_params(f"Invalid {what}", json.loads(e.json(include_url=False)))

    def to_response(self, msg_id: Any) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return {"jsonrpc": "2.0", "id": msg_id, "error": error}


class RequestCancelled(Exception):
    """Raised inside a handler whose request was cancelled by the client."""
    pass


@dataclass
class RequestContext:
    """The session a message arrived on, and its id if it is a request."""
    session: McpSession
    request_id: Optional[RequestId] = None


Handler = Callable[[Params, RequestContext], Awaitable[Any]]


def require(params: Params, key: str, label: str) -> Any:
    value = params.get(key)
    if value is None or value == "":
        raise JsonRpcError.invalid_params(f"Missing {label}")
    return value


def arguments_of(params: Params) -> Dict[str, Any]:
    arguments = params.get("arguments")
    if arguments is None:
        return {}
    if not isinstance(arguments, dict):
        raise JsonRpcError.invalid_params("arguments must be an object")
    return arguments


def opens_session(message: Any) -> bool:
    """Whether a message sent without a session id should get a lasting session."""
    return isinstance(message, dict) and message.get("method") == "initialize"


class McpCore:
    """Core MCP server handling JSON-RPC protocol.

    Built once per process; the method table is fixed at construction.
    """

    MCP_PROTOCOL_VERSION = "2025-11-25"
    SUPPORTED_PROTOCOL_VERSIONS = ("2025-11-25", "2025-06-18", "2025-03-26", "2024-11-05")

    def __init__(
        self,
        config: Optional[ServerConfig] = None,
        on_delivery_failure: Optional[FailureReporter] = None
    ):
        self.config = config or ServerConfig()
        self.auth_token = self.config.auth_token
        self.on_delivery_failure = on_delivery_failure

        self.prompt_provider = MCPPromptProvider()
        self.resource_provider = MCPResourceProvider()
        self.tool_provider = MCPToolProvider()

        self._sessions: Dict[str, McpSession] = {}
        self._handlers: MappingProxyType = MappingProxyType({
            "initialize": self._initialize,
            "ping": self._ping,
            "prompts/list": self._list_prompts,
            "prompts/get": self._get_prompt,
            "resources/list": self._list_resources,
            "resources/read": self._read_resource,
            "tools/list": self._list_tools,
            "tools/call": self._call_tool,
            "notifications/initialized": self._initialized,
            "notifications/cancelled": self._cancelled,
        })

    @property
    def methods(self) -> List[str]:
        return list(self._handlers)

    async def handle(
        self,
        message: Any,
        session_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Handle one JSON-RPC message.

        Returns the response dict, or None for notifications, client
        responses and requests the client cancelled.
        """
        if not isinstance(message, dict):
            return JsonRpcError(
                ErrorCode.INVALID_REQUEST.value, "Message must be an object"
            ).to_response(None)

        msg_id = message.get("id")
        is_notification = "id" not in message

        try:
            result = await self._dispatch(message, session_id, msg_id, is_notification)
        except RequestCancelled:
            logger.debug(f"Request {msg_id} cancelled; no response sent")
            return None
        except JsonRpcError as e:
            if is_notification:
                logger.warning(f"Error handling notification: {e.message}")
                return None
            return e.to_response(msg_id)
        except Exception as e:
            logger.exception("Internal error handling MCP message")
            if is_notification:
                return None
            return JsonRpcError(ErrorCode.INTERNAL_ERROR.value, str(e)).to_response(msg_id)

        if is_notification or result is _NO_REPLY:
            return None
        return {"jsonrpc": "2.0", "id": msg_id, "result": result}

    async def _dispatch(
        self,
        message: Dict[str, Any],
        session_id: Optional[str],
        msg_id: Any,
        is_notification: bool
    ) -> Any:
        if message.get("jsonrpc") != "2.0":
            raise JsonRpcError(ErrorCode.INVALID_REQUEST.value, "Invalid JSON-RPC version")

        method = message.get("method")
        if not method:
            if "result" in message or "error" in message:
                # Reply to a server-initiated request; none are issued
                return _NO_REPLY
            raise JsonRpcError(ErrorCode.INVALID_REQUEST.value, "Missing method")

        params = message.get("params") or {}
        if not isinstance(params, dict):
            raise JsonRpcError.invalid_params("params must be an object")

        handler = self._handlers.get(method)
        if handler is None:
            if is_notification:
                logger.debug(f"Ignoring unknown notification: {method}")
                return _NO_REPLY
            raise JsonRpcError(ErrorCode.METHOD_NOT_FOUND.value, f"Method not found: {method}")

        # Without a session id only initialize leaves a session behind
        transient = session_id is None and not opens_session(message)
        session = self._get_or_create_session(session_id)
        session.last_seen_at = datetime.now()
        try:
            return await handler(params, RequestContext(session, msg_id))
        finally:
            if transient:
                self.close_session(session.session_id, "sessionless request completed")

    # Sessions

    def _get_or_create_session(self, session_id: Optional[str]) -> McpSession:
        session = self._sessions.get(session_id) if session_id else None
        if session is None:
            session_id = session_id or secrets.token_urlsafe(16)
            session = McpSession.create(session_id, buffer_size=self.config.event_buffer_size)
            self._sessions[session_id] = session
            logger.debug(f"Created session {session_id}")
        return session

    def get_session(self, session_id: str) -> Optional[McpSession]:
        return self._sessions.get(session_id)

    def open_session(self, session_id: Optional[str] = None) -> McpSession:
        """Get or create a session outside of message handling."""
        return self._get_or_create_session(session_id)

    def close_session(self, session_id: str, reason: str = "session closed") -> bool:
        """Close a session, cancelling its running tool calls.

        Returns False if the session does not exist.
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.close(reason)
        return True

    def cleanup(self):
        """Close all sessions."""
        for session_id in list(self._sessions):
            self.close_session(session_id, "server shutting down")

    # Method handlers

    async def _initialize(self, params: Params, ctx: RequestContext) -> Dict[str, Any]:
        requested = params.get("protocolVersion")
        ctx.session.client_info = params.get("clientInfo")
        return {
            "protocolVersion": (
                requested if requested in self.SUPPORTED_PROTOCOL_VERSIONS
                else self.MCP_PROTOCOL_VERSION
            ),
            "capabilities": {"prompts": {}, "resources": {}, "tools": {}, "logging": {}},
            "serverInfo": {"name": self.config.name, "version": self.config.version},
            "sessionId": ctx.session.session_id,
        }

    async def _initialized(self, params: Params, ctx: RequestContext) -> None:
        ctx.session.initialized = True

    async def _ping(self, params: Params, ctx: RequestContext) -> Dict[str, Any]:
        return {}

    async def _list_prompts(self, params: Params, ctx: RequestContext) -> Dict[str, Any]:
        return {"prompts": self.prompt_provider.list_prompts()}

    async def _get_prompt(self, params: Params, ctx: RequestContext) -> Dict[str, Any]:
        name = require(params, "name", "prompt name")
        try:
            return self.prompt_provider.get(name, arguments_of(params))
        except KeyError:
            raise JsonRpcError.invalid_params(f"Unknown prompt: {name}")
        except ValidationError as e:
            raise JsonRpcError.from_validation(e, f"arguments for prompt {name}")

    async def _list_resources(self, params: Params, ctx: RequestContext) -> Dict[str, Any]:
        return {"resources": self.resource_provider.list_resources()}

    async def _read_resource(self, params: Params, ctx: RequestContext) -> Dict[str, Any]:
        uri = require(params, "uri", "uri parameter")
        resource = self.resource_provider.resolve(uri)
        if resource is None:
            raise JsonRpcError(
                ErrorCode.RESOURCE_NOT_FOUND.value, f"Resource not found: {uri}", {"uri": uri}
            )
        return resource.to_response()

    async def _list_tools(self, params: Params, ctx: RequestContext) -> Dict[str, Any]:
        return {"tools": TOOL_DEFINITIONS}

    async def _call_tool(self, params: Params, ctx: RequestContext) -> Dict[str, Any]:
        """Run a tool, tracked in the session so it can be cancelled."""
        tool_name = require(params, "name", "tool name")
        spec = TOOLS.get(tool_name)
        if spec is None:
            raise JsonRpcError(ErrorCode.METHOD_NOT_FOUND.value, f"Unknown tool: {tool_name}")

        try:
            tool_params = spec.params_model.model_validate(arguments_of(params))
        except ValidationError as e:
            raise JsonRpcError.from_validation(e, f"arguments for tool {tool_name}")

        session = ctx.session
        try:
            token = session.track(ctx.request_id)
        except ValueError as e:
            raise JsonRpcError(ErrorCode.INVALID_REQUEST.value, str(e))
        context = ToolContext(
            channel=session.channel, token=token, on_failure=self.on_delivery_failure
        )
        try:
            result = await getattr(self.tool_provider, spec.method)(tool_params, context)
        finally:
            session.untrack(ctx.request_id, token)

        if token.cancelled:
            raise RequestCancelled(token.reason)
        return result.to_response()

    async def _cancelled(self, params: Params, ctx: RequestContext) -> None:
        request_id = require(params, "requestId", "requestId")
        reason = params.get("reason") or "cancelled by client"
        if not ctx.session.cancel(request_id, reason):
            logger.debug(f"Cancellation for unknown request {request_id} ignored")
