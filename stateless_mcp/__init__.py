"""stateless-mcp: a minimal MCP (Model Context Protocol) server.

Exposes a greeting prompt template, a static text resource and a diagnostic
tool that streams periodic notifications to the calling session.

- McpCore: Transport-agnostic JSON-RPC handler
- StdioTransport: NDJSON on stdin/stdout
- HttpTransport: Streamable HTTP with SSE and Last-Event-ID resumption
"""

from .config import ServerConfig
from .errors import StatelessMcpError, DeliveryError, ChannelClosedError, ConfigError
from .notifications import (
    NotificationEmitter,
    NotificationMessage,
    StreamRequest,
    CancellationToken,
    DeliveryFailure,
    EmitterStats,
)
from .session import McpSession, SessionChannel, EventBuffer
from .prompts import MCPPromptProvider
from .resources import MCPResourceProvider, GREETING_RESOURCE_URI
from .tools import MCPToolProvider, StartNotificationStreamParams, TOOL_DEFINITIONS
from .server import McpCore, JsonRpcError, ErrorCode
from .stdio import StdioTransport, run_stdio_server
from .http import HttpTransport, HttpTransportSecurity, run_http_server

__version__ = "1.0.0"

__all__ = [
    # Config & errors
    "ServerConfig",
    "StatelessMcpError",
    "DeliveryError",
    "ChannelClosedError",
    "ConfigError",
    # Notification stream
    "NotificationEmitter",
    "NotificationMessage",
    "StreamRequest",
    "CancellationToken",
    "DeliveryFailure",
    "EmitterStats",
    # Sessions
    "McpSession",
    "SessionChannel",
    "EventBuffer",
    # Providers
    "MCPPromptProvider",
    "MCPResourceProvider",
    "GREETING_RESOURCE_URI",
    "MCPToolProvider",
    "StartNotificationStreamParams",
    "TOOL_DEFINITIONS",
    # Server Core
    "McpCore",
    "JsonRpcError",
    "ErrorCode",
    # Transports
    "StdioTransport",
    "HttpTransport",
    "HttpTransportSecurity",
    "run_stdio_server",
    "run_http_server",
]
