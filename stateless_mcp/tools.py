"""MCP Tools implementation.

Provides one diagnostic tool:
- start-notification-stream: send periodic notifications to the calling
  session, used to exercise stream resumability on the client side
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .notifications import (
    CancellationToken,
    EmitterStats,
    FailureReporter,
    NotificationEmitter,
    OutboundChannel,
    StreamRequest,
    utc_timestamp,
)


logger = logging.getLogger(__name__)


# Pydantic models for tool parameters
class StartNotificationStreamParams(BaseModel):
    """Parameters for start-notification-stream tool."""

    model_config = ConfigDict(extra='forbid')

    interval: float = Field(
        default=100.0, ge=0, description="Interval in milliseconds between notifications"
    )
    count: int = Field(
        default=10, ge=0, description="Number of notifications to send (0 for unlimited)"
    )

    @property
    def interval_text(self) -> str:
        """Interval as the client sent it: ``100`` rather than ``100.0``."""
        if self.interval.is_integer():
            return str(int(self.interval))
        return str(self.interval)

    def to_request(self) -> StreamRequest:
        return StreamRequest(interval=self.interval, count=self.count)


# Response models
class TextContent(BaseModel):
    """Text content block."""

    type: Literal["text"] = "text"
    text: str


class ToolResult(BaseModel):
    """Result of a tools/call."""

    content: List[TextContent]
    is_error: bool = False

    def to_response(self) -> Dict[str, Any]:
        response: Dict[str, Any] = {"content": [c.model_dump() for c in self.content]}
        if self.is_error:
            response["isError"] = True
        return response


@dataclass
class ToolContext:
    """Per-invocation context handed to a tool."""
    channel: OutboundChannel
    token: CancellationToken
    on_failure: Optional[FailureReporter] = None
    clock: Callable[[], str] = utc_timestamp


class MCPToolProvider:
    """Provider for MCP tools."""

    async def start_notification_stream(
        self,
        params: StartNotificationStreamParams,
        context: ToolContext
    ) -> ToolResult:
        """Send periodic notifications to the calling session.

        Runs until ``params.count`` notifications have been attempted or the
        invocation is cancelled. The result only confirms the interval; it
        does not report how many notifications went out or whether the run
        was cut short.

        Args:
            params: Interval and count
            context: Session channel and cancellation token of this call

        Returns:
            ToolResult confirming the interval used
        """
        emitter = NotificationEmitter(
            context.channel,
            on_failure=context.on_failure,
            clock=context.clock
        )
        stats: EmitterStats = await emitter.run(params.to_request(), context.token)

        logger.info(
            f"Notification stream finished: interval={params.interval_text}ms "
            f"count={params.count} attempted={stats.attempted} "
            f"delivered={stats.delivered} failed={stats.failed} "
            f"cancelled={stats.cancelled}"
        )

        return ToolResult(content=[TextContent(
            text=f"Started sending periodic notifications every {params.interval_text}ms"
        )])


@dataclass(frozen=True)
class ToolSpec:
    """Registry entry binding a tool name to its params model and handler."""
    name: str
    description: str
    params_model: type
    method: str

    def definition(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.params_model.model_json_schema()
        }


TOOLS: Dict[str, ToolSpec] = {
    "start-notification-stream": ToolSpec(
        name="start-notification-stream",
        description="Starts sending periodic notifications for testing resumability",
        params_model=StartNotificationStreamParams,
        method="start_notification_stream"
    ),
}

# Tool definitions for MCP
TOOL_DEFINITIONS = [spec.definition() for spec in TOOLS.values()]
