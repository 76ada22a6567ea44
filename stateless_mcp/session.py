"""Client sessions and their outbound channels.

Each session owns a bounded replay buffer of the notifications sent to it,
so a client that reconnects with ``Last-Event-ID`` can pick up what it
missed, and a set of live sinks (stdout writer, SSE streams) that receive
every notification as it is sent.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .errors import ChannelClosedError, DeliveryError
from .notifications import CancellationToken


logger = logging.getLogger(__name__)

Sink = Callable[[int, Dict[str, Any]], Awaitable[None]]
RequestId = Union[str, int]


class EventBuffer:
    """Buffer for server-to-client events with backpressure.

    Bounded; ``oldest`` evicts the head when full, ``newest`` refuses the
    incoming event.
    """

    def __init__(self, max_size: int = 1000, drop_policy: str = "oldest"):
        if drop_policy not in ("oldest", "newest"):
            raise ValueError(f"Unknown drop policy: {drop_policy}")
        self._buffer: deque = deque(maxlen=max_size)
        self._event_id = 0
        self._drop_policy = drop_policy
        self._lock = asyncio.Lock()

    async def push(self, message: Dict[str, Any]) -> int:
        """Add message to buffer. Returns event ID, or -1 if dropped."""
        async with self._lock:
            if len(self._buffer) >= self._buffer.maxlen and self._drop_policy == "newest":
                return -1

            self._event_id += 1
            self._buffer.append({
                "id": self._event_id,
                "message": message,
                "timestamp": datetime.now().isoformat()
            })
            return self._event_id

    async def get_since(self, cursor: int) -> List[Dict[str, Any]]:
        """Get all events since cursor ID."""
        async with self._lock:
            return [e for e in self._buffer if e["id"] > cursor]

    @property
    def last_event_id(self) -> int:
        return self._event_id

    def __len__(self) -> int:
        return len(self._buffer)


class SessionChannel:
    """Outbound notification channel for one session.

    ``send`` records the message in the replay buffer, then hands it to every
    live sink. A failing sink does not stop the others; the failure is raised
    as DeliveryError once all sinks have been tried.
    """

    def __init__(self, session_id: str, buffer: EventBuffer):
        self.session_id = session_id
        self.buffer = buffer
        self._sinks: List[Sink] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, sink: Sink) -> Callable[[], None]:
        """Attach a live sink. Returns a callable that detaches it."""
        self._sinks.append(sink)

        def unsubscribe() -> None:
            if sink in self._sinks:
                self._sinks.remove(sink)

        return unsubscribe

    async def send(self, message: Dict[str, Any]) -> int:
        """Send a notification to the session. Returns its event ID.

        Raises:
            ChannelClosedError: If the session has been closed
            DeliveryError: If the buffer refused the message or a live sink failed
        """
        if self._closed:
            raise ChannelClosedError(self.session_id)

        event_id = await self.buffer.push(message)
        if event_id < 0:
            # Full buffer under the "newest" policy: not buffered, not sent
            raise DeliveryError(self.session_id, "replay buffer full, message dropped")

        errors = []
        for sink in self._sinks[:]:
            try:
                await sink(event_id, message)
            except Exception as e:
                errors.append(e)

        if errors:
            reason = "; ".join(str(e) or type(e).__name__ for e in errors)
            raise DeliveryError(self.session_id, reason, event_id)
        return event_id

    async def replay_since(self, cursor: int) -> List[Dict[str, Any]]:
        """Buffered events newer than ``cursor``."""
        return await self.buffer.get_since(cursor)

    def close(self) -> None:
        self._closed = True
        self._sinks.clear()


@dataclass
class McpSession:
    """Session state for an MCP connection.

    Tracks the outbound channel and the cancellation tokens of tool calls
    still running in this session.
    """
    session_id: str
    channel: SessionChannel
    created_at: datetime = field(default_factory=datetime.now)
    last_seen_at: datetime = field(default_factory=datetime.now)
    initialized: bool = False
    client_info: Optional[Dict[str, Any]] = None
    in_flight: Dict[RequestId, CancellationToken] = field(default_factory=dict)

    @classmethod
    def create(cls, session_id: str, buffer_size: int = 1000) -> "McpSession":
        return cls(
            session_id=session_id,
            channel=SessionChannel(session_id, EventBuffer(max_size=buffer_size))
        )

    def track(self, request_id: RequestId) -> CancellationToken:
        """Register a running request and return its token.

        The token starts out cancelled if the session is already closed.

        Raises:
            ValueError: If a request with the same id is still running
        """
        if request_id in self.in_flight:
            raise ValueError(f"Request {request_id!r} is already running in this session")
        token = CancellationToken()
        if self.channel.closed:
            token.cancel("session closed")
        self.in_flight[request_id] = token
        return token

    def untrack(self, request_id: RequestId, token: Optional[CancellationToken] = None) -> None:
        """Forget a finished request; with ``token``, only if it is still the tracked one."""
        if token is None or self.in_flight.get(request_id) is token:
            self.in_flight.pop(request_id, None)

    def cancel(self, request_id: RequestId, reason: Optional[str] = None) -> bool:
        """Cancel a running request. Returns False if it is not running."""
        token = self.in_flight.get(request_id)
        if token is None:
            return False
        token.cancel(reason)
        return True

    def close(self, reason: str = "session closed") -> None:
        """Cancel everything still running and close the channel."""
        for token in self.in_flight.values():
            token.cancel(reason)
        self.channel.close()
        logger.debug(f"Session {self.session_id} closed: {reason}")
