"""Periodic notification stream.

The emitter behind the ``start-notification-stream`` tool. It pushes
``notifications/message`` events to a session channel at a fixed cadence:
- one send in flight at a time, sequence numbers 1..count
- a failed send is reported and skipped, never retried or fatal
- cancellation is observed at the top of each iteration and during each wait
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union


logger = logging.getLogger(__name__)

NOTIFICATION_METHOD = "notifications/message"


class OutboundChannel(Protocol):
    """Outbound side of a client session.

    ``send`` returns once the message has been handed to the session and
    raises if it could not be.
    """

    async def send(self, message: Dict[str, Any]) -> Any:
        ...


def utc_timestamp() -> str:
    """Current UTC time as ISO-8601 with milliseconds and a ``Z`` suffix."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class NotificationMessage:
    """One periodic notification."""
    sequence_number: int
    timestamp: str
    level: str = "info"

    @property
    def payload(self) -> str:
        return f"Periodic notification #{self.sequence_number} at {self.timestamp}"

    def to_jsonrpc(self) -> Dict[str, Any]:
        """JSON-RPC notification carrying this message."""
        return {
            "jsonrpc": "2.0",
            "method": NOTIFICATION_METHOD,
            "params": {
                "level": self.level,
                "data": self.payload,
            },
        }


@dataclass
class DeliveryFailure:
    """A send attempt that raised."""
    sequence_number: int
    timestamp: str
    error: BaseException


FailureReporter = Callable[[DeliveryFailure], Union[None, Awaitable[None]]]


@dataclass
class EmitterStats:
    """Outcome of one emitter run."""
    attempted: int = 0
    delivered: int = 0
    failed: int = 0
    cancelled: bool = False


@dataclass
class StreamRequest:
    """Pacing for one run. ``count == 0`` means run until cancelled."""
    interval: float = 100
    count: int = 10

    def __post_init__(self):
        if self.interval < 0:
            raise ValueError(f"interval must be >= 0, got {self.interval}")
        if self.count < 0:
            raise ValueError(f"count must be >= 0, got {self.count}")


class CancellationToken:
    """Cancellation signal owned by one invocation."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        """Block until cancelled."""
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``, waking early on cancellation.

        A zero delay still yields to the event loop once.

        Returns:
            True if the token is cancelled when the sleep ends
        """
        if self.cancelled:
            return True
        if seconds <= 0:
            await asyncio.sleep(0)
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        return self.cancelled


class NotificationEmitter:
    """Sends a paced sequence of notifications to one session channel.

    Args:
        channel: Session channel the messages go to
        on_failure: Optional hook receiving a DeliveryFailure per failed send;
            may be a plain function or a coroutine function
        clock: Timestamp source, ``utc_timestamp`` by default
    """

    def __init__(
        self,
        channel: OutboundChannel,
        on_failure: Optional[FailureReporter] = None,
        clock: Callable[[], str] = utc_timestamp
    ):
        self.channel = channel
        self.on_failure = on_failure
        self.clock = clock

    async def run(
        self,
        request: StreamRequest,
        token: Optional[CancellationToken] = None
    ) -> EmitterStats:
        """Emit notifications until ``request.count`` is reached or ``token`` is cancelled.

        Never raises for delivery failures or cancellation.
        """
        if token is None:
            token = CancellationToken()
        stats = EmitterStats()
        delay = request.interval / 1000
        counter = 0

        while request.count == 0 or counter < request.count:
            if token.cancelled:
                break

            counter += 1
            message = NotificationMessage(sequence_number=counter, timestamp=self.clock())
            stats.attempted += 1
            try:
                await self.channel.send(message.to_jsonrpc())
                stats.delivered += 1
            except Exception as e:
                stats.failed += 1
                await self._report(DeliveryFailure(counter, message.timestamp, e))

            if await token.sleep(delay):
                break

        stats.cancelled = token.cancelled
        return stats

    async def _report(self, failure: DeliveryFailure) -> None:
        logger.warning(
            f"Error sending notification #{failure.sequence_number}: {failure.error}"
        )
        if self.on_failure is None:
            return
        try:
            result = self.on_failure(failure)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Delivery failure hook raised")
