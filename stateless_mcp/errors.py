"""Custom error types for stateless-mcp."""


class StatelessMcpError(Exception):
    """Base error for all stateless-mcp errors."""
    pass


class DeliveryError(StatelessMcpError):
    """Raised when a notification could not reach one or more session sinks."""

    def __init__(self, session_id: str, reason: str, event_id: int = None):
        msg = f"Delivery to session '{session_id}' failed: {reason}"
        if event_id is not None:
            msg += f" (event {event_id})"
        super().__init__(msg)
        self.session_id = session_id
        self.event_id = event_id


class ChannelClosedError(DeliveryError):
    """Raised when sending on a session channel that has been closed."""

    def __init__(self, session_id: str):
        super().__init__(session_id, "channel is closed")


class ConfigError(StatelessMcpError):
    """Raised when server configuration is invalid."""
    pass
