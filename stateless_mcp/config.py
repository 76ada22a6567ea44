"""Server configuration.

Values come from defaults, then ``STATELESS_MCP_*`` environment variables,
then explicit overrides (usually CLI flags).
"""

import os
import secrets
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError


ENV_PREFIX = "STATELESS_MCP_"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ServerConfig(BaseModel):
    """Configuration for the MCP server and its transports."""

    model_config = ConfigDict(extra='forbid')

    name: str = Field(default="stateless-server", description="Server name reported on initialize")
    version: str = Field(default="1.0.0", description="Server version reported on initialize")
    host: str = Field(default="127.0.0.1", description="HTTP bind address")
    port: int = Field(default=8080, ge=0, le=65535, description="HTTP port")
    auth_token: str = Field(
        default_factory=lambda: secrets.token_urlsafe(32),
        description="Bearer token required by the HTTP transport"
    )
    log_level: str = Field(default="INFO", description="Root logging level")
    event_buffer_size: int = Field(default=1000, ge=1, description="Per-session replay buffer size")
    keepalive_seconds: float = Field(default=30.0, gt=0, description="SSE keepalive period")
    allowed_origins: List[str] = Field(
        default_factory=lambda: ["http://localhost:*", "http://127.0.0.1:*", "null"],
        description="Origin patterns accepted by the HTTP transport"
    )

    @field_validator('log_level')
    def validate_log_level(cls, v):
        level = v.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator('auth_token')
    def validate_auth_token(cls, v):
        if not v.strip():
            raise ValueError("Auth token cannot be empty")
        return v

    @classmethod
    def from_env(cls, overrides: Optional[Dict[str, Any]] = None) -> "ServerConfig":
        """Build config from environment variables and explicit overrides.

        Overrides whose value is None are ignored so argparse namespaces can
        be passed through unchanged.

        Raises:
            ConfigError: If any value fails validation
        """
        values: Dict[str, Any] = {}
        for field_name in cls.model_fields:
            raw = os.getenv(ENV_PREFIX + field_name.upper())
            if raw is None:
                continue
            if field_name == "allowed_origins":
                values[field_name] = [o.strip() for o in raw.split(",") if o.strip()]
            else:
                values[field_name] = raw

        for key, value in (overrides or {}).items():
            if value is not None:
                values[key] = value

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigError(f"Invalid server configuration: {e}") from e
