"""Pydantic configuration models for browserwire.

These models are only used at startup/initialization time. Wire messages
stay as @dataclass(frozen=True, slots=True) in wire.py.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_TIMEOUT_MS = 30_000.0


class ConnectionConfig(BaseModel):
    """Configuration for a Connection.

    Attributes:
        default_timeout_ms: Global default for waits, in milliseconds.
            0 disables the timeout.
        log_messages: Log every sent and received frame at DEBUG level
    """

    model_config = ConfigDict(frozen=False)

    default_timeout_ms: float = Field(
        default=DEFAULT_TIMEOUT_MS,
        ge=0,
        description="Global wait timeout in milliseconds (0 = no timeout)",
    )
    log_messages: bool = Field(
        default=False,
        description="Log wire traffic at DEBUG level",
    )


class ClientConfig(BaseModel):
    """Configuration for RemoteBrowserClient.

    Attributes:
        url: WebSocket endpoint of the remote browser server
        headers: Extra HTTP headers sent with the WebSocket handshake
        connect_timeout: Seconds to wait for the root object after connecting
        root_guid: Guid of the object announcing the remote browser
        options: Connection configuration
    """

    model_config = ConfigDict(
        frozen=False,
        arbitrary_types_allowed=True,
    )

    url: str = Field(..., description="WebSocket endpoint URL")
    headers: dict[str, str] = Field(default_factory=dict)
    connect_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds to wait for the remote browser to be announced",
    )
    root_guid: str = Field(default="remoteBrowser")
    options: ConnectionConfig | None = Field(
        default=None,
        description="Optional connection configuration",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate URL format."""
        if not v:
            raise ValueError("URL cannot be empty")

        valid_schemes = ("ws://", "wss://")
        if not any(v.startswith(scheme) for scheme in valid_schemes):
            raise ValueError(
                f"URL must start with one of: {', '.join(valid_schemes)}"
            )
        return v
