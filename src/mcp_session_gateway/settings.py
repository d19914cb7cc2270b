from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class GatewaySettings(BaseSettings):
    """Gateway settings.

    All settings can be configured via environment variables with the prefix
    MCP_GATEWAY_. For example, MCP_GATEWAY_JSON_RESPONSE=true will set
    json_response=True. The port is also read from a plain PORT variable.
    """

    model_config = SettingsConfigDict(
        env_prefix="MCP_GATEWAY_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    # Server settings
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # HTTP settings
    host: str = "0.0.0.0"
    port: int = Field(default=3000, validation_alias=AliasChoices("port", "MCP_GATEWAY_PORT", "PORT"))
    streamable_http_path: str = "/mcp"
    sse_path: str = "/sse"
    message_path: str = "/messages"

    # StreamableHTTP settings
    json_response: bool = False
    """Answer streamable HTTP requests with a JSON body instead of an SSE stream."""
