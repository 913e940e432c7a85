"""Configuration for the flow runtime, server and CLI.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

Nothing here is required at startup: the defaults run flows against an
in-memory state store with tracing disabled.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FlowSettings(BaseSettings):
    """Settings for durable-flows.

    Environment variables:
    - LOG_LEVEL          (optional)
    - FLOW_STATE_STORE   (optional, ``memory`` or ``file``)
    - FLOW_STATE_PATH    (optional)
    - FLOW_SERVER_HOST / FLOW_SERVER_PORT (optional)
    - FLOW_SERVER_URL    (optional, used by the CLI)
    - FLOW_AUTH_TOKEN    (optional, sent by the CLI as a bearer credential)
    - FLOW_CORS_ORIGINS  (optional)
    - FLOW_TRACING       (optional, ``none`` or ``console``)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `FlowSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    state_store: Literal["memory", "file"] = Field(
        default="memory",
        validation_alias="FLOW_STATE_STORE",
        description="Flow state store backend",
    )
    state_path: Path = Field(
        default=Path(".flows/state"),
        validation_alias="FLOW_STATE_PATH",
        description="Directory where the file store keeps one JSON document per run",
    )

    server_host: str = Field(default="127.0.0.1", validation_alias="FLOW_SERVER_HOST")
    server_port: int = Field(default=3400, validation_alias="FLOW_SERVER_PORT", gt=0, le=65535)
    server_url: str = Field(
        default="http://127.0.0.1:3400",
        validation_alias="FLOW_SERVER_URL",
        description="Base URL of the flow server the CLI talks to",
    )

    auth_token: str = Field(
        default="",
        validation_alias="FLOW_AUTH_TOKEN",
        description="Bearer credential the CLI forwards to the flow server",
    )

    # Comma-separated list; override via FLOW_CORS_ORIGINS=...
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="FLOW_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins.",
    )

    tracing: Literal["none", "console"] = Field(
        default="none",
        validation_alias="FLOW_TRACING",
        description="Span exporter installed at startup",
    )

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
