"""Configuration schema for the relay server.

Defines Pydantic models for loading and validating relay configuration from
YAML files and environment variables.
"""

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from src.classifier.supervisor import (
    DEFAULT_REQUEST_TIMEOUT_S,
    DEFAULT_STARTUP_TIMEOUT_S,
    READY_SENTINEL,
)

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class WebSocketConfig(BaseModel):
    """WebSocket relay endpoint configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=8080, ge=1024, le=65535, description="Bind port")
    path: str = Field(default="/ws", description="Upgrade path accepted by the relay")
    max_connections: int = Field(default=100, ge=1, description="Maximum concurrent connections")
    max_message_bytes: int = Field(
        default=1024 * 1024, ge=1024, description="Maximum inbound frame size in bytes"
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Validate that the path is absolute."""
        if not v.startswith("/"):
            raise ValueError(f"WebSocket path must start with '/', got '{v}'")
        return v


class HttpConfig(BaseModel):
    """HTTP API configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=8081, ge=1024, le=65535, description="Bind port")
    max_body_bytes: int = Field(
        default=10 * 1024 * 1024, ge=1024, description="Maximum request body size in bytes"
    )
    cors_allow_origin: str = Field(default="*", description="Access-Control-Allow-Origin value")


class ClassifierConfig(BaseModel):
    """Classifier worker supervision configuration."""

    command: list[str] | None = Field(
        default=None,
        description="Worker command line (None: python -m src.classifier)",
    )
    request_timeout_s: float = Field(
        default=DEFAULT_REQUEST_TIMEOUT_S, gt=0, description="Per-request deadline in seconds"
    )
    startup_timeout_s: float | None = Field(
        default=DEFAULT_STARTUP_TIMEOUT_S,
        gt=0,
        description="Max wait for worker readiness in seconds (None: no limit)",
    )
    ready_sentinel: str = Field(
        default=READY_SENTINEL,
        min_length=1,
        description="Marker the worker writes to stderr once ready",
    )
    shutdown_grace_s: float = Field(
        default=5.0, ge=0, description="Grace period before killing the worker on shutdown"
    )

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: list[str] | None) -> list[str] | None:
        """Validate that an explicit command is non-empty."""
        if v is not None and not v:
            raise ValueError("Classifier command must not be empty")
        return v


class TextCorrectionConfig(BaseModel):
    """Spelling correction (Gemini) configuration."""

    enabled: bool = Field(default=False, description="Enable the spelling correction endpoint")
    api_key: str | None = Field(default=None, description="Gemini API key")
    model: str = Field(default="gemini-2.5-flash", description="Gemini model name")
    base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Generative Language API base URL",
    )
    timeout_s: float = Field(default=30.0, gt=0, description="Upstream request timeout")


class RelayConfig(BaseModel):
    """Root relay server configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    text_correction: TextCorrectionConfig = Field(default_factory=TextCorrectionConfig)

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    graceful_shutdown_timeout_s: int = Field(
        default=10,
        ge=1,
        description="Graceful shutdown timeout in seconds",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalise the log level name."""
        level = v.upper()
        if level not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {VALID_LOG_LEVELS}, got '{v}'")
        return level

    @model_validator(mode="after")
    def validate_distinct_ports(self) -> "RelayConfig":
        """Validate that the relay socket and HTTP API listen on different ports."""
        if self.websocket.port == self.http.port:
            raise ValueError(
                f"websocket.port and http.port must differ, both are {self.http.port}"
            )
        return self

    @classmethod
    def from_yaml(cls, path: Path) -> "RelayConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        # Empty keys (``websocket:``) fall back to defaults
        data = {key: value for key, value in data.items() if value is not None}

        return cls.model_validate(_apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "RelayConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment overrides apply in both cases.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(_apply_env_overrides({}))


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    """Nested section of raw config data, created when absent or empty (``name:``)."""
    section = data.get(name) or {}
    data[name] = section
    return section


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay environment variables onto raw config data."""
    if port := os.getenv("PORT"):
        _section(data, "websocket")["port"] = int(port)

    if http_port := os.getenv("HTTP_PORT"):
        _section(data, "http")["port"] = int(http_port)

    if api_key := os.getenv("GEMINI_API_KEY"):
        text_correction = _section(data, "text_correction")
        text_correction["api_key"] = api_key
        text_correction["enabled"] = True

    if timeout := os.getenv("CLASSIFIER_TIMEOUT_S"):
        _section(data, "classifier")["request_timeout_s"] = float(timeout)

    if log_level := os.getenv("LOG_LEVEL"):
        data["log_level"] = log_level

    return data
