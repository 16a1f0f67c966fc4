"""Configuration models for the delta sync engine."""

from typing import Literal

from pydantic import BaseModel, Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GraphConfig(BaseModel):
    """Configuration for the delta endpoint of a resource collection."""

    base_url: HttpUrl = Field(
        default="https://graph.microsoft.com/v1.0", description="Service root URL"
    )
    resource: str = Field(default="users", min_length=1, description="Collection to track")
    select_fields: list[str] = Field(
        default_factory=lambda: ["displayName", "userPrincipalName"],
        description="Fields selected on the initial query",
    )
    auth_token: str | None = Field(
        default=None, description="Pre-acquired bearer token injected into the session"
    )
    request_timeout: float = Field(default=30.0, gt=0, description="Per-request timeout in seconds")
    max_page_size: int | None = Field(
        default=None, ge=1, description="Sent as Prefer: odata.maxpagesize when set"
    )

    @field_validator("resource")
    @classmethod
    def strip_slashes(cls, v: str) -> str:
        """Normalise the resource path so it can be joined onto base_url."""
        v = v.strip("/")
        if not v:
            raise ValueError("resource cannot be empty")
        return v

    @property
    def delta_url(self) -> str:
        return f"{str(self.base_url).rstrip('/')}/{self.resource}/delta"


class RetryConfig(BaseModel):
    """Retry policy for transient transport and remote errors."""

    max_retries: int = Field(default=3, ge=0, le=20, description="Retries after the first attempt")
    base_delay: float = Field(default=1.0, ge=0.0, description="Initial delay in seconds")
    max_delay: float = Field(default=60.0, ge=0.0, description="Maximum delay in seconds")


class PollingConfig(BaseModel):
    """Backoff and cancellation for the wait-for-changes loop."""

    initial_delay: float = Field(default=2.0, ge=0.0, description="First wait in seconds")
    multiplier: float = Field(default=2.0, ge=1.0, description="Growth factor between waits")
    max_delay: float = Field(default=30.0, ge=0.0, description="Cap on a single wait")
    timeout_seconds: float = Field(
        default=300.0, gt=0, description="Deadline for one poll_for_changes call"
    )

    @model_validator(mode="after")
    def check_delays(self) -> "PollingConfig":
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be greater than or equal to initial_delay")
        return self


class CursorStoreConfig(BaseModel):
    """Where the delta cursor lives between passes."""

    type: Literal["memory", "file"] = Field(default="memory", description="Store backend")
    path: str | None = Field(default=None, description="Cursor file path for the file backend")

    @model_validator(mode="after")
    def check_path(self) -> "CursorStoreConfig":
        if self.type == "file" and not self.path:
            raise ValueError("path is required when cursor store type is 'file'")
        return self


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=True,
        description="If True, output JSON logs. If False, use console format.",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional path to log file. If None, logs only to stdout.",
    )


class AppConfig(BaseSettings):
    """Main application configuration.

    This class uses pydantic-settings to load configuration from environment
    variables with the APP_ prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    graph: GraphConfig = Field(default_factory=GraphConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    cursor_store: CursorStoreConfig = Field(default_factory=CursorStoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
