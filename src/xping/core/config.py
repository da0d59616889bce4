"""
xping configuration using Pydantic Settings.

Every field can be overridden from the environment with the XPING_ prefix:
- XPING_XRAY_PATH (path to the xray binary)
- XPING_TARGET_URL (URL probed through the proxy)
- XPING_FRAGMENT_PACKETS, XPING_FRAGMENT_LENGTH, XPING_FRAGMENT_INTERVAL
- XPING_LOG_LEVEL, XPING_LOG_FORMAT

List fields (ready/fatal markers) are read from the environment as JSON.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_READY_MARKERS: list[list[str]] = [
    ["started"],
    ["listening"],
    ["A unified platform for anti-censorship"],
    ["Xray", "windows/amd64"],
]

DEFAULT_FATAL_MARKERS: list[str] = [
    "Failed to start",
    "failed to listen",
    "bind:",
    "address already in use",
    "permission denied",
    "invalid config",
    "parse",
    "cannot",
    "error",
]


class Settings(BaseSettings):
    """Run settings for xping."""

    model_config = SettingsConfigDict(
        env_prefix="XPING_",
        extra="ignore",
    )

    xray_path: str = Field(
        default="xray",
        description="Path to the xray binary"
    )
    target_url: str = Field(
        default="https://www.google.com/generate_204",
        description="URL requested through the proxy on every ping"
    )
    fragment_packets: str = Field(
        default="tlshello",
        description="Fragment packet selection"
    )
    fragment_length: str = Field(
        default="5-9",
        description="Fragment length range"
    )
    fragment_interval: str = Field(
        default="1-2",
        description="Fragment interval range (ms)"
    )
    startup_poll_interval: float = Field(
        default=0.5,
        gt=0,
        description="Seconds between readiness checks"
    )
    startup_attempts: int = Field(
        default=6,
        ge=1,
        description="Readiness checks before giving up"
    )
    validation_timeout: float = Field(
        default=15.0,
        gt=0,
        description="Upper bound for 'xray -test' in seconds"
    )
    stop_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Seconds to wait after terminate before killing xray"
    )
    ready_markers: list[list[str]] = Field(
        default_factory=lambda: [list(m) for m in DEFAULT_READY_MARKERS],
        description="Stdout markers meaning xray is ready; all parts of one marker must match"
    )
    fatal_markers: list[str] = Field(
        default_factory=lambda: list(DEFAULT_FATAL_MARKERS),
        description="Stderr substrings meaning xray failed to start"
    )
    log_level: str = Field(
        default="WARNING",
        description="Log level"
    )
    log_format: str = Field(
        default="console",
        description="Log format (console, json)"
    )

    @field_validator('log_level')
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator('log_format')
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format."""
        if v not in ("console", "json"):
            raise ValueError(f"Invalid log format: {v}. Must be 'console' or 'json'")
        return v

    @field_validator('ready_markers')
    @classmethod
    def validate_ready_markers(cls, v: list[list[str]]) -> list[list[str]]:
        """Drop empty markers; an empty marker would match every line."""
        return [parts for parts in v if parts and all(parts)]

    @property
    def fragment(self) -> dict[str, str]:
        """Fragment parameters as they appear in the xray config."""
        return {
            "packets": self.fragment_packets,
            "length": self.fragment_length,
            "interval": self.fragment_interval,
        }

    @property
    def startup_deadline(self) -> float:
        """Total seconds allowed for xray to report readiness."""
        return self.startup_poll_interval * self.startup_attempts


@lru_cache()
def get_settings() -> Settings:
    """Get application settings (cached singleton)."""
    return Settings()
