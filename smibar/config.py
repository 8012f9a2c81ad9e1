import logging

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DISPLAY_MODES = ("minimal", "compact", "standard", "spark", "multi", "graphic")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SMIBAR_",
        extra="ignore",
    )

    # HTTP API
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=11437)

    log_level: str | int = Field(default="INFO")
    log_format: str = Field(default="text")  # "text" or "json"

    # Remote shell transport
    ssh_binary: str = Field(default="ssh")
    ssh_connect_timeout: int = Field(default=3)  # passed as -o ConnectTimeout
    ssh_command_timeout: float = Field(default=15.0)  # hard limit on the local process
    nvidia_smi_path: str = Field(default="nvidia-smi")

    # Poll / retry policy
    poll_interval: float = Field(default=1.0)
    backoff_schedule: list[int] = Field(default_factory=lambda: [2, 5, 10, 20, 30])
    error_after_failures: int = Field(default=6)

    # Client config discovery (None = ~/.ssh/config)
    ssh_config_path: str | None = Field(default=None)

    # Target to connect to at startup (empty = idle)
    initial_target: str = Field(default="")
    initial_port: int = Field(default=0)

    tray_display_mode: str = Field(default="standard")

    @field_validator("log_level", mode="before")
    @classmethod
    def parse_log_level(cls, v: str | int) -> str:
        """Accept a level name or number (e.g. 20 or "20") and store the name."""
        if isinstance(v, str) and v.strip().isdigit():
            v = int(v.strip())
        if isinstance(v, int):
            return logging.getLevelName(v)
        return v

    @field_validator("backoff_schedule")
    @classmethod
    def validate_backoff_schedule(cls, v: list[int]) -> list[int]:
        if not v:
            raise ValueError("backoff_schedule must contain at least one delay")
        if any(delay < 1 for delay in v):
            raise ValueError(f"backoff_schedule delays must be >= 1 second (got: {v})")
        return v

    @field_validator("error_after_failures")
    @classmethod
    def validate_error_after_failures(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"error_after_failures must be >= 1 (got: {v})")
        return v

    @field_validator("tray_display_mode")
    @classmethod
    def validate_display_mode(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in DISPLAY_MODES:
            raise ValueError(
                f"tray_display_mode must be one of {', '.join(DISPLAY_MODES)} (got: {v})"
            )
        return v

    @model_validator(mode="after")
    def validate_timeouts(self) -> "Settings":
        """The local process limit must outlast ssh's own connect timeout."""
        if self.ssh_connect_timeout < 1:
            raise ValueError("ssh_connect_timeout must be >= 1")
        if self.ssh_command_timeout <= self.ssh_connect_timeout:
            raise ValueError(
                f"ssh_command_timeout ({self.ssh_command_timeout}) must be greater than "
                f"ssh_connect_timeout ({self.ssh_connect_timeout})"
            )
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        return self


settings = Settings()


def init_logging() -> None:
    """Initialize logging with structured formatting."""
    from .logging_config import setup_logging

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    setup_logging(level=level, log_format=settings.log_format)
