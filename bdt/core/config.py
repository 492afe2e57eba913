"""
Runtime configuration for Bulk Data Tester.

Handles environment variables, defaults and validation for the process-level
settings (logging, CI detection). The settings describing the tested server
live in ``bdt.client.settings.NormalizedConfig``.
"""

import os
from typing import Dict, Any
from dataclasses import dataclass, field
from pathlib import Path


VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]
VALID_LOG_FORMATS = ["text", "json"]


@dataclass
class Config:
    """Configuration class for Bulk Data Tester with environment variable support."""

    # Environment detection
    ci_mode: bool = field(default=False)

    # Logging configuration
    log_level: str = field(default="INFO")
    log_format: str = field(default="text")

    # Directory paths
    logs_dir: Path = field(default_factory=lambda: Path.cwd() / "logs")

    def __post_init__(self):
        """Apply environment overrides while respecting explicit constructor args."""
        if os.getenv("CI", "").lower() == "true" and self.ci_mode is False:
            self.ci_mode = True

        log_env = os.getenv("BDT_LOG_LEVEL")
        if log_env:
            self.log_level = log_env

        # WARN is accepted as an alias, anything else falls back to INFO
        level = self.log_level.upper()
        if level == "WARN":
            level = "WARNING"
        self.log_level = level if level in VALID_LOG_LEVELS else "INFO"

        format_env = os.getenv("BDT_LOG_FORMAT")
        if format_env:
            self.log_format = format_env.lower()

        # CI output is machine-read
        if self.ci_mode and self.log_format == "text" and not format_env:
            self.log_format = "json"

        logs_env = os.getenv("BDT_LOGS_DIR")
        if logs_env:
            self.logs_dir = Path(logs_env)

    @property
    def is_ci_mode(self) -> bool:
        """Check if running in CI environment."""
        return self.ci_mode

    @property
    def debug_enabled(self) -> bool:
        """Check if debug logging is enabled."""
        return self.log_level == "DEBUG"

    def get_log_file_path(self) -> Path:
        """Get the main log file path, creating the logs directory if needed."""
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        return self.logs_dir / "bdt.log"

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary for logging."""
        return {
            "ci_mode": self.ci_mode,
            "log_level": self.log_level,
            "log_format": self.log_format,
            "logs_dir": str(self.logs_dir),
        }

    @classmethod
    def from_env(cls) -> "Config":
        """Create configuration from environment variables."""
        ci = os.getenv("CI", "").lower() == "true"
        return cls(
            ci_mode=ci,
            log_level=os.getenv("BDT_LOG_LEVEL") or "INFO",
            log_format=os.getenv("BDT_LOG_FORMAT") or ("json" if ci else "text"),
        )

    def validate(self) -> None:
        """Validate configuration and raise ValidationError if invalid."""
        from .exceptions import ValidationError

        errors = []

        if self.log_level not in VALID_LOG_LEVELS:
            errors.append(
                f"Invalid log level: {self.log_level}. Must be one of {VALID_LOG_LEVELS}"
            )

        if self.log_format not in VALID_LOG_FORMATS:
            errors.append(
                f"Invalid log format: {self.log_format}. Must be one of {VALID_LOG_FORMATS}"
            )

        if self.logs_dir.exists() and not self.logs_dir.is_dir():
            errors.append(f"logs path is not a directory: {self.logs_dir}")

        if errors:
            message = "Configuration validation failed: " + "; ".join(errors)
            raise ValidationError(
                message,
                validation_type="config",
                violations=errors,
            )
