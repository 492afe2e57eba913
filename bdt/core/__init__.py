"""Core components for Bulk Data Tester."""

from .config import Config
from .exceptions import (
    BDTError,
    ErrorKind,
    NotSupportedError,
    ExportError,
    UnknownParameterError,
    AuthorizationError,
    MissingCapabilityStatementError,
    ValidationError,
    error_kind,
)
from .logging_config import setup_logging, get_logger

__all__ = [
    "Config",
    "BDTError",
    "ErrorKind",
    "NotSupportedError",
    "ExportError",
    "UnknownParameterError",
    "AuthorizationError",
    "MissingCapabilityStatementError",
    "ValidationError",
    "error_kind",
    "setup_logging",
    "get_logger",
]
