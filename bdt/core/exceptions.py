"""
Base exception classes for Bulk Data Tester.

Provides a hierarchy of exceptions for the different error types that can
occur while talking to a bulk data server or running the test tree. Every
error carries an ``ErrorKind`` tag which the test runner switches on.
"""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorKind(Enum):
    """Closed set of error kinds the test runner knows how to handle."""

    FAILURE = "failure"
    NOT_SUPPORTED = "not-supported"


class BDTError(Exception):
    """Base exception class for all Bulk Data Tester errors."""

    kind: ErrorKind = ErrorKind.FAILURE

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "kind": self.kind.value,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


class NotSupportedError(BDTError):
    """Raised when the tested server does not support the checked feature."""

    kind = ErrorKind.NOT_SUPPORTED

    def __init__(self, message: str = "", feature: Optional[str] = None):
        super().__init__(message, "NOT_SUPPORTED")
        self.feature = feature
        self.context.update({"feature": feature})


class ExportError(BDTError):
    """Raised when an export operation is called out of order or cannot finish."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, "EXPORT_FAILED")
        self.operation = operation
        self.status_code = status_code
        self.context.update(
            {
                "operation": operation,
                "status_code": status_code,
            }
        )


class UnknownParameterError(BDTError):
    """Raised when a kick-off request is given a parameter it cannot encode."""

    def __init__(self, parameter: str):
        super().__init__(f"Unknown parameter {parameter}", "UNKNOWN_PARAMETER")
        self.parameter = parameter
        self.context.update({"parameter": parameter})


class AuthorizationError(BDTError):
    """Raised when an access token cannot be obtained or signed."""

    def __init__(
        self,
        message: str,
        auth_type: Optional[str] = None,
        token_endpoint: Optional[str] = None,
    ):
        super().__init__(message, "AUTHORIZATION_FAILED")
        self.auth_type = auth_type
        self.token_endpoint = token_endpoint
        self.context.update(
            {
                "auth_type": auth_type,
                "token_endpoint": token_endpoint,
            }
        )


class MissingCapabilityStatementError(BDTError):
    """Raised when the server has no usable CapabilityStatement."""

    def __init__(self, message: str, base_url: Optional[str] = None):
        super().__init__(message, "MISSING_CAPABILITY_STATEMENT")
        self.base_url = base_url
        self.context.update({"base_url": base_url})


class ValidationError(BDTError):
    """Raised when validation fails."""

    def __init__(
        self,
        message: str,
        validation_type: Optional[str] = None,
        violations: Optional[list] = None,
    ):
        super().__init__(message, "VALIDATION_FAILED")
        self.validation_type = validation_type
        self.violations = violations or []
        self.context.update(
            {
                "validation_type": validation_type,
                "violations": violations,
            }
        )


def error_kind(error: BaseException) -> ErrorKind:
    """Return the kind tag of any exception, defaulting to a plain failure."""
    kind = getattr(error, "kind", ErrorKind.FAILURE)
    return kind if isinstance(kind, ErrorKind) else ErrorKind.FAILURE
