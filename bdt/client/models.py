"""
Data models for HTTP exchanges with the tested server.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar

BodyType = TypeVar("BodyType")


@dataclass
class HttpRequest:
    """The request as it was sent."""

    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    payload: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "url": self.url,
            "headers": dict(self.headers),
            "payload": self.payload,
        }


@dataclass
class HttpResponse:
    """
    A fully read response.

    Header names are lower-cased. ``body`` is the parsed JSON value for JSON
    content types and the decoded text otherwise.
    """

    status: int
    reason: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    text: str = ""
    url: str = ""

    @property
    def status_code(self) -> int:
        return self.status

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    @property
    def content_location(self) -> Optional[str]:
        return self.headers.get("content-location")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "statusCode": self.status,
            "statusMessage": self.reason,
            "headers": dict(self.headers),
            "body": self.body,
        }


class HttpError(Exception):
    """A transport failure or an HTTP status >= 400."""

    def __init__(
        self,
        message: str,
        request: Optional[HttpRequest] = None,
        response: Optional[HttpResponse] = None,
    ):
        super().__init__(message)
        self.message = message
        self.request = request
        self.response = response

    @property
    def status_code(self) -> Optional[int]:
        return self.response.status if self.response is not None else None


@dataclass
class RequestResult(Generic[BodyType]):
    """What every client operation returns."""

    response: Optional[HttpResponse]
    request: HttpRequest
    options: Dict[str, Any]
    error: Optional[HttpError] = None
    body: Optional[BodyType] = None

    @property
    def status_code(self) -> Optional[int]:
        return self.response.status if self.response is not None else None
