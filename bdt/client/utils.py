"""
Helpers shared by the export client: error rendering, polling backoff,
duration parsing and NDJSON decoding.
"""

import asyncio
import json
import math
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional, Union

from .models import HttpResponse


STATUS_POLL_BASE_MS = 2000
STATUS_POLL_STEP_MS = 1000
STATUS_POLL_MAX_MS = 10000
MANIFEST_POLL_MAX_SECONDS = 10

_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


async def wait(ms: float) -> None:
    """Sleep for ``ms`` milliseconds."""
    await asyncio.sleep(ms / 1000)


def truncate(text: str, max_length: int = 5) -> str:
    """Shorten ``text`` by cutting out its middle."""
    if len(text) <= max_length:
        return text
    middle = max_length // 2
    return text[:middle] + "..." + text[-middle:]


def get_error_message_from_response(response: Optional[HttpResponse]) -> str:
    """Render the most useful human-readable message a response carries."""
    if response is None:
        return "No response"

    message = str(response.status)
    if response.reason:
        message += f" {response.reason}"

    content_type = response.content_type or "text/plain"
    body = response.body

    if re.search(r"\bjson\b", content_type, re.I):
        if isinstance(body, str):
            try:
                body = json.loads(body)
            except ValueError:
                return message

        if isinstance(body, dict) and body.get("resourceType") == "OperationOutcome":
            issues = body.get("issue") or []
            return "; ".join(_issue_text(i) for i in issues) or message

        if isinstance(body, dict) and isinstance(body.get("error"), str):
            message = body["error"]
            if isinstance(body.get("error_description"), str):
                message += ". " + body["error_description"]
            return message

        if body is not None:
            message += " " + truncate(json.dumps(body), 500)

    elif re.match(r"text/plain", content_type, re.I):
        text = (response.text or "").strip()
        if text and text != response.reason:
            message = truncate(text, 500)

    return message


def _issue_text(issue: Dict[str, Any]) -> str:
    details = issue.get("details") or {}
    return details.get("text") or issue.get("diagnostics") or "Unknown error"


def format_http_error(method: str, url: str, response: HttpResponse) -> str:
    """Build the "<METHOD> <url> returned <message>" line for failed requests."""
    status = str(response.status)
    if response.reason:
        status += f" {response.reason}"
    message = get_error_message_from_response(response)
    return f"{method} {url} returned {status if status == message else message}"


def status_poll_delay(attempt: int) -> int:
    """Milliseconds to wait before the n-th status re-poll."""
    return min(STATUS_POLL_BASE_MS + STATUS_POLL_STEP_MS * attempt, STATUS_POLL_MAX_MS)


def parse_retry_after(value: Optional[str], attempt: int, now: Optional[datetime] = None) -> int:
    """
    Seconds to wait as advertised by a ``Retry-After`` header.

    Accepts delay-seconds or an HTTP-date. Falls back to
    ``min(1 + attempt, 10)`` when the header is missing or unparseable.
    """
    fallback = min(1 + attempt, MANIFEST_POLL_MAX_SECONDS)
    value = (value or "").strip()
    if not value:
        return fallback

    if re.fullmatch(r"\d+(\.\d+)?", value):
        return math.floor(float(value))

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return fallback
    if when is None:
        return fallback
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)

    now = now or datetime.now(timezone.utc)
    return max(0, math.floor((when - now).total_seconds()))


def parse_duration(value: Union[int, float, str]) -> int:
    """Convert ``300``, ``"300"``, ``"5m"`` or ``"2 days"`` to whole seconds."""
    if isinstance(value, (int, float)):
        return int(value)

    match = re.fullmatch(r"\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*", value)
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")

    amount, unit = float(match.group(1)), match.group(2).lower()
    if not unit:
        return int(amount)

    if unit == "ms" or unit.startswith("millisecond"):
        return int(amount / 1000)
    if unit[0] not in _DURATION_UNITS:
        raise ValueError(f"Invalid duration unit in {value!r}")
    return int(amount * _DURATION_UNITS[unit[0]])


def parse_ndjson(text: str) -> List[Any]:
    """Decode newline-delimited JSON, ignoring blank lines."""
    return [json.loads(line) for line in text.splitlines() if line.strip()]
