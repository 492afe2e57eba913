"""
Per-test append-only log.

Each Test owns one Console. Test bodies, hooks and the export client append
entries to it; reporters decide how to render them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Union


class LogType(Enum):
    """The entry types a console supports."""

    LOG = "log"
    ERROR = "error"
    INFO = "info"
    WARN = "warn"


@dataclass
class ConsoleEntry:
    """A single console entry."""

    type: LogType
    label: str
    tags: List[str] = field(default_factory=list)
    data: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "label": self.label,
            "tags": list(self.tags),
            "data": list(self.data),
        }


class Console:
    """Ordered collection of ConsoleEntry objects attached to one test."""

    def __init__(self):
        self._entries: List[ConsoleEntry] = []

    def log(self, *data: Any) -> None:
        self.add(LogType.LOG, "log", [], *data)

    def error(self, error: Union[BaseException, str]) -> None:
        self.add(LogType.ERROR, "error", [], str(error))

    def warn(self, *data: Any) -> None:
        self.add(LogType.WARN, "warn", [], *data)

    def info(self, *data: Any) -> None:
        self.add(LogType.INFO, "info", [], *data)

    def md(self, markdown: str, type: LogType = LogType.INFO, label: Optional[str] = None) -> None:
        """Add an entry tagged "markdown" so front-ends can render it as such."""
        self.add(type, label or type.value, ["markdown"], markdown)

    def html(self, html: str, type: LogType = LogType.INFO, label: Optional[str] = None) -> None:
        self.add(type, label or type.value, ["html"], html)

    def request(self, request, type: LogType = LogType.LOG, label: str = "Request") -> None:
        """Log an outgoing HTTP request (anything with a ``to_dict()``)."""
        self.add(type, label, ["request"], request.to_dict())

    def response(self, response, type: LogType = LogType.LOG, label: str = "Response") -> None:
        """Log a received HTTP response (anything with a ``to_dict()``)."""
        self.add(type, label, ["response"], response.to_dict())

    def add(self, type: LogType, label: str, tags: List[str], *data: Any) -> None:
        self._entries.append(ConsoleEntry(type=type, label=label, tags=list(tags), data=list(data)))

    def has(self, type: LogType) -> bool:
        return any(e.type == type for e in self._entries)

    def get(self, type: LogType) -> List[ConsoleEntry]:
        return [e for e in self._entries if e.type == type]

    def by_tags(self, tags: Union[str, List[str]]) -> List[ConsoleEntry]:
        """
        Filter entries by tags.

        A string is a comma- or space-separated list and matches entries
        having ALL of the tags. A list matches entries having ANY of them.
        """
        if isinstance(tags, str):
            wanted = [t for t in tags.replace(",", " ").split() if t]
            return [e for e in self._entries if all(t in e.tags for t in wanted)]
        return [e for e in self._entries if any(t in e.tags for t in tags)]

    def for_each(self, callback: Callable[[ConsoleEntry], None]) -> None:
        for entry in self._entries:
            callback(entry)

    def clear(self) -> None:
        self._entries = []

    def to_list(self) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self._entries]

    def __iter__(self) -> Iterator[ConsoleEntry]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)
