"""
Test tree nodes.

Defines the TestNode base class and its two concrete node types: Suite
(a structural node holding children and hooks) and Test (a leaf holding the
executable body and its per-run state).
"""

import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .console import Console
from .version import Version


# Hooks and bodies are called with keyword arguments (config, context and,
# for per-test callbacks, api) and may be plain functions or coroutines.
SetupCallback = Callable[..., Any]
TestCallback = Callable[..., Any]


class TestStatus(Enum):
    """Terminal status of a test."""

    __test__ = False

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_SUPPORTED = "not-supported"
    NOT_IMPLEMENTED = "not-implemented"
    SKIPPED = "skipped"
    ABORTED = "aborted"


class TestNodeOptions(BaseModel):
    """Descriptive options shared by every node of the test tree."""

    __test__ = False

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., description="Node name")
    description: Optional[str] = Field(None, description="Longer description")
    path: str = Field("", description="Dot-separated ordinal path in the tree")
    min_version: Optional[str] = Field(None, description="Lowest supported API version")
    max_version: Optional[str] = Field(None, description="Highest supported API version")
    only: bool = Field(False, description="Run only this node and other 'only' nodes")
    skip: bool = Field(False, description="Always skip this node")
    id: Optional[str] = Field(None, description="Stable test identifier")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v or not v.strip():
            raise ValueError("Node name cannot be empty")
        return v

    @field_validator("min_version", "max_version", mode="before")
    @classmethod
    def coerce_version(cls, v):
        return None if v is None or v == "" else str(v)


class TestNode:
    """
    Base class for Suite and Test.

    All descriptive properties are fixed at construction. ``only`` is a
    snapshot: the loader passes the parent's flag in, and later changes to
    the parent are not observed.
    """

    __test__ = False

    def __init__(
        self,
        name: str,
        description: Optional[str] = None,
        path: str = "",
        min_version: Optional[Union[str, Version]] = None,
        max_version: Optional[Union[str, Version]] = None,
        only: bool = False,
        skip: bool = False,
    ):
        self.name = name
        self.description = description
        self.path = path
        self.only = bool(only)
        self.skip = bool(skip)

        self._min_version = Version(min_version) if min_version else None
        self._max_version = None

        if max_version:
            upper = Version(max_version)
            if self._min_version and upper.is_below(self._min_version):
                raise ValueError(
                    f'The minimal version "{self._min_version}" cannot be '
                    f'lower than the maximal version "{upper}".'
                )
            self._max_version = upper

    @property
    def min_version(self) -> Optional[Version]:
        return self._min_version

    @property
    def max_version(self) -> Optional[Version]:
        return self._max_version

    def to_dict(self) -> Dict[str, Any]:
        """Project the node into a JSON-friendly dictionary."""
        data: Dict[str, Any] = {"name": self.name, "path": self.path}
        if self.min_version:
            data["minVersion"] = self.min_version.to_json()
        if self.max_version:
            data["maxVersion"] = self.max_version.to_json()
        if self.description:
            data["description"] = self.description
        return data

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r}, path={self.path!r})"


class Suite(TestNode):
    """A structural node having other Suite and/or Test nodes as children."""

    def __init__(self, name: str, **options):
        super().__init__(name, **options)
        self.children: List[Union["Suite", "Test"]] = []
        self.before: Optional[SetupCallback] = None
        self.after: Optional[SetupCallback] = None
        self.before_each: Optional[TestCallback] = None
        self.after_each: Optional[TestCallback] = None

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["children"] = [child.to_dict() for child in self.children]
        return data

    def get_node_at(self, path: str = "") -> Optional[Union["Suite", "Test"]]:
        """
        Find the node at the given dot-separated list of zero-based indexes.

        ``get_node_at("2.1.5")`` returns the sixth child of the second child
        of the third child of this node. Returns None for any index that is
        malformed or out of range.
        """
        if not path:
            return self

        node: Any = self
        for part in path.split("."):
            children = getattr(node, "children", None)
            if children is None or not part.isdigit():
                return None
            index = int(part)
            if index >= len(children):
                return None
            node = children[index]
        return node


class Test(TestNode):
    """A leaf node holding the test body and its per-run state."""

    def __init__(
        self,
        name: str,
        fn: Optional[TestCallback] = None,
        id: Optional[str] = None,
        **options,
    ):
        super().__init__(name, **options)
        self.fn = fn
        self.id = id
        self.console = Console()

        self.status: Optional[TestStatus] = None
        self.started_at: Optional[int] = None
        self.ended_at: Optional[int] = None
        self.error: Optional[BaseException] = None
        self.after: Optional[TestCallback] = None

    def reset(self) -> None:
        """Clear all per-run state before the test is (re)run."""
        self.status = None
        self.started_at = None
        self.ended_at = None
        self.error = None
        self.after = None
        self.console.clear()

    def start(self) -> None:
        self.started_at = _now_ms()

    def end(self) -> None:
        if not self.ended_at:
            self.ended_at = _now_ms()

    @property
    def duration(self) -> Optional[float]:
        """Duration in seconds, once the test has ended."""
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at) / 1000

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["id"] = self.id
        data["status"] = self.status.value if self.status else None
        data["startedAt"] = self.started_at
        data["endedAt"] = self.ended_at
        return data


def _now_ms() -> int:
    return int(time.time() * 1000)
