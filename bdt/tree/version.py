"""
Dotted-integer API versions used to gate tests by server capability.
"""

import re
from typing import List, Tuple, Union


class Version:
    """
    A comparable version made of non-negative integer segments.

    Comparison is numeric per segment and stops at the end of the shorter
    version, so ``Version("1.2") == Version("1.2.5")``. Versions are not
    hashable because that prefix equality is not transitive.
    """

    __hash__ = None

    def __init__(self, value: Union[str, int, "Version"]):
        if isinstance(value, Version):
            self._segments: Tuple[int, ...] = value._segments
            return

        segments = []
        for part in re.split(r"\s*\.\s*", str(value).strip()):
            if not re.fullmatch(r"\d+", part):
                raise ValueError(f'Invalid version "{value}"')
            segments.append(int(part))

        self._segments = tuple(segments)

    @property
    def segments(self) -> List[int]:
        return list(self._segments)

    def compare(self, other: Union[str, int, "Version"]) -> int:
        """
        Compares this version with another one and returns:
        - ``1`` if this version is higher
        - ``0`` if versions are equal
        - ``-1`` if this version is lower
        """
        other = Version(other)
        for a, b in zip(self._segments, other._segments):
            if a > b:
                return 1
            if a < b:
                return -1
        return 0

    def is_below(self, other) -> bool:
        return self.compare(other) < 0

    def is_below_or_equal_to(self, other) -> bool:
        return self.compare(other) <= 0

    def is_above(self, other) -> bool:
        return self.compare(other) > 0

    def is_above_or_equal_to(self, other) -> bool:
        return self.compare(other) >= 0

    def is_equal_to(self, other) -> bool:
        return self.compare(other) == 0

    def __eq__(self, other):
        if not isinstance(other, (Version, str, int)):
            return NotImplemented
        return self.compare(other) == 0

    def __lt__(self, other):
        return self.compare(other) < 0

    def __le__(self, other):
        return self.compare(other) <= 0

    def __gt__(self, other):
        return self.compare(other) > 0

    def __ge__(self, other):
        return self.compare(other) >= 0

    def __str__(self) -> str:
        return ".".join(str(s) for s in self._segments)

    def __repr__(self) -> str:
        return f"Version('{self}')"

    def to_json(self) -> str:
        return str(self)
