"""
Lifecycle events emitted while the test tree is traversed.
"""

from enum import Enum
from typing import Any, Callable, List, Optional

from ..core.logging_config import get_logger


class RunEvent(Enum):
    """Events delivered to listeners, in traversal order."""

    START = "start"
    GROUP_START = "group_start"
    TEST_START = "test_start"
    TEST_END = "test_end"
    GROUP_END = "group_end"
    END = "end"


Listener = Callable[[RunEvent, Any], None]


class EventEmitter:
    """
    Synchronous fan-out of RunEvents to an explicit list of listeners.

    Every listener is called as ``listener(event, payload)``. A listener
    that raises is logged and does not prevent delivery to the others.
    """

    def __init__(self):
        self._listeners: List[Listener] = []
        self._event_logger = get_logger("bdt.events")

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def on(self, event: RunEvent, handler: Callable[[Any], None]) -> Listener:
        """
        Subscribe ``handler(payload)`` to a single event type.

        Returns the registered listener so it can be removed later.
        """

        def listener(emitted: RunEvent, payload: Any) -> None:
            if emitted is event:
                handler(payload)

        self.add_listener(listener)
        return listener

    def emit(self, event: RunEvent, payload: Optional[Any] = None) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception as e:
                self._event_logger.error(
                    f"Listener failed on {event.value} event: {e}",
                    exc_info=True,
                    extra={"metadata": {"event": event.value}},
                )
