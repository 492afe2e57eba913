"""
The facade handed to running test bodies and per-test hooks.
"""

from typing import Any, Mapping, Union

from ..core.exceptions import NotSupportedError
from .console import Console
from .nodes import Test, TestCallback, TestStatus


Prerequisite = Mapping[str, Any]


class TestAPI:
    """
    Lets a test body control its own status and register cleanup.

    One instance is created per callback invocation, all of them pointing at
    the same Test and therefore the same Console.
    """

    __test__ = False

    def __init__(self, test: Test):
        self._test = test

    @property
    def test(self) -> Test:
        return self._test

    @property
    def console(self) -> Console:
        return self._test.console

    def set_status(self, status: Union[TestStatus, str]) -> None:
        """Sets the status of this test."""
        self._test.status = TestStatus(status)

    def set_not_supported(self, message: str = "") -> None:
        """
        Mark the test as not supported.

        This does not stop the body; statements after the call still run.
        """
        if message:
            self._test.console.info(message)
        self._test.status = TestStatus.NOT_SUPPORTED

    def prerequisite(self, *conditions: Prerequisite) -> None:
        """
        Check one or more ``{"assertion": ..., "message": ...}`` conditions.

        ``assertion`` may be a value or a zero-argument callable. The first
        falsy one raises NotSupportedError with its message.
        """
        for condition in conditions:
            assertion = condition.get("assertion")
            passed = assertion() if callable(assertion) else assertion
            if not passed:
                raise NotSupportedError(condition.get("message", ""))

    def after(self, fn: TestCallback) -> None:
        """Register a hook to run after this test ends, whatever the outcome."""
        self._test.after = fn
