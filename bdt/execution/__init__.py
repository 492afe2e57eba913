"""
Test execution for Bulk Data Tester.

This package provides the TestRunner that walks the test tree and the
RunEvent lifecycle events it delivers to listeners.
"""

from .events import EventEmitter, Listener, RunEvent
from .runner import TestRunner, filter_by_version, generate_run_id, list_tests, run_tests

__all__ = [
    "EventEmitter",
    "Listener",
    "RunEvent",
    "TestRunner",
    "filter_by_version",
    "generate_run_id",
    "list_tests",
    "run_tests",
]
