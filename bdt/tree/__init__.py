"""
Test tree model for Bulk Data Tester.

This package provides the node types of the test tree, the per-test console
and API facade, and the builder used to assemble the tree from test modules.
"""

from .version import Version
from .console import Console, ConsoleEntry, LogType
from .nodes import Suite, Test, TestNode, TestNodeOptions, TestStatus
from .api import TestAPI
from .builder import BuilderContext, TreeBuilder, slugify

__all__ = [
    "Version",
    "Console",
    "ConsoleEntry",
    "LogType",
    "Suite",
    "Test",
    "TestNode",
    "TestNodeOptions",
    "TestStatus",
    "TestAPI",
    "BuilderContext",
    "TreeBuilder",
    "slugify",
]
