"""
Test tree construction.

A TreeBuilder owns a BuilderContext (root, current group, only-mode flag)
and exposes the registration functions test modules use to declare suites,
tests and hooks. Nothing is global, so independent builders can build
independent trees.
"""

import importlib
import pkgutil
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Union

from ..core.logging_config import get_logger
from .nodes import Suite, Test, TestCallback, TestNodeOptions, SetupCallback


ROOT_NAME = "__ROOT__"

NodeOptions = Union[str, Dict[str, Any], TestNodeOptions]
Registrar = Callable[["TreeBuilder"], Any]


def slugify(value: str) -> str:
    """Lowercase, hyphen-separated slug used for generated test ids."""
    value = re.sub(r"[^a-zA-Z0-9]+", "-", value).strip("-").lower()
    return re.sub(r"-{2,}", "-", value)


@dataclass
class BuilderContext:
    """Mutable state of one tree build."""

    root: Suite = field(default_factory=lambda: Suite(ROOT_NAME, path=""))
    current_group: Optional[Suite] = None
    only_mode: bool = False

    def __post_init__(self):
        if self.current_group is None:
            self.current_group = self.root


class TreeBuilder:
    """Builds a Suite/Test tree from registration calls."""

    def __init__(self, context: Optional[BuilderContext] = None):
        self.context = context or BuilderContext()
        self.logger = get_logger(__name__)

    @property
    def root(self) -> Suite:
        return self.context.root

    @property
    def only_mode(self) -> bool:
        return self.context.only_mode

    def reset(self) -> None:
        """Start over with an empty root."""
        self.context = BuilderContext()

    # Registration ------------------------------------------------------------

    def suite(self, name_or_options: NodeOptions, fn: Registrar) -> Suite:
        """
        Create a new group, append it to the current group and call ``fn``
        with this builder while the new group is current.
        """
        options = _to_options(name_or_options)
        parent = self.context.current_group

        group = Suite(
            options.name,
            description=options.description,
            min_version=options.min_version,
            max_version=options.max_version,
            skip=options.skip,
            only=options.only or parent.only,
            path=self._next_path(parent),
        )
        parent.children.append(group)

        self.context.current_group = group
        try:
            fn(self)
        finally:
            self.context.current_group = parent

        return group

    def suite_only(self, name_or_options: NodeOptions, fn: Registrar) -> Suite:
        self.context.only_mode = True
        options = _to_options(name_or_options).model_copy(update={"only": True})
        return self.suite(options, fn)

    def test(self, name_or_options: NodeOptions, fn: Optional[TestCallback] = None) -> Test:
        """Append a test to the current group."""
        options = _to_options(name_or_options)
        parent = self.context.current_group
        path = self._next_path(parent)

        test = Test(
            options.name,
            fn=fn,
            id=options.id or slugify(f"{path}--{options.name}"),
            description=options.description,
            min_version=options.min_version,
            max_version=options.max_version,
            skip=options.skip,
            only=options.only or parent.only,
            path=path,
        )
        parent.children.append(test)
        return test

    def test_only(self, name_or_options: NodeOptions, fn: Optional[TestCallback] = None) -> Test:
        self.context.only_mode = True
        options = _to_options(name_or_options).model_copy(update={"only": True})
        return self.test(options, fn)

    def test_skip(self, name_or_options: NodeOptions, fn: Optional[TestCallback] = None) -> Test:
        options = _to_options(name_or_options).model_copy(update={"skip": True})
        return self.test(options, fn)

    def before(self, fn: SetupCallback) -> None:
        """Run ``fn`` before the current group's children."""
        self.context.current_group.before = fn

    def after(self, fn: SetupCallback) -> None:
        """Run ``fn`` after the current group's children."""
        self.context.current_group.after = fn

    def before_each(self, fn: TestCallback) -> None:
        """Run ``fn`` before every executable test of the current group."""
        self.context.current_group.before_each = fn

    def after_each(self, fn: TestCallback) -> None:
        """Run ``fn`` after every executed test of the current group."""
        self.context.current_group.after_each = fn

    # Loading -----------------------------------------------------------------

    def load(self, *registrars: Registrar) -> Suite:
        """Call each registrar with this builder and return the root."""
        for register in registrars:
            register(self)
        return self.root

    def load_package(self, package_name: str = "bdt.suites") -> Suite:
        """
        Import every module of a package that defines ``register(builder)``
        and register it, in module name order.
        """
        package = importlib.import_module(package_name)
        module_names = sorted(
            info.name for info in pkgutil.iter_modules(package.__path__) if not info.ispkg
        )

        for module_name in module_names:
            module = importlib.import_module(f"{package_name}.{module_name}")
            register = getattr(module, "register", None)
            if not callable(register):
                continue
            register(self)
            self.logger.debug(f"Registered tests from {package_name}.{module_name}")

        return self.root

    @staticmethod
    def _next_path(parent: Suite) -> str:
        return ".".join(p for p in (parent.path, str(len(parent.children))) if p)


def _to_options(name_or_options: NodeOptions) -> TestNodeOptions:
    if isinstance(name_or_options, TestNodeOptions):
        return name_or_options
    if isinstance(name_or_options, str):
        return TestNodeOptions(name=name_or_options)
    return TestNodeOptions(**name_or_options)
