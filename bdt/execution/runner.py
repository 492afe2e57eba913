"""
Test tree execution engine.

Walks a Suite/Test tree depth-first, applying the only/version/match/skip
filters, group and test lifecycle hooks, and bail. Exactly one test body
runs at a time. Lifecycle events are delivered to listeners as they happen.
"""

import asyncio
import inspect
import re
import time
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Union

from ..client.settings import NormalizedConfig
from ..core.exceptions import ErrorKind, error_kind
from ..core.config import Config
from ..core.logging_config import get_logger, log_performance, setup_logging
from ..tree.api import TestAPI
from ..tree.nodes import Suite, Test, TestStatus
from ..tree.version import Version
from .events import EventEmitter, Listener, RunEvent


Node = Union[Suite, Test]


def generate_run_id() -> str:
    """Unique, chronologically sortable identifier of one run."""
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d")
    return f"{timestamp}-{uuid.uuid4().hex[:16]}"


async def _call(fn, **kwargs) -> Any:
    result = fn(**kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


def _describe(error: BaseException) -> str:
    return str(error) or error.__class__.__name__


class TestRunner(EventEmitter):
    """
    Runs a test tree against one server configuration.

    Hooks and bodies are called with keyword arguments: group ``before`` and
    ``after`` get ``config`` and ``context``; ``before_each``, ``after_each``,
    test bodies and ``api.after`` hooks also get ``api``.
    """

    __test__ = False

    def __init__(
        self,
        config: NormalizedConfig,
        only_mode: bool = False,
        context: Optional[Dict[str, Any]] = None,
        root: Optional[Suite] = None,
    ):
        super().__init__()
        self.config = config
        self.only_mode = only_mode
        self.context = context if context is not None else {}
        self.root = root

        self.canceled = False
        self.current_group: Optional[Suite] = None
        self.run_id = generate_run_id()
        self.results: Counter = Counter()
        self.logger = get_logger("bdt.runner", run_id=self.run_id)

        self._current_task: Optional[asyncio.Future] = None
        self._aborting = False

    async def run(self, node: Optional[Node] = None) -> None:
        """
        Run ``node`` (the root by default) and everything below it.

        Emits ``start`` first and ``end`` once ``node`` has finished.
        """
        node = node if node is not None else self.root
        if node is None:
            raise ValueError("Nothing to run: no node given and the runner has no root")

        self.canceled = False
        self.results = Counter()
        start_time = time.time()

        self.logger.info(
            f"Test run started: {self.run_id}",
            extra={
                "metadata": {
                    "run_id": self.run_id,
                    "test_path": node.path,
                    "only_mode": self.only_mode,
                    "api_version": self.config.api_version,
                }
            },
        )
        self.emit(RunEvent.START, {"only_mode": self.only_mode})

        if isinstance(node, Test):
            await self._run_test(node, self._parent_of(node))
        else:
            await self._run_group(node)

        self.emit(RunEvent.END)
        log_performance(
            self.logger,
            "test run",
            time.time() - start_time,
            run_id=self.run_id,
            canceled=self.canceled,
            **{status.value: count for status, count in self.results.items()},
        )

    def abort(self, abort_all: bool = False) -> None:
        """
        Interrupt the test body currently running; it ends ``aborted``.

        With ``abort_all`` no further tests are started either.
        """
        if abort_all:
            self.canceled = True

        if self._current_task is not None and not self._current_task.done():
            self._aborting = True
            self._current_task.cancel()

    # Groups ------------------------------------------------------------------

    async def _run_group(self, group: Suite) -> None:
        parent = self.current_group
        self.current_group = group
        self.emit(RunEvent.GROUP_START, group)

        try:
            if group.before:
                try:
                    await _call(group.before, config=self.config, context=self.context)
                except Exception as e:
                    self.logger.error(
                        f"group.before hook: {_describe(e)}",
                        exc_info=True,
                        extra={"metadata": {"test_name": group.name, "test_path": group.path}},
                    )
                    return

            for child in group.children:
                if isinstance(child, Test):
                    await self._run_test(child, group)
                else:
                    await self._run_group(child)
                if self.canceled:
                    break
        finally:
            await self._end_group(group)
            self.current_group = parent

    async def _end_group(self, group: Suite) -> None:
        if group.after:
            try:
                await _call(group.after, config=self.config, context=self.context)
            except Exception as e:
                self.logger.error(
                    f"group.after hook: {_describe(e)}",
                    exc_info=True,
                    extra={"metadata": {"test_name": group.name, "test_path": group.path}},
                )

        self.emit(RunEvent.GROUP_END, group)

    def _parent_of(self, test: Test) -> Suite:
        if self.root is None:
            raise ValueError(f'Cannot run test "{test.name}" on its own without a root suite')

        parent_path = ".".join(test.path.split(".")[:-1])
        parent = self.root.get_node_at(parent_path)
        if not isinstance(parent, Suite):
            raise ValueError(f'No parent group found for test at path "{test.path}"')
        return parent

    # Tests -------------------------------------------------------------------

    def _skip_reason(self, test: Test, group: Suite) -> Optional[str]:
        """Return why ``test`` must be skipped ("" if silently), or None to run it."""
        api_version = self.config.api_version

        if self.only_mode and not (test.only or group.only):
            return ""

        if test.min_version and test.min_version.is_above(api_version):
            return (
                f"This test was skipped because it requires API version >= "
                f"{test.min_version} (currently using {api_version})"
            )

        if test.max_version and test.max_version.is_below(api_version):
            return (
                f"This test was skipped because it requires API version <= "
                f"{test.max_version} (currently using {api_version})"
            )

        if self.config.match and not re.search(self.config.match, test.name, re.I):
            return ""

        if test.skip:
            return ""

        return None

    async def _run_test(self, test: Test, group: Suite) -> None:
        self.current_group = group
        test.reset()
        test.start()

        reason = self._skip_reason(test, group)
        if reason is not None:
            if reason:
                test.console.info(reason)
            test.status = TestStatus.SKIPPED
            return await self._end_test(test, group)

        if not callable(test.fn):
            test.status = TestStatus.NOT_IMPLEMENTED
            return await self._end_test(test, group)

        if group.before_each:
            try:
                await _call(group.before_each, config=self.config, api=TestAPI(test), context=self.context)
            except Exception as e:
                return await self._end_test(test, group, e, "group.beforeEach hook: ")

        self.emit(RunEvent.TEST_START, test)

        api = TestAPI(test)
        error: Optional[BaseException] = None
        self._current_task = asyncio.ensure_future(
            _call(test.fn, config=self.config, api=api, context=self.context)
        )
        try:
            await self._current_task
        except asyncio.CancelledError:
            if not self._aborting:
                raise
            test.status = TestStatus.ABORTED
            test.console.warn("Test aborted")
        except Exception as e:
            if error_kind(e) is ErrorKind.NOT_SUPPORTED:
                api.set_not_supported(str(e))
            else:
                error = e
        finally:
            self._current_task = None
            self._aborting = False

        await self._end_test(test, group, error)

    async def _end_test(
        self,
        test: Test,
        group: Suite,
        error: Optional[BaseException] = None,
        prefix: str = "",
    ) -> None:
        test.end()

        if error is not None:
            message = prefix + _describe(error)
            if error_kind(error) is ErrorKind.NOT_SUPPORTED:
                test.status = TestStatus.NOT_SUPPORTED
                test.console.info(message)
            else:
                test.status = TestStatus.FAILED
                test.console.error(message)
                self.logger.warning(
                    f"Test failed: {test.name}: {message}",
                    exc_info=error,
                    extra={"metadata": {"test_name": test.name, "test_path": test.path}},
                )
                if self.config.bail:
                    self.canceled = True

        if test.after:
            try:
                await _call(test.after, config=self.config, api=TestAPI(test), context=self.context)
            except Exception as e:
                test.console.error(f"test.after hook: {_describe(e)}")

        if group.after_each and test.status not in (TestStatus.NOT_IMPLEMENTED, TestStatus.SKIPPED):
            try:
                await _call(group.after_each, config=self.config, api=TestAPI(test), context=self.context)
            except Exception as e:
                test.console.error(f"group.afterEach hook: {_describe(e)}")

        if test.status is None:
            test.status = TestStatus.SUCCEEDED

        self.results[test.status] += 1
        self.logger.debug(
            f"Test {test.status.value}: {test.name}",
            extra={
                "metadata": {
                    "test_name": test.name,
                    "test_path": test.path,
                    "status": test.status.value,
                    "duration": test.duration,
                }
            },
        )
        self.emit(RunEvent.TEST_END, test)


def filter_by_version(node: Dict[str, Any], api_version: Optional[Union[str, Version]]) -> Optional[Dict[str, Any]]:
    """
    Prune a projected node (see ``to_dict``) of everything whose version
    bounds exclude ``api_version``. Returns None if the node itself is out.
    """
    if api_version is None:
        return node

    if node.get("minVersion") and Version(node["minVersion"]).is_above(api_version):
        return None
    if node.get("maxVersion") and Version(node["maxVersion"]).is_below(api_version):
        return None

    if "children" in node:
        node = dict(node)
        node["children"] = [
            child
            for child in (filter_by_version(c, api_version) for c in node["children"])
            if child is not None
        ]
    return node


def list_tests(
    root: Suite,
    path: str = "",
    api_version: Optional[Union[str, Version]] = None,
) -> Optional[Dict[str, Any]]:
    """JSON projection of the subtree at ``path``, filtered by API version."""
    node = root.get_node_at(path)
    if node is None:
        return None
    return filter_by_version(node.to_dict(), api_version)


async def run_tests(
    config: NormalizedConfig,
    root: Suite,
    path: str = "",
    listeners: Iterable[Listener] = (),
    context: Optional[Dict[str, Any]] = None,
    only_mode: bool = False,
    logging_config: Optional[Config] = None,
) -> TestRunner:
    """
    Run the subtree of ``root`` at ``path`` and return the finished runner.

    When ``logging_config`` is given, process logging is set up for this
    run (tagged with its run id) before any test starts.
    """
    node = root.get_node_at(path)
    if node is None:
        raise ValueError(f'No test node found at path "{path}"')

    runner = TestRunner(config, only_mode=only_mode, context=context, root=root)
    if logging_config is not None:
        setup_logging(logging_config, runner.run_id)
    for listener in listeners:
        runner.add_listener(listener)

    await runner.run(node)
    return runner
