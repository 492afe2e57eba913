"""
Tests for the test tree runner.

Trees are built with TreeBuilder and run against a configuration that
points nowhere; none of the bodies used here make HTTP requests.
"""

import asyncio

import pytest

from bdt.core.exceptions import NotSupportedError
from bdt.execution.events import EventEmitter, RunEvent
from bdt.execution.runner import TestRunner, filter_by_version, list_tests, run_tests
from bdt.tree.builder import TreeBuilder
from bdt.tree.console import LogType
from bdt.tree.nodes import TestStatus


class Recorder:
    """Listener collecting (event, name) pairs."""

    def __init__(self):
        self.events = []

    def __call__(self, event, payload):
        name = getattr(payload, "name", payload)
        self.events.append((event, name))

    def names(self, event):
        return [name for e, name in self.events if e is event]


async def passing(config, api, context):
    pass


def failing(config, api, context):
    raise AssertionError("expected 1 to equal 2")


def node(root, path):
    return root.get_node_at(path)


class TestHooks:
    """Test cases for hook ordering and hook failures."""

    @pytest.mark.asyncio
    async def test_hook_order(self, config):
        """Test sync and async hooks run around the body in order."""
        builder = TreeBuilder()
        calls = []

        async def before(config, context):
            calls.append("before")

        def before_each(config, api, context):
            calls.append("beforeEach")

        def after_each(config, api, context):
            calls.append("afterEach")

        async def after(config, context):
            calls.append("after")

        async def body(config, api, context):
            calls.append("body")
            api.after(lambda **_: calls.append("test.after"))

        def group(b):
            b.before(before)
            b.before_each(before_each)
            b.after_each(after_each)
            b.after(after)
            b.test("t", body)

        builder.suite("g", group)
        runner = await run_tests(config, builder.root)

        assert calls == ["before", "beforeEach", "body", "test.after", "afterEach", "after"]
        assert node(builder.root, "0.0").status is TestStatus.SUCCEEDED
        assert runner.results[TestStatus.SUCCEEDED] == 1

    @pytest.mark.asyncio
    async def test_context_is_shared(self, config):
        """Test hooks and bodies receive the same context dictionary."""
        builder = TreeBuilder()

        def before(config, context):
            context["token"] = "abc"

        async def body(config, api, context):
            assert context["token"] == "abc"

        builder.before(before)
        builder.test("t", body)
        context = {}
        await run_tests(config, builder.root, context=context)

        assert context == {"token": "abc"}
        assert node(builder.root, "0").status is TestStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_before_failure_skips_children(self, config):
        """Test a failing group.before skips the group's tests but runs after."""
        builder = TreeBuilder()
        calls = []

        def before(**_):
            raise RuntimeError("cannot set up")

        def group(b):
            b.before(before)
            b.after(lambda **_: calls.append("after"))
            b.test("t", passing)

        builder.suite("g", group)
        builder.test("next", passing)
        recorder = Recorder()
        await run_tests(config, builder.root, listeners=[recorder])

        assert node(builder.root, "0.0").status is None
        assert node(builder.root, "1").status is TestStatus.SUCCEEDED
        assert calls == ["after"]
        assert "g" in recorder.names(RunEvent.GROUP_END)

    @pytest.mark.asyncio
    async def test_before_each_failure(self, config):
        """Test a failing beforeEach fails the test with a prefixed message."""
        builder = TreeBuilder()
        recorder = Recorder()

        def before_each(**_):
            raise RuntimeError("boom")

        def group(b):
            b.before_each(before_each)
            b.test("t", passing)

        builder.suite("g", group)
        await run_tests(config, builder.root, listeners=[recorder])
        test = node(builder.root, "0.0")

        assert test.status is TestStatus.FAILED
        assert [e.data[0] for e in test.console.get(LogType.ERROR)] == [
            "group.beforeEach hook: boom"
        ]
        assert recorder.names(RunEvent.TEST_START) == []
        assert recorder.names(RunEvent.TEST_END) == ["t"]

    @pytest.mark.asyncio
    async def test_test_after_failure(self, config):
        """Test a failing api.after hook is logged but keeps the status."""
        builder = TreeBuilder()

        def broken(**_):
            raise RuntimeError("cleanup failed")

        async def body(config, api, context):
            api.after(broken)

        builder.test("t", body)
        await run_tests(config, builder.root)
        test = node(builder.root, "0")

        assert test.status is TestStatus.SUCCEEDED
        assert [e.data[0] for e in test.console.get(LogType.ERROR)] == [
            "test.after hook: cleanup failed"
        ]

    @pytest.mark.asyncio
    async def test_after_each_failure(self, config):
        """Test a failing afterEach is recorded on the test console."""
        builder = TreeBuilder()

        def after_each(**_):
            raise RuntimeError("oops")

        def group(b):
            b.after_each(after_each)
            b.test("t", passing)

        builder.suite("g", group)
        await run_tests(config, builder.root)
        test = node(builder.root, "0.0")

        assert [e.data[0] for e in test.console.get(LogType.ERROR)] == [
            "group.afterEach hook: oops"
        ]

    @pytest.mark.asyncio
    async def test_after_each_not_run_for_skipped(self, config):
        """Test afterEach does not run for skipped or not-implemented tests."""
        builder = TreeBuilder()
        calls = []

        def group(b):
            b.after_each(lambda api, **_: calls.append(api.test.name))
            b.test("ran", passing)
            b.test_skip("skipped", passing)
            b.test("missing")

        builder.suite("g", group)
        await run_tests(config, builder.root)

        assert calls == ["ran"]


class TestStatuses:
    """Test cases for the terminal status of tests."""

    @pytest.mark.asyncio
    async def test_basic_statuses(self, config):
        """Test succeeded, failed, not-implemented and skipped."""
        builder = TreeBuilder()
        builder.test("ok", passing)
        builder.test("bad", failing)
        builder.test("missing")
        builder.test_skip("skipped", passing)
        runner = await run_tests(config, builder.root)
        root = builder.root

        assert node(root, "0").status is TestStatus.SUCCEEDED
        assert node(root, "1").status is TestStatus.FAILED
        assert node(root, "1").console.get(LogType.ERROR)[0].data == ["expected 1 to equal 2"]
        assert node(root, "2").status is TestStatus.NOT_IMPLEMENTED
        assert node(root, "3").status is TestStatus.SKIPPED
        assert sum(runner.results.values()) == 4

    @pytest.mark.asyncio
    async def test_not_supported(self, config):
        """Test prerequisite failures and set_not_supported."""
        builder = TreeBuilder()

        async def prerequisite(config, api, context):
            api.prerequisite({"assertion": False, "message": "Feature missing"})
            raise AssertionError("not reached")

        async def flagged(config, api, context):
            api.set_not_supported("Flagged")

        async def raised(config, api, context):
            raise NotSupportedError("Raised")

        builder.test("prerequisite", prerequisite)
        builder.test("flagged", flagged)
        builder.test("raised", raised)
        await run_tests(config, builder.root)

        for path, message in (("0", "Feature missing"), ("1", "Flagged"), ("2", "Raised")):
            test = node(builder.root, path)
            assert test.status is TestStatus.NOT_SUPPORTED
            assert [e.data[0] for e in test.console.get(LogType.INFO)] == [message]

    @pytest.mark.asyncio
    async def test_version_gating(self, make_config):
        """Test tests outside the API version range are skipped with a reason."""
        builder = TreeBuilder()
        builder.test({"name": "v2 only", "min_version": "2"}, passing)
        builder.test({"name": "v1 only", "max_version": "1"}, passing)
        builder.test({"name": "any"}, passing)
        await run_tests(make_config(apiVersion="1"), builder.root)
        root = builder.root

        assert node(root, "0").status is TestStatus.SKIPPED
        info = [e.data[0] for e in node(root, "0").console if e.type.value == "info"]
        assert info == [
            "This test was skipped because it requires API version >= 2 (currently using 1)"
        ]
        assert node(root, "1").status is TestStatus.SUCCEEDED
        assert node(root, "2").status is TestStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_max_version_gating(self, make_config):
        """Test a max_version below the API version skips the test."""
        builder = TreeBuilder()
        builder.test({"name": "old", "max_version": "1"}, passing)
        await run_tests(make_config(apiVersion="2"), builder.root)

        test = node(builder.root, "0")
        assert test.status is TestStatus.SKIPPED
        assert "<= 1" in test.console.get(LogType.INFO)[0].data[0]

    @pytest.mark.asyncio
    async def test_match(self, make_config):
        """Test only tests whose names match run, case-insensitively."""
        builder = TreeBuilder()
        builder.test("Accepts GET requests", passing)
        builder.test("Accepts POST requests", passing)
        await run_tests(make_config(match="get"), builder.root)

        assert node(builder.root, "0").status is TestStatus.SUCCEEDED
        assert node(builder.root, "1").status is TestStatus.SKIPPED
        assert len(node(builder.root, "1").console) == 0

    @pytest.mark.asyncio
    async def test_rerun_resets_state(self, config):
        """Test running a tree twice starts every test from scratch."""
        builder = TreeBuilder()

        async def body(config, api, context):
            api.console.log("ran")

        builder.test("t", body)
        runner = TestRunner(config, root=builder.root)
        await runner.run()
        await runner.run()

        assert len(node(builder.root, "0").console) == 1
        assert runner.results[TestStatus.SUCCEEDED] == 1


class TestOnlyMode:
    """Test cases for only mode."""

    @pytest.mark.asyncio
    async def test_only_mode(self, config):
        """Test only tests and tests of only groups run."""
        builder = TreeBuilder()
        builder.test("plain", passing)
        builder.test_only("focused", passing)
        builder.suite_only("focused group", lambda b: b.test("inside", passing))
        recorder = Recorder()
        runner = TestRunner(config, only_mode=builder.only_mode, root=builder.root)
        runner.add_listener(recorder)
        await runner.run()
        root = builder.root

        assert node(root, "0").status is TestStatus.SKIPPED
        assert node(root, "1").status is TestStatus.SUCCEEDED
        assert node(root, "2.0").status is TestStatus.SUCCEEDED
        assert recorder.events[0] == (RunEvent.START, {"only_mode": True})

    @pytest.mark.asyncio
    async def test_only_flags_ignored_without_only_mode(self, config):
        """Test only flags have no effect when only mode is off."""
        builder = TreeBuilder()
        builder.test("plain", passing)
        builder.test_only("focused", passing)
        await run_tests(config, builder.root)

        assert node(builder.root, "0").status is TestStatus.SUCCEEDED


class TestBail:
    """Test cases for bail."""

    @pytest.mark.asyncio
    async def test_bail_stops_after_first_failure(self, make_config):
        """Test later siblings and cousins do not start, but group after hooks run."""
        builder = TreeBuilder()
        calls = []

        def first(b):
            b.after(lambda **_: calls.append("first.after"))
            b.test("fails", failing)
            b.test("sibling", passing)

        builder.suite("first", first)
        builder.suite("second", lambda b: b.test("cousin", passing))
        builder.after(lambda **_: calls.append("root.after"))
        recorder = Recorder()
        runner = await run_tests(make_config(bail=True), builder.root, listeners=[recorder])
        root = builder.root

        assert runner.canceled is True
        assert node(root, "0.0").status is TestStatus.FAILED
        assert node(root, "0.1").status is None
        assert node(root, "1.0").status is None
        assert calls == ["first.after", "root.after"]
        assert "second" not in recorder.names(RunEvent.GROUP_START)
        assert recorder.events[-1] == (RunEvent.END, None)

    @pytest.mark.asyncio
    async def test_no_bail(self, config):
        """Test failures do not stop the run by default."""
        builder = TreeBuilder()
        builder.test("fails", failing)
        builder.test("next", passing)
        runner = await run_tests(config, builder.root)

        assert runner.canceled is False
        assert node(builder.root, "1").status is TestStatus.SUCCEEDED


class TestAbort:
    """Test cases for aborting a run."""

    @pytest.mark.asyncio
    async def test_abort_current(self, config):
        """Test abort() ends the running test as aborted and continues."""
        builder = TreeBuilder()

        async def slow(config, api, context):
            context["runner"].abort()
            await asyncio.sleep(10)

        builder.test("slow", slow)
        builder.test("next", passing)
        context = {}
        runner = TestRunner(config, context=context, root=builder.root)
        context["runner"] = runner
        await runner.run()

        slow_test = node(builder.root, "0")
        assert slow_test.status is TestStatus.ABORTED
        assert [e.data[0] for e in slow_test.console.get(LogType.WARN)] == ["Test aborted"]
        assert node(builder.root, "1").status is TestStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_abort_all(self, config):
        """Test abort(abort_all=True) also stops the remaining tests."""
        builder = TreeBuilder()

        async def slow(config, api, context):
            context["runner"].abort(abort_all=True)
            await asyncio.sleep(10)

        builder.test("slow", slow)
        builder.test("next", passing)
        context = {}
        runner = TestRunner(config, context=context, root=builder.root)
        context["runner"] = runner
        await runner.run()

        assert node(builder.root, "0").status is TestStatus.ABORTED
        assert node(builder.root, "1").status is None
        assert runner.canceled is True

    def test_abort_when_idle(self, config):
        """Test abort() without a running test does nothing harmful."""
        runner = TestRunner(config)
        runner.abort()

        assert runner.canceled is False


class TestSingleTest:
    """Test cases for running a single Test node."""

    @pytest.mark.asyncio
    async def test_single_test_uses_parent_hooks(self, config):
        """Test a lone test still gets its group's beforeEach."""
        builder = TreeBuilder()
        calls = []

        def group(b):
            b.before_each(lambda api, **_: calls.append(f"beforeEach {api.test.name}"))
            b.test("first", passing)
            b.test("second", passing)

        builder.suite("g", group)
        recorder = Recorder()
        await run_tests(config, builder.root, path="0.1", listeners=[recorder])

        assert calls == ["beforeEach second"]
        assert node(builder.root, "0.0").status is None
        assert node(builder.root, "0.1").status is TestStatus.SUCCEEDED
        assert recorder.names(RunEvent.GROUP_START) == []

    @pytest.mark.asyncio
    async def test_single_test_without_root(self, config):
        """Test a lone test cannot be run without a root to find its parent."""
        builder = TreeBuilder()
        test = builder.test("t", passing)

        with pytest.raises(ValueError, match="without a root suite"):
            await TestRunner(config).run(test)

    @pytest.mark.asyncio
    async def test_nothing_to_run(self, config):
        """Test run() needs a node or a root."""
        with pytest.raises(ValueError, match="Nothing to run"):
            await TestRunner(config).run()


class TestEvents:
    """Test cases for lifecycle events."""

    @pytest.mark.asyncio
    async def test_event_order(self, config):
        """Test events are emitted in traversal order."""
        builder = TreeBuilder()
        builder.suite("g", lambda b: b.test("t", passing))
        recorder = Recorder()
        await run_tests(config, builder.root, listeners=[recorder])

        assert recorder.events == [
            (RunEvent.START, {"only_mode": False}),
            (RunEvent.GROUP_START, "__ROOT__"),
            (RunEvent.GROUP_START, "g"),
            (RunEvent.TEST_START, "t"),
            (RunEvent.TEST_END, "t"),
            (RunEvent.GROUP_END, "g"),
            (RunEvent.GROUP_END, "__ROOT__"),
            (RunEvent.END, None),
        ]

    @pytest.mark.asyncio
    async def test_failing_listener_is_tolerated(self, config):
        """Test a raising listener does not break the run or other listeners."""
        builder = TreeBuilder()
        builder.test("t", passing)
        recorder = Recorder()

        def broken(event, payload):
            raise RuntimeError("listener bug")

        await run_tests(config, builder.root, listeners=[broken, recorder])

        assert node(builder.root, "0").status is TestStatus.SUCCEEDED
        assert recorder.names(RunEvent.TEST_END) == ["t"]

    def test_on_and_remove(self):
        """Test single-event subscriptions can be removed."""
        emitter = EventEmitter()
        seen = []
        listener = emitter.on(RunEvent.TEST_END, seen.append)

        emitter.emit(RunEvent.TEST_START, "a")
        emitter.emit(RunEvent.TEST_END, "b")
        emitter.remove_listener(listener)
        emitter.emit(RunEvent.TEST_END, "c")

        assert seen == ["b"]


class TestListing:
    """Test cases for list_tests and run_tests lookups."""

    def test_list_tests_prunes_by_version(self):
        """Test nodes outside the API version are pruned."""
        builder = TreeBuilder()
        builder.suite(
            {"name": "v2 group", "min_version": "2"}, lambda b: b.test("inside", passing)
        )
        builder.test({"name": "v1 test", "max_version": "1"}, passing)
        builder.test("any", passing)

        listed = list_tests(builder.root, api_version="1")
        assert [c["name"] for c in listed["children"]] == ["v1 test", "any"]

        listed = list_tests(builder.root, api_version="2")
        assert [c["name"] for c in listed["children"]] == ["v2 group", "any"]

        listed = list_tests(builder.root)
        assert len(listed["children"]) == 3

    def test_list_tests_path(self):
        """Test listing a subtree and an unknown path."""
        builder = TreeBuilder()
        builder.suite("g", lambda b: b.test("inside", passing))

        assert list_tests(builder.root, "0.0")["name"] == "inside"
        assert list_tests(builder.root, "9") is None

    def test_filter_by_version_excludes_root(self):
        """Test a node outside the range filters to None."""
        assert filter_by_version({"name": "x", "minVersion": "3"}, "2") is None

    @pytest.mark.asyncio
    async def test_run_tests_invalid_path(self, config):
        """Test an unknown path raises ValueError."""
        with pytest.raises(ValueError, match='No test node found at path "4.2"'):
            await run_tests(config, TreeBuilder().root, path="4.2")
