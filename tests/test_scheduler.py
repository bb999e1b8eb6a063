#!/usr/bin/env python3
"""
Task graph and scheduling tests, driven through the Supervisor with fake tasks.
"""

from pathlib import Path
import asyncio
import os
import random
import signal
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from arvboot.config import Config  # noqa: E402
from arvboot.context import Context  # noqa: E402
from arvboot.errors import ContextCancelled, GraphError, TaskFailedError  # noqa: E402
from arvboot.graph import ReadinessMap, TaskGraph  # noqa: E402
from arvboot.supervisor import Supervisor  # noqa: E402


class FakeTask:
    """Records when it starts and when it becomes ready."""

    def __init__(self, name, depends=(), events=None, delay=0.0, error=None, block=False):
        self.name = name
        self.depends = tuple(depends)
        self.events = events if events is not None else []
        self.delay = delay
        self.error = error
        self.block = block
        self.runs = 0

    async def run(self, ctx, fail, supervisor):
        await supervisor.wait(ctx, *self.depends)
        self.runs += 1
        self.events.append(("start", self.name))
        await ctx.sleep(self.delay)
        if self.block:
            await ctx.done()
            raise ContextCancelled()
        if self.error is not None:
            raise self.error
        self.events.append(("ready", self.name))


def _config() -> Config:
    return Config.from_dict({"clusters": {"zzzzz": {}}})


def _supervisor() -> Supervisor:
    return Supervisor(cluster_type="production", listen_host="127.0.0.1", controller_addr="127.0.0.1:0")


def _assert_dependencies_ready_first(events, tasks):
    position = {event: i for i, event in enumerate(events)}
    for task in tasks:
        for dep in task.depends:
            assert position[("ready", dep.name)] < position[("start", task.name)], (dep.name, task.name)


async def _run_until_ready(sup: Supervisor, tasks):
    """Run sup with tasks, cancel once everything is ready, return run()'s outcome."""
    sup.ctx = Context()
    runner = asyncio.create_task(sup.run(_config(), tasks))
    while not (sup.tasks_ready and all(sup.tasks_ready.is_ready(t.name) for t in tasks)):
        if runner.done():
            break
        await asyncio.sleep(0.01)
    sup.ctx.cancel("test finished")
    return await runner


class TestTaskGraph:
    def test_dependencies_come_first(self):
        a = FakeTask("A")
        b = FakeTask("B", depends=[a])
        c = FakeTask("C", depends=[a, b])
        order = TaskGraph([c, b, a]).order()
        assert order.index("A") < order.index("B") < order.index("C")

    def test_same_name_is_one_node(self):
        first = FakeTask("A")
        second = FakeTask("A")
        graph = TaskGraph([first, FakeTask("B", depends=[second]), second])
        assert len(graph) == 2
        assert graph.nodes["A"] is first

    def test_dependency_only_task_is_a_node(self):
        graph = TaskGraph([FakeTask("B", depends=[FakeTask("X")])])
        assert "X" in graph
        assert graph.top_level == ["B"]

    def test_cycle_rejected(self):
        a = FakeTask("A")
        b = FakeTask("B", depends=[a])
        a.depends = (b,)
        with pytest.raises(GraphError, match="cycle"):
            TaskGraph([a, b])

    def test_self_dependency_rejected(self):
        a = FakeTask("A")
        a.depends = (a,)
        with pytest.raises(GraphError, match="cycle"):
            TaskGraph([a])


class TestReadinessMap:
    def test_close_twice_raises(self):
        ready = ReadinessMap(["A"])
        ready.close("A")
        assert ready.is_ready("A")
        with pytest.raises(RuntimeError):
            ready.close("A")

    def test_unknown_name(self):
        ready = ReadinessMap(["A"])
        with pytest.raises(GraphError, match="no such task"):
            ready.close("B")
        with pytest.raises(GraphError, match="no such task"):
            asyncio.run(ready.wait(Context(), ["B"]))

    def test_wait_returns_on_cancel(self):
        async def main():
            ctx = Context()
            ready = ReadinessMap(["A"])
            asyncio.get_running_loop().call_later(0.05, ctx.cancel)
            with pytest.raises(ContextCancelled):
                await ready.wait(ctx, ["A"])
            assert not ready.is_ready("A")

        asyncio.run(main())


class TestScheduling:
    def test_abc_randomized_ordering(self):
        for trial in range(20):
            rng = random.Random(trial)
            events = []
            a = FakeTask("A", events=events, delay=rng.random() * 0.02)
            b = FakeTask("B", depends=[a], events=events, delay=rng.random() * 0.02)
            c = FakeTask("C", depends=[a, b], events=events, delay=rng.random() * 0.02)
            tasks = [a, b, c]
            rng.shuffle(tasks)

            async def main():
                sup = _supervisor()
                await sup.run_tasks(Context(), tasks)
                await sup.wait_shutdown()

            asyncio.run(main())
            _assert_dependencies_ready_first(events, tasks)
            assert [t.runs for t in (a, b, c)] == [1, 1, 1]

    def test_duplicate_and_dependency_only_tasks_run_once(self):
        events = []
        x = FakeTask("X", events=events)
        a1 = FakeTask("A", depends=[x], events=events)
        a2 = FakeTask("A", events=events)
        b = FakeTask("B", depends=[a2], events=events)

        async def main():
            await _supervisor().run_tasks(Context(), [a1, b])

        asyncio.run(main())
        assert x.runs == 1
        assert a1.runs == 1
        assert a2.runs == 0
        _assert_dependencies_ready_first(events, [a1, b])

    def test_blocked_dependency_holds_dependents_until_cancel(self):
        events = []
        a = FakeTask("A", events=events, block=True)
        b = FakeTask("B", depends=[a], events=events)

        async def main():
            ctx = Context()
            sup = _supervisor()
            scheduler = asyncio.create_task(sup.run_tasks(ctx, [a, b]))
            await asyncio.sleep(0.2)
            assert ("start", "B") not in events
            ctx.cancel()
            with pytest.raises(ContextCancelled):
                await scheduler
            await sup.wait_shutdown()
            assert not sup.tasks_ready.is_ready("A")
            assert not sup.tasks_ready.is_ready("B")

        asyncio.run(main())
        assert b.runs == 0

    def test_failed_task_never_becomes_ready(self):
        events = []
        a = FakeTask("A", events=events, error=RuntimeError("boom"))
        b = FakeTask("B", depends=[a], events=events)

        async def main():
            ctx = Context()
            sup = _supervisor()
            with pytest.raises(ContextCancelled):
                await sup.run_tasks(ctx, [a, b])
            await sup.wait_shutdown()
            assert ctx.cancelled()
            assert not sup.tasks_ready.is_ready("A")
            assert not sup.tasks_ready.is_ready("B")

        asyncio.run(main())
        assert ("start", "B") not in events


class TestSupervisorRun:
    def test_clean_run_then_cancel(self):
        seen = {}

        class Inspect(FakeTask):
            async def run(self, ctx, fail, supervisor):
                seen["configfile"] = supervisor.configfile
                seen["exists"] = os.path.exists(supervisor.configfile)
                seen["env"] = supervisor.environ.get("ARVADOS_CONFIG")
                seen["path"] = supervisor.environ.get("PATH")
                await super().run(ctx, fail, supervisor)

        a = FakeTask("A")
        inspect = Inspect("inspect", depends=[a])
        sup = _supervisor()

        assert asyncio.run(_run_until_ready(sup, [a, inspect])) is None
        assert seen["exists"]
        assert seen["env"] == seen["configfile"]
        assert seen["path"].startswith(os.path.join(sup.tempdir, "bin") + ":")
        assert not os.path.exists(sup.tempdir)
        assert sup.health_checker is not None

    def test_task_failure_raises_task_failed(self):
        a = FakeTask("A", error=RuntimeError("boom"))
        b = FakeTask("B", depends=[a])
        sup = _supervisor()

        with pytest.raises(TaskFailedError) as excinfo:
            asyncio.run(_run_until_ready(sup, [a, b]))
        assert excinfo.value.task == "A"
        assert isinstance(excinfo.value.cause, RuntimeError)
        assert not os.path.exists(sup.tempdir)

    def test_background_exit_is_a_failure(self):
        class Daemon(FakeTask):
            async def run(self, ctx, fail, supervisor):
                async def quits_early():
                    await asyncio.sleep(0.05)
                supervisor.run_in_background(fail, quits_early(), "daemon")
                await super().run(ctx, fail, supervisor)

        async def main():
            sup = _supervisor()
            sup.ctx = Context()
            await sup.run(_config(), [Daemon("daemon")])

        with pytest.raises(TaskFailedError, match="daemon exited"):
            asyncio.run(main())

    def test_cancel_before_ready_raises_cancelled(self):
        async def main():
            sup = _supervisor()
            sup.ctx = Context()
            asyncio.get_running_loop().call_later(0.2, sup.ctx.cancel)
            await sup.run(_config(), [FakeTask("A", block=True)])

        with pytest.raises(ContextCancelled):
            asyncio.run(main())

    def test_start_and_sigterm(self):
        a = FakeTask("A")

        async def main():
            sup = _supervisor()
            await sup.start(_config(), [a])
            while not (sup.tasks_ready and sup.tasks_ready.is_ready("A")):
                await asyncio.sleep(0.01)
            os.kill(os.getpid(), signal.SIGTERM)
            await sup.done()
            return sup

        sup = asyncio.run(main())
        assert sup.ctx.reason == "signal SIGTERM"

    def test_stop(self):
        async def main():
            sup = _supervisor()
            await sup.start(_config(), [FakeTask("A")])
            while not (sup.tasks_ready and sup.tasks_ready.is_ready("A")):
                await asyncio.sleep(0.01)
            await sup.stop()

        asyncio.run(main())
