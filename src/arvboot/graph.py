#!/usr/bin/env python3
"""
Task dependency graph and readiness signals.

Tasks are identified by name. Two task values with the same name are the
same node, and a task that only ever appears as a dependency is still a
node that gets scheduled. Cycles are rejected when the graph is built.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Iterable, Protocol, Sequence, Union, runtime_checkable

from .context import Context
from .errors import GraphError

if TYPE_CHECKING:
    from .supervisor import Supervisor

logger = logging.getLogger(__name__)

FailFunc = Callable[[BaseException], None]


@runtime_checkable
class SupervisedTask(Protocol):
    @property
    def name(self) -> str: ...

    @property
    def depends(self) -> Sequence["SupervisedTask"]: ...

    def run(self, ctx: Context, fail: FailFunc, supervisor: "Supervisor") -> Awaitable[None]: ...


TaskRef = Union[SupervisedTask, str]


def task_name(task: TaskRef) -> str:
    return task if isinstance(task, str) else task.name


class TaskGraph:
    def __init__(self, tasks: Iterable[SupervisedTask]) -> None:
        self.top_level: list[str] = []
        self.nodes: dict[str, SupervisedTask] = {}
        self.edges: dict[str, list[str]] = {}

        tasks = list(tasks)
        # Top-level instances win over same-named instances seen as dependencies.
        for task in tasks:
            if task.name not in self.nodes:
                self.top_level.append(task.name)
                self.nodes[task.name] = task
        for name in list(self.top_level):
            self._add_depends(self.nodes[name])
        self._order = self._toposort()

    def _add_depends(self, task: SupervisedTask) -> None:
        pending = [task]
        while pending:
            current = pending.pop()
            if current.name in self.edges:
                continue
            self.edges[current.name] = [dep.name for dep in current.depends]
            for dep in current.depends:
                if dep.name not in self.nodes:
                    self.nodes[dep.name] = dep
                pending.append(self.nodes[dep.name])

    def _toposort(self) -> list[str]:
        order: list[str] = []
        state: dict[str, str] = {}

        def visit(name: str, stack: list[str]) -> None:
            if state.get(name) == "done":
                return
            if state.get(name) == "visiting":
                cycle = stack[stack.index(name):] + [name]
                raise GraphError(f"dependency cycle: {' -> '.join(cycle)}")
            state[name] = "visiting"
            stack.append(name)
            for dep in self.edges[name]:
                visit(dep, stack)
            stack.pop()
            state[name] = "done"
            order.append(name)

        for name in self.nodes:
            visit(name, [])
        return order

    def order(self) -> list[str]:
        """Names in dependency order, dependencies first."""
        return list(self._order)

    def __contains__(self, name: str) -> bool:
        return name in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)


class ReadinessMap:
    """One-shot readiness signal per task name.

    Built before scheduling and never restructured afterwards; only the
    individual events change state.
    """

    def __init__(self, names: Iterable[str]) -> None:
        self._events: dict[str, asyncio.Event] = {name: asyncio.Event() for name in names}

    def __contains__(self, name: str) -> bool:
        return name in self._events

    def is_ready(self, name: str) -> bool:
        return self._event(name).is_set()

    def close(self, name: str) -> None:
        event = self._event(name)
        if event.is_set():
            raise RuntimeError(f"readiness signal for {name} closed twice")
        event.set()

    def _event(self, name: str) -> asyncio.Event:
        try:
            return self._events[name]
        except KeyError:
            raise GraphError(f"no such task: {name}") from None

    async def wait(self, ctx: Context, names: Iterable[str]) -> None:
        """Wait for every named task, or raise ContextCancelled."""
        for name in names:
            event = self._event(name)
            if event.is_set():
                continue
            logger.info(f"[{name}] waiting")
            try:
                await ctx.wait_for(event.wait())
            except Exception:
                logger.info(f"[{name}] task was never ready")
                raise
            logger.info(f"[{name}] ready")
