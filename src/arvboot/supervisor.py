#!/usr/bin/env python3
"""
Supervisor: boots a whole cluster on this host and keeps it running.

Lifecycle of one run:

1. create a fresh workspace directory
2. autofill the configuration and write it to the workspace
3. prepare the environment handed to every child process
4. schedule all tasks; each waits for its own dependencies
5. once every task is ready, start health checks and wait for cancellation
6. wait for every supervised process to shut down, remove the workspace

Any task failure cancels the shared context and is re-raised from run() as
TaskFailedError once everything has shut down.
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
import pwd
import shutil
import signal
import sys
import tempfile
from typing import Any, Awaitable, Iterable, Optional, TextIO

from .autofill import PortAllocator, autofill_config
from .config import Cluster, Config, write_config
from .config_constants import (
    CLUSTER_TYPES,
    ENV_PREFIX_STRIP,
    HEALTH_POLL_INTERVAL,
    WORKSPACE_BIN_DIR,
    WORKSPACE_CONFIG,
    WORKSPACE_PREFIX,
)
from .context import Context
from .environ import Environment
from .errors import BootError, ConfigError, ContextCancelled, GraphError, ResourceError, TaskFailedError
from .graph import FailFunc, ReadinessMap, SupervisedTask, TaskGraph, TaskRef, task_name
from .health import HealthAggregator
from .logging_utils import resolve_log_level
from .process import run_program
from .tasks import default_tasks

logger = logging.getLogger(__name__)


class Supervisor:
    def __init__(
        self,
        source_path: str = ".",
        source_version: str = "",
        cluster_type: str = "production",
        listen_host: str = "localhost",
        controller_addr: str = ":0",
        own_temporary_database: bool = False,
        stderr: Optional[TextIO] = None,
    ) -> None:
        self.source_path = source_path
        self.source_version = source_version
        self.cluster_type = cluster_type
        self.listen_host = listen_host
        self.controller_addr = controller_addr
        self.own_temporary_database = own_temporary_database
        self.stderr = stderr

        self.ctx: Optional[Context] = None
        self.cluster: Optional[Cluster] = None
        self.health_checker: Optional[HealthAggregator] = None
        self.tasks_ready: Optional[ReadinessMap] = None
        self.tempdir = ""
        self.configfile = ""
        self.environ = Environment()
        self.ports = PortAllocator()
        self.install_lock = asyncio.Lock()

        self._background: set[asyncio.Task] = set()
        self._failure: Optional[TaskFailedError] = None
        self._done: Optional[asyncio.Task] = None

    @property
    def log_stream(self) -> TextIO:
        return self.stderr if self.stderr is not None else sys.stderr

    @property
    def bin_dir(self) -> str:
        return os.path.join(self.tempdir, WORKSPACE_BIN_DIR) if self.tempdir else ""

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    async def start(self, cfg: Config, tasks: Optional[Iterable[SupervisedTask]] = None) -> None:
        """Run in the background; SIGINT/SIGTERM cancel the run."""
        self.ctx = Context()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._on_signal, sig)
        self._done = asyncio.create_task(self._run_and_report(cfg, tasks))

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Caught signal {sig.name}")
        if self.ctx is not None:
            self.ctx.cancel(f"signal {sig.name}")

    async def _run_and_report(self, cfg: Config, tasks: Optional[Iterable[SupervisedTask]]) -> None:
        try:
            await self.run(cfg, tasks)
        except Exception as e:
            logger.warning(f"Supervisor shut down: {e}")
            raise
        finally:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

    async def done(self) -> None:
        """Wait for a started run to finish; re-raise its failure."""
        if self._done is None:
            raise RuntimeError("supervisor was not started")
        await self._done

    async def stop(self) -> None:
        """Cancel the run and wait for it to shut down."""
        if self.ctx is not None:
            self.ctx.cancel("stop requested")
        await self.done()

    async def wait_ready(self) -> Optional[str]:
        """
        Poll health checks until every configured check passes.

        Waits for each configured component rather than the overall status,
        which can stay failing because of components a dev cluster does not
        run. Returns the controller's external URL, or None if the context
        is cancelled first.
        """
        if self.ctx is None:
            raise RuntimeError("supervisor was not started")
        ctx = self.ctx
        waiting = ["all"]
        while waiting:
            try:
                await ctx.sleep(HEALTH_POLL_INTERVAL)
                if self.health_checker is None:
                    continue
                resp = await ctx.wait_for(asyncio.to_thread(self.health_checker.cluster_health))
            except ContextCancelled:
                return None
            waiting = [target for target, health in sorted(resp.checks.items()) if health != "OK"]
            if waiting:
                logger.info(f"Cluster health {resp.health}; waiting for: {' '.join(waiting)}")
        if self.cluster is None:
            raise RuntimeError("cluster config is not loaded")
        return self.cluster.services.controller.external_url

    # ------------------------------------------------------------------
    # Main run
    # ------------------------------------------------------------------

    async def run(self, cfg: Config, tasks: Optional[Iterable[SupervisedTask]] = None) -> None:
        """
        Boot the cluster and block until cancelled.

        With tasks=None the default topology for the source tree is built;
        otherwise the given tasks are scheduled instead.
        """
        if self.ctx is None:
            self.ctx = Context()
        ctx = self.ctx

        try:
            if self.cluster_type not in CLUSTER_TYPES:
                raise ConfigError(f"unknown cluster type: {self.cluster_type!r}")
            if tasks is None and self.source_version:
                raise ConfigError("specifying a version to run is not yet supported")

            self.source_path = os.path.realpath(os.path.abspath(self.source_path))
            try:
                self.tempdir = tempfile.mkdtemp(prefix=WORKSPACE_PREFIX)
            except OSError as e:
                raise ResourceError(f"cannot create workspace: {e}") from e
            logger.debug(f"Workspace: {self.tempdir}")

            try:
                try:
                    os.mkdir(self.bin_dir, 0o755)
                except OSError as e:
                    raise ResourceError(f"cannot create workspace: {e}") from e
                await self._run(ctx, cfg, tasks)
            finally:
                shutil.rmtree(self.tempdir, ignore_errors=True)
        finally:
            # Anything still waiting on this run (wait_ready) must return.
            ctx.cancel("supervisor exited")

    async def _run(self, ctx: Context, cfg: Config, tasks: Optional[Iterable[SupervisedTask]]) -> None:
        # Fill in missing config keys and write the result to the workspace
        # for child services to read.
        self.cluster = autofill_config(
            cfg,
            cluster_type=self.cluster_type,
            listen_host=self.listen_host,
            controller_addr=self.controller_addr,
            workspace=self.tempdir,
            source_path=self.source_path,
            own_temporary_database=self.own_temporary_database,
            ports=self.ports,
        )
        try:
            self.configfile = str(write_config(cfg, os.path.join(self.tempdir, WORKSPACE_CONFIG)))
        except OSError as e:
            raise ResourceError(f"cannot write config to workspace: {e}") from e

        self.environ = Environment.from_os()
        self.environ.clean(ENV_PREFIX_STRIP)
        self.environ.set("ARVADOS_CONFIG", self.configfile)
        self.environ.set("RAILS_ENV", self.cluster_type)
        self.environ.set("TMPDIR", self.tempdir)
        self.environ.prepend("PATH", self.bin_dir + ":")

        logging.getLogger("arvboot").setLevel(resolve_log_level(self.cluster.system_logs.log_level))

        if tasks is None:
            await self.detect_source_version(ctx)
            await self.install_go_program(ctx, "cmd/arvados-server")
            await self.setup_ruby_env(ctx)
            tasks = default_tasks(self)

        try:
            try:
                await self.run_tasks(ctx, tasks)
                logger.info("All startup tasks are complete; starting health checks")
                self.health_checker = HealthAggregator(self.cluster)
                await ctx.done()
                logger.info("Shutting down")
            finally:
                ctx.cancel("shutting down")
                await self.wait_shutdown()
        except ContextCancelled:
            if self._failure is None:
                raise
        if self._failure is not None:
            raise self._failure

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def run_tasks(self, ctx: Context, tasks: Iterable[SupervisedTask]) -> None:
        """Start every task concurrently; return once the top-level ones are ready."""
        graph = TaskGraph(tasks)
        self.tasks_ready = ReadinessMap(graph.order())
        for name in graph.order():
            self._track(asyncio.create_task(self._run_task(ctx, graph.nodes[name])))
        await self.wait(ctx, *graph.top_level)

    async def _run_task(self, ctx: Context, task: SupervisedTask) -> None:
        fail = self.fail_func(ctx, task.name)
        logger.info(f"[{task.name}] starting")
        try:
            await task.run(ctx, fail, self)
        except Exception as e:
            fail(e)
            return
        if self.tasks_ready is None:
            raise RuntimeError("tasks are not scheduled")
        self.tasks_ready.close(task.name)

    def fail_func(self, ctx: Context, name: str) -> FailFunc:
        """Callback that reports a task failure and cancels everything."""
        def fail(err: BaseException) -> None:
            if ctx.cancelled():
                return
            self._failure = TaskFailedError(name, err)
            logger.error(f"[{name}] task failed: {err}")
            ctx.cancel(f"task {name} failed")
        return fail

    async def wait(self, ctx: Context, *tasks: TaskRef) -> None:
        """Block until the given tasks are ready, or raise ContextCancelled."""
        if self.tasks_ready is None:
            raise GraphError("tasks are not scheduled yet")
        await self.tasks_ready.wait(ctx, [task_name(task) for task in tasks])

    def run_in_background(self, fail: FailFunc, awaitable: Awaitable[Any], description: str) -> asyncio.Task:
        """
        Supervise a long-running awaitable (usually run_program).

        It must not finish while the cluster is up: an error, or a normal
        return before cancellation, is reported through fail.
        """
        async def _supervise() -> None:
            try:
                await awaitable
            except Exception as e:
                fail(e)
            else:
                fail(BootError(f"{description} exited"))

        return self._track(asyncio.create_task(_supervise()))

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def wait_shutdown(self) -> None:
        """Wait for every task and supervised process to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Programs and environment
    # ------------------------------------------------------------------

    async def run_program(self, ctx: Context, directory: str, *argv: str, output=None, env=None) -> None:
        await run_program(ctx, self, directory, *argv, output=output, env=env)

    async def detect_source_version(self, ctx: Context) -> str:
        """Version of the source tree: commit hash, "+uncommitted" if dirty."""
        buf = io.BytesIO()
        await self.run_program(ctx, ".", "git", "diff", "--shortstat", output=buf)
        dirty = len(buf.getvalue()) > 0
        buf = io.BytesIO()
        await self.run_program(ctx, ".", "git", "log", "-n1", "--format=%H", output=buf)
        self.source_version = buf.getvalue().decode().strip()
        if dirty:
            self.source_version += "+uncommitted"
        logger.info(f"Source version: {self.source_version}")
        return self.source_version

    async def install_go_program(self, ctx: Context, srcpath: str) -> str:
        """go install srcpath into the workspace bin dir; return the binary path."""
        binfile = os.path.join(self.bin_dir, os.path.basename(srcpath.rstrip("/")))
        version = self.source_version
        await self.run_program(
            ctx, srcpath,
            "go", "install", "-ldflags",
            f"-X git.arvados.org/arvados.git/lib/cmd.version={version} -X main.version={version}",
            env=[f"GOBIN={self.bin_dir}"],
        )
        return binfile

    def using_rvm(self) -> bool:
        return bool(os.environ.get("rvm_path"))

    async def setup_ruby_env(self, ctx: Context) -> None:
        # With rvm in use, assume the caller has everything set up.
        if not self.using_rvm():
            self.environ.clean(["GEM_HOME=", "GEM_PATH="])
            buf = io.BytesIO()
            await self.run_program(ctx, self.source_path, "gem", "env", "gempath", output=buf)
            gempath = buf.getvalue().decode().strip().split(":")[0]
            if not gempath:
                raise BootError("gem env gempath: empty output")
            self.environ.prepend("PATH", gempath + "/bin:")
            self.environ.set("GEM_HOME", gempath)
            self.environ.set("GEM_PATH", gempath)
        # Passenger install doesn't work unless $HOME is ~user
        try:
            home = pwd.getpwuid(os.getuid()).pw_dir
        except KeyError as e:
            raise ResourceError(f"cannot look up home directory: {e}") from e
        self.environ.set("HOME", home)
