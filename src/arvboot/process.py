#!/usr/bin/env python3
"""
Run one external program under supervision.

The child's stderr (and stdout, unless the caller captures it) is copied
line by line to the supervisor's diagnostic stream with a "[prefix] " tag.
When the shared context is cancelled the child receives SIGTERM; if the run
has not finished GRACE_PERIOD seconds later, its output pipes are closed so
the copiers unblock. The child is never killed here.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
from typing import IO, TYPE_CHECKING, Iterable, Optional, TextIO

from .config_constants import GRACE_PERIOD
from .context import Context
from .errors import ContextCancelled, ProgramError

if TYPE_CHECKING:
    from .supervisor import Supervisor

logger = logging.getLogger(__name__)

STDOUT = 1
STDERR = 2


def log_prefix(prog: str, args: list[str], directory: str, bindir: str = "") -> str:
    """Tag for a child's log lines.

    Generic launchers are named after what they launch: "bundle exec X ..."
    becomes X, and "arvados-server X ..." becomes X.
    """
    prefix = prog
    if bindir and prefix.startswith(bindir.rstrip('/') + '/'):
        prefix = prefix[len(bindir.rstrip('/')) + 1:]
    if prefix == 'bundle' and len(args) > 2 and args[0] == 'exec':
        prefix = args[1]
    elif prefix == 'arvados-server' and len(args) > 1:
        prefix = args[0]
    if not os.path.isabs(directory):
        prefix = f"{directory}: {prefix}"
    return prefix


class LogPrefixer:
    """Write complete lines to a text stream, each tagged with a prefix."""

    def __init__(self, stream: TextIO, prefix: str) -> None:
        self.stream = stream
        self.prefix = f"[{prefix}] "

    def write_line(self, line: bytes) -> None:
        text = line.decode('utf-8', errors='replace').rstrip('\r')
        self.stream.write(f"{self.prefix}{text}\n")
        self.stream.flush()


class _ChildProtocol(asyncio.SubprocessProtocol):
    """Copies pipe data as it arrives and tracks pipe and process lifetime."""

    def __init__(self, logwriter: LogPrefixer, output: Optional[IO[bytes]]) -> None:
        loop = asyncio.get_running_loop()
        self.logwriter = logwriter
        self.output = output
        self.stdout_done: asyncio.Future = loop.create_future()
        self.stderr_done: asyncio.Future = loop.create_future()
        self.exited: asyncio.Future = loop.create_future()
        self._partial = {STDOUT: b'', STDERR: b''}

    def pipe_data_received(self, fd: int, data: bytes) -> None:
        if fd == STDOUT and self.output is not None:
            self.output.write(data)
            return
        buf = self._partial[fd] + data
        *lines, self._partial[fd] = buf.split(b'\n')
        for line in lines:
            self.logwriter.write_line(line)

    def pipe_connection_lost(self, fd: int, exc: Optional[Exception]) -> None:
        if self._partial.get(fd):
            self.logwriter.write_line(self._partial[fd])
            self._partial[fd] = b''
        done = self.stdout_done if fd == STDOUT else self.stderr_done
        if not done.done():
            done.set_result(None)

    def process_exited(self) -> None:
        if not self.exited.done():
            self.exited.set_result(None)

    def finished(self) -> asyncio.Future:
        return asyncio.gather(self.stdout_done, self.stderr_done, self.exited)


class _Child:
    def __init__(self, cmdline: list[str], directory: str) -> None:
        self.cmdline = cmdline
        self.directory = directory
        # Set once the spawn attempt is over, successful or not.
        self.started = asyncio.Event()
        self.transport: Optional[asyncio.SubprocessTransport] = None
        self.protocol: Optional[_ChildProtocol] = None

    async def terminate_on_cancel(self, ctx: Context) -> None:
        await ctx.done()
        await self.started.wait()
        if self.transport is None or self.protocol is None:
            return
        pid = self.transport.get_pid()
        # An exited child can still have its pipes held open by its own children.
        if not self.protocol.exited.done():
            logger.debug(f"Sending SIGTERM to PID {pid}: {self.cmdline} (dir={self.directory})")
            try:
                self.transport.send_signal(signal.SIGTERM)
            except ProcessLookupError:
                pass
        try:
            await asyncio.wait_for(asyncio.shield(self.protocol.finished()), GRACE_PERIOD)
            return
        except asyncio.TimeoutError:
            pass
        for fd in (STDOUT, STDERR):
            pipe = self.transport.get_pipe_transport(fd)
            if pipe is not None:
                pipe.close()
        if self.protocol.exited.done():
            logger.warning(
                f"Closed output pipes still held open {GRACE_PERIOD:g}s after cancel "
                f"(PID {pid}): {self.cmdline}"
            )
        else:
            logger.warning(
                f"Still waiting for child process to exit {GRACE_PERIOD:g}s after SIGTERM "
                f"(PID {pid}): {self.cmdline}"
            )


def describe_returncode(returncode: int) -> str:
    if returncode < 0:
        try:
            return f"signal: {signal.Signals(-returncode).name}"
        except ValueError:
            return f"signal {-returncode}"
    return f"exit status {returncode}"


async def run_program(
    ctx: Context,
    supervisor: "Supervisor",
    directory: str,
    *argv: str,
    output: Optional[IO[bytes]] = None,
    env: Optional[Iterable[str]] = None,
) -> None:
    """
    Run argv[0] with argv[1:] in directory and wait for it to finish.

    Relative directories are taken relative to the source tree. Extra env
    entries override the supervisor's. Returns normally only on exit status
    0; raises ContextCancelled if ctx was cancelled meanwhile, ProgramError
    for any other failure.
    """
    if not argv:
        raise ValueError("run_program needs a program name")
    prog, args = argv[0], list(argv[1:])
    cmdline = [prog, *args]
    if ctx.cancelled():
        raise ContextCancelled()
    logger.info(f"Executing {cmdline} (dir={directory})")

    if os.path.isabs(directory):
        workdir = directory
    else:
        workdir = os.path.join(supervisor.source_path, directory)

    logwriter = LogPrefixer(supervisor.log_stream, log_prefix(prog, args, directory, supervisor.bin_dir))
    child_env = supervisor.environ.as_dict(env)
    child = _Child(cmdline, directory)
    watcher = asyncio.create_task(child.terminate_on_cancel(ctx))

    loop = asyncio.get_running_loop()
    try:
        try:
            child.transport, child.protocol = await loop.subprocess_exec(
                lambda: _ChildProtocol(logwriter, output),
                supervisor.environ.look_path(prog),
                *args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=workdir,
                env=child_env,
            )
        except OSError as e:
            raise ProgramError(cmdline, str(e)) from e
        finally:
            child.started.set()

        try:
            await child.protocol.finished()
            returncode = child.transport.get_returncode()
        finally:
            child.transport.close()
    finally:
        watcher.cancel()

    if ctx.cancelled():
        # Report the cancellation, not the SIGTERM it caused.
        raise ContextCancelled()
    if returncode != 0:
        raise ProgramError(cmdline, describe_returncode(returncode), returncode)
