#!/usr/bin/env python3
"""
Supervised tasks that make up a cluster.

Every task is a frozen dataclass identified by its name; two values with the
same name are the same task. run() waits for the task's dependencies, does
its work, and returns once the task is ready for dependents. Long-running
programs are handed to supervisor.run_in_background() so they keep running
(and get supervised) after run() returns.
"""

from __future__ import annotations

import io
import logging
import os
import pwd
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

from .certificates import TEMPLATE_DIR, CreateCertificates
from .config import Service, render_jinja2
from .config_constants import (
    HTTPS_EXTERNAL_SERVICES,
    NGINX_TEMPLATE,
    SERVER_CERT,
    SERVER_KEY,
    TEMP_DB_PASSWORD,
    TEMP_DB_USER,
    WORKSPACE_NGINX_CONFIG,
    WORKSPACE_POSTGRESQL_DIR,
    WSS_EXTERNAL_SERVICES,
)
from .context import Context
from .errors import ResourceError
from .graph import FailFunc
from .netutil import addr_is_local, internal_port, url_host_port, wait_for_connect

if TYPE_CHECKING:
    from .supervisor import Supervisor

logger = logging.getLogger(__name__)

NGINX_SBIN_DIRS = ('/sbin', '/usr/sbin', '/usr/local/sbin')

# External service -> service whose internal URL serves it
NGINX_UPSTREAMS = {
    'webdav_download': 'webdav',
}

PASSENGER_LOG_LEVELS = {
    'debug': '5',
    'info': '4',
    'warn': '2',
    'warning': '2',
    'error': '1',
    'fatal': '0',
    'panic': '0',
}


def local_internal_urls(svc: Service) -> list[str]:
    """Internal URLs of svc that this host can listen on, sorted."""
    urls = []
    for url in sorted(svc.internal_urls):
        if addr_is_local(url_host_port(url)):
            urls.append(url)
        else:
            logger.debug(f"Skipping non-local internal URL {url}")
    return urls


@dataclass(frozen=True)
class RunPostgreSQL:
    depends: tuple = (CreateCertificates(),)

    @property
    def name(self) -> str:
        return "postgresql"

    async def run(self, ctx: Context, fail: FailFunc, supervisor: "Supervisor") -> None:
        await supervisor.wait(ctx, *self.depends)
        if not supervisor.own_temporary_database:
            logger.info("Using the configured database; not starting PostgreSQL")
            return

        buf = io.BytesIO()
        await supervisor.run_program(ctx, supervisor.tempdir, "pg_config", "--bindir", output=buf)
        bindir = buf.getvalue().decode().strip()

        datadir = Path(supervisor.tempdir) / WORKSPACE_POSTGRESQL_DIR
        try:
            datadir.mkdir(mode=0o755)
            # postgres insists on owning its key file with mode 0600
            shutil.copy(Path(supervisor.tempdir) / SERVER_CERT, datadir / SERVER_CERT)
            shutil.copy(Path(supervisor.tempdir) / SERVER_KEY, datadir / SERVER_KEY)
            os.chmod(datadir / SERVER_KEY, 0o600)
        except OSError as e:
            raise ResourceError(f"cannot prepare {datadir}: {e}") from e

        prefix: list[str] = []
        superuser = pwd.getpwuid(os.getuid()).pw_name
        if os.getuid() == 0:
            # initdb and postgres refuse to run as root
            try:
                pg_user = pwd.getpwnam("postgres")
            except KeyError as e:
                raise ResourceError("running as root, but there is no postgres user") from e
            for path in (datadir, datadir / SERVER_CERT, datadir / SERVER_KEY):
                os.chown(path, pg_user.pw_uid, pg_user.pw_gid)
            prefix = ["sudo", "-u", "postgres"]
            superuser = "postgres"

        await supervisor.run_program(
            ctx, supervisor.tempdir,
            *prefix, os.path.join(bindir, "initdb"), "-D", str(datadir), "-E", "utf8",
        )

        port = supervisor.cluster.postgresql.connection["port"]
        supervisor.run_in_background(fail, supervisor.run_program(
            ctx, supervisor.tempdir,
            *prefix, os.path.join(bindir, "postgres"),
            "-D", str(datadir),
            "-k", str(datadir),
            "-p", port,
            "-c", "ssl=on",
            "-c", f"ssl_cert_file={datadir / SERVER_CERT}",
            "-c", f"ssl_key_file={datadir / SERVER_KEY}",
        ), "postgres")
        await wait_for_connect(ctx, f"localhost:{port}")

        # The database itself is created by "rake db:setup" (SeedDatabase).
        await supervisor.run_program(
            ctx, supervisor.tempdir,
            os.path.join(bindir, "psql"),
            "--dbname=postgres",
            f"--host={datadir}",
            f"--port={port}",
            f"--username={superuser}",
            "-c", f"CREATE ROLE {TEMP_DB_USER} WITH LOGIN SUPERUSER ENCRYPTED PASSWORD '{TEMP_DB_PASSWORD}'",
        )


@dataclass(frozen=True)
class RunNginx:
    depends: tuple = (CreateCertificates(),)

    @property
    def name(self) -> str:
        return "nginx"

    def servers(self, supervisor: "Supervisor") -> list[dict]:
        servers = []
        services = supervisor.cluster.services
        for name in (*HTTPS_EXTERNAL_SERVICES, *WSS_EXTERNAL_SERVICES):
            svc = services.get(name)
            upstream = services.get(NGINX_UPSTREAMS.get(name, name))
            if not svc.external_url or not upstream.internal_urls:
                continue
            servers.append({
                "service": name,
                "listen": url_host_port(svc.external_url),
                "upstream": url_host_port(sorted(upstream.internal_urls)[0]),
                "websocket": name in WSS_EXTERNAL_SERVICES,
            })
        return servers

    def find_nginx(self, supervisor: "Supervisor") -> str:
        path = supervisor.environ.look_path("nginx")
        if os.path.isabs(path):
            return path
        for directory in NGINX_SBIN_DIRS:
            candidate = os.path.join(directory, "nginx")
            if os.access(candidate, os.X_OK):
                return candidate
        raise ResourceError("nginx not found in PATH or " + ", ".join(NGINX_SBIN_DIRS))

    async def run(self, ctx: Context, fail: FailFunc, supervisor: "Supervisor") -> None:
        await supervisor.wait(ctx, *self.depends)
        servers = self.servers(supervisor)
        conf = os.path.join(supervisor.tempdir, WORKSPACE_NGINX_CONFIG)
        rendered = render_jinja2(TEMPLATE_DIR / NGINX_TEMPLATE, {
            "servers": servers,
            "listen_host": supervisor.listen_host,
            "temp_dir": supervisor.tempdir,
            "ssl_certificate": os.path.join(supervisor.tempdir, SERVER_CERT),
            "ssl_certificate_key": os.path.join(supervisor.tempdir, SERVER_KEY),
        })
        try:
            Path(conf).write_text(rendered)
        except OSError as e:
            raise ResourceError(f"cannot write {conf}: {e}") from e

        nginx = self.find_nginx(supervisor)
        supervisor.run_in_background(fail, supervisor.run_program(
            ctx, supervisor.tempdir, nginx,
            "-g", "error_log stderr info;",
            "-g", f"pid {os.path.join(supervisor.tempdir, 'nginx.pid')};",
            "-p", supervisor.tempdir,
            "-c", conf,
        ), "nginx")
        for server in servers:
            await wait_for_connect(ctx, server["listen"])


@dataclass(frozen=True)
class RunServiceCommand:
    """Run "arvados-server <command>" once per local internal URL of a service."""
    command: str
    service: str
    depends: tuple = ()

    @property
    def name(self) -> str:
        return f"runServiceCommand:{self.command}"

    async def run(self, ctx: Context, fail: FailFunc, supervisor: "Supervisor") -> None:
        await supervisor.wait(ctx, *self.depends)
        prog = os.path.join(supervisor.bin_dir, "arvados-server")
        urls = local_internal_urls(supervisor.cluster.services.get(self.service))
        for url in urls:
            supervisor.run_in_background(fail, supervisor.run_program(
                ctx, ".", prog, self.command, "-config", supervisor.configfile,
                env=[f"ARVADOS_SERVICE_INTERNAL_URL={url}"],
            ), f"{self.command} on {url}")
        for url in urls:
            await wait_for_connect(ctx, url_host_port(url))


@dataclass(frozen=True)
class RunGoProgram:
    """Build a Go program from the source tree and run it.

    With a service, one process per local internal URL; without one, a
    single process that nobody connects to.
    """
    src: str
    service: str = ""
    depends: tuple = ()

    @property
    def name(self) -> str:
        return f"runGoProgram:{os.path.basename(self.src.rstrip('/'))}"

    async def run(self, ctx: Context, fail: FailFunc, supervisor: "Supervisor") -> None:
        await supervisor.wait(ctx, *self.depends)
        binfile = await supervisor.install_go_program(ctx, self.src)
        if not self.service:
            supervisor.run_in_background(
                fail, supervisor.run_program(ctx, supervisor.tempdir, binfile), binfile,
            )
            return
        urls = local_internal_urls(supervisor.cluster.services.get(self.service))
        for url in urls:
            supervisor.run_in_background(fail, supervisor.run_program(
                ctx, supervisor.tempdir, binfile,
                env=[f"ARVADOS_SERVICE_INTERNAL_URL={url}"],
            ), f"{binfile} on {url}")
        for url in urls:
            await wait_for_connect(ctx, url_host_port(url))


@dataclass(frozen=True)
class InstallPassenger:
    src: str
    depends: tuple = ()

    @property
    def name(self) -> str:
        return f"installPassenger:{self.src}"

    async def run(self, ctx: Context, fail: FailFunc, supervisor: "Supervisor") -> None:
        await supervisor.wait(ctx, *self.depends)
        # Concurrent bundle installs step on each other's gems.
        async with supervisor.install_lock:
            buf = io.BytesIO()
            await supervisor.run_program(ctx, self.src, "gem", "list", "--details", "bundler", output=buf)
            if not re.search(rb"^bundler ", buf.getvalue(), re.MULTILINE):
                await supervisor.run_program(ctx, self.src, "gem", "install", "--user", "bundler", "--no-document")

            home = supervisor.environ.get("HOME") or os.path.expanduser("~")
            await supervisor.run_program(
                ctx, self.src, "bundle", "install", "--jobs", "4", "--path", os.path.join(home, ".gem"),
            )
            await supervisor.run_program(ctx, self.src, "bundle", "exec", "passenger-config", "build-native-support")
            await supervisor.run_program(ctx, self.src, "bundle", "exec", "passenger-config", "install-standalone-runtime")
            await supervisor.run_program(ctx, self.src, "bundle", "exec", "passenger-config", "validate-install")


@dataclass(frozen=True)
class RunPassenger:
    src: str
    service: str = ""
    depends: tuple = ()

    @property
    def name(self) -> str:
        return f"runPassenger:{self.src}"

    async def run(self, ctx: Context, fail: FailFunc, supervisor: "Supervisor") -> None:
        await supervisor.wait(ctx, *self.depends)
        svc = supervisor.cluster.services.get(self.service)
        port = internal_port(svc.internal_urls)
        url = next(iter(svc.internal_urls))
        host = urlsplit(url).hostname or supervisor.listen_host
        addr = url_host_port(url)
        loglevel = PASSENGER_LOG_LEVELS.get(supervisor.cluster.system_logs.log_level.lower(), '4')
        pidfile = os.path.join(supervisor.tempdir, f"passenger.{os.path.basename(self.src)}.pid")
        supervisor.run_in_background(fail, supervisor.run_program(
            ctx, self.src,
            "bundle", "exec", "passenger", "start",
            "-p", port,
            "--address", host,
            "--log-file", "/dev/stderr",
            "--log-level", loglevel,
            "--no-friendly-error-pages",
            "--pid-file", pidfile,
            env=["ARVADOS_RAILS_LOG_TO_STDOUT=1"],
        ), f"passenger in {self.src}")
        await wait_for_connect(ctx, addr)


@dataclass(frozen=True)
class SeedDatabase:
    depends: tuple = (RunPostgreSQL(), InstallPassenger("services/api"))

    @property
    def name(self) -> str:
        return "seedDatabase"

    async def run(self, ctx: Context, fail: FailFunc, supervisor: "Supervisor") -> None:
        await supervisor.wait(ctx, *self.depends)
        if supervisor.cluster_type == "production":
            return
        await supervisor.run_program(ctx, "services/api", "bundle", "exec", "rake", "db:setup")


def default_tasks(supervisor: "Supervisor") -> list:
    """The full cluster: every service this host runs, in dependency form."""
    api_install = InstallPassenger("services/api")
    tasks = [
        CreateCertificates(),
        RunPostgreSQL(),
        RunNginx(),
        RunServiceCommand("controller", "controller", depends=(RunPostgreSQL(),)),
        RunGoProgram("services/arv-git-httpd", "git_http"),
        RunGoProgram("services/health", "health"),
        RunGoProgram("services/keepproxy", "keepproxy", depends=(RunPassenger("services/api"),)),
        RunGoProgram("services/keepstore", "keepstore"),
        RunGoProgram("services/keep-web", "webdav"),
        RunServiceCommand("ws", "websocket", depends=(RunPostgreSQL(),)),
        api_install,
        RunPassenger("services/api", "rails_api", depends=(CreateCertificates(), RunPostgreSQL(), api_install)),
        # Depending on the api install keeps workbench from delaying api startup.
        InstallPassenger("apps/workbench", depends=(api_install,)),
        RunPassenger("apps/workbench", "workbench1", depends=(InstallPassenger("apps/workbench"),)),
        SeedDatabase(),
    ]
    if supervisor.cluster_type != "test":
        tasks += [
            RunServiceCommand("dispatch-cloud", "dispatch_cloud"),
            RunGoProgram("services/keep-balance"),
        ]
    return tasks
