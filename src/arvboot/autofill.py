#!/usr/bin/env python3
"""
Fill in the parts of a cluster configuration the operator left out.

Runs once per boot, single threaded, before any task starts:
ports for unset endpoints, random secrets, test volumes and an optional
throwaway database. Values that are already set are never changed.
"""

from __future__ import annotations

import logging
import secrets
from pathlib import Path
from typing import Optional

from .config import Cluster, Config, Service, Volume
from .config_constants import (
    AUTOFILL_SERVICES,
    DISPATCH_TEST_KEY,
    HTTPS_EXTERNAL_SERVICES,
    SECRET_HEX_LENGTH,
    TEMP_DB_NAME,
    TEMP_DB_PASSWORD,
    TEMP_DB_USER,
    VOLUME_DRIVER_DIRECTORY,
    VOLUME_UUID_INFIX,
    WSS_EXTERNAL_SERVICES,
)
from .errors import ConfigError, ResourceError, SecretGenerationError
from .netutil import addr_is_local, available_port, join_host_port, split_host_port

logger = logging.getLogger(__name__)


class PortAllocator:
    """Hands out free TCP ports, never the same one twice per run.

    A port is only free until somebody binds it, so every port we hand out
    is remembered and refused if the OS offers it again.
    """

    def __init__(self) -> None:
        self.used: set[int] = set()

    def next_port(self, host: str) -> int:
        while True:
            port = available_port(host)
            if port in self.used:
                continue
            self.used.add(port)
            return port


def random_hex_string(chars: int = SECRET_HEX_LENGTH) -> str:
    try:
        return secrets.token_hex(chars // 2)
    except (NotImplementedError, OSError) as e:
        raise SecretGenerationError(f"random source unavailable: {e}") from e


def autofill_config(
    cfg: Config,
    *,
    cluster_type: str,
    listen_host: str,
    controller_addr: str,
    workspace: Path | str,
    source_path: Path | str = ".",
    own_temporary_database: bool = False,
    ports: Optional[PortAllocator] = None,
) -> Cluster:
    """Complete the (single) cluster in cfg in place and return it."""
    cluster = cfg.get_cluster()
    ports = ports or PortAllocator()
    workspace = Path(workspace)

    def next_url(scheme: str) -> str:
        return f"{scheme}://{join_host_port(listen_host, ports.next_port(listen_host))}"

    services = cluster.services
    if not services.controller.external_url:
        host, port = split_host_port(controller_addr)
        if not host:
            host = listen_host
        if not addr_is_local(join_host_port(host, port or 0)):
            raise ConfigError(f"controller address {controller_addr!r} is not a local address")
        if port in ("", "0"):
            port = str(ports.next_port(host))
        services.controller.external_url = f"https://{join_host_port(host, port)}"
        logger.debug(f"  controller external URL: {services.controller.external_url}")

    for name in AUTOFILL_SERVICES:
        if name == "dispatch_cloud" and cluster_type == "test":
            continue
        svc: Service = services.get(name)
        if not svc.external_url:
            if name in HTTPS_EXTERNAL_SERVICES:
                svc.external_url = next_url("https")
            elif name in WSS_EXTERNAL_SERVICES:
                svc.external_url = next_url("wss")
        if not svc.internal_urls:
            svc.internal_urls = {next_url("http"): {}}

    if not cluster.system_root_token:
        cluster.system_root_token = random_hex_string()
    if not cluster.management_token:
        cluster.management_token = random_hex_string()
    if not cluster.api.rails_session_secret_token:
        cluster.api.rails_session_secret_token = random_hex_string()
    if not cluster.collections.blob_signing_key:
        cluster.collections.blob_signing_key = random_hex_string()

    if cluster_type != "production":
        if not cluster.containers.dispatch_private_key:
            key_path = Path(source_path).joinpath(*DISPATCH_TEST_KEY)
            try:
                cluster.containers.dispatch_private_key = key_path.read_text()
            except OSError as e:
                raise ResourceError(f"cannot read dispatch key {key_path}: {e}") from e
        cluster.tls.insecure = True

    if cluster_type == "test":
        # Second keepstore process, then one directory volume per keepstore.
        services.keepstore.internal_urls[next_url("http")] = {}
        cluster.volumes = {}
        for volnum, url in enumerate(sorted(services.keepstore.internal_urls)):
            datadir = workspace / f"keep{volnum}.data"
            try:
                datadir.mkdir(mode=0o755, exist_ok=True)
            except OSError as e:
                raise ResourceError(f"cannot create volume directory {datadir}: {e}") from e
            uuid = f"{cluster.cluster_id}-{VOLUME_UUID_INFIX}-{volnum:015d}"
            cluster.volumes[uuid] = Volume(
                driver=VOLUME_DRIVER_DIRECTORY,
                driver_parameters={"Root": str(datadir)},
                access_via_hosts={url: {}},
            )
            logger.debug(f"  volume {uuid}: {datadir} via {url}")

    if own_temporary_database:
        cluster.postgresql.connection = {
            "client_encoding": "utf8",
            "host": "localhost",
            "port": str(ports.next_port(listen_host)),
            "dbname": TEMP_DB_NAME,
            "user": TEMP_DB_USER,
            "password": TEMP_DB_PASSWORD,
        }

    verify_autofilled(cluster, cluster_type)
    return cluster


def verify_autofilled(cluster: Cluster, cluster_type: str) -> None:
    """Raise ConfigError if a field some task reads is still empty."""
    missing = []
    for path, value in (
        ("system_root_token", cluster.system_root_token),
        ("management_token", cluster.management_token),
        ("api.rails_session_secret_token", cluster.api.rails_session_secret_token),
        ("collections.blob_signing_key", cluster.collections.blob_signing_key),
        ("services.controller.external_url", cluster.services.controller.external_url),
    ):
        if not value:
            missing.append(path)
    for name in AUTOFILL_SERVICES:
        if name == "dispatch_cloud" and cluster_type == "test":
            continue
        if not cluster.services.get(name).internal_urls:
            missing.append(f"services.{name}.internal_urls")
    if missing:
        raise ConfigError(f"config still incomplete after autofill: {', '.join(missing)}")
