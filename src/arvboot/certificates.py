#!/usr/bin/env python3
"""
Self-signed TLS material for a dev/test cluster.

Creates a throwaway root CA in the workspace and uses it to sign a server
certificate that nginx presents for every external URL.
"""

from __future__ import annotations

import ipaddress
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from .config import render_jinja2
from .config_constants import (
    CERT_SUBJECT,
    ROOT_CA_CERT,
    ROOT_CA_KEY,
    SAN_TEMPLATE,
    SERVER_CERT,
    SERVER_CSR,
    SERVER_KEY,
    SERVER_SIGNING_CONFIG,
    SYSTEM_OPENSSL_CONFIG,
)
from .context import Context
from .errors import ResourceError
from .graph import FailFunc

if TYPE_CHECKING:
    from .supervisor import Supervisor

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"

# Used when the system has no openssl.cnf to start from
MINIMAL_OPENSSL_CONFIG = """\
[req]
distinguished_name = req_distinguished_name
[req_distinguished_name]
"""


def san_names(listen_host: str) -> tuple[list[str], list[str]]:
    """DNS and IP subject alternative names for the server certificate."""
    dns_names = ["localhost", "localhost.localdomain"]
    ip_addresses: list[str] = []
    if listen_host:
        try:
            ip_addresses.append(str(ipaddress.ip_address(listen_host)))
        except ValueError:
            if listen_host not in dns_names:
                dns_names.append(listen_host)
    return dns_names, ip_addresses


def write_signing_config(workspace: str, listen_host: str) -> Path:
    """System openssl.cnf plus a [SAN] section, written to the workspace."""
    try:
        base = Path(SYSTEM_OPENSSL_CONFIG).read_text()
    except FileNotFoundError:
        logger.debug(f"{SYSTEM_OPENSSL_CONFIG} not found, using a minimal [req] section")
        base = MINIMAL_OPENSSL_CONFIG
    except OSError as e:
        raise ResourceError(f"cannot read {SYSTEM_OPENSSL_CONFIG}: {e}") from e

    dns_names, ip_addresses = san_names(listen_host)
    san = render_jinja2(TEMPLATE_DIR / SAN_TEMPLATE, {
        "dns_names": dns_names,
        "ip_addresses": ip_addresses,
    })
    path = Path(workspace) / SERVER_SIGNING_CONFIG
    try:
        path.write_text(base + san)
    except OSError as e:
        raise ResourceError(f"cannot write {path}: {e}") from e
    return path


@dataclass(frozen=True)
class CreateCertificates:
    depends: tuple = ()

    @property
    def name(self) -> str:
        return "certificates"

    async def run(self, ctx: Context, fail: FailFunc, supervisor: "Supervisor") -> None:
        await supervisor.wait(ctx, *self.depends)
        workdir = supervisor.tempdir

        # Root CA
        await supervisor.run_program(ctx, workdir, "openssl", "genrsa", "-out", ROOT_CA_KEY, "4096")
        await supervisor.run_program(
            ctx, workdir, "openssl", "req", "-x509", "-new", "-nodes",
            "-key", ROOT_CA_KEY, "-sha256", "-days", "3650",
            "-out", ROOT_CA_CERT, "-subj", CERT_SUBJECT,
        )

        # Server key, signing request, certificate
        await supervisor.run_program(ctx, workdir, "openssl", "genrsa", "-out", SERVER_KEY, "2048")
        write_signing_config(workdir, supervisor.listen_host)
        await supervisor.run_program(
            ctx, workdir, "openssl", "req", "-new", "-sha256",
            "-key", SERVER_KEY, "-subj", CERT_SUBJECT,
            "-reqexts", "SAN", "-config", SERVER_SIGNING_CONFIG,
            "-out", SERVER_CSR,
        )
        await supervisor.run_program(
            ctx, workdir, "openssl", "x509", "-req", "-in", SERVER_CSR,
            "-CA", ROOT_CA_CERT, "-CAkey", ROOT_CA_KEY, "-CAcreateserial",
            "-out", SERVER_CERT, "-days", "3650", "-sha256",
            "-extfile", SERVER_SIGNING_CONFIG, "-extensions", "SAN",
        )
        logger.info(f"Root CA certificate: {os.path.join(workdir, ROOT_CA_CERT)}")
