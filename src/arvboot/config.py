#!/usr/bin/env python3
"""
Cluster configuration model and TOML loading.

Files are TOML. A file ending in .j2 is rendered with Jinja2 first
(context: env = process environment) and then has $VAR / ${VAR}
placeholders expanded, failing on any variable that is not set.
Several files are deep merged in the order given.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from .errors import ConfigError

logger = logging.getLogger(__name__)

CLUSTER_ID_PATTERN = re.compile(r"^[a-z0-9]{5}$")
ENV_VAR_PATTERN = re.compile(r"\$(\w+)|\$\{([^}]+)\}")


@dataclass
class Service:
    external_url: str = ""
    # URL -> per-instance settings (usually empty)
    internal_urls: dict[str, dict] = field(default_factory=dict)


@dataclass
class Services:
    controller: Service = field(default_factory=Service)
    dispatch_cloud: Service = field(default_factory=Service)
    git_http: Service = field(default_factory=Service)
    health: Service = field(default_factory=Service)
    keepbalance: Service = field(default_factory=Service)
    keepproxy: Service = field(default_factory=Service)
    keepstore: Service = field(default_factory=Service)
    rails_api: Service = field(default_factory=Service)
    webdav: Service = field(default_factory=Service)
    webdav_download: Service = field(default_factory=Service)
    websocket: Service = field(default_factory=Service)
    workbench1: Service = field(default_factory=Service)

    def get(self, name: str) -> Service:
        if name not in _field_names(Services):
            raise ConfigError(f"unknown service: {name}")
        return getattr(self, name)

    def items(self) -> list[tuple[str, Service]]:
        return [(name, getattr(self, name)) for name in _field_names(Services)]


@dataclass
class API:
    rails_session_secret_token: str = ""


@dataclass
class Collections:
    blob_signing_key: str = ""


@dataclass
class Containers:
    dispatch_private_key: str = ""


@dataclass
class TLS:
    insecure: bool = False
    certificate: str = ""
    key: str = ""


@dataclass
class PostgreSQL:
    connection: dict[str, str] = field(default_factory=dict)


@dataclass
class Volume:
    driver: str = ""
    driver_parameters: dict[str, Any] = field(default_factory=dict)
    access_via_hosts: dict[str, dict] = field(default_factory=dict)


@dataclass
class SystemLogs:
    log_level: str = "info"
    format: str = "text"


@dataclass
class Cluster:
    cluster_id: str
    services: Services = field(default_factory=Services)
    system_root_token: str = ""
    management_token: str = ""
    api: API = field(default_factory=API)
    collections: Collections = field(default_factory=Collections)
    containers: Containers = field(default_factory=Containers)
    tls: TLS = field(default_factory=TLS)
    postgresql: PostgreSQL = field(default_factory=PostgreSQL)
    volumes: dict[str, Volume] = field(default_factory=dict)
    system_logs: SystemLogs = field(default_factory=SystemLogs)

    @classmethod
    def from_dict(cls, cluster_id: str, data: Mapping[str, Any]) -> "Cluster":
        if not CLUSTER_ID_PATTERN.match(cluster_id or ""):
            raise ConfigError(
                f"invalid cluster id {cluster_id!r}: expected 5 lowercase letters/digits"
            )
        path = f"clusters.{cluster_id}"
        _check_keys(cls, data, path, skip={"cluster_id"})

        services = Services()
        raw_services = data.get("services", {})
        _check_keys(Services, raw_services, f"{path}.services")
        for name, raw in raw_services.items():
            setattr(services, name, _section(Service, raw, f"{path}.services.{name}"))

        volumes = {
            uuid: _section(Volume, raw, f"{path}.volumes.{uuid}")
            for uuid, raw in _table(data.get("volumes", {}), f"{path}.volumes").items()
        }

        return cls(
            cluster_id=cluster_id,
            services=services,
            system_root_token=str(data.get("system_root_token", "")),
            management_token=str(data.get("management_token", "")),
            api=_section(API, data.get("api", {}), f"{path}.api"),
            collections=_section(Collections, data.get("collections", {}), f"{path}.collections"),
            containers=_section(Containers, data.get("containers", {}), f"{path}.containers"),
            tls=_section(TLS, data.get("tls", {}), f"{path}.tls"),
            postgresql=_section(PostgreSQL, data.get("postgresql", {}), f"{path}.postgresql"),
            volumes=volumes,
            system_logs=_section(SystemLogs, data.get("system_logs", {}), f"{path}.system_logs"),
        )

    def to_dict(self) -> dict:
        data = dataclasses.asdict(self)
        del data["cluster_id"]
        return data


@dataclass
class Config:
    clusters: dict[str, Cluster] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Config":
        _check_keys(cls, data, "<root>")
        clusters = {
            cluster_id: Cluster.from_dict(cluster_id, raw)
            for cluster_id, raw in _table(data.get("clusters", {}), "clusters").items()
        }
        return cls(clusters=clusters)

    def to_dict(self) -> dict:
        return {"clusters": {cid: cluster.to_dict() for cid, cluster in self.clusters.items()}}

    def get_cluster(self, cluster_id: str = "") -> Cluster:
        if cluster_id:
            if cluster_id not in self.clusters:
                raise ConfigError(f"cluster {cluster_id!r} is not configured")
            return self.clusters[cluster_id]
        if len(self.clusters) != 1:
            raise ConfigError(
                f"expected exactly one cluster in config, found {len(self.clusters)}"
            )
        return next(iter(self.clusters.values()))


def _field_names(cls) -> list[str]:
    return [f.name for f in dataclasses.fields(cls)]


def _table(value: Any, path: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ConfigError(f"{path}: expected a table, got {type(value).__name__}")
    return value


def _check_keys(cls, data: Any, path: str, skip: frozenset | set = frozenset()) -> None:
    allowed = set(_field_names(cls)) - set(skip)
    unknown = sorted(set(_table(data, path)) - allowed)
    if unknown:
        raise ConfigError(f"{path}: unknown key(s): {', '.join(unknown)}")


def _section(cls, data: Any, path: str):
    """Build a flat dataclass section, rejecting unknown keys."""
    _check_keys(cls, data, path)
    try:
        return cls(**dict(data))
    except TypeError as e:
        raise ConfigError(f"{path}: {e}") from e


def deep_merge_configs(base: dict, override: dict) -> dict:
    """Key-level merge: nested tables merge, everything else is replaced."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge_configs(result[key], value)
        else:
            if key in result:
                logger.debug(f"  Override: {key}")
            result[key] = value
    return result


def parse_toml_string(toml_text: str, source: str) -> dict:
    try:
        return tomllib.loads(toml_text)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Failed to parse TOML from {source}: {e}") from e


def expand_env_vars_or_fail(raw_text: str, source: str, environ: Optional[Mapping[str, str]] = None) -> str:
    """Expand $VAR / ${VAR}; fail on missing values."""
    environ = os.environ if environ is None else environ
    missing = set()

    def _replace(match: re.Match) -> str:
        var_name = match.group(1) or match.group(2)
        value = environ.get(var_name)
        if value is None or value == "":
            missing.add(var_name)
            return match.group(0)
        return value

    expanded = ENV_VAR_PATTERN.sub(_replace, raw_text)
    if missing:
        raise ConfigError(
            f"Missing required environment values in {source}: {', '.join(sorted(missing))}"
        )
    return expanded


def render_jinja2(template_path: Path | str, context: Mapping[str, Any]) -> str:
    from jinja2 import Template, TemplateError

    template_file = Path(template_path)
    if not template_file.exists():
        raise FileNotFoundError(f"Template file not found: {template_path}")

    template_content = template_file.read_text(encoding='utf-8')
    logger.debug(f"Rendering Jinja2 template: {template_path} ({len(template_content)} bytes)")
    try:
        return Template(template_content, keep_trailing_newline=True).render(**context)
    except TemplateError as e:
        raise ConfigError(f"Failed to render template {template_path}: {e}") from e


def read_config_file(path: Path | str) -> dict:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    if path.suffix == '.j2':
        rendered = render_jinja2(path, {"env": dict(os.environ)})
        return parse_toml_string(expand_env_vars_or_fail(rendered, str(path)), str(path))
    return parse_toml_string(path.read_text(encoding='utf-8'), str(path))


def load_config(*paths: Path | str) -> Config:
    """Load and deep merge config files, later files winning."""
    if not paths:
        raise ConfigError("no config file given")
    merged: dict = {}
    for path in paths:
        logger.debug(f"Loading config: {path}")
        merged = deep_merge_configs(merged, read_config_file(path))
    return Config.from_dict(merged)


def write_config(config: Config, output_path: Path | str) -> Path:
    """Serialize config with tomli_w."""
    import tomli_w

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, 'wb') as f:
        tomli_w.dump(config.to_dict(), f)
    return output_path
