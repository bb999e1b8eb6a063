#!/usr/bin/env python3
"""
Config autofill tests: ports, secrets, test volumes, temporary database.
"""

from pathlib import Path
from unittest.mock import patch
import re
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from arvboot.autofill import PortAllocator, autofill_config, random_hex_string  # noqa: E402
from arvboot.config import Config  # noqa: E402
from arvboot.errors import ConfigError, ResourceError, SecretGenerationError  # noqa: E402

HEX64 = re.compile(r"^[0-9a-f]{64}$")


def _source_tree(tmp_path: Path) -> Path:
    """Minimal source tree containing the dispatcher test key."""
    src = tmp_path / "src"
    keydir = src / "lib" / "dispatchcloud" / "test"
    keydir.mkdir(parents=True)
    (keydir / "sshkey_dispatch").write_text("-----BEGIN TEST KEY-----\n")
    return src


def _autofill(cfg: Config, tmp_path: Path, **kwargs):
    workspace = tmp_path / "ws"
    workspace.mkdir(exist_ok=True)
    options = {
        "cluster_type": "test",
        "listen_host": "127.0.0.1",
        "controller_addr": ":0",
        "workspace": workspace,
        "source_path": _source_tree(tmp_path),
    }
    options.update(kwargs)
    return autofill_config(cfg, **options)


class TestPortAllocator:
    def test_never_repeats(self):
        ports = PortAllocator()
        allocated = [ports.next_port("127.0.0.1") for _ in range(20)]
        assert len(set(allocated)) == 20
        assert all(0 < port < 65536 for port in allocated)

    def test_skips_ports_the_os_offers_twice(self):
        ports = PortAllocator()
        with patch("arvboot.autofill.available_port", side_effect=[4000, 4000, 4000, 4001, 4000, 4002]):
            assert ports.next_port("127.0.0.1") == 4000
            assert ports.next_port("127.0.0.1") == 4001
            assert ports.next_port("127.0.0.1") == 4002
        assert ports.used == {4000, 4001, 4002}

    def test_bind_failure_is_resource_error(self):
        with pytest.raises(ResourceError):
            PortAllocator().next_port("203.0.113.254")


class TestSecrets:
    def test_random_hex_string(self):
        first, second = random_hex_string(), random_hex_string()
        assert HEX64.match(first)
        assert HEX64.match(second)
        assert first != second

    def test_random_source_unavailable(self):
        with patch("arvboot.autofill.secrets.token_hex", side_effect=NotImplementedError("no urandom")):
            with pytest.raises(SecretGenerationError):
                random_hex_string()

    def test_generated_when_empty(self, tmp_path):
        cluster = _autofill(Config.from_dict({"clusters": {"zzzzz": {}}}), tmp_path)
        for secret in (
            cluster.system_root_token,
            cluster.management_token,
            cluster.api.rails_session_secret_token,
            cluster.collections.blob_signing_key,
        ):
            assert HEX64.match(secret)

    def test_preset_values_never_overwritten(self, tmp_path):
        cfg = Config.from_dict({"clusters": {"zzzzz": {
            "system_root_token": "preset-root",
            "management_token": "preset-mgmt",
            "api": {"rails_session_secret_token": "preset-rails"},
            "collections": {"blob_signing_key": "preset-blob"},
        }}})
        cluster = _autofill(cfg, tmp_path)
        assert cluster.system_root_token == "preset-root"
        assert cluster.management_token == "preset-mgmt"
        assert cluster.api.rails_session_secret_token == "preset-rails"
        assert cluster.collections.blob_signing_key == "preset-blob"


class TestAutofillTestCluster:
    def test_end_to_end(self, tmp_path):
        cluster = _autofill(
            Config.from_dict({"clusters": {"zzzzz": {}}}),
            tmp_path,
            own_temporary_database=True,
        )

        assert cluster.services.controller.external_url.startswith("https://127.0.0.1:")
        assert cluster.postgresql.connection["dbname"] == "arvados_test"
        assert cluster.postgresql.connection["user"] == "arvados"
        assert cluster.postgresql.connection["port"].isdigit()
        assert cluster.tls.insecure is True
        assert cluster.containers.dispatch_private_key.startswith("-----BEGIN TEST KEY")

        keepstore_urls = sorted(cluster.services.keepstore.internal_urls)
        assert len(keepstore_urls) == 2

        assert len(cluster.volumes) == 2
        roots = set()
        for uuid, volume in cluster.volumes.items():
            assert re.match(r"^zzzzz-nyw5e-\d{15}$", uuid)
            assert volume.driver == "Directory"
            root = Path(volume.driver_parameters["Root"])
            assert root.is_dir()
            roots.add(root)
            assert len(volume.access_via_hosts) == 1
        assert len(roots) == 2
        accessed = sorted(url for v in cluster.volumes.values() for url in v.access_via_hosts)
        assert accessed == keepstore_urls

    def test_test_cluster_has_no_dispatcher(self, tmp_path):
        cluster = _autofill(Config.from_dict({"clusters": {"zzzzz": {}}}), tmp_path)
        assert cluster.services.dispatch_cloud.internal_urls == {}

    def test_external_url_schemes(self, tmp_path):
        services = _autofill(Config.from_dict({"clusters": {"zzzzz": {}}}), tmp_path).services
        assert services.keepproxy.external_url.startswith("https://")
        assert services.workbench1.external_url.startswith("https://")
        assert services.websocket.external_url.startswith("wss://")
        for name, svc in services.items():
            for url in svc.internal_urls:
                assert url.startswith("http://127.0.0.1:"), name

    def test_all_ports_distinct(self, tmp_path):
        cluster = _autofill(Config.from_dict({"clusters": {"zzzzz": {}}}), tmp_path)
        urls = [cluster.services.controller.external_url]
        for _name, svc in cluster.services.items():
            if svc.external_url and svc is not cluster.services.controller:
                urls.append(svc.external_url)
            urls.extend(svc.internal_urls)
        ports = [url.rsplit(":", 1)[1] for url in urls]
        assert len(ports) == len(set(ports))

    def test_configured_urls_kept(self, tmp_path):
        cfg = Config.from_dict({"clusters": {"zzzzz": {"services": {
            "controller": {"external_url": "https://ctrl.example:443"},
            "rails_api": {"internal_urls": {"http://127.0.0.1:9000": {}}},
        }}}})
        cluster = _autofill(cfg, tmp_path)
        assert cluster.services.controller.external_url == "https://ctrl.example:443"
        assert cluster.services.rails_api.internal_urls == {"http://127.0.0.1:9000": {}}

    def test_explicit_controller_port(self, tmp_path):
        cluster = _autofill(
            Config.from_dict({"clusters": {"zzzzz": {}}}), tmp_path, controller_addr="127.0.0.1:0",
        )
        assert cluster.services.controller.external_url.startswith("https://127.0.0.1:")
        assert not cluster.services.controller.external_url.endswith(":0")

    def test_nonlocal_controller_address_rejected(self, tmp_path):
        with pytest.raises(ConfigError, match="not a local address"):
            _autofill(
                Config.from_dict({"clusters": {"zzzzz": {}}}), tmp_path, controller_addr="203.0.113.254:0",
            )

    def test_missing_dispatch_key(self, tmp_path):
        with pytest.raises(ResourceError, match="dispatch key"):
            _autofill(Config.from_dict({"clusters": {"zzzzz": {}}}), tmp_path, source_path=tmp_path / "empty")


class TestAutofillProduction:
    def test_production_keeps_tls_and_skips_volumes(self, tmp_path):
        cluster = _autofill(
            Config.from_dict({"clusters": {"zzzzz": {}}}),
            tmp_path,
            cluster_type="production",
            source_path=tmp_path / "no-source-needed",
        )
        assert cluster.tls.insecure is False
        assert cluster.volumes == {}
        assert len(cluster.services.keepstore.internal_urls) == 1
        assert len(cluster.services.dispatch_cloud.internal_urls) == 1
        assert cluster.postgresql.connection == {}
