#!/usr/bin/env python3
"""
Cluster config loading tests.
"""

from pathlib import Path
import sys
import tomllib

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from arvboot.config import (  # noqa: E402
    Config,
    deep_merge_configs,
    expand_env_vars_or_fail,
    load_config,
    write_config,
)
from arvboot.errors import ConfigError  # noqa: E402


def _write(path: Path, text: str) -> Path:
    path.write_text(text)
    return path


class TestLoadConfig:
    def test_minimal_cluster(self, tmp_path):
        cfg = load_config(_write(tmp_path / "config.toml", "[clusters.zzzzz]\n"))
        cluster = cfg.get_cluster()
        assert cluster.cluster_id == "zzzzz"
        assert cluster.services.controller.external_url == ""
        assert cluster.system_logs.log_level == "info"

    def test_services_and_volumes(self, tmp_path):
        cfg = load_config(_write(tmp_path / "config.toml", """
[clusters.zzzzz]
management_token = "abc"

[clusters.zzzzz.services.keepstore.internal_urls."http://localhost:25107"]

[clusters.zzzzz.volumes.zzzzz-nyw5e-000000000000000]
driver = "Directory"
driver_parameters = { Root = "/tmp/keep0" }
"""))
        cluster = cfg.get_cluster("zzzzz")
        assert cluster.management_token == "abc"
        assert cluster.services.keepstore.internal_urls == {"http://localhost:25107": {}}
        volume = cluster.volumes["zzzzz-nyw5e-000000000000000"]
        assert volume.driver == "Directory"
        assert volume.driver_parameters == {"Root": "/tmp/keep0"}

    def test_later_files_win(self, tmp_path):
        first = _write(tmp_path / "a.toml", '[clusters.zzzzz]\nsystem_root_token = "one"\nmanagement_token = "m"\n')
        second = _write(tmp_path / "b.toml", '[clusters.zzzzz]\nsystem_root_token = "two"\n')
        cluster = load_config(first, second).get_cluster()
        assert cluster.system_root_token == "two"
        assert cluster.management_token == "m"

    def test_unknown_key_rejected(self, tmp_path):
        path = _write(tmp_path / "config.toml", "[clusters.zzzzz]\nno_such_key = 1\n")
        with pytest.raises(ConfigError, match="no_such_key"):
            load_config(path)

    def test_unknown_service_rejected(self, tmp_path):
        path = _write(tmp_path / "config.toml", "[clusters.zzzzz.services.frobnicator]\n")
        with pytest.raises(ConfigError, match="frobnicator"):
            load_config(path)

    @pytest.mark.parametrize("cluster_id", ["ZZZZZ", "zzzz", "zzzzzz", "zz-zz"])
    def test_bad_cluster_id(self, tmp_path, cluster_id):
        path = _write(tmp_path / "config.toml", f'[clusters."{cluster_id}"]\n')
        with pytest.raises(ConfigError, match="invalid cluster id"):
            load_config(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "missing.toml")

    def test_invalid_toml(self, tmp_path):
        with pytest.raises(ConfigError, match="Failed to parse TOML"):
            load_config(_write(tmp_path / "config.toml", "[clusters.zzzzz\n"))

    def test_jinja2_template_with_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ARVBOOT_TEST_TOKEN", "s3cret")
        monkeypatch.setenv("ARVBOOT_TEST_CLUSTER", "abcde")
        path = _write(tmp_path / "config.toml.j2", """
[clusters.{{ env.ARVBOOT_TEST_CLUSTER }}]
management_token = "${ARVBOOT_TEST_TOKEN}"
""")
        cluster = load_config(path).get_cluster()
        assert cluster.cluster_id == "abcde"
        assert cluster.management_token == "s3cret"

    def test_jinja2_template_missing_env(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ARVBOOT_TEST_MISSING", raising=False)
        path = _write(tmp_path / "config.toml.j2", '[clusters.zzzzz]\nmanagement_token = "$ARVBOOT_TEST_MISSING"\n')
        with pytest.raises(ConfigError, match="ARVBOOT_TEST_MISSING"):
            load_config(path)


class TestGetCluster:
    def test_no_clusters(self):
        with pytest.raises(ConfigError, match="exactly one cluster"):
            Config().get_cluster()

    def test_two_clusters_need_an_id(self):
        cfg = Config.from_dict({"clusters": {"aaaaa": {}, "bbbbb": {}}})
        with pytest.raises(ConfigError):
            cfg.get_cluster()
        assert cfg.get_cluster("bbbbb").cluster_id == "bbbbb"

    def test_missing_id(self):
        cfg = Config.from_dict({"clusters": {"aaaaa": {}}})
        with pytest.raises(ConfigError, match="not configured"):
            cfg.get_cluster("bbbbb")


def test_deep_merge_nested_tables():
    base = {"a": {"b": 1, "c": {"d": 2}}, "x": 1}
    override = {"a": {"c": {"e": 3}}, "x": 2}
    assert deep_merge_configs(base, override) == {"a": {"b": 1, "c": {"d": 2, "e": 3}}, "x": 2}


def test_expand_env_vars_with_explicit_environ():
    assert expand_env_vars_or_fail("a=$FOO b=${BAR}", "test", {"FOO": "1", "BAR": "2"}) == "a=1 b=2"


def test_write_config_is_readable_toml(tmp_path):
    cfg = Config.from_dict({"clusters": {"zzzzz": {"system_root_token": "tok"}}})
    cfg.get_cluster().services.controller.external_url = "https://localhost:8000"

    path = write_config(cfg, tmp_path / "out" / "config.toml")

    with open(path, "rb") as f:
        data = tomllib.load(f)
    cluster = data["clusters"]["zzzzz"]
    assert cluster["system_root_token"] == "tok"
    assert cluster["services"]["controller"]["external_url"] == "https://localhost:8000"
    assert "cluster_id" not in cluster
    assert load_config(path).get_cluster().system_root_token == "tok"
