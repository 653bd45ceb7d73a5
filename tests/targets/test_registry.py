"""Tests for the target registry and inventory loading."""

from __future__ import annotations

import pytest

from rollout.core.errors import ConfigError, UnknownTargetError
from rollout.targets.registry import Host, TargetRegistry, inventory_from_dict, load_inventory


def _names(hosts):
    return [h.name for h in hosts]


class TestResolve:
    def test_single_host(self, registry):
        hosts = registry.resolve("web1")
        assert _names(hosts) == ["web1"]
        assert hosts[0].address == "10.0.0.11"

    def test_group_in_declaration_order(self, registry):
        assert _names(registry.resolve("web")) == ["web1", "web2"]

    def test_nested_groups_depth_first(self, registry):
        assert _names(registry.resolve("staging")) == ["web1", "web2", "db1"]

    def test_overlapping_members_deduplicated(self):
        registry = TargetRegistry()
        for name in ("a", "b", "c"):
            registry.add_host(Host(name))
        registry.add_group("front", ["b", "a"])
        registry.add_group("all", ["front", "a", "c", "b"])
        assert _names(registry.resolve("all")) == ["b", "a", "c"]

    def test_deterministic(self, registry):
        assert registry.resolve("staging") == registry.resolve("staging")

    def test_unknown(self, registry):
        with pytest.raises(UnknownTargetError) as exc_info:
            registry.resolve("prod")
        assert exc_info.value.name == "prod"
        assert exc_info.value.context.target == "prod"


class TestRegistration:
    def test_group_cycle_rejected(self):
        registry = TargetRegistry()
        registry.add_host(Host("h"))
        registry.add_group("a", ["b", "h"])
        registry.add_group("b", ["c"])
        with pytest.raises(ConfigError, match="cycle"):
            registry.add_group("c", ["a"])
        assert "c" not in registry

    def test_self_reference_rejected(self):
        with pytest.raises(ConfigError, match="cycle"):
            TargetRegistry().add_group("loop", ["loop"])

    def test_name_clash(self):
        registry = TargetRegistry()
        registry.add_host(Host("web"))
        with pytest.raises(ConfigError):
            registry.add_group("web", ["web"])

    def test_duplicate_member(self):
        registry = TargetRegistry()
        registry.add_host(Host("h"))
        with pytest.raises(ConfigError):
            registry.add_group("g", ["h", "h"])

    def test_validate_unknown_member(self):
        registry = TargetRegistry()
        registry.add_group("web", ["ghost"])
        with pytest.raises(ConfigError, match="ghost"):
            registry.validate()

    def test_get_and_names(self, registry):
        target = registry.get("staging")
        assert target.is_group
        assert target.members == ("web", "db1")
        assert registry.get("web1").is_group is False
        assert registry.names() == ["web", "staging", "web1", "web2", "db1"]
        assert len(registry) == 5
        with pytest.raises(UnknownTargetError):
            registry.get("nope")


class TestInventory:
    def test_load_yaml(self, tmp_path):
        path = tmp_path / "inventory.yaml"
        path.write_text(
            "defaults:\n"
            "  deploy_root: /srv/web\n"
            "  vars: {env: staging}\n"
            "hosts:\n"
            "  web1:\n"
            "    address: 10.0.0.11\n"
            "    vars: {http_port: 8080}\n"
            "  web2:\n"
            "    deploy_root: /opt/web\n"
            "groups:\n"
            "  web: [web1, web2]\n"
            "  production:\n"
            "    members: [web]\n"
        )
        registry = load_inventory(path)
        web1, web2 = registry.resolve("production")
        assert web1.deploy_root == "/srv/web"
        assert web1.variables == {"env": "staging", "http_port": "8080"}
        assert web2.address == "web2"
        assert web2.deploy_root == "/opt/web"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "inventory.yaml"
        path.write_text("")
        assert len(load_inventory(path)) == 0

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot read"):
            load_inventory(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "inventory.yaml"
        path.write_text("hosts: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_inventory(path)

    @pytest.mark.parametrize(
        "data",
        [
            ["web1"],
            {"hosts": ["web1"]},
            {"hosts": {"web1": "10.0.0.1"}},
            {"hosts": {"web1": {}}, "groups": {"web": "web1"}},
            {"hosts": {"web1": {}}, "groups": {"web": ["web1", "ghost"]}},
        ],
    )
    def test_malformed(self, data):
        with pytest.raises(ConfigError):
            inventory_from_dict(data)

    def test_host_to_dict(self):
        host = Host("web1", variables={"k": "v"})
        assert host.to_dict() == {"name": "web1", "address": "web1", "variables": {"k": "v"}, "deploy_root": None}
