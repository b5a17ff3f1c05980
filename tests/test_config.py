"""Tests for adhoc_allocator.config module."""

from __future__ import annotations

import pytest
import yaml

from adhoc_allocator.config import (
    Settings,
    catalog_file_name,
    load_catalog,
    load_user_config,
    locate_catalog,
    parse_catalog,
    parse_env,
)
from adhoc_allocator.constants import GiB, MiB
from adhoc_allocator.exceptions import ConfigError, SystemNotFoundError


def _catalog(text: str):
    return parse_catalog(yaml.safe_load(text))


class TestCatalogLookup:
    def test_shared_resources_through_alias(self, catalog):
        system = catalog.lookup("ubuntu-24.04-64")
        assert system.image == "ubuntu:24.04"
        assert system.vm is True
        assert system.resources.memory == 4096 * MiB
        assert system.resources.cpu == 4
        assert system.resources.size == 15 * GiB
        assert catalog.lookup("ubuntu-22.04-64").resources == system.resources

    def test_unknown_system_raises_not_found(self, catalog):
        with pytest.raises(SystemNotFoundError, match='system "fedora-40-64" not found'):
            catalog.lookup("fedora-40-64")

    def test_not_found_is_config_error(self, catalog):
        with pytest.raises(ConfigError):
            catalog.lookup("nope")

    def test_steps_in_declared_order(self, catalog):
        steps = catalog.steps_for(catalog.lookup("ubuntu-24.04-64"))
        assert steps[0] == "cloud-init status --wait"
        assert steps[-1] == "killall -HUP sshd || true"
        assert len(steps) == 3

    def test_steps_shared_by_reference(self, catalog):
        first = catalog.steps_for(catalog.lookup("ubuntu-24.04-64"))
        second = catalog.steps_for(catalog.lookup("ubuntu-22.04-64"))
        assert first is second

    def test_system_without_steps_warns(self, catalog, capsys):
        assert catalog.steps_for(catalog.lookup("alpine-container")) == ()
        assert "no setup steps declared for system alpine-container" in capsys.readouterr().err

    def test_container_defaults(self, catalog):
        system = catalog.lookup("alpine-container")
        assert system.vm is False
        assert system.resources.memory == 2 * GiB
        assert system.resources.cpu == 2
        assert system.resources.size == 10 * GiB

    def test_systems_sorted(self, catalog):
        assert [s.name for s in catalog.systems] == ["alpine-container", "ubuntu-22.04-64", "ubuntu-24.04-64"]


class TestCatalogValidation:
    def test_missing_system_section(self):
        with pytest.raises(ConfigError, match="defines no systems"):
            _catalog("setup: {}\n")

    def test_not_a_mapping(self):
        with pytest.raises(ConfigError, match="must be a mapping"):
            _catalog("- a\n- b\n")

    def test_missing_image(self):
        with pytest.raises(ConfigError, match='system "x": image is required'):
            _catalog("system:\n  x:\n    vm: true\n")

    def test_unresolved_setup_reference(self):
        with pytest.raises(ConfigError, match='setup steps "missing" not found'):
            _catalog("system:\n  x:\n    image: ubuntu:24.04\n    setup-steps: missing\n")

    def test_empty_step_rejected(self):
        text = "system:\n  x:\n    image: a\n    setup-steps: s\nsetup:\n  s:\n    - echo ok\n    - ''\n"
        with pytest.raises(ConfigError, match="step #2 must be a non-empty string"):
            _catalog(text)

    def test_steps_must_be_list(self):
        with pytest.raises(ConfigError, match="must be a list of commands"):
            _catalog("system:\n  x:\n    image: a\nsetup:\n  s: echo\n")

    @pytest.mark.parametrize(
        "resources, message",
        [
            ("{cpu: 0}", "resources.cpu 0 is out of range"),
            ("{cpu: 1024}", "resources.cpu 1024 is out of range"),
            ("{mem: 1MiB}", "resources.mem 1MiB is out of range"),
            ("{size: 100MiB}", "resources.size 100MiB is out of range"),
            ("{cpu: two}", "resources.cpu must be an integer"),
            ("{mem: lots}", "invalid size"),
            ("{disk: 10GiB}", "unknown resource keys: disk"),
        ],
    )
    def test_resource_bounds(self, resources, message):
        with pytest.raises(ConfigError, match=message):
            _catalog(f"system:\n  x:\n    image: a\n    resources: {resources}\n")

    def test_non_bool_vm_flag(self):
        with pytest.raises(ConfigError, match="vm must be true or false"):
            _catalog("system:\n  x:\n    image: a\n    vm: maybe\n")

    def test_secure_boot_ignored_for_containers(self, capsys):
        catalog = _catalog("system:\n  x:\n    image: a\n    vm: false\n    secure-boot: true\n")
        assert catalog.lookup("x").secure_boot is False
        assert "secure-boot only applies to virtual machines" in capsys.readouterr().err

    def test_secure_boot_kept_for_vms(self, catalog):
        assert catalog.lookup("ubuntu-22.04-64").secure_boot is True


class TestLoadCatalog:
    def test_load_from_file(self, tmp_path, catalog_yaml):
        path = tmp_path / "spread-lxd.yaml"
        path.write_text(catalog_yaml)
        assert len(load_catalog(path).systems) == 3

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="catalog file missing"):
            load_catalog(tmp_path / "nope.yaml")

    def test_yaml_syntax_error(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("system:\n  x: [unclosed\n")
        with pytest.raises(ConfigError, match="cannot load configuration"):
            load_catalog(path)


class TestLocateCatalog:
    def test_catalog_file_name(self):
        assert catalog_file_name("lxd") == "spread-lxd.yaml"

    def test_walks_up_to_spread_yaml(self, tmp_path, catalog_yaml):
        (tmp_path / "spread.yaml").write_text("project: demo\n")
        (tmp_path / "spread-lxd.yaml").write_text(catalog_yaml)
        nested = tmp_path / "tests" / "main" / "task"
        nested.mkdir(parents=True)
        assert locate_catalog("spread-lxd.yaml", start=nested) == (tmp_path / "spread-lxd.yaml").resolve()

    def test_catalog_must_sit_next_to_spread_yaml(self, tmp_path):
        (tmp_path / "spread.yaml").write_text("project: demo\n")
        with pytest.raises(ConfigError, match="spread-lxd.yaml not found next to"):
            locate_catalog("spread-lxd.yaml", start=tmp_path)

    def test_no_spread_yaml(self, tmp_path):
        with pytest.raises(ConfigError, match="cannot find spread.yaml"):
            locate_catalog("spread-lxd.yaml", start=tmp_path)

    def test_env_override(self, tmp_path, monkeypatch, catalog_yaml):
        path = tmp_path / "elsewhere.yaml"
        path.write_text(catalog_yaml)
        monkeypatch.setenv("ADHOC_CONFIG", str(path))
        assert locate_catalog("spread-lxd.yaml", start=tmp_path / "missing") == path

    def test_env_override_missing(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ADHOC_CONFIG", str(tmp_path / "missing.yaml"))
        with pytest.raises(ConfigError, match="from ADHOC_CONFIG"):
            locate_catalog("spread-lxd.yaml")


class TestParseEnv:
    def test_defaults(self):
        cfg = parse_env(user_config={})
        assert cfg.backend == "lxd"
        assert cfg.service_port == 22
        assert cfg.tag == "spread-adhoc"
        assert cfg.images_dir == cfg.state_dir / "images"

    def test_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("ADHOC_BACKEND", "LIBVIRT")
        monkeypatch.setenv("ADHOC_STATE_DIR", str(tmp_path))
        monkeypatch.setenv("ADHOC_ADDRESS_TIMEOUT", "300")
        monkeypatch.setenv("ADHOC_SERVICE_PORT", "2222")
        monkeypatch.setenv("ADHOC_TAG", "ci-run-7")
        cfg = parse_env(user_config={})
        assert cfg.backend == "libvirt"
        assert cfg.state_dir == tmp_path
        assert cfg.images_dir == tmp_path / "images"
        assert cfg.address_timeout == 300
        assert cfg.service_port == 2222
        assert cfg.tag == "ci-run-7"

    def test_unsupported_backend(self, monkeypatch):
        monkeypatch.setenv("ADHOC_BACKEND", "docker")
        with pytest.raises(ConfigError, match="Unsupported backend 'docker'"):
            parse_env(user_config={})

    @pytest.mark.parametrize(
        "name, value",
        [
            ("ADHOC_ADDRESS_TIMEOUT", "soon"),
            ("ADHOC_ADDRESS_TIMEOUT", "0"),
            ("ADHOC_SERVICE_PORT", "70000"),
            ("ADHOC_SERVICE_ATTEMPTS", "-1"),
        ],
    )
    def test_invalid_numbers(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(ConfigError, match=name):
            parse_env(user_config={})

    def test_user_config_then_env(self, monkeypatch):
        monkeypatch.setenv("ADHOC_STEP_TIMEOUT", "120")
        cfg = parse_env(user_config={"step_timeout": 30, "service_attempts": 5})
        assert cfg.step_timeout == 120
        assert cfg.service_attempts == 5

    def test_fractional_intervals(self, monkeypatch):
        monkeypatch.setenv("ADHOC_LOCK_TIMEOUT", "2.5")
        cfg = parse_env(user_config={"address_interval": 0.5, "service_connect_timeout": 1.5})
        assert cfg.address_interval == 0.5
        assert cfg.service_connect_timeout == 1.5
        assert cfg.lock_timeout == 2.5

    @pytest.mark.parametrize(
        "name, value, message",
        [
            ("ADHOC_ADDRESS_INTERVAL", "0", "must be >= 0.1"),
            ("ADHOC_SERVICE_INTERVAL", "-1", "must be >= 0"),
            ("ADHOC_LOCK_TIMEOUT", "inf", "must be a finite number"),
            ("ADHOC_SERVICE_CONNECT_TIMEOUT", "fast", "must be a number"),
        ],
    )
    def test_invalid_fractional_values(self, monkeypatch, name, value, message):
        monkeypatch.setenv(name, value)
        with pytest.raises(ConfigError, match=f"{name} {message}"):
            parse_env(user_config={})

    def test_unknown_user_config_key(self):
        with pytest.raises(ConfigError, match="unknown user configuration keys: colour"):
            parse_env(user_config={"colour": "blue"})


class TestLoadUserConfig:
    def test_missing_file_is_empty(self, tmp_path):
        assert load_user_config(tmp_path / "absent.yaml") == {}

    def test_dashes_become_underscores(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("backend: libvirt\naddress-timeout: 240\n")
        assert load_user_config(path) == {"backend": "libvirt", "address_timeout": 240}

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n")
        with pytest.raises(ConfigError, match="must be a mapping"):
            load_user_config(path)

    def test_settings_from_user_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("lxd-project: ci\n")
        monkeypatch.setattr("adhoc_allocator.config.USER_CONFIG_PATH", path)
        assert parse_env().lxd_project == "ci"
        assert Settings().lxd_project == "spread-adhoc"
