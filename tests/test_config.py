"""Configuration layering: defaults, YAML files, runtime overrides and environment."""

import pytest
import yaml

from sealstash.config import ConfigError, ConfigValue, get_config, get_config_manager


class TestConfigDefaults:

    def test_defaults(self):
        config = get_config()
        assert config.commitment.default_protocol.get() == "opret1st"
        assert config.stash.backend.get() == "memory"
        assert config.validation.require_seal_spend.get() is True
        assert config.observability.log_format.get() == "json"

    def test_singleton(self):
        assert get_config_manager() is get_config_manager()

    def test_defaults_validate(self):
        assert get_config_manager().validate() == []

    def test_to_yaml_round_trips(self):
        data = yaml.safe_load(get_config().to_yaml())
        assert data["stash"]["backend"] == "memory"
        assert data["validation"]["max_consignment_nodes"] == 100000


class TestConfigOverrides:

    def test_set_and_get(self):
        manager = get_config_manager()
        manager.set("commitment.default_protocol", "p2c")
        assert manager.get("commitment.default_protocol") == "p2c"
        manager.reset()
        assert manager.get("commitment.default_protocol") == "opret1st"

    def test_set_rejects_invalid_value(self):
        with pytest.raises(ConfigError):
            get_config_manager().set("commitment.default_protocol", "opret2nd")
        with pytest.raises(ConfigError):
            get_config_manager().set("validation.max_consignment_nodes", 0)

    def test_set_rejects_unknown_path(self):
        with pytest.raises(ConfigError):
            get_config_manager().set("stash.location", "x")

    def test_environment_wins(self, monkeypatch):
        manager = get_config_manager()
        manager.set("validation.max_consignment_nodes", 10)
        monkeypatch.setenv("SEALSTASH_MAX_CONSIGNMENT_NODES", "25")
        monkeypatch.setenv("SEALSTASH_REQUIRE_SEAL_SPEND", "no")
        assert manager.get("validation.max_consignment_nodes") == 25
        assert manager.get("validation.require_seal_spend") is False

    def test_environment_validation(self, monkeypatch):
        monkeypatch.setenv("SEALSTASH_STASH_BACKEND", "postgres")
        errors = get_config_manager().validate()
        assert any(e.startswith("stash.backend") for e in errors)

    def test_change_callback(self):
        seen = []
        value = ConfigValue(default=1, validator=lambda x: x > 0)
        value.on_change(lambda old, new: seen.append((old, new)))
        value.set(5)
        assert seen == [(None, 5)]
        value.reset()
        assert value.get() == 1

    def test_watch_follows_set_and_reset(self):
        manager = get_config_manager()
        seen = []
        manager.watch("stash.backend", seen.append)
        manager.set("stash.backend", "file")
        manager.reset()
        assert seen[:2] == ["file", "memory"]
        with pytest.raises(ConfigError):
            manager.watch("stash.nope", seen.append)


class TestConfigFiles:

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "sealstash.yaml"
        path.write_text(yaml.safe_dump({
            "stash": {"backend": "file", "path": str(tmp_path / "data")},
            "observability": {"log_level": "debug"},
        }))
        manager = get_config_manager()
        manager.load_from_file(path)
        assert manager.get("stash.backend") == "file"
        assert manager.get("stash.path") == str(tmp_path / "data")
        assert manager.get("observability.log_level") == "debug"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            get_config_manager().load_from_file(tmp_path / "absent.yaml")

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("stash:\n  engine: rocksdb\n")
        with pytest.raises(ConfigError, match="Unknown configuration key"):
            get_config_manager().load_from_file(path)

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            get_config_manager().load_from_file(path)

    def test_invalid_value_in_file(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("commitment:\n  default_protocol: nope\n")
        with pytest.raises(ConfigError):
            get_config_manager().load_from_file(path)
