"""
Configuration tests.

Covers value coercion, environment precedence, YAML loading, path access
and the exported schema.
"""

import pytest

from checkbook.config import (
    DEFAULT_CUSTODIAN_ID,
    ConfigError,
    ConfigManager,
    ConfigValidationError,
    ConfigValue,
    get_config,
    get_config_manager,
)


class TestConfigValue:

    def test_default(self):
        assert ConfigValue(default=42).get() == 42

    def test_set_then_get(self):
        cv = ConfigValue(default=42)
        cv.set(99)
        assert cv.get() == 99

    def test_explicit_false_preserved(self):
        cv = ConfigValue(default=True)
        cv.set(False)
        assert cv.get() is False

    def test_reset(self):
        cv = ConfigValue(default=1)
        cv.set(2)
        cv.reset()
        assert cv.get() == 1

    def test_validator_rejects(self):
        cv = ConfigValue(default=1, validator=lambda x: x > 0)

        with pytest.raises(ConfigValidationError):
            cv.set(0)
        assert cv.get() == 1

    def test_string_coerced_for_int(self):
        cv = ConfigValue(default=1)
        cv.set("5")
        assert cv.get() == 5

    def test_uncoercible_string(self):
        with pytest.raises(ConfigValidationError):
            ConfigValue(default=1).set("five")

    def test_env_overrides_value(self, monkeypatch):
        cv = ConfigValue(default=False, env_var="CHECKBOOK_TEST_FLAG")
        cv.set(False)
        monkeypatch.setenv("CHECKBOOK_TEST_FLAG", "yes")

        assert cv.get() is True

    def test_change_callback(self):
        seen = []
        cv = ConfigValue(default="a")
        cv.on_change(lambda old, new: seen.append((old, new)))

        cv.set("b")

        assert seen == [(None, "b")]


class TestConfigManager:

    def test_singleton(self):
        assert ConfigManager() is get_config_manager()
        assert get_config() is ConfigManager().config

    def test_defaults(self):
        mgr = get_config_manager()

        assert mgr.get("signatures.require_low_s") is True
        assert mgr.get("engine.custodian_id") == DEFAULT_CUSTODIAN_ID
        assert mgr.get("engine.max_signers") == 32
        assert mgr.get("observability.log_format") == "json"
        assert mgr.validate() == []

    def test_set_by_path(self):
        mgr = get_config_manager()
        mgr.set("engine.max_signers", 4)

        assert get_config().engine.max_signers.get() == 4

    def test_invalid_path(self):
        with pytest.raises(ConfigError):
            get_config_manager().get("engine.nope")
        with pytest.raises(ConfigError):
            get_config_manager().set("engine", 1)

    def test_max_signers_bounds(self):
        with pytest.raises(ConfigValidationError):
            get_config_manager().set("engine.max_signers", 0)

    def test_custodian_id_must_be_identity(self):
        with pytest.raises(ConfigValidationError):
            get_config_manager().set("engine.custodian_id", "custodian")

    def test_env_precedence(self, monkeypatch):
        monkeypatch.setenv("CHECKBOOK_MAX_SIGNERS", "8")
        get_config_manager().set("engine.max_signers", 16)

        assert get_config_manager().get("engine.max_signers") == 8

    def test_bad_env_value_reported_by_validate(self, monkeypatch):
        monkeypatch.setenv("CHECKBOOK_MAX_SIGNERS", "lots")

        errors = get_config_manager().validate()

        assert len(errors) == 1
        assert errors[0].startswith("engine.max_signers")

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "checkbook.yaml"
        path.write_text(
            "engine:\n"
            "  max_signers: 12\n"
            "  custodian_id: '0x" + "ab" * 20 + "'\n"
            "signatures:\n"
            "  require_low_s: false\n"
        )

        mgr = get_config_manager()
        mgr.load_from_file(path)

        assert mgr.get("engine.max_signers") == 12
        assert mgr.get("engine.custodian_id") == "0x" + "ab" * 20
        assert mgr.get("signatures.require_low_s") is False

    def test_unknown_keys_ignored(self, tmp_path, caplog):
        path = tmp_path / "checkbook.yaml"
        path.write_text("engine:\n  turbo: true\n")

        get_config_manager().load_from_file(path)

        assert "Unknown config key: engine.turbo" in caplog.text

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            get_config_manager().load_from_file(tmp_path / "absent.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(":\n  bad yaml {{{\n")

        with pytest.raises(ConfigError, match="Invalid YAML"):
            get_config_manager().load_from_file(path)

    def test_non_mapping_root(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n")

        with pytest.raises(ConfigError, match="mapping"):
            get_config_manager().load_from_file(path)

    def test_reload_notifies_watchers(self, tmp_path):
        path = tmp_path / "checkbook.yaml"
        path.write_text("engine:\n  max_signers: 3\n")
        mgr = get_config_manager()
        mgr.load_from_file(path)
        seen = []
        mgr.watch(lambda cfg: seen.append(cfg.engine.max_signers.get()))

        path.write_text("engine:\n  max_signers: 5\n")
        mgr.reload()

        assert seen == [5]

    def test_load_defaults_reads_project_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        (tmp_path / "checkbook.yaml").write_text("observability:\n  log_format: text\n")

        mgr = get_config_manager()
        mgr.load_defaults()

        assert mgr.get("observability.log_format") == "text"

    def test_to_yaml_round_trips_values(self):
        import yaml

        data = yaml.safe_load(get_config().to_yaml())

        assert data["engine"]["custodian_id"] == DEFAULT_CUSTODIAN_ID
        assert data["signatures"]["require_low_s"] is True

    def test_export_schema(self):
        schema = get_config_manager().export_schema()

        max_signers = schema["properties"]["engine"]["max_signers"]
        assert max_signers["type"] == "int"
        assert max_signers["env_var"] == "CHECKBOOK_MAX_SIGNERS"
