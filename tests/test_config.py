"""Tests for the YAML configuration loader."""

import pytest

from expense_categorizer.config import DEFAULTS, Config
from tests.conftest import FIXTURE_CONFIG_DIR


class TestConfigInit:
    def test_loads_from_config_dir(self):
        config = Config(FIXTURE_CONFIG_DIR)
        assert config.config_dir == FIXTURE_CONFIG_DIR

    def test_raises_on_missing_directory(self):
        with pytest.raises(FileNotFoundError, match="Config directory not found"):
            Config("/nonexistent/path")

    def test_raises_on_file_not_directory(self, tmp_path):
        f = tmp_path / "not_a_dir.yaml"
        f.write_text("test: true")
        with pytest.raises(FileNotFoundError, match="Config directory not found"):
            Config(f)


class TestConfigLoading:
    def test_missing_engine_file_uses_defaults(self, tmp_path):
        config = Config(tmp_path)
        assert config.engine == DEFAULTS

    def test_fixture_overrides_merge_with_defaults(self):
        config = Config(FIXTURE_CONFIG_DIR)
        assert config.patterns["chunk_size"] == 3
        # untouched keys keep their defaults
        assert config.patterns["min_observations"] == 5
        assert config.learning["correct_boost"] == 0.15

    def test_invalid_yaml_raises(self, tmp_path):
        (tmp_path / "engine.yaml").write_text("categorization: [unclosed")
        with pytest.raises(ValueError, match="Invalid YAML"):
            Config(tmp_path).engine

    def test_empty_file_raises(self, tmp_path):
        (tmp_path / "engine.yaml").write_text("")
        with pytest.raises(ValueError, match="Empty config file"):
            Config(tmp_path).engine

    def test_non_mapping_raises(self, tmp_path):
        (tmp_path / "engine.yaml").write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            Config(tmp_path).engine

    def test_defaults_are_not_shared(self):
        a = Config.defaults()
        a.categorization["min_confidence"] = 0.9
        assert Config.defaults().min_confidence == 0.5


class TestConfigAccessors:
    def test_min_confidence(self):
        assert Config(FIXTURE_CONFIG_DIR).min_confidence == 0.5

    def test_weight_range(self):
        assert Config(FIXTURE_CONFIG_DIR).weight_range == (0.1, 5.0)

    def test_normalize_default_on(self):
        assert Config.defaults().normalize is True

    def test_circuit_breaker_operation_override(self):
        config = Config(FIXTURE_CONFIG_DIR)
        db = config.circuit_breaker_for("database")
        assert db["failure_threshold"] == 3
        assert db["timeout_seconds"] == 10
        assert db["success_threshold"] == 1

    def test_circuit_breaker_falls_back_to_default(self):
        config = Config(FIXTURE_CONFIG_DIR)
        cat = config.circuit_breaker_for("categorization")
        assert cat["failure_threshold"] == 5
        assert cat["timeout_seconds"] == 30
