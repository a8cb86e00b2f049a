"""Tests for configuration loading."""
import json
import logging

import pytest
import yaml

from icm_engine.config import ConfigManager, configure_logging, load_settings
from icm_engine.config.config_manager import DEFAULT_CONFIG_PATH
from icm_engine.errors import ConfigurationError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    monkeypatch.delenv("ICM_ENGINE_CONFIG", raising=False)
    monkeypatch.delenv("ICM_ENGINE_LOG_LEVEL", raising=False)
    monkeypatch.chdir(tmp_path)


def _write_yaml(path, data):
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestConfigManager:
    def test_packaged_defaults(self):
        manager = ConfigManager()
        assert manager.config_path == DEFAULT_CONFIG_PATH
        assert manager.get("engine", "max_workers") == 8
        assert manager.get("reconciliation", "total_epsilon") == 0.01
        assert manager.get("missing", "key", "fallback") == "fallback"
        assert manager.get_section("missing") == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ConfigManager(str(tmp_path / "nope.yaml"))

    def test_set_and_save(self, tmp_path):
        manager = ConfigManager()
        manager.set("engine", "max_workers", 2)
        out = tmp_path / "saved" / "config.yaml"
        manager.save(str(out))
        assert ConfigManager(str(out)).get("engine", "max_workers") == 2


class TestLoadSettings:
    def test_defaults(self):
        settings = load_settings()
        assert settings.engine.max_workers == 8
        assert settings.summary.outlier_sigma == 3.0
        assert settings.logging.json_format is False

    def test_override_file_merges_sections(self, tmp_path):
        path = _write_yaml(tmp_path / "override.yaml", {"reconciliation": {"component_epsilon": 1.0}})
        settings = load_settings(path)
        assert settings.reconciliation.component_epsilon == 1.0
        assert settings.reconciliation.total_epsilon == 0.01

    def test_environment_variables(self, tmp_path, monkeypatch):
        path = _write_yaml(tmp_path / "env.yaml", {"engine": {"max_workers": 3}, "logging": {"json": True}})
        monkeypatch.setenv("ICM_ENGINE_CONFIG", path)
        monkeypatch.setenv("ICM_ENGINE_LOG_LEVEL", "debug")
        settings = load_settings()
        assert settings.engine.max_workers == 3
        assert settings.logging.json_format is True
        assert settings.logging.level == "DEBUG"

    def test_invalid_values(self, tmp_path):
        path = _write_yaml(tmp_path / "bad.yaml", {"engine": {"max_workers": 0}})
        with pytest.raises(ConfigurationError):
            load_settings(path)


class TestConfigureLogging:
    def test_logging_section_drives_root_handler(self, tmp_path):
        log_file = tmp_path / "engine.log"
        path = _write_yaml(
            tmp_path / "logging.yaml",
            {"logging": {"level": "WARNING", "json": True, "file": str(log_file)}},
        )
        root = logging.getLogger()
        before = list(root.handlers)
        level = root.level
        try:
            configure_logging(load_settings(path))
            logging.getLogger("icm_engine.test").info("dropped")
            logging.getLogger("icm_engine.test").warning("kept")
            for handler in root.handlers:
                handler.flush()
            lines = log_file.read_text().splitlines()
            assert root.level == logging.WARNING
            assert [json.loads(line)["message"] for line in lines] == ["kept"]
        finally:
            for handler in root.handlers[:]:
                if handler not in before:
                    root.removeHandler(handler)
                    handler.close()
            root.setLevel(level)
