"""
Tests for the configuration manager.
"""

import json
import pytest

from config_manager import ApiConfig, AppConfig, ConfigManager, PipelineConfig, StorageConfig, UIConfig


@pytest.fixture
def manager():
    manager = ConfigManager()
    manager.clear_cache()
    yield manager
    manager.clear_cache()


class TestConfigValidation:
    """Test dataclass validation"""

    def test_defaults(self):
        """Test default values used by the pipeline"""
        config = AppConfig()
        assert config.api.outline_temperature == 0.8
        assert config.api.episode_temperature == 0.7
        assert config.api.max_retries == 3
        assert config.api.retry_delay == 2.0
        assert config.pipeline.episode_count == 5
        assert config.pipeline.episode_pacing_delay == 1.5
        assert config.pipeline.max_narration_chars == 4800

    def test_invalid_temperature(self):
        """Test invalid temperature validation"""
        with pytest.raises(ValueError, match="Temperature must be between"):
            ApiConfig(outline_temperature=3.0)

    def test_invalid_retries(self):
        with pytest.raises(ValueError, match="max_retries"):
            ApiConfig(max_retries=0)

    def test_invalid_pipeline_values(self):
        with pytest.raises(ValueError):
            PipelineConfig(episode_count=0)
        with pytest.raises(ValueError):
            PipelineConfig(seconds_per_scene=0)

    def test_invalid_language(self):
        with pytest.raises(ValueError, match="Unsupported language"):
            UIConfig(language="xx")

    def test_state_path_expands_user(self):
        assert "~" not in str(StorageConfig().state_path)


class TestConfigManager:
    """Test loading, merging and caching"""

    def test_singleton(self):
        assert ConfigManager() is ConfigManager()

    def test_loading_with_overrides(self, manager, tmp_path):
        """Test configuration loading with user overrides"""
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"api": {"outline_temperature": 0.5}, "ui": {"language": "en"}}))

        config = manager.load_config(path)

        assert config.api.outline_temperature == 0.5
        assert config.api.episode_temperature == 0.7
        assert config.ui.language == "en"

    def test_invalid_json_uses_defaults(self, manager, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{ invalid json ")

        config = manager.load_config(path)

        assert config.api.outline_temperature == 0.8

    def test_invalid_values_use_defaults(self, manager, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"pipeline": {"episode_count": -1}}))

        assert manager.load_config(path).pipeline.episode_count == 5

    def test_cache(self, manager, tmp_path):
        """Test configuration caching"""
        path = tmp_path / "missing.json"
        assert manager.load_config(path) is manager.load_config(path)

    def test_save_round_trip(self, manager, tmp_path):
        path = tmp_path / "saved.json"
        config = AppConfig(ui=UIConfig(language="en"))

        assert manager.save_config(config, path) is True
        manager.clear_cache()

        assert manager.load_config(path).ui.language == "en"

    def test_validate_config(self, manager):
        errors = manager.validate_config({
            "api": {"episode_temperature": -1},
            "ui": {"language": "invalid"},
        })
        assert len(errors) == 2

    def test_environment_overrides_file(self, manager, tmp_path, monkeypatch):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"ui": {"language": "ar"}}))
        monkeypatch.setenv("STORYFORGE_LANGUAGE", "en")

        assert manager.load_config(path).ui.language == "en"
