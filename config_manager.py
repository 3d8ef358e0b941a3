"""
Configuration manager for StoryForge.
Dataclass sections validated on construction, merged over defaults from
config.json and STORYFORGE_* environment variables.
"""

import json
import os
from dataclasses import asdict, dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging

logger = logging.getLogger(__name__)


@dataclass
class ApiConfig:
    """Generative backend configuration with validation"""
    text_model: str = "gemini-2.5-flash"
    image_model: str = "imagen-4.0-generate-001"
    speech_model: str = "gemini-2.5-flash-preview-tts"
    video_model: str = "veo-3.1-fast-generate-preview"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    outline_temperature: float = 0.8
    episode_temperature: float = 0.7
    timeout: int = 300
    max_retries: int = 3
    retry_delay: float = 2.0
    max_requests_per_minute: int = 60

    def __post_init__(self):
        """Validate configuration values"""
        for name in ("outline_temperature", "episode_temperature"):
            value = getattr(self, name)
            if not 0.0 <= value <= 2.0:
                raise ValueError(f"Temperature must be between 0.0 and 2.0, got {name}={value}")
        if self.timeout < 1:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {self.max_retries}")
        if self.retry_delay < 0:
            raise ValueError(f"retry_delay cannot be negative, got {self.retry_delay}")
        if self.max_requests_per_minute < 1:
            raise ValueError(f"max_requests_per_minute must be positive, got {self.max_requests_per_minute}")


@dataclass
class PipelineConfig:
    """Generation pipeline configuration"""
    episode_count: int = 5
    episode_pacing_delay: float = 1.5
    scene_prompt_count: int = 6
    seconds_per_scene: int = 8
    max_narration_chars: int = 4800
    image_aspect_ratio: str = "16:9"
    image_mime_type: str = "image/png"
    video_poll_interval: float = 10.0
    video_max_poll_attempts: int = 60
    rate_window_seconds: float = 60.0
    rate_sweep_interval: float = 1.0

    def __post_init__(self):
        """Validate pipeline configuration"""
        if self.episode_count < 1:
            raise ValueError(f"episode_count must be positive, got {self.episode_count}")
        if self.episode_pacing_delay < 0:
            raise ValueError(f"episode_pacing_delay cannot be negative, got {self.episode_pacing_delay}")
        if self.scene_prompt_count < 1:
            raise ValueError(f"scene_prompt_count must be positive, got {self.scene_prompt_count}")
        if self.seconds_per_scene < 1:
            raise ValueError(f"seconds_per_scene must be positive, got {self.seconds_per_scene}")
        if self.max_narration_chars < 1:
            raise ValueError(f"max_narration_chars must be positive, got {self.max_narration_chars}")
        if self.video_max_poll_attempts < 1:
            raise ValueError(f"video_max_poll_attempts must be positive, got {self.video_max_poll_attempts}")


@dataclass
class StorageConfig:
    """Local persistence configuration"""
    state_file: str = "~/.storyforge/state.json"
    metadata_filename: str = "story.json"
    narration_filename: str = "voiceover.wav"
    slideshow_base_url: str = "https://api.json2video.com/v2/movies"
    slideshow_max_poll_attempts: int = 120

    def __post_init__(self):
        if not self.metadata_filename.endswith(".json"):
            raise ValueError(f"metadata_filename must be a .json file, got {self.metadata_filename}")
        if self.slideshow_max_poll_attempts < 1:
            raise ValueError("slideshow_max_poll_attempts must be positive")

    @property
    def state_path(self) -> Path:
        return Path(self.state_file).expanduser()


@dataclass
class UIConfig:
    """UI configuration"""
    show_progress: bool = True
    color_output: bool = True
    verbose_logging: bool = False
    language: str = "ar"

    def __post_init__(self):
        from localization import LANGUAGE_CONFIGS
        if self.language not in LANGUAGE_CONFIGS:
            raise ValueError(f"Unsupported language '{self.language}'")


@dataclass
class AppConfig:
    """Complete application configuration"""
    api: ApiConfig = field(default_factory=ApiConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    ui: UIConfig = field(default_factory=UIConfig)


_SECTIONS = {
    "api": ApiConfig,
    "pipeline": PipelineConfig,
    "storage": StorageConfig,
    "ui": UIConfig,
}

# environment variable -> (section, field)
ENV_OVERRIDES = {
    "STORYFORGE_LANGUAGE": ("ui", "language"),
    "STORYFORGE_STATE_FILE": ("storage", "state_file"),
    "STORYFORGE_TEXT_MODEL": ("api", "text_model"),
}


class ConfigManager:
    """Loads, validates and caches the StoryForge configuration"""

    _instance: Optional['ConfigManager'] = None
    _config_cache: Dict[str, AppConfig] = {}

    def __new__(cls) -> 'ConfigManager':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if hasattr(self, '_initialized'):
            return
        self._initialized = True
        self._config_path: Optional[Path] = None

    @lru_cache(maxsize=1)
    def _get_default_config(self) -> Dict[str, Any]:
        return asdict(AppConfig())

    def load_config(self, config_path: Union[str, Path] = "config.json") -> AppConfig:
        """Defaults, then ``config_path``, then ``STORYFORGE_*`` environment overrides.

        An unreadable file or invalid values fall back to the defaults. Results
        are cached per path until the file's mtime changes.
        """
        config_path = Path(config_path)
        cache_key = str(config_path.absolute())
        if cache_key in self._config_cache:
            loaded_at = getattr(self._config_cache[cache_key], '_load_time', 0)
            if not config_path.exists() or config_path.stat().st_mtime <= loaded_at:
                return self._config_cache[cache_key]

        config_dict = json.loads(json.dumps(self._get_default_config()))
        if config_path.exists():
            try:
                with open(config_path, 'r', encoding='utf-8') as f:
                    config_dict = self._deep_merge_config(config_dict, json.load(f))
                logger.info(f"Loaded configuration from {config_path}")
            except json.JSONDecodeError as e:
                logger.warning(f"Invalid JSON in {config_path}: {e}. Using defaults.")
            except IOError as e:
                logger.warning(f"Error reading {config_path}: {e}. Using defaults.")
        else:
            logger.info(f"Config file {config_path} not found, using defaults.")
        self._apply_env_overrides(config_dict)

        errors = self.validate_config(config_dict)
        if errors:
            for error in errors:
                logger.error(f"Configuration validation error: {error}")
            return AppConfig()

        config = AppConfig(**{name: section(**config_dict[name]) for name, section in _SECTIONS.items()})
        config._load_time = config_path.stat().st_mtime if config_path.exists() else 0
        self._config_cache[cache_key] = config
        self._config_path = config_path
        return config

    @staticmethod
    def _apply_env_overrides(config_dict: Dict[str, Any]) -> None:
        for variable, (section, name) in ENV_OVERRIDES.items():
            value = os.getenv(variable)
            if value:
                config_dict.setdefault(section, {})[name] = value

    def _deep_merge_config(self, default: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        result = default.copy()
        for key, value in user.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def save_config(self, config: AppConfig,
                    config_path: Optional[Union[str, Path]] = None) -> bool:
        """Write ``config`` as JSON via a temp file"""
        config_path = Path(config_path or self._config_path or "config.json")
        try:
            temp_path = config_path.with_suffix(".tmp")
            with open(temp_path, 'w', encoding='utf-8') as f:
                json.dump(asdict(config), f, indent=2, ensure_ascii=False)
            temp_path.replace(config_path)
            logger.info(f"Configuration saved to {config_path}")
            return True
        except IOError as e:
            logger.error(f"Failed to save configuration: {e}")
            return False

    def validate_config(self, config_dict: Dict[str, Any]) -> List[str]:
        """One message per section that fails validation"""
        errors = []
        for name, section in _SECTIONS.items():
            try:
                section(**config_dict.get(name, {}))
            except (ValueError, TypeError) as e:
                errors.append(f"{name} config error: {e}")
        return errors

    def clear_cache(self) -> None:
        self._config_cache.clear()
        self._get_default_config.cache_clear()


config_manager = ConfigManager()
