# tests/test_config.py
"""Test configuration loading and validation"""

from pathlib import Path

import pytest

from lyricslides.core import config as config_module
from lyricslides.core.config import Config, load_config
from lyricslides.core.exceptions import ConfigError


FULL_CONFIG = """
api_keys:
  openai: "sk-file"

defaults:
  provider: StabilityAI
  model: stable-diffusion-xl-1024-v1-0
  orientation: Portrait
  negative_prompt: "text, watermark"

cache:
  directory: "{cache_dir}"
  retention_days: 0

generation:
  concurrency: 5
  timeout: 30
  retry_count: 0
  retry_delay: 0.5

prompts:
  excerpt_chars: 120
  templates:
    stage: "Concert lighting for {{{{lyrics}}}}"

logging:
  level: debug
"""


def write_config(directory: Path, content: str) -> Path:
    path = directory / "config.yaml"
    path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture
def isolated(temp_dir, monkeypatch):
    """Run with no config.yaml or .env in reach"""
    monkeypatch.chdir(temp_dir)
    monkeypatch.setattr(config_module, "USER_CONFIG_DIR", temp_dir / "home")
    for name in config_module.ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    return temp_dir


class TestLoadConfig:
    """Test reading config.yaml"""

    def test_defaults_without_file(self, isolated):
        assert load_config(use_env=False) == Config()

    def test_full_file(self, isolated):
        path = write_config(isolated, FULL_CONFIG.format(cache_dir=isolated / "images"))
        config = load_config(path, use_env=False)

        assert config.api_keys.openai == "sk-file"
        assert config.api_keys.stabilityai == ""
        assert config.defaults.provider == "stabilityai"
        assert config.defaults.orientation == "portrait"
        assert config.defaults.negative_prompt == "text, watermark"
        assert config.cache.directory == (isolated / "images").resolve()
        assert config.cache.retention_days == 0
        assert config.generation.concurrency == 5
        assert config.generation.timeout == 30.0
        assert config.generation.retry_count == 0
        assert config.prompts.excerpt_chars == 120
        assert config.prompts.templates == {"stage": "Concert lighting for {{lyrics}}"}
        assert config.logging.level == "DEBUG"

    def test_found_in_working_directory(self, isolated):
        write_config(isolated, "generation:\n  concurrency: 7\n")
        assert load_config(use_env=False).generation.concurrency == 7

    def test_found_in_user_directory(self, isolated):
        home = isolated / "home"
        home.mkdir()
        write_config(home, "generation:\n  concurrency: 2\n")
        assert load_config(use_env=False).generation.concurrency == 2

    def test_empty_file_means_defaults(self, isolated):
        path = write_config(isolated, "")
        assert load_config(path, use_env=False) == Config()

    def test_config_is_frozen(self, isolated):
        config = load_config(use_env=False)
        with pytest.raises(AttributeError):
            config.generation = None


class TestConfigErrors:
    """Test rejection of invalid configuration"""

    def test_missing_explicit_file(self, isolated):
        with pytest.raises(ConfigError) as exc_info:
            load_config(isolated / "nope.yaml", use_env=False)
        assert "not found" in exc_info.value.message

    def test_invalid_yaml(self, isolated):
        path = write_config(isolated, "generation: [unclosed\n")
        with pytest.raises(ConfigError):
            load_config(path, use_env=False)

    def test_not_a_mapping(self, isolated):
        path = write_config(isolated, "- just\n- a list\n")
        with pytest.raises(ConfigError):
            load_config(path, use_env=False)

    @pytest.mark.parametrize("content", [
        "generation:\n  concurrency: 0\n",
        "generation:\n  concurrency: true\n",
        "generation:\n  timeout: 0\n",
        "generation:\n  retry_delay: -1\n",
        "defaults:\n  orientation: diagonal\n",
        "cache:\n  enabled: maybe\n",
        "logging:\n  level: LOUD\n",
        "prompts:\n  templates:\n    bad: \"no placeholder here\"\n",
        "defaults: 42\n",
    ])
    def test_invalid_values(self, isolated, content):
        path = write_config(isolated, content)
        with pytest.raises(ConfigError):
            load_config(path, use_env=False)


class TestEnvironmentOverrides:
    """Test environment variables overriding the file"""

    def test_env_wins_over_file(self, isolated, monkeypatch):
        path = write_config(isolated, 'api_keys:\n  openai: "sk-file"\n')
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        monkeypatch.setenv("STABILITY_API_KEY", "stab-env")
        monkeypatch.setenv("LYRICSLIDES_CACHE_DIR", str(isolated / "env-cache"))

        config = load_config(path)

        assert config.api_keys.openai == "sk-env"
        assert config.api_keys.stabilityai == "stab-env"
        assert config.cache.directory == (isolated / "env-cache").resolve()

    def test_env_ignored_when_disabled(self, isolated, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        assert load_config(use_env=False).api_keys.openai == ""

    def test_api_key_lookup_by_provider(self, isolated, monkeypatch):
        monkeypatch.setenv("STABILITY_API_KEY", "stab-env")
        keys = load_config().api_keys
        assert keys.get("stabilityai") == "stab-env"
        assert keys.get("unknown") == ""
