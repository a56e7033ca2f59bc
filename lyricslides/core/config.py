"""
Configuration management for lyricslides.

This module handles loading, validating, and providing access to the
application configuration stored in config.yaml.

The configuration file contains:
    - Provider API keys (better supplied through environment / .env)
    - Generation defaults (provider, model, orientation, style, ...)
    - Image cache location and retention window
    - Concurrency, timeout and retry settings
    - Extra prompt templates
    - Logging level and optional log directory

Configuration File Location:
    An explicit path may be passed to load_config(). Otherwise config.yaml
    is looked up in the current working directory, then in
    ~/.lyricslides/config.yaml. When neither exists the built-in defaults
    are used.

Environment Overrides:
    Variables are read after loading a .env file (python-dotenv):
        OPENAI_API_KEY        -> api_keys.openai
        STABILITY_API_KEY     -> api_keys.stabilityai
        LYRICSLIDES_CACHE_DIR -> cache.directory

Example config.yaml:
    api_keys:
      openai: "sk-..."
      stabilityai: null

    defaults:
      provider: openai
      model: dall-e-3
      orientation: landscape
      style: natural

    cache:
      directory: "~/.lyricslides/cache"
      retention_days: 30

    generation:
      concurrency: 3
      timeout: 60
      retry_count: 3
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from lyricslides.core.exceptions import ConfigError


CONFIG_FILENAME = "config.yaml"
USER_CONFIG_DIR = Path("~/.lyricslides").expanduser()
DEFAULT_CACHE_DIR = USER_CONFIG_DIR / "cache"

VALID_ORIENTATIONS = ("landscape", "portrait", "square")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Environment variable -> (section, field)
ENV_OVERRIDES = {
    "OPENAI_API_KEY": ("api_keys", "openai"),
    "STABILITY_API_KEY": ("api_keys", "stabilityai"),
    "LYRICSLIDES_CACHE_DIR": ("cache", "directory"),
}


@dataclass(frozen=True)
class ApiKeysConfig:
    """
    Provider credentials.

    Attributes:
        openai: OpenAI API key (empty string when not configured).
        stabilityai: Stability AI API key (empty string when not configured).
    """
    openai: str = ""
    stabilityai: str = ""

    def get(self, provider: str) -> str:
        """Return the key for a canonical provider name, or "" if unknown."""
        return getattr(self, provider, "") or ""


@dataclass(frozen=True)
class DefaultsConfig:
    """
    Fallback values for GenerationParams fields the caller leaves unset.

    Attributes:
        provider: Provider used when params do not name one.
        model: Model used with the default provider when params do not name one.
        quality: OpenAI quality hint ("standard" or "hd").
        style: OpenAI style hint ("natural" or "vivid").
        orientation: One of landscape, portrait, square.
        width: Requested width in pixels (providers snap it to a legal size).
        height: Requested height in pixels.
        negative_prompt: Default negative prompt for providers that accept one.
        template: Prompt template name.
    """
    provider: str = "openai"
    model: str = "dall-e-3"
    quality: str = "standard"
    style: str = "natural"
    orientation: str = "landscape"
    width: int = 1024
    height: int = 576
    negative_prompt: str = ""
    template: str = "default"


@dataclass(frozen=True)
class CacheConfig:
    """
    Image cache configuration.

    Attributes:
        enabled: Set to False to bypass the cache entirely.
        directory: Directory holding the cached images (source of truth).
        retention_days: Entries not accessed for this many days are evicted
                        when the index is built. 0 disables eviction.
    """
    enabled: bool = True
    directory: Path = DEFAULT_CACHE_DIR
    retention_days: int = 30


@dataclass(frozen=True)
class GenerationConfig:
    """
    Dispatch behavior configuration.

    Attributes:
        concurrency: Default concurrency limit for batch generation.
        timeout: Per-request HTTP timeout in seconds.
        retry_count: Extra attempts for transient failures (rate limit, network).
        retry_delay: Base delay in seconds for exponential backoff.
        min_request_interval: Minimum seconds between two requests to the same
                              provider. 0 disables pacing.
    """
    concurrency: int = 3
    timeout: float = 60.0
    retry_count: int = 3
    retry_delay: float = 2.0
    min_request_interval: float = 1.0


@dataclass(frozen=True)
class PromptConfig:
    """
    Prompt builder configuration.

    Attributes:
        excerpt_chars: Character budget for the lyrics excerpt.
        excerpt_lines: Line count used when no paragraph structure is found.
        templates: Extra or overriding templates, merged over the built-ins.
    """
    excerpt_chars: int = 300
    excerpt_lines: int = 8
    templates: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class LoggingConfig:
    """
    Attributes:
        level: Console log level.
        directory: Directory for log files. None logs to console only.
    """
    level: str = "INFO"
    directory: Path | None = None


@dataclass(frozen=True)
class Config:
    """
    Complete application configuration.

    Created by load_config() and treated as immutable. Every section has
    defaults, so Config() is a valid configuration without any file.

    Example:
        config = load_config()
        print(f"Caching in: {config.cache.directory}")
        print(f"Default provider: {config.defaults.provider}")
    """
    api_keys: ApiKeysConfig = field(default_factory=ApiKeysConfig)
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    prompts: PromptConfig = field(default_factory=PromptConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def load_config(config_path: Path | None = None, use_env: bool = True) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Optional explicit path to a config file. It must exist.
                     If None, the default locations are searched and a
                     missing file simply means "use defaults".
        use_env: Apply .env / environment variable overrides.

    Returns:
        Config: A frozen dataclass containing all configuration values.

    Raises:
        ConfigError: If an explicit file is not found, the YAML is invalid,
                     or a field has an invalid value.

    Behavior:
        1. Locate config file (explicit path, CWD, user config dir)
        2. Read and parse YAML content (empty file = defaults)
        3. Parse each section with defaults applied
        4. Apply environment overrides
        5. Return frozen Config object
    """
    if config_path is not None:
        config_path = Path(config_path).expanduser()
        if not config_path.exists():
            raise ConfigError(
                f"Configuration file not found: {config_path}",
                details={"file_path": str(config_path)}
            )
    else:
        config_path = _find_default_config()

    raw_config: dict[str, Any] = {}
    if config_path is not None:
        raw_config = _read_yaml(config_path)

    config = Config(
        api_keys=_parse_api_keys_config(_section(raw_config, "api_keys")),
        defaults=_parse_defaults_config(_section(raw_config, "defaults")),
        cache=_parse_cache_config(_section(raw_config, "cache")),
        generation=_parse_generation_config(_section(raw_config, "generation")),
        prompts=_parse_prompt_config(_section(raw_config, "prompts")),
        logging=_parse_logging_config(_section(raw_config, "logging")),
    )

    if use_env:
        config = _apply_env_overrides(config)

    return config


def _find_default_config() -> Path | None:
    for candidate in (Path.cwd() / CONFIG_FILENAME, USER_CONFIG_DIR / CONFIG_FILENAME):
        if candidate.exists():
            return candidate
    return None


def _read_yaml(config_path: Path) -> dict[str, Any]:
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            content = f.read()
    except OSError as e:
        raise ConfigError(
            f"Failed to read configuration file: {e}",
            details={"file_path": str(config_path), "original_error": str(e)}
        ) from e

    try:
        raw_config = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Invalid YAML syntax in configuration file: {e}",
            details={"file_path": str(config_path), "original_error": str(e)}
        ) from e

    if raw_config is None:
        return {}

    if not isinstance(raw_config, dict):
        raise ConfigError(
            "Configuration file must contain a YAML dictionary",
            details={"file_path": str(config_path)}
        )

    return raw_config


def _section(raw_config: dict[str, Any], name: str) -> dict[str, Any]:
    """Return a config section, treating a missing or null section as empty."""
    section = raw_config.get(name)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigError(
            f"Section '{name}' must be a dictionary",
            details={"section": name}
        )
    return section


def _string(section: dict[str, Any], key: str, field_name: str, default: str) -> str:
    value = section.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ConfigError(
            f"'{field_name}' must be a string",
            details={"field": field_name, "value": value}
        )
    return value.strip()


def _positive_int(section: dict[str, Any], key: str, field_name: str, default: int, allow_zero: bool = False) -> int:
    value = section.get(key)
    if value is None:
        return default
    minimum = 0 if allow_zero else 1
    # bool is a subclass of int
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        qualifier = "non-negative" if allow_zero else "positive"
        raise ConfigError(
            f"'{field_name}' must be a {qualifier} integer",
            details={"field": field_name, "value": value}
        )
    return value


def _non_negative_number(section: dict[str, Any], key: str, field_name: str, default: float) -> float:
    value = section.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ConfigError(
            f"'{field_name}' must be a non-negative number",
            details={"field": field_name, "value": value}
        )
    return float(value)


def _parse_api_keys_config(section: dict[str, Any]) -> ApiKeysConfig:
    return ApiKeysConfig(
        openai=_string(section, "openai", "api_keys.openai", ""),
        stabilityai=_string(section, "stabilityai", "api_keys.stabilityai", ""),
    )


def _parse_defaults_config(section: dict[str, Any]) -> DefaultsConfig:
    """
    Parse the 'defaults' section.

    Raises:
        ConfigError: If orientation is unknown or width/height are not positive.
    """
    base = DefaultsConfig()
    orientation = _string(section, "orientation", "defaults.orientation", base.orientation).lower()
    if orientation not in VALID_ORIENTATIONS:
        raise ConfigError(
            f"'defaults.orientation' must be one of {', '.join(VALID_ORIENTATIONS)}",
            details={"field": "defaults.orientation", "value": orientation}
        )

    return DefaultsConfig(
        provider=_string(section, "provider", "defaults.provider", base.provider).lower(),
        model=_string(section, "model", "defaults.model", base.model),
        quality=_string(section, "quality", "defaults.quality", base.quality),
        style=_string(section, "style", "defaults.style", base.style),
        orientation=orientation,
        width=_positive_int(section, "width", "defaults.width", base.width),
        height=_positive_int(section, "height", "defaults.height", base.height),
        negative_prompt=_string(section, "negative_prompt", "defaults.negative_prompt", base.negative_prompt),
        template=_string(section, "template", "defaults.template", base.template),
    )


def _parse_cache_config(section: dict[str, Any]) -> CacheConfig:
    enabled = section.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ConfigError(
            "'cache.enabled' must be true or false",
            details={"field": "cache.enabled", "value": enabled}
        )

    directory = DEFAULT_CACHE_DIR
    raw_directory = section.get("directory")
    if raw_directory is not None:
        if not isinstance(raw_directory, str) or not raw_directory.strip():
            raise ConfigError(
                "'cache.directory' must be a non-empty string",
                details={"field": "cache.directory"}
            )
        # Expand ~ and make absolute
        directory = Path(raw_directory.strip()).expanduser().resolve()

    return CacheConfig(
        enabled=enabled,
        directory=directory,
        retention_days=_positive_int(section, "retention_days", "cache.retention_days", 30, allow_zero=True),
    )


def _parse_generation_config(section: dict[str, Any]) -> GenerationConfig:
    timeout = _non_negative_number(section, "timeout", "generation.timeout", 60.0)
    if timeout == 0:
        raise ConfigError(
            "'generation.timeout' must be greater than zero",
            details={"field": "generation.timeout", "value": timeout}
        )

    return GenerationConfig(
        concurrency=_positive_int(section, "concurrency", "generation.concurrency", 3),
        timeout=timeout,
        retry_count=_positive_int(section, "retry_count", "generation.retry_count", 3, allow_zero=True),
        retry_delay=_non_negative_number(section, "retry_delay", "generation.retry_delay", 2.0),
        min_request_interval=_non_negative_number(
            section, "min_request_interval", "generation.min_request_interval", 1.0
        ),
    )


def _parse_prompt_config(section: dict[str, Any]) -> PromptConfig:
    """
    Parse the 'prompts' section.

    Every template must be a string containing the {{lyrics}} placeholder.
    """
    templates = section.get("templates") or {}
    if not isinstance(templates, dict):
        raise ConfigError(
            "'prompts.templates' must be a mapping of name to template",
            details={"field": "prompts.templates"}
        )
    for name, template in templates.items():
        if not isinstance(template, str) or "{{lyrics}}" not in template:
            raise ConfigError(
                f"Template '{name}' must be a string containing {{{{lyrics}}}}",
                details={"field": f"prompts.templates.{name}"}
            )

    return PromptConfig(
        excerpt_chars=_positive_int(section, "excerpt_chars", "prompts.excerpt_chars", 300),
        excerpt_lines=_positive_int(section, "excerpt_lines", "prompts.excerpt_lines", 8),
        templates={str(name): template for name, template in templates.items()},
    )


def _parse_logging_config(section: dict[str, Any]) -> LoggingConfig:
    level = _string(section, "level", "logging.level", "INFO").upper()
    if level not in VALID_LOG_LEVELS:
        raise ConfigError(
            f"'logging.level' must be one of {', '.join(VALID_LOG_LEVELS)}",
            details={"field": "logging.level", "value": level}
        )

    directory = None
    raw_directory = section.get("directory")
    if raw_directory is not None:
        if not isinstance(raw_directory, str) or not raw_directory.strip():
            raise ConfigError(
                "'logging.directory' must be a non-empty string or null",
                details={"field": "logging.directory"}
            )
        directory = Path(raw_directory.strip()).expanduser().resolve()

    return LoggingConfig(level=level, directory=directory)


def _apply_env_overrides(config: Config) -> Config:
    """
    Overlay environment variables (after loading .env) onto the config.

    Environment values win over file values for the keys in ENV_OVERRIDES.
    """
    load_dotenv()

    sections: dict[str, dict[str, Any]] = {}
    for env_var, (section, field_name) in ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if not value:
            continue
        if field_name == "directory":
            sections.setdefault(section, {})[field_name] = Path(value).expanduser().resolve()
        else:
            sections.setdefault(section, {})[field_name] = value.strip()

    for section, overrides in sections.items():
        config = replace(config, **{section: replace(getattr(config, section), **overrides)})

    return config
