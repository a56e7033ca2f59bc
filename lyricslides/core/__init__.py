"""
Core module for lyricslides.

This module provides the foundational components used throughout the package:
    - exceptions: Custom exception classes and the ErrorKind taxonomy
    - config: Configuration loading and validation
    - logger: Logging system with multiple outputs
    - cancellation: Cooperative, thread-safe cancel tokens
    - events: Progress events and multi-subscriber streams

Usage:
    from lyricslides.core import (
        Config, load_config,
        setup_logging, get_logger,
        CancelToken, ProgressEvent, GenerationStatus,
        LyricSlidesError, ConfigError, ErrorKind
    )
"""

from lyricslides.core.cancellation import CancelToken
from lyricslides.core.config import (
    ApiKeysConfig,
    CacheConfig,
    Config,
    DefaultsConfig,
    GenerationConfig,
    LoggingConfig,
    PromptConfig,
    load_config,
)
from lyricslides.core.events import (
    GenerationStatus,
    ProgressEvent,
    ProgressStream,
)
from lyricslides.core.exceptions import (
    CacheIOError,
    ConfigError,
    ErrorKind,
    GenerationCancelled,
    GenerationParamsError,
    LyricSlidesError,
    ProviderError,
    StateTransitionError,
    UnsupportedProviderError,
)
from lyricslides.core.logger import (
    get_logger,
    log_generation_failure,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    # Config
    "Config",
    "ApiKeysConfig",
    "DefaultsConfig",
    "CacheConfig",
    "GenerationConfig",
    "PromptConfig",
    "LoggingConfig",
    "load_config",
    # Cancellation / events
    "CancelToken",
    "GenerationStatus",
    "ProgressEvent",
    "ProgressStream",
    # Exceptions
    "LyricSlidesError",
    "ConfigError",
    "CacheIOError",
    "UnsupportedProviderError",
    "GenerationParamsError",
    "ProviderError",
    "StateTransitionError",
    "GenerationCancelled",
    "ErrorKind",
    # Logger
    "setup_logging",
    "get_logger",
    "log_generation_failure",
    "shutdown_logging",
]
