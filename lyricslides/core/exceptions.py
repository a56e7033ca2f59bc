"""
Exception classes for lyricslides.

This module defines the custom exceptions used throughout the image
generation core, plus the ErrorKind taxonomy that failed results carry.

Most failures never surface as exceptions: provider and network problems
are converted into failed results at the adapter boundary, and cache
problems degrade to a miss or to an uncached success. Only programmer-level
mistakes (unknown provider, malformed parameters) and configuration issues
are raised to the caller.

Exception Hierarchy:
    LyricSlidesError (base)
        ConfigError - Configuration file issues
        CacheIOError - Image cache read/write issues
        UnsupportedProviderError - Unknown provider name
        GenerationParamsError - Malformed generation parameters
        ProviderError - Provider API issues (carries an ErrorKind)
        StateTransitionError - Illegal request state transition
        GenerationCancelled - Request was cancelled via its token
"""

from enum import Enum


class ErrorKind(str, Enum):
    """
    Uniform error vocabulary shared by every provider adapter.

    The value is the string reported in results and logs.
    """
    MISSING_API_KEY = "missing_api_key"
    AUTH_ERROR = "auth_error"
    RATE_LIMITED = "rate_limited"
    INVALID_RESPONSE = "invalid_response"
    NETWORK_ERROR = "network_error"
    CANCELLED = "cancelled"
    CACHE_IO_ERROR = "cache_io_error"
    UNSUPPORTED_PROVIDER = "unsupported_provider"


# Kinds worth another attempt with backoff
RETRYABLE_KINDS = frozenset({ErrorKind.RATE_LIMITED, ErrorKind.NETWORK_ERROR})


class LyricSlidesError(Exception):
    """
    Base exception for all lyricslides errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional context (provider, paths, status codes).

    Example:
        try:
            service.check_api_key("midjourney", key)
        except LyricSlidesError as e:
            logger.error(f"Operation failed: {e.message}")
            if e.details:
                logger.debug(f"Details: {e.details}")
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        """
        Initialize the base exception.

        Args:
            message: Human-readable error description.
            details: Optional dictionary containing additional context.
                     Common keys include:
                     - 'provider': Provider name involved in the error
                     - 'path': Filesystem path that caused the error
                     - 'original_error': The underlying exception if wrapping another error
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return the error message for display."""
        return self.message


class ConfigError(LyricSlidesError):
    """
    Raised when there's an issue with the configuration file.

    This is a CRITICAL error that should stop program execution.

    Common causes:
        - Explicit config path does not exist
        - config.yaml has invalid YAML syntax
        - Invalid field values (e.g., non-positive concurrency)

    Example:
        raise ConfigError(
            "'generation.concurrency' must be a positive integer",
            details={'field': 'generation.concurrency', 'value': 0}
        )
    """
    pass


class CacheIOError(LyricSlidesError):
    """
    Raised when the image cache cannot be read or written.

    This is a NON-CRITICAL error. The coordinator treats a failed read
    as a miss and a failed write as "generated but not cached".
    """
    pass


class UnsupportedProviderError(LyricSlidesError):
    """
    Raised when a provider name is not present in the registry.

    Example:
        raise UnsupportedProviderError(
            "Unsupported image provider: midjourney",
            details={'provider': 'midjourney', 'available': ['openai', 'stabilityai']}
        )
    """

    kind = ErrorKind.UNSUPPORTED_PROVIDER


class GenerationParamsError(LyricSlidesError):
    """
    Raised when generation parameters are malformed.

    Common causes:
        - Neither prompt, lyrics nor song title supplied
        - Non-positive width or height
        - Unknown orientation value
    """
    pass


class ProviderError(LyricSlidesError):
    """
    Raised inside a provider adapter when an API call fails.

    Never escapes the adapter: ImageProvider.generate() converts it into
    a failed ProviderResult carrying the same kind and message.

    Attributes:
        kind: ErrorKind classifying the failure.
        status: HTTP status code, if the failure came from a response.
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        details: dict | None = None,
        status: int | None = None
    ) -> None:
        super().__init__(message, details)
        self.kind = kind
        self.status = status

    @property
    def is_retryable(self) -> bool:
        """True for transient failures (rate limiting, network)."""
        return self.kind in RETRYABLE_KINDS


class StateTransitionError(LyricSlidesError):
    """
    Raised when a request is moved along an edge the state machine forbids.

    Always a programming error in the coordinator, never a runtime condition.
    """
    pass


class GenerationCancelled(LyricSlidesError):
    """Raised when a cancel token fires while work is suspended."""

    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "Generation cancelled", details: dict | None = None) -> None:
        super().__init__(message, details)
