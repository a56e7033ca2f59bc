"""
lyricslides: AI-generated background images for lyric slides.

This package turns song lyrics into a background image for presentation
slides. It builds a prompt from the lyrics, asks a generative image API
for a picture, and keeps the result in a local cache so the same song is
never paid for twice.

Architecture:
    A request flows through four stages:

    PROMPT (prompt/): Build an image prompt
        - Pick a lyrics excerpt (chorus first)
        - Fill a named template
        - Append optional style and aspect ratio hints

    CACHE (cache/): Look for an existing image
        - Song identity (title + artist) first
        - Then the request key (prompt hash, model, size, options)

    PROVIDER (providers/): Generate a new image
        - OpenAI (DALL-E) and Stability AI adapters
        - Uniform error kinds, retries with backoff, request pacing

    GENERATION (generation/): Orchestrate
        - RequestCoordinator: per-request state machine, progress events,
          cancellation, single-flight
        - BatchScheduler: bounded concurrency over many songs

Modules:
    core/        - Configuration, logging, exceptions, events, cancellation
    prompt/      - Prompt templates and excerpt extraction
    cache/       - File-backed image cache index
    providers/   - Image API adapters and registry
    generation/  - Request coordinator and batch scheduler
    service.py   - ImageGenerationService facade
    cli.py       - Command-line interface

Usage:
    Command Line:
        lyricslides generate --title "Amazing Grace" --lyrics-file grace.txt
        lyricslides batch setlist.yaml

    Python API:
        from lyricslides import ImageGenerationService, GenerationParams, load_config

        async with ImageGenerationService(load_config()) as service:
            result = await service.generate_image(
                GenerationParams(song_title="Amazing Grace", lyrics=text)
            )
"""

__version__ = "0.1.0"

from lyricslides.core import (
    Config,
    ErrorKind,
    GenerationStatus,
    LyricSlidesError,
    ProgressEvent,
    load_config,
    setup_logging,
)
from lyricslides.generation import (
    BatchProgress,
    GenerationParams,
    GenerationResult,
)
from lyricslides.service import ImageGenerationService

__all__ = [
    "__version__",
    "Config",
    "ErrorKind",
    "GenerationStatus",
    "LyricSlidesError",
    "ProgressEvent",
    "load_config",
    "setup_logging",
    "BatchProgress",
    "GenerationParams",
    "GenerationResult",
    "ImageGenerationService",
]
