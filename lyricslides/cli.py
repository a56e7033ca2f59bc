"""
Command-line interface for lyricslides.

This module implements the CLI using Click, exposing the image generation
core for scripting and manual use. rich-click is used for the help output.

Commands:
    lyricslides generate --title <title> [--artist <artist>] [--lyrics-file <file>]
    lyricslides batch <songs.yaml>
    lyricslides cache size
    lyricslides cache clear [--provider <name>] [--model <id>] [--older-than-days <n>]
    lyricslides check-key <provider> <key>
    lyricslides templates

Usage:
    # One background image for a song
    lyricslides generate --title "Amazing Grace" --artist "Traditional" --lyrics-file grace.txt

    # Many songs at once, three requests in flight
    lyricslides batch setlist.yaml --concurrency 3

    # Free some disk space
    lyricslides cache clear --older-than-days 60

Batch File:
    A YAML list where each item holds GenerationParams fields. A
    `lyrics_file` key is read relative to the batch file:

        - song_title: Amazing Grace
          artist: Traditional
          lyrics_file: lyrics/amazing_grace.txt
        - song_title: How Great Thou Art
          provider: stabilityai
          orientation: square

Configuration:
    config.yaml in the current directory or ~/.lyricslides/config.yaml,
    or an explicit file with --config. API keys may also come from the
    OPENAI_API_KEY / STABILITY_API_KEY environment variables (or a .env).

Exit Codes:
    0   success
    1   configuration or unexpected error
    2   invalid parameters or unknown provider
    3   one or more generations failed
    4   other lyricslides error
    130 interrupted
"""

import asyncio
import sys
import time
from pathlib import Path
from typing import Awaitable, Callable, Optional

import rich_click as click
import yaml

# Configure rich-click for better help formatting
click.rich_click.USE_RICH_MARKUP = True
click.rich_click.SHOW_ARGUMENTS = True
click.rich_click.GROUP_ARGUMENTS_OPTIONS = True
click.rich_click.STYLE_ERRORS_SUGGESTION = "magenta italic"
click.rich_click.ERRORS_SUGGESTION = ""
click.rich_click.MAX_WIDTH = 100
click.rich_click.OPTION_GROUPS = {
    "cli generate": [
        {
            "name": "Song",
            "options": ["--title", "--artist", "--lyrics-file", "--prompt"],
        },
        {
            "name": "Image",
            "options": ["--provider", "--model", "--orientation", "--template", "--style", "--negative-prompt"],
        },
        {
            "name": "Cache",
            "options": ["--no-cache"],
        },
    ],
}

from lyricslides import __version__
from lyricslides.cache import CacheFilter
from lyricslides.core import (
    Config,
    ConfigError,
    GenerationParamsError,
    LyricSlidesError,
    ProgressEvent,
    UnsupportedProviderError,
    get_logger,
    load_config,
    setup_logging,
    shutdown_logging,
)
from lyricslides.core.progress import GenerationProgressBar
from lyricslides.generation import GenerationParams, GenerationResult
from lyricslides.service import SECONDS_PER_DAY, ImageGenerationService
from lyricslides.utils import format_size

logger = get_logger(__name__)


@click.group()
@click.option(
    "--config", "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    metavar="<config.yaml>",
    help="Configuration file (default: ./config.yaml or ~/.lyricslides/config.yaml)"
)
@click.version_option(__version__, prog_name="lyricslides")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path]) -> None:
    """
    lyricslides: AI background images for lyric slides.

    Builds a prompt from a song's lyrics, generates an image with OpenAI or
    Stability AI, and keeps it in a local cache so each song is only
    generated once.

    \b
    BASIC USAGE:
        lyricslides generate --title "Amazing Grace" --lyrics-file grace.txt
        lyricslides batch setlist.yaml
        lyricslides cache size
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.option("--title", type=str, default=None, help="Song title (also the cache identity)")
@click.option("--artist", type=str, default=None, help="Song artist")
@click.option(
    "--lyrics-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Text file with the song lyrics"
)
@click.option("--prompt", type=str, default=None, help="Use this prompt instead of building one")
@click.option("--provider", type=str, default=None, help="openai or stabilityai")
@click.option("--model", type=str, default=None, help="Provider model id")
@click.option(
    "--orientation",
    type=click.Choice(["landscape", "portrait", "square"]),
    default=None,
    help="Image orientation"
)
@click.option("--template", type=str, default=None, help="Prompt template name")
@click.option("--style", type=str, default=None, help="Extra style appended to the prompt")
@click.option("--negative-prompt", type=str, default=None, help="Things to avoid (Stability AI)")
@click.option("--no-cache", is_flag=True, help="Ignore cached images and generate a new one")
@click.pass_context
def generate(
    ctx: click.Context,
    title: Optional[str],
    artist: Optional[str],
    lyrics_file: Optional[Path],
    prompt: Optional[str],
    provider: Optional[str],
    model: Optional[str],
    orientation: Optional[str],
    template: Optional[str],
    style: Optional[str],
    negative_prompt: Optional[str],
    no_cache: bool
) -> None:
    """Generate one background image and print where it was saved."""
    if not (title or lyrics_file or prompt):
        raise click.UsageError("Provide at least one of --title, --lyrics-file or --prompt")

    params = GenerationParams(
        prompt=prompt,
        lyrics=_read_lyrics(lyrics_file) if lyrics_file else None,
        provider=provider,
        model=model,
        orientation=orientation,
        template=template,
        additional_style=style,
        negative_prompt=negative_prompt,
        song_title=title,
        artist=artist,
        use_cache=not no_cache,
    )

    async def _generate(service: ImageGenerationService) -> int:
        result = await service.generate_image(params, on_progress=_echo_event)
        _echo_result(result)
        return 0 if result.success else 3

    _run(ctx, _generate)


@cli.command()
@click.argument("batch_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--concurrency", type=click.IntRange(min=1), default=None, help="Requests in flight (default from config)")
@click.option("--provider", type=str, default=None, help="Provider for items that do not name one")
@click.pass_context
def batch(ctx: click.Context, batch_file: Path, concurrency: Optional[int], provider: Optional[str]) -> None:
    """Generate background images for every song in a YAML file."""
    try:
        params_list = _load_batch_file(batch_file, provider)
    except GenerationParamsError as e:
        raise click.UsageError(e.message)

    if not params_list:
        click.echo("Batch file contains no songs")
        return

    async def _batch(service: ImageGenerationService) -> int:
        with GenerationProgressBar(total=len(params_list)) as progress:
            results = await service.generate_batch(
                params_list,
                on_progress=progress.update_from_batch,
                concurrency_limit=concurrency,
            )
        _print_batch_summary(params_list, results)
        return 0 if all(r.success for r in results) else 3

    _run(ctx, _batch)


@cli.group()
def cache() -> None:
    """Inspect or clean the image cache."""


@cache.command("size")
@click.pass_context
def cache_size(ctx: click.Context) -> None:
    """Show how much disk space cached images use."""

    async def _size(service: ImageGenerationService) -> int:
        info = service.get_cache_size()
        click.echo(f"Cache directory: {service.cache.directory}")
        click.echo(f"Images:          {info['file_count']}")
        click.echo(f"Total size:      {format_size(info['total_size_bytes'])}")
        if not service.cache.enabled:
            click.echo(f"Cache disabled:  {service.cache.disabled_reason}")
        return 0

    _run(ctx, _size)


@cache.command("clear")
@click.option("--provider", type=str, default=None, help="Only images from this provider")
@click.option("--model", type=str, default=None, help="Only images generated with this model")
@click.option("--older-than-days", type=click.FloatRange(min=0), default=None, help="Only images older than this")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def cache_clear(
    ctx: click.Context,
    provider: Optional[str],
    model: Optional[str],
    older_than_days: Optional[float],
    yes: bool
) -> None:
    """Delete cached images (all of them unless filtered)."""
    if not (provider or model or older_than_days is not None) and not yes:
        click.confirm("Delete ALL cached images?", abort=True)

    async def _clear(service: ImageGenerationService) -> int:
        if older_than_days is not None and not (provider or model):
            removed = service.clear_cache_older_than(older_than_days)
        else:
            before = time.time() - older_than_days * SECONDS_PER_DAY if older_than_days is not None else None
            removed = service.clear_cache(CacheFilter(provider=provider, model=model, before=before))
        click.echo(f"Deleted {removed} cached image(s)")
        return 0

    _run(ctx, _clear)


@cli.command("check-key")
@click.argument("provider", type=str)
@click.argument("api_key", type=str)
@click.pass_context
def check_key(ctx: click.Context, provider: str, api_key: str) -> None:
    """Check whether PROVIDER accepts API_KEY."""

    async def _check(service: ImageGenerationService) -> int:
        valid = await service.check_api_key(provider, api_key)
        if valid:
            click.echo(f"✓ {provider} accepted the API key")
            return 0
        click.echo(f"✗ {provider} rejected the API key (or could not be reached)", err=True)
        return 3

    _run(ctx, _check)


@cli.command()
@click.option("--show", "show_name", type=str, default=None, help="Print the full text of one template")
@click.pass_context
def templates(ctx: click.Context, show_name: Optional[str]) -> None:
    """List the available prompt templates."""

    async def _templates(service: ImageGenerationService) -> int:
        available = service.get_prompt_templates()
        if show_name:
            if show_name not in available:
                click.echo(f"Unknown template: {show_name}", err=True)
                return 2
            click.echo(available[show_name])
            return 0
        for name, body in sorted(available.items()):
            first_line = body.strip().splitlines()[0] if body.strip() else ""
            click.echo(f"{name:<12} {first_line[:80]}")
        return 0

    _run(ctx, _templates)


# =============================================================================
# Helpers
# =============================================================================

def _load_configuration(ctx: click.Context) -> Config:
    """
    Load and validate configuration.

    Raises:
        ConfigError: If configuration is invalid or an explicit file is missing.
    """
    return load_config(ctx.obj.get("config_path") if ctx.obj else None)


def _run(ctx: click.Context, command: Callable[[ImageGenerationService], Awaitable[int]]) -> None:
    """
    Load config, set up logging, run an async command and exit with its code.

    All error reporting for the CLI lives here.
    """
    exit_code = 0
    try:
        config = _load_configuration(ctx)
        setup_logging(config.logging.directory, config.logging.level)
        logger.debug(f"Cache directory: {config.cache.directory}")

        async def _main() -> int:
            async with ImageGenerationService(config) as service:
                return await command(service)

        exit_code = asyncio.run(_main())

    except ConfigError as e:
        click.echo(f"Configuration error: {e.message}", err=True)
        exit_code = 1

    except (UnsupportedProviderError, GenerationParamsError) as e:
        click.echo(f"Error: {e.message}", err=True)
        if e.details.get("available"):
            click.echo(f"Available providers: {', '.join(e.details['available'])}", err=True)
        exit_code = 2

    except LyricSlidesError as e:
        click.echo(f"Error: {e.message}", err=True)
        logger.error(f"Error: {e.message}", exc_info=True)
        exit_code = 4

    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        logger.info("Interrupted by user")
        exit_code = 130

    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        logger.exception("Unexpected error")
        exit_code = 1

    finally:
        shutdown_logging()

    if exit_code:
        sys.exit(exit_code)


def _read_lyrics(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise click.BadParameter(f"Cannot read lyrics file {path}: {e}")


def _load_batch_file(batch_file: Path, default_provider: str | None) -> list[GenerationParams]:
    """
    Parse a YAML batch file into GenerationParams.

    Raises:
        GenerationParamsError: If the file is not a list of mappings or an
                               item has unknown keys.
    """
    try:
        with open(batch_file, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or []
    except yaml.YAMLError as e:
        raise GenerationParamsError(f"Invalid YAML in {batch_file}: {e}")

    if isinstance(raw, dict):
        raw = raw.get("songs", [])
    if not isinstance(raw, list):
        raise GenerationParamsError(f"{batch_file} must contain a list of songs")

    params_list = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise GenerationParamsError(f"Item {index} in {batch_file} is not a mapping")
        item = dict(item)
        lyrics_file = item.pop("lyrics_file", None)
        if lyrics_file:
            item["lyrics"] = _read_lyrics(batch_file.parent / lyrics_file)
        if default_provider and not item.get("provider"):
            item["provider"] = default_provider
        params_list.append(GenerationParams.from_dict(item))
    return params_list


def _echo_event(event: ProgressEvent) -> None:
    click.echo(f"[{event.progress:>4.0%}] {event.status.value:<14} {event.message}")


def _echo_result(result: GenerationResult) -> None:
    if result.success:
        source = "cache" if result.from_cache else result.provider
        if result.file_path:
            click.echo(f"✓ Image ready ({source}): {result.file_path}")
        else:
            click.echo(f"✓ Image generated by {source} but not cached: {result.metadata.get('cache_error')}")
    elif result.cancelled:
        click.echo("⊘ Generation cancelled", err=True)
    else:
        kind = result.error_kind.value if result.error_kind else "error"
        click.echo(f"✗ Generation failed [{kind}]: {result.error}", err=True)


def _print_batch_summary(params_list: list[GenerationParams], results: list[GenerationResult]) -> None:
    generated = sum(1 for r in results if r.success and not r.from_cache)
    cached = sum(1 for r in results if r.success and r.from_cache)
    failed = [
        (params, result) for params, result in zip(params_list, results)
        if not result.success
    ]

    logger.info("=" * 60)
    logger.info("BATCH SUMMARY")
    logger.info("=" * 60)
    logger.info(f"Songs:             {len(results)}")
    logger.info(f"Generated:         {generated}")
    logger.info(f"From cache:        {cached}")
    logger.info(f"Failed/cancelled:  {len(failed)}")
    for params, result in failed:
        label = params.song_title or (params.prompt or "")[:40] or result.request_id
        kind = result.error_kind.value if result.error_kind else "error"
        logger.info(f"  ✗ {label} [{kind}] {result.error}")
    logger.info("=" * 60)


def main() -> None:
    """
    Entry point for the CLI.

    This function is called when running `lyricslides` from the command line.
    """
    cli()


if __name__ == "__main__":
    main()
