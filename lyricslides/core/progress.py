"""
Progress bar handling for lyricslides using the Rich library.

Used by the CLI to render batch generation progress. The generation core
itself never draws anything; it publishes BatchProgress snapshots and the
CLI feeds them into a GenerationProgressBar.

Usage:
    from lyricslides.core.progress import GenerationProgressBar

    with GenerationProgressBar(total=len(params_list)) as progress:
        results = await scheduler.generate_batch(
            params_list, on_progress=progress.update_from_batch
        )
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from rich import get_console
from rich.progress import (
    BarColumn,
    Progress,
    ProgressColumn,
    Task,
    TaskID,
)
from rich.text import Text
from rich.theme import Theme

if TYPE_CHECKING:
    from lyricslides.generation.batch import BatchProgress


PROGRESS_THEME = Theme({
    "bar.back": "grey23",
    "bar.complete": "rgb(165,66,129)",
    "bar.finished": "rgb(114,156,31)",
    "bar.pulse": "rgb(165,66,129)",
    "progress.percentage": "white",
})


class FixedWidthTextColumn(ProgressColumn):
    """Markup text column truncated with an ellipsis to a fixed width."""

    def __init__(self, text_format: str, width: int = 20, style: str = "none") -> None:
        self.text_format = text_format
        self.width = width
        self.style = style
        super().__init__()

    def render(self, task: Task) -> Text:
        text = Text.from_markup(self.text_format.format(task=task), style=self.style)
        text.truncate(max_width=self.width, overflow="ellipsis", pad=True)
        return text


class BaseProgressBar(ABC):
    """
    Abstract base class for progress bars.

    Provides a themed Rich Progress instance, context manager support and
    manual start/stop control.

    Subclasses must implement:
    - _get_status_text(): Return formatted status string
    - update(): Record one finished item
    """

    def __init__(self, total: int, description: str, status_width: int = 35):
        self.total = total
        self.description = description
        self.completed = 0

        self.console = get_console()
        self.console.push_theme(PROGRESS_THEME)

        self.progress = Progress(
            FixedWidthTextColumn("[white]{task.description}", width=15),
            FixedWidthTextColumn("{task.fields[status]}", width=status_width, style="white"),
            BarColumn(bar_width=40, finished_style="green"),
            "[progress.percentage]{task.percentage:>3.0f}%",
            console=self.console,
            transient=False,
            refresh_per_second=10,
        )

        self.task_id: TaskID | None = None
        self._started = False

    def __enter__(self) -> "BaseProgressBar":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    def start(self) -> None:
        if not self._started:
            self.progress.start()
            self.task_id = self.progress.add_task(
                description=self.description,
                total=self.total,
                status=self._get_status_text(),
            )
            self._started = True

    def stop(self) -> None:
        if self._started:
            self.progress.stop()
            self.console.pop_theme()
            self._started = False

    def log(self, message: str) -> None:
        """Print a message above the progress bar."""
        self.progress.console.print(message, highlight=False)

    def _update_progress(self) -> None:
        if self.task_id is not None:
            self.progress.update(
                self.task_id,
                completed=self.completed,
                status=self._get_status_text(),
            )

    @abstractmethod
    def _get_status_text(self) -> str:
        pass

    @abstractmethod
    def update(self, *args, **kwargs) -> None:
        pass


class GenerationProgressBar(BaseProgressBar):
    """
    Progress bar for batch image generation.

    Displays:
    - Description (e.g., "Generating")
    - Status: ✓ generated, ↺ served from cache, ✗ failed, ⊘ cancelled
    - Progress bar and percentage

    Example:
        Generating      ✓ 4  ↺ 2  ✗ 1           ━━━━━━━━━━━━━━━━━  70%
    """

    def __init__(self, total: int, description: str = "Generating"):
        super().__init__(total=total, description=description)
        self.generated = 0
        self.cached = 0
        self.failed = 0
        self.cancelled = 0
        self._seen: set[int] = set()

    def _get_status_text(self) -> str:
        parts = [
            f"[green]✓ {self.generated}[/green]",
            f"[cyan]↺ {self.cached}[/cyan]",
            f"[red]✗ {self.failed}[/red]",
        ]
        if self.cancelled > 0:
            parts.append(f"[yellow]⊘ {self.cancelled}[/yellow]")
        return "  ".join(parts)

    def update(self, success: bool, from_cache: bool = False, cancelled: bool = False) -> None:
        """
        Record one finished generation.

        Args:
            success: Whether an image was produced.
            from_cache: Whether it was served from the cache.
            cancelled: Whether the request was cancelled.
        """
        self.completed += 1
        if cancelled:
            self.cancelled += 1
        elif not success:
            self.failed += 1
        elif from_cache:
            self.cached += 1
        else:
            self.generated += 1

        self._update_progress()

    def update_from_batch(self, snapshot: "BatchProgress") -> None:
        """Consume a BatchProgress snapshot, counting each finished index once."""
        for index, result in enumerate(snapshot.results_so_far):
            if result is None or index in self._seen:
                continue
            self._seen.add(index)
            self.update(success=result.success, from_cache=result.from_cache, cancelled=result.cancelled)


__all__ = [
    "PROGRESS_THEME",
    "FixedWidthTextColumn",
    "BaseProgressBar",
    "GenerationProgressBar",
]
