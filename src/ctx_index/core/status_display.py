"""Status display for background indexing.

The coordinator pushes stage changes, progress and the final outcome into a
``StatusDisplay``. Displays only render; they never call back into the
coordinator.

``RichStatusDisplay`` prints through a rich ``Console`` and avoids rich's
background render threads (``Progress``, ``Live``), so it is safe to drive
from the event loop while an interactive prompt owns the terminal.
"""

import time
from typing import Protocol

from rich.console import Console

from .models import ProgressData


class StatusDisplay(Protocol):
    def show(self) -> None: ...

    def hide(self) -> None: ...

    def set_stage(self, stage: str) -> None: ...

    def update(self, progress: ProgressData) -> None: ...

    def show_success(self, message: str) -> None: ...

    def show_error(self, error: Exception) -> None: ...

    def show_cancelled(self) -> None: ...

    def is_active(self) -> bool: ...


class RichStatusDisplay:
    """Print-based status lines.

    Progress lines are throttled so a fast embedding run does not flood the
    terminal: a new line is printed when the stage changes, when at least
    ``min_interval`` seconds have passed, or when the stage completes.

    Example output::

        Indexing  chunking
          → 1,204 chunks
        Indexing  embedding
          → 256/1,204 (21%)  48.2/s  eta 20s
        ✓ Indexed 1,204 chunks
    """

    def __init__(
        self,
        console: Console | None = None,
        min_interval: float = 1.0,
        verbose: bool = False,
    ) -> None:
        self.console = console or Console(stderr=True)
        self.min_interval = min_interval
        self.verbose = verbose
        self._active = False
        self._stage: str | None = None
        self._last_print = 0.0

    def show(self) -> None:
        self._active = True
        self._stage = None
        self._last_print = 0.0

    def hide(self) -> None:
        self._active = False

    def is_active(self) -> bool:
        return self._active

    def set_stage(self, stage: str) -> None:
        if not self._active:
            return
        self._stage = stage
        self._last_print = 0.0
        self.console.print(f"[bold]Indexing[/bold]  [cyan]{stage}[/cyan]")

    def update(self, progress: ProgressData) -> None:
        if not self._active:
            return
        now = time.monotonic()
        finished = progress.total > 0 and progress.processed >= progress.total
        if not finished and now - self._last_print < self.min_interval:
            return
        self._last_print = now
        self.console.print(f"  [dim]→[/dim] {self.format_progress(progress)}")

    @staticmethod
    def format_progress(progress: ProgressData) -> str:
        parts = [f"{progress.processed:,}/{progress.total:,} ({progress.percent:.0f}%)"]
        if progress.stage != "embedding" and progress.processed == progress.total:
            parts = [f"{progress.total:,} chunks"]
        if progress.rate:
            parts.append(f"{progress.rate:.1f}/s")
        if progress.eta:
            parts.append(f"eta {progress.eta:.0f}s")
        return "  ".join(parts)

    def show_success(self, message: str) -> None:
        self.console.print(f"[green]✓ {message}[/green]")

    def show_error(self, error: Exception) -> None:
        self.console.print(f"[red]✗ Indexing failed:[/red] {error}")
        if self.verbose:
            context = getattr(error, "context", None)
            if context:
                for key, value in context.items():
                    self.console.print(f"  [dim]{key}: {value}[/dim]")

    def show_cancelled(self) -> None:
        self.console.print("[yellow]⚠ Indexing cancelled[/yellow]")
