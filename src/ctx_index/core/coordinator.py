"""Background indexing coordinator.

Runs at most one ``IndexingSession`` at a time without blocking its caller.
``start()`` returns as soon as the run is scheduled; ``get_status()`` and
``cancel()`` answer synchronously from the coordinator's own fields, so
status is correct from the instant ``start()`` returns, before the session
task has had a chance to run.

Session events are applied by a single drain task in the order the session
emitted them. The run retires (status goes back to idle) when the first
terminal event is applied.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from loguru import logger

from ..config.defaults import INDEXING_IN_PROGRESS_MESSAGE
from .exceptions import IndexingError, IndexingInProgressError
from .models import IndexingResult, IndexingRunStatus, ProgressData
from .session import (
    IndexingSession,
    IndexPipelineOptions,
    SessionEvent,
    SessionEventKind,
)
from .status_display import RichStatusDisplay, StatusDisplay

SessionFactory = Callable[[IndexPipelineOptions], IndexingSession]

_RUN_FINISHED = object()


@dataclass
class BackgroundIndexingOptions(IndexPipelineOptions):
    """Pipeline options plus callbacks for the caller.

    Callbacks run after the status display has been updated. Terminal
    callbacks run after the coordinator is idle again, so they may start a
    new run.
    """

    on_progress: Callable[[ProgressData], None] | None = None
    on_complete: Callable[[IndexingResult], None] | None = None
    on_error: Callable[[IndexingError], None] | None = None
    on_cancelled: Callable[[], None] | None = None


class BackgroundIndexingCoordinator:
    """Owns the single active indexing run for an engine context.

    Example:
        coordinator = BackgroundIndexingCoordinator()
        coordinator.start(options)           # returns immediately
        coordinator.get_status().running     # True
        coordinator.cancel()                 # True, run stops between batches
    """

    def __init__(
        self,
        display: StatusDisplay | None = None,
        session_factory: SessionFactory = IndexingSession,
    ) -> None:
        self.display = display or RichStatusDisplay()
        self._session_factory = session_factory
        self._running = False
        self._project_name: str | None = None
        self._started_at: datetime | None = None
        self._stage: str | None = None
        self._progress: ProgressData | None = None
        self._cancel_requested = False
        self._session: IndexingSession | None = None
        self._task: asyncio.Task | None = None

    # ── Public API ──────────────────────────────────────────────────────

    def start(self, options: IndexPipelineOptions) -> None:
        """Schedule an indexing run and return immediately.

        Must be called from a running event loop. Plain
        ``IndexPipelineOptions`` are accepted and run without callbacks.

        Raises:
            IndexingInProgressError: If a run is active (state is unchanged)
            RuntimeError: If no event loop is running
        """
        if self._running:
            raise IndexingInProgressError(
                INDEXING_IN_PROGRESS_MESSAGE,
                {"project_name": self._project_name},
            )
        loop = asyncio.get_running_loop()

        # Status flips before anything else so concurrent readers see it
        self._running = True
        self._project_name = options.project_name
        self._started_at = datetime.now()
        self._stage = None
        self._progress = None
        self._cancel_requested = False

        try:
            session = self._session_factory(options)
        except Exception:
            self._retire()
            raise

        self._session = session
        self._safe_display(self.display.show)
        self._task = loop.create_task(
            self._drive(session, options), name=f"ctx-index:{options.project_name}"
        )
        self._task.add_done_callback(lambda task: self._drive_done(task, session))
        logger.info(f"Background indexing started for {options.project_name}")

    def get_status(self) -> IndexingRunStatus:
        return IndexingRunStatus(
            running=self._running,
            project_name=self._project_name,
            started_at=self._started_at,
            stage=self._stage,
            progress=self._progress,
            cancel_requested=self._cancel_requested,
        )

    def is_running(self) -> bool:
        return self._running

    def cancel(self) -> bool:
        """Request cancellation of the active run.

        Returns:
            False when idle. True when a run is active, on every call until
            the run retires. Does not wait for the run to stop.
        """
        if not self._running or self._session is None:
            return False
        if not self._cancel_requested:
            self._cancel_requested = True
            self._session.cancel()
            logger.info(f"Cancelling background indexing for {self._project_name}")
        return True

    async def wait(self) -> None:
        """Wait until the active run (if any) has retired."""
        if self._task is not None:
            await asyncio.shield(self._task)

    # ── Event handling ──────────────────────────────────────────────────

    def _retire(self) -> None:
        self._running = False
        self._project_name = None
        self._started_at = None
        self._stage = None
        self._progress = None
        self._cancel_requested = False
        self._session = None

    async def _drive(
        self, session: IndexingSession, options: IndexPipelineOptions
    ) -> None:
        runner = asyncio.ensure_future(session.run())
        # Wakes the drain loop if the run ends without a terminal event
        runner.add_done_callback(lambda _: session.events.put_nowait(_RUN_FINISHED))

        try:
            while True:
                event: Any = await session.events.get()
                if event is _RUN_FINISHED:
                    self._apply(self._orphan_error(runner), options)
                    break
                self._apply(event, options)
                if event.is_terminal:
                    break
        finally:
            if not runner.done():
                runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)

    def _drive_done(self, task: asyncio.Task, session: IndexingSession) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Indexing driver for {session.options.project_name} failed: "
                f"{task.exception()!r}"
            )
        if self._session is session:
            # The drain loop stopped before a terminal event was applied
            logger.warning(
                f"Indexing run for {session.options.project_name} stopped "
                f"without an outcome, resetting status"
            )
            self._safe_display(self.display.hide)
            self._retire()

    @staticmethod
    def _orphan_error(runner: asyncio.Future) -> SessionEvent:
        if runner.cancelled():
            return SessionEvent(SessionEventKind.CANCELLED)
        cause = runner.exception()
        error = IndexingError(
            f"Indexing session ended without reporting an outcome: {cause}",
            {"cause": repr(cause)},
        )
        return SessionEvent(SessionEventKind.ERROR, error=error)

    def _apply(self, event: SessionEvent, options: IndexPipelineOptions) -> None:
        kind = event.kind
        if kind == SessionEventKind.STAGE:
            self._stage = event.stage
            self._safe_display(self.display.set_stage, event.stage)
        elif kind == SessionEventKind.PROGRESS:
            self._progress = event.progress
            self._safe_display(self.display.update, event.progress)
            self._safe_callback(getattr(options, "on_progress", None), event.progress)
        elif kind == SessionEventKind.COMPLETED:
            result = event.result
            self._safe_display(
                self.display.show_success,
                f"Indexed {result.chunks_stored:,} chunks for {result.project_name}",
            )
            self._safe_display(self.display.hide)
            self._retire()
            self._safe_callback(getattr(options, "on_complete", None), result)
        elif kind == SessionEventKind.CANCELLED:
            self._safe_display(self.display.show_cancelled)
            self._safe_display(self.display.hide)
            self._retire()
            self._safe_callback(getattr(options, "on_cancelled", None))
        elif kind == SessionEventKind.ERROR:
            self._safe_display(self.display.show_error, event.error)
            self._safe_display(self.display.hide)
            self._retire()
            self._safe_callback(getattr(options, "on_error", None), event.error)

    @staticmethod
    def _safe_display(method: Callable[..., None], *args: Any) -> None:
        try:
            method(*args)
        except Exception as e:
            logger.warning(f"Status display failed in {method.__name__}: {e}")

    @staticmethod
    def _safe_callback(callback: Callable[..., None] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Indexing callback {callback!r} raised: {e}")
