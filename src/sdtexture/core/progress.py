"""Background progress polling for an outstanding generation.

The AUTOMATIC1111 server reports the progress of its current job on
``GET /sdapi/v1/progress``.  While a txt2img/img2img POST is outstanding,
:class:`ProgressWatcher` re-issues that GET at a fixed interval from a
cooperative asyncio task and keeps the most recent successfully parsed
report in :attr:`ProgressWatcher.latest`.

Polling is purely advisory:

- it never blocks or cancels the generation request,
- failed or malformed polls are logged and discarded,
- an exception raised by the progress callback is logged and ignored.

The loop ends when its owner calls :meth:`ProgressWatcher.stop`, or when the
server reported non-zero progress and then zero again, which means the job
has already finished.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from .errors import SDTextureError
from .models import ProgressState

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressState], None]


class ProgressWatcher:
    """Polls a progress source until stopped or the job finishes.

    Attributes:
        latest: Most recent successfully parsed progress report, or None.
        polls: Number of polls attempted (successful or not).
    """

    def __init__(
        self,
        poll: Callable[[], Awaitable[ProgressState]],
        interval: float,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Initialise the watcher.

        Args:
            poll: Coroutine function returning a fresh ``ProgressState``.
            interval: Seconds to wait before each poll.
            on_progress: Called with every successfully parsed report.
        """
        self._poll = poll
        self._interval = interval
        self._on_progress = on_progress
        self._task: asyncio.Task | None = None
        self._seen_progress = False
        self.latest: ProgressState | None = None
        self.polls = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start polling in a background task."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="sdtexture-progress")

    async def stop(self) -> None:
        """Stop polling and wait for the task to finish."""
        if self._task is None:
            return
        if not self._task.done():
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self.polls += 1
            try:
                state = await self._poll()
            except SDTextureError as e:
                logger.debug(f"Progress poll failed, ignoring: {e}")
                continue

            self.latest = state
            logger.debug(
                f"Generation progress: {state.percent:.0f}% (eta {state.eta_relative:.1f}s)"
            )

            if self._on_progress is not None:
                try:
                    self._on_progress(state)
                except Exception:
                    logger.exception("Progress callback failed.")

            if state.progress > 0:
                self._seen_progress = True
            elif self._seen_progress:
                # Progress dropped back to zero: the job has already ended.
                logger.debug("Progress returned to zero, stopping watcher.")
                return
