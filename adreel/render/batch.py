"""
Batch rendering: one overlay/music/quality specification applied to many
background videos, each with its own trim window.

Renders run in a small bounded worker pool. Every render gets its own
overlay workspace from the executor, so workers share nothing but the
output directory. A failed or cancelled video never aborts the others.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from adreel.config import MAX_RENDER_CONCURRENCY, get_settings
from adreel.exceptions import AdreelError, PartialBatchFailure
from adreel.render.audio_mixer import MusicTrack
from adreel.render.pipeline import RenderExecutor, RenderQuality, RenderRequest
from adreel.render.text_renderer import TextOverlay
from adreel.schemas.envelope import ErrorInfo

logger = logging.getLogger(__name__)

BatchProgressCallback = Callable[[int, int], None]


class BatchItemStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class VideoSource:
    """A background video plus its per-video trim window."""

    path: str
    duration: float
    trim_start: float | None = None
    trim_end: float | None = None


@dataclass
class BatchItemResult:
    index: int
    input_path: str
    status: BatchItemStatus
    output_path: Path | None = None
    error: ErrorInfo | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == BatchItemStatus.COMPLETED


@dataclass
class BatchResult:
    """Per-video outcomes, in the same order as the submitted requests."""

    items: list[BatchItemResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[BatchItemResult]:
        return [item for item in self.items if item.succeeded]

    @property
    def failed(self) -> list[BatchItemResult]:
        return [item for item in self.items if not item.succeeded]

    @property
    def output_paths(self) -> list[Path | None]:
        return [item.output_path for item in self.items]

    @property
    def all_succeeded(self) -> bool:
        return not self.failed

    def raise_for_failures(self) -> None:
        """Raise ``PartialBatchFailure`` if any video did not complete."""
        if self.failed:
            raise PartialBatchFailure(self)


def build_batch_requests(
    videos: Sequence[VideoSource],
    overlays: Sequence[TextOverlay],
    music: MusicTrack | None,
    quality: RenderQuality | str,
    output_dir: str | Path,
) -> list[RenderRequest]:
    """Fan the shared overlay/music/quality spec out to one request per video."""
    overlays = tuple(overlays)
    return [
        RenderRequest(
            input_video_path=video.path,
            output_path=str(Path(output_dir) / f"{uuid.uuid4()}_output.mp4"),
            video_duration=video.duration,
            overlays=overlays,
            music=music,
            trim_start=video.trim_start,
            trim_end=video.trim_end,
            quality=quality,
        )
        for video in videos
    ]


class BatchRun:
    """Handle on an in-flight batch.

    Cancelling one index leaves already-dispatched renders of other indexes
    running.
    """

    def __init__(self, requests: list[RenderRequest], tasks: list[asyncio.Task]):
        self.requests = requests
        self._tasks = tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def cancel(self, index: int) -> bool:
        """Cancel the render at ``index``. Returns False if it already finished."""
        return self._tasks[index].cancel()

    async def wait(self) -> BatchResult:
        outcomes = await asyncio.gather(*self._tasks, return_exceptions=True)
        result = BatchResult()
        for index, (request, outcome) in enumerate(zip(self.requests, outcomes)):
            result.items.append(_to_item(index, request, outcome))

        logger.info(
            f"[BATCH] Finished: {len(result.succeeded)} succeeded, {len(result.failed)} failed"
        )
        return result


def _to_item(index: int, request: RenderRequest, outcome: object) -> BatchItemResult:
    if isinstance(outcome, Path):
        return BatchItemResult(
            index=index,
            input_path=request.input_video_path,
            status=BatchItemStatus.COMPLETED,
            output_path=outcome,
        )
    if isinstance(outcome, asyncio.CancelledError):
        return BatchItemResult(
            index=index, input_path=request.input_video_path, status=BatchItemStatus.CANCELLED
        )
    if isinstance(outcome, AdreelError):
        error = outcome
    else:
        logger.error(f"[BATCH] Video {index} failed unexpectedly: {outcome!r}", exc_info=outcome)
        error = AdreelError(f"Unexpected render failure: {outcome}")
    return BatchItemResult(
        index=index,
        input_path=request.input_video_path,
        status=BatchItemStatus.FAILED,
        error=error.to_error_info(),
    )


class BatchRenderer:
    """Runs render requests through a bounded worker pool."""

    def __init__(self, executor: RenderExecutor | None = None, max_concurrency: int | None = None):
        self.executor = executor or RenderExecutor()
        if max_concurrency is None:
            max_concurrency = get_settings().batch_concurrency
        self.max_concurrency = max(1, min(max_concurrency, MAX_RENDER_CONCURRENCY))

    def start(
        self,
        requests: Sequence[RenderRequest],
        on_progress: BatchProgressCallback | None = None,
    ) -> BatchRun:
        """Schedule every request and return a handle for waiting or cancelling.

        Must be called from a running event loop.
        """
        requests = list(requests)
        semaphore = asyncio.Semaphore(self.max_concurrency)
        logger.info(
            f"[BATCH] Starting {len(requests)} renders (concurrency={self.max_concurrency})"
        )
        tasks = [
            asyncio.create_task(self._render_one(index, request, semaphore, on_progress))
            for index, request in enumerate(requests)
        ]
        return BatchRun(requests, tasks)

    async def render_batch(
        self,
        requests: Sequence[RenderRequest],
        on_progress: BatchProgressCallback | None = None,
    ) -> BatchResult:
        """Render every request; failures are reported per video, never raised."""
        return await self.start(requests, on_progress).wait()

    async def _render_one(
        self,
        index: int,
        request: RenderRequest,
        semaphore: asyncio.Semaphore,
        on_progress: BatchProgressCallback | None,
    ) -> Path:
        async with semaphore:
            logger.info(f"[BATCH] Rendering video {index}: {request.input_video_path}")

            def forward(pct: int) -> None:
                if on_progress is not None:
                    on_progress(index, pct)

            try:
                return await self.executor.execute(request, on_progress=forward)
            except AdreelError as e:
                logger.error(f"[BATCH] Video {index} failed: {e}")
                raise
