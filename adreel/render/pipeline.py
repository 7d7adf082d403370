"""
Render executor: one background video plus text overlays and optional music
composited into a vertical MP4 by an FFmpeg subprocess.

Stages of ``RenderExecutor.execute``:
1. validate  - every path must resolve under an allowed root, inputs must be readable
2. rasterize - one PNG per overlay in a private ``overlays_*`` directory
3. layout    - stack overlays inside the safe zone using the PNG heights
4. probe     - detect whether the source carries audio
5. encode    - build the filter graph and run FFmpeg (argument vector, no shell)

The overlay directory is removed when the render finishes, fails or is
cancelled.
"""

import asyncio
import logging
import math
import os
import shlex
import shutil
import tempfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from adreel.config import Settings, get_settings
from adreel.exceptions import (
    InputNotFoundError,
    InvalidFieldValueError,
    InvalidTimeRangeError,
    RenderError,
    SubprocessError,
)
from adreel.render.audio_mixer import MusicTrack, format_number
from adreel.render.filter_graph import FilterGraphSpec, build_filter_graph
from adreel.render.layout import compute_safe_zone, layout_stack
from adreel.render.text_renderer import RasterizedOverlay, TextOverlay, TextRenderer
from adreel.utils.media_info import has_audio_track
from adreel.utils.path_safety import resolve_within

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

_READ_CHUNK_BYTES = 64 * 1024


class RenderQuality(str, Enum):
    DRAFT = "draft"
    FINAL = "final"


@dataclass(frozen=True)
class QualityProfile:
    preset: str
    crf: int


QUALITY_PROFILES: dict[RenderQuality, QualityProfile] = {
    RenderQuality.DRAFT: QualityProfile(preset="ultrafast", crf=28),
    RenderQuality.FINAL: QualityProfile(preset="fast", crf=23),
}


@dataclass(frozen=True)
class RenderRequest:
    """One video's unit of work."""

    input_video_path: str
    output_path: str
    video_duration: float
    overlays: tuple[TextOverlay, ...] = field(default_factory=tuple)
    music: MusicTrack | None = None
    trim_start: float | None = None
    trim_end: float | None = None
    quality: RenderQuality = RenderQuality.FINAL

    def __post_init__(self) -> None:
        object.__setattr__(self, "overlays", tuple(self.overlays))
        try:
            object.__setattr__(self, "quality", RenderQuality(self.quality))
        except ValueError:
            raise InvalidFieldValueError(field="quality", value=self.quality) from None

        if not self.video_duration > 0 or not math.isfinite(self.video_duration):
            raise InvalidFieldValueError(field="video_duration", value=self.video_duration)

        if self.is_trimmed:
            start, end = self.trim_window
            if not (0 <= start < end <= self.video_duration):
                raise InvalidTimeRangeError(
                    f"Invalid trim window {start}s to {end}s for a {self.video_duration}s video",
                    start=start,
                    end=end,
                    field="trim",
                )

    @property
    def is_trimmed(self) -> bool:
        return self.trim_start is not None or self.trim_end is not None

    @property
    def trim_window(self) -> tuple[float, float]:
        start = self.trim_start if self.trim_start is not None else 0.0
        end = self.trim_end if self.trim_end is not None else self.video_duration
        return start, end

    @property
    def effective_duration(self) -> float:
        """Composited duration: the trim window length, or the full video."""
        start, end = self.trim_window
        return end - start


@contextmanager
def overlay_workspace(parent: Path) -> Iterator[Path]:
    """Create a private ``overlays_*`` directory under ``parent``; always remove it."""
    try:
        parent.mkdir(parents=True, exist_ok=True)
        workspace = Path(tempfile.mkdtemp(prefix="overlays_", dir=parent))
    except OSError as e:
        raise RenderError(f"Cannot create overlay directory in {parent}: {e}", stage="prepare") from e

    logger.debug(f"[RENDER] Created overlay workspace {workspace}")
    try:
        yield workspace
    finally:
        try:
            shutil.rmtree(workspace)
        except OSError as e:
            logger.warning(f"[RENDER] Failed to remove overlay workspace {workspace}: {e}")


def _is_readable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.R_OK)


class RenderExecutor:
    """Runs single renders. Holds no per-render state, so one instance may
    serve any number of concurrent ``execute`` calls."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.ffmpeg_path = self.settings.ffmpeg_path
        self.width = self.settings.render_output_width
        self.height = self.settings.render_output_height

    async def execute(
        self,
        request: RenderRequest,
        on_progress: ProgressCallback | None = None,
    ) -> Path:
        """
        Render ``request`` and return the output path.

        Args:
            request: What to render
            on_progress: Optional callback receiving an encode percentage (0-100)

        Returns:
            Resolved path of the finished MP4

        Raises:
            RenderError: ``UnsafePathError``/``InputNotFoundError`` before any work,
                ``RasterizeError`` before FFmpeg is spawned, ``SubprocessError``
                when FFmpeg fails, times out or produces no output
        """
        logger.info(
            f"[RENDER] Starting render {request.input_video_path} -> {request.output_path} "
            f"({len(request.overlays)} overlays, quality={request.quality.value})"
        )
        request = self._validate_paths(request)
        output_path = Path(request.output_path)

        with overlay_workspace(output_path.parent) as workspace:
            rasterized = await self._rasterize(request.overlays, workspace)
            heights = [image.pixel_height for image in rasterized]
            zone = compute_safe_zone(
                self.height,
                self.settings.render_safe_top_ratio,
                self.settings.render_safe_bottom_ratio,
            )
            positions = layout_stack(request.overlays, heights, self.height, zone=zone)

            source_has_audio = await asyncio.to_thread(has_audio_track, request.input_video_path)
            graph = build_filter_graph(
                request,
                rasterized,
                positions,
                source_has_audio=source_has_audio,
                music_available=request.music is not None,
                width=self.width,
                height=self.height,
            )
            cmd = self.build_command(request, graph)
            await self._run_ffmpeg(cmd, request.effective_duration, on_progress)

        if not output_path.is_file() or output_path.stat().st_size == 0:
            raise SubprocessError(
                f"FFmpeg finished but produced no output at {output_path}", reason="missing_output"
            )

        logger.info(f"[RENDER] Completed {output_path} ({output_path.stat().st_size} bytes)")
        return output_path

    def _validate_paths(self, request: RenderRequest) -> RenderRequest:
        """Resolve every path against the allow-list, then check inputs exist.

        Returns a copy of ``request`` with resolved paths. A music file that
        does not exist is dropped with a warning.
        """
        roots = self.settings.allowed_roots
        input_path = resolve_within(request.input_video_path, roots)
        output_path = resolve_within(request.output_path, roots)
        music = request.music
        music_path = resolve_within(music.file, roots) if music else None

        if not _is_readable(input_path):
            raise InputNotFoundError(request.input_video_path)

        if music is not None and music_path is not None:
            if not music_path.exists():
                logger.warning(f"[RENDER] Music file not found, rendering without music: {music.file}")
                music = None
            elif not _is_readable(music_path):
                raise InputNotFoundError(music.file)
            else:
                music = replace(music, file=str(music_path))

        return replace(
            request,
            input_video_path=str(input_path),
            output_path=str(output_path),
            music=music,
        )

    async def _rasterize(
        self, overlays: tuple[TextOverlay, ...], workspace: Path
    ) -> list[RasterizedOverlay]:
        task = asyncio.ensure_future(asyncio.to_thread(self._rasterize_all, overlays, workspace))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # The worker thread keeps writing PNGs; let it finish before cleanup
            await asyncio.wait({task})
            raise

    def _rasterize_all(
        self, overlays: tuple[TextOverlay, ...], workspace: Path
    ) -> list[RasterizedOverlay]:
        renderer = TextRenderer(self.width, self.settings.render_reference_width)
        return [
            renderer.rasterize(overlay, self.height, workspace / f"overlay_{n}.png")
            for n, overlay in enumerate(overlays)
        ]

    def build_command(self, request: RenderRequest, graph: FilterGraphSpec) -> list[str]:
        """Build the FFmpeg argument vector for ``request``."""
        threads = str(self.settings.render_ffmpeg_threads)
        duration = format_number(request.effective_duration)
        profile = QUALITY_PROFILES[request.quality]

        cmd = [self.ffmpeg_path, "-y", "-threads", threads]

        # Input seeking: the video's timestamps restart at 0 from trim_start
        if request.is_trimmed:
            start, _ = request.trim_window
            cmd.extend(["-ss", format_number(start), "-t", duration])
        cmd.extend(["-i", request.input_video_path])
        for path in graph.extra_inputs:
            cmd.extend(["-i", path])

        cmd.extend(["-filter_complex", graph.filter_complex, "-map", graph.video_output])
        if graph.audio_output:
            cmd.extend(["-map", graph.audio_output])
        elif graph.map_source_audio:
            cmd.extend(["-map", "0:a"])

        cmd.extend([
            "-c:v", "libx264",
            "-preset", profile.preset,
            "-crf", str(profile.crf),
            "-x264-params", f"threads={threads}",
            "-pix_fmt", "yuv420p",
        ])
        if graph.audio_output or graph.map_source_audio:
            cmd.extend(["-c:a", "aac", "-b:a", self.settings.render_audio_bitrate])
        else:
            cmd.append("-an")

        cmd.extend([
            "-movflags", "+faststart",
            "-t", duration,
            "-progress", "pipe:1",
            "-nostats",
            request.output_path,
        ])
        return cmd

    async def _run_ffmpeg(
        self,
        cmd: list[str],
        duration: float,
        on_progress: ProgressCallback | None,
    ) -> None:
        logger.info(f"[RENDER] FFmpeg command: {shlex.join(cmd)}")
        timeout = self.settings.render_timeout_s
        limit = self.settings.render_max_output_bytes

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise SubprocessError(f"FFmpeg not found: {self.ffmpeg_path}", reason="not_found") from e

        stderr_buf = bytearray()
        tasks = {
            asyncio.create_task(self._read_progress(proc.stdout, duration, on_progress, limit)),
            asyncio.create_task(self._drain(proc.stderr, stderr_buf, limit)),
            asyncio.create_task(proc.wait()),
        }
        try:
            done, _ = await asyncio.wait(
                tasks, timeout=timeout, return_when=asyncio.FIRST_EXCEPTION
            )
            for task in done:
                error = task.exception()
                if error is not None:
                    reason = "output_limit" if isinstance(error, OverflowError) else "exit"
                    raise SubprocessError(
                        f"Failed reading FFmpeg output: {error}",
                        reason=reason,
                        stderr=self._tail(stderr_buf),
                    ) from error
            if len(done) < len(tasks):
                raise SubprocessError(
                    f"FFmpeg timed out after {timeout}s",
                    reason="timeout",
                    stderr=self._tail(stderr_buf),
                )
        finally:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if proc.returncode != 0:
            tail = self._tail(stderr_buf)
            logger.error(f"[RENDER] FFmpeg failed with exit status {proc.returncode}:\n{tail}")
            raise SubprocessError("FFmpeg failed", returncode=proc.returncode, stderr=tail)

    def _tail(self, buf: bytearray) -> str:
        text = buf.decode("utf-8", errors="replace").strip()
        return text[-self.settings.render_stderr_tail_chars:]

    @staticmethod
    async def _drain(stream: asyncio.StreamReader, buf: bytearray, limit: int) -> None:
        while True:
            chunk = await stream.read(_READ_CHUNK_BYTES)
            if not chunk:
                return
            buf.extend(chunk)
            if len(buf) > limit:
                raise OverflowError(f"FFmpeg stderr exceeded {limit} bytes")

    @staticmethod
    async def _read_progress(
        stream: asyncio.StreamReader,
        duration: float,
        on_progress: ProgressCallback | None,
        limit: int,
    ) -> None:
        """Parse ``-progress pipe:1`` key=value lines into percentages."""
        received = 0
        last_pct = -1
        async for raw_line in stream:
            received += len(raw_line)
            if received > limit:
                raise OverflowError(f"FFmpeg stdout exceeded {limit} bytes")
            if on_progress is None:
                continue

            line = raw_line.decode("utf-8", errors="replace").strip()
            if line.startswith("out_time_us="):
                try:
                    time_s = int(line.split("=", 1)[1]) / 1_000_000
                except ValueError:
                    continue  # out_time_us=N/A before the first frame
                pct = max(0, min(99, int(time_s / duration * 100)))
                if pct > last_pct:
                    last_pct = pct
                    on_progress(pct)
            elif line == "progress=end":
                on_progress(100)
