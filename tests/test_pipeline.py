"""Tests for the render executor.

Features:
- Request validation (trim windows, quality)
- FFmpeg argument vector (trim seeking, quality presets, stream mapping)
- Path safety and input checks before any subprocess
- Overlay workspace cleanup on success, failure and cancellation
- Subprocess limits (exit status, timeout, output cap) and progress parsing
"""

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from adreel.config import Settings
from adreel.exceptions import (
    InputNotFoundError,
    InvalidFieldValueError,
    InvalidTimeRangeError,
    RasterizeError,
    SubprocessError,
    UnsafePathError,
)
from adreel.render import pipeline
from adreel.render.audio_mixer import MusicTrack
from adreel.render.filter_graph import FilterGraphSpec
from adreel.render.pipeline import (
    RenderExecutor,
    RenderQuality,
    RenderRequest,
    overlay_workspace,
)
from adreel.render.text_renderer import TextOverlay, TextRenderer
from adreel.utils.media_info import get_video_info


class FakeFFmpeg:
    """Stands in for ``RenderExecutor._run_ffmpeg``."""

    def __init__(self, output_dir: Path, write_output: bool = True, error: Exception | None = None):
        self.output_dir = output_dir
        self.write_output = write_output
        self.error = error
        self.commands: list[list[str]] = []
        self.workspaces_during_run: list[list[Path]] = []

    async def __call__(self, cmd, duration, on_progress):
        self.commands.append(cmd)
        self.workspaces_during_run.append(sorted(self.output_dir.glob("overlays_*")))
        if self.error is not None:
            raise self.error
        if self.write_output:
            Path(cmd[-1]).write_bytes(b"fake mp4 data")
        if on_progress is not None:
            on_progress(100)


def _workspaces(output_dir: Path) -> list[Path]:
    return list(output_dir.glob("overlays_*"))


@pytest.fixture
def output_dir(render_settings: Settings) -> Path:
    return Path(render_settings.output_dir)


@pytest.fixture
def executor(render_settings: Settings, monkeypatch) -> RenderExecutor:
    monkeypatch.setattr(pipeline, "has_audio_track", lambda path: False)
    return RenderExecutor(render_settings)


@pytest.fixture
def make_request(input_video: Path, output_dir: Path, sample_overlays):
    def make(**kwargs) -> RenderRequest:
        params = {
            "input_video_path": str(input_video),
            "output_path": str(output_dir / "result.mp4"),
            "video_duration": 10.0,
            "overlays": sample_overlays,
        }
        params.update(kwargs)
        return RenderRequest(**params)

    return make


class TestRenderRequest:
    """Tests for RenderRequest validation."""

    def test_untrimmed_uses_full_duration(self):
        request = RenderRequest(input_video_path="a.mp4", output_path="b.mp4", video_duration=10)
        assert not request.is_trimmed
        assert request.effective_duration == 10

    def test_trim_window_effective_duration(self):
        request = RenderRequest(
            input_video_path="a.mp4", output_path="b.mp4", video_duration=10, trim_start=2, trim_end=8
        )
        assert request.is_trimmed
        assert request.trim_window == (2, 8)
        assert request.effective_duration == 6

    def test_open_ended_trim(self):
        request = RenderRequest(
            input_video_path="a.mp4", output_path="b.mp4", video_duration=10, trim_start=3
        )
        assert request.trim_window == (3, 10)
        assert request.effective_duration == 7

    @pytest.mark.parametrize("start,end", [(8, 2), (5, 5), (-1, 4), (2, 11)])
    def test_invalid_trim(self, start, end):
        with pytest.raises(InvalidTimeRangeError):
            RenderRequest(
                input_video_path="a.mp4",
                output_path="b.mp4",
                video_duration=10,
                trim_start=start,
                trim_end=end,
            )

    def test_quality_coerced(self):
        request = RenderRequest(
            input_video_path="a.mp4", output_path="b.mp4", video_duration=1, quality="draft"
        )
        assert request.quality is RenderQuality.DRAFT

    def test_invalid_quality(self):
        with pytest.raises(InvalidFieldValueError):
            RenderRequest(input_video_path="a.mp4", output_path="b.mp4", video_duration=1, quality="4k")

    def test_invalid_duration(self):
        with pytest.raises(InvalidFieldValueError):
            RenderRequest(input_video_path="a.mp4", output_path="b.mp4", video_duration=0)
        with pytest.raises(InvalidFieldValueError):
            RenderRequest(input_video_path="a.mp4", output_path="b.mp4", video_duration=float("inf"))

    def test_overlays_frozen_as_tuple(self, sample_overlays):
        request = RenderRequest(
            input_video_path="a.mp4", output_path="b.mp4", video_duration=1, overlays=sample_overlays
        )
        assert isinstance(request.overlays, tuple)


class TestBuildCommand:
    """Tests for the FFmpeg argument vector."""

    def _graph(self, **kwargs) -> FilterGraphSpec:
        graph = FilterGraphSpec(video_filters=["[0:v]null[outv]"])
        for key, value in kwargs.items():
            setattr(graph, key, value)
        return graph

    def test_trim_seeks_input(self, render_settings):
        executor = RenderExecutor(render_settings)
        request = RenderRequest(
            input_video_path="/in.mp4", output_path="/out.mp4", video_duration=10, trim_start=2, trim_end=8
        )

        cmd = executor.build_command(request, self._graph())

        i = cmd.index("-i")
        assert cmd[i - 4:i] == ["-ss", "2", "-t", "6"]
        assert cmd[i + 1] == "/in.mp4"
        assert cmd[cmd.index("-movflags") + 2:cmd.index("-movflags") + 4] == ["-t", "6"]
        assert cmd[-1] == "/out.mp4"

    def test_untrimmed_has_no_seek(self, render_settings):
        executor = RenderExecutor(render_settings)
        request = RenderRequest(input_video_path="/in.mp4", output_path="/out.mp4", video_duration=10)

        cmd = executor.build_command(request, self._graph())

        assert "-ss" not in cmd
        assert cmd[:4] == [render_settings.ffmpeg_path, "-y", "-threads", "2"]

    @pytest.mark.parametrize(
        "quality,preset,crf",
        [("draft", "ultrafast", "28"), ("final", "fast", "23")],
    )
    def test_quality_presets(self, render_settings, quality, preset, crf):
        executor = RenderExecutor(render_settings)
        request = RenderRequest(
            input_video_path="/in.mp4", output_path="/out.mp4", video_duration=10, quality=quality
        )

        cmd = executor.build_command(request, self._graph())

        assert cmd[cmd.index("-preset") + 1] == preset
        assert cmd[cmd.index("-crf") + 1] == crf
        assert cmd[cmd.index("-x264-params") + 1] == "threads=2"
        assert cmd[cmd.index("-movflags") + 1] == "+faststart"

    def test_video_only(self, render_settings):
        executor = RenderExecutor(render_settings)
        request = RenderRequest(input_video_path="/in.mp4", output_path="/out.mp4", video_duration=10)

        cmd = executor.build_command(request, self._graph())

        assert "-an" in cmd
        assert "-c:a" not in cmd
        assert cmd.count("-map") == 1

    def test_mixed_audio(self, render_settings):
        executor = RenderExecutor(render_settings)
        request = RenderRequest(input_video_path="/in.mp4", output_path="/out.mp4", video_duration=10)
        graph = self._graph(
            audio_filters=["[1:a]volume=1[musicout]"],
            audio_output="[outa]",
            music_input="/m.mp3",
            overlay_inputs=[Path("/tmp/o0.png")],
        )

        cmd = executor.build_command(request, graph)

        assert [cmd[i + 1] for i, a in enumerate(cmd) if a == "-i"] == ["/in.mp4", "/m.mp3", "/tmp/o0.png"]
        assert [cmd[i + 1] for i, a in enumerate(cmd) if a == "-map"] == ["[outv]", "[outa]"]
        assert cmd[cmd.index("-c:a") + 1] == "aac"
        assert cmd[cmd.index("-b:a") + 1] == "192k"

    def test_source_audio_passthrough(self, render_settings):
        executor = RenderExecutor(render_settings)
        request = RenderRequest(input_video_path="/in.mp4", output_path="/out.mp4", video_duration=10)

        cmd = executor.build_command(request, self._graph(map_source_audio=True))

        assert [cmd[i + 1] for i, a in enumerate(cmd) if a == "-map"] == ["[outv]", "0:a"]
        assert "-an" not in cmd


class TestPathSafety:
    """Paths are checked before any file or subprocess work."""

    @pytest.mark.asyncio
    async def test_traversal_rejected_before_subprocess(self, executor, make_request, render_settings, monkeypatch):
        run = AsyncMock()
        probe = MagicMock(return_value=False)
        monkeypatch.setattr(executor, "_run_ffmpeg", run)
        monkeypatch.setattr(pipeline, "has_audio_track", probe)
        escaping = str(Path(render_settings.upload_dir) / "../../../../../../etc/passwd")

        with pytest.raises(UnsafePathError) as exc_info:
            await executor.execute(make_request(input_video_path=escaping))

        assert exc_info.value.stage == "validate"
        run.assert_not_awaited()
        probe.assert_not_called()

    @pytest.mark.asyncio
    async def test_relative_traversal_rejected(self, executor, make_request, monkeypatch):
        run = AsyncMock()
        monkeypatch.setattr(executor, "_run_ffmpeg", run)

        with pytest.raises(UnsafePathError):
            await executor.execute(make_request(input_video_path="../../etc/passwd"))

        run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_output_outside_roots_rejected(self, executor, make_request, temp_output_dir):
        with pytest.raises(UnsafePathError):
            await executor.execute(make_request(output_path=str(temp_output_dir / "elsewhere.mp4")))

    @pytest.mark.asyncio
    async def test_music_outside_roots_rejected(self, executor, make_request):
        music = MusicTrack(file="/etc/hosts")
        with pytest.raises(UnsafePathError):
            await executor.execute(make_request(music=music))

    @pytest.mark.asyncio
    async def test_missing_input(self, executor, make_request, render_settings, output_dir):
        missing = str(Path(render_settings.upload_dir) / "missing.mp4")

        with pytest.raises(InputNotFoundError):
            await executor.execute(make_request(input_video_path=missing))

        assert _workspaces(output_dir) == []


class TestExecute:
    """End-to-end execute with a fake compositor."""

    @pytest.mark.asyncio
    async def test_success_removes_workspace(self, executor, make_request, output_dir, monkeypatch):
        fake = FakeFFmpeg(output_dir)
        monkeypatch.setattr(executor, "_run_ffmpeg", fake)
        progress: list[int] = []

        result = await executor.execute(make_request(), on_progress=progress.append)

        assert result == (output_dir / "result.mp4").resolve()
        assert result.stat().st_size > 0
        assert progress == [100]
        # The workspace existed with one PNG per overlay while FFmpeg ran
        (workspace,) = fake.workspaces_during_run[0]
        cmd = fake.commands[0]
        pngs = [arg for arg in cmd if arg.endswith(".png")]
        assert len(pngs) == 3
        assert all(Path(p).parent == workspace for p in pngs)
        assert _workspaces(output_dir) == []

    @pytest.mark.asyncio
    async def test_failure_removes_workspace(self, executor, make_request, output_dir, monkeypatch):
        fake = FakeFFmpeg(output_dir, error=SubprocessError("FFmpeg failed", returncode=1, stderr="bad graph"))
        monkeypatch.setattr(executor, "_run_ffmpeg", fake)

        with pytest.raises(SubprocessError) as exc_info:
            await executor.execute(make_request())

        assert "bad graph" in exc_info.value.message
        assert len(fake.workspaces_during_run[0]) == 1
        assert _workspaces(output_dir) == []

    @pytest.mark.asyncio
    async def test_missing_output_is_failure(self, executor, make_request, output_dir, monkeypatch):
        monkeypatch.setattr(executor, "_run_ffmpeg", FakeFFmpeg(output_dir, write_output=False))

        with pytest.raises(SubprocessError) as exc_info:
            await executor.execute(make_request())

        assert exc_info.value.reason == "missing_output"
        assert _workspaces(output_dir) == []

    @pytest.mark.asyncio
    async def test_rasterize_error_aborts_before_subprocess(
        self, executor, make_request, output_dir, monkeypatch
    ):
        run = AsyncMock()
        monkeypatch.setattr(executor, "_run_ffmpeg", run)

        def broken(self, overlay, frame_height, output_path):
            raise RasterizeError(overlay.id, "disk full")

        monkeypatch.setattr(TextRenderer, "rasterize", broken)

        with pytest.raises(RasterizeError):
            await executor.execute(make_request())

        run.assert_not_awaited()
        assert _workspaces(output_dir) == []

    @pytest.mark.asyncio
    async def test_missing_music_is_skipped(self, executor, make_request, render_settings, output_dir, monkeypatch):
        fake = FakeFFmpeg(output_dir)
        monkeypatch.setattr(executor, "_run_ffmpeg", fake)
        music = MusicTrack(file=str(Path(render_settings.public_dir) / "music" / "gone.mp3"))

        await executor.execute(make_request(music=music))

        cmd = fake.commands[0]
        assert not any(arg.endswith("gone.mp3") for arg in cmd)
        assert "amix" not in cmd[cmd.index("-filter_complex") + 1]

    @pytest.mark.asyncio
    async def test_music_is_mixed(self, executor, make_request, render_settings, output_dir, monkeypatch):
        fake = FakeFFmpeg(output_dir)
        monkeypatch.setattr(executor, "_run_ffmpeg", fake)
        track = Path(render_settings.public_dir) / "music" / "track.mp3"
        track.write_bytes(b"ID3")

        await executor.execute(make_request(music=MusicTrack(file=str(track), volume=0.4)))

        cmd = fake.commands[0]
        assert [cmd[i + 1] for i, a in enumerate(cmd) if a == "-i"][1] == str(track.resolve())
        graph = cmd[cmd.index("-filter_complex") + 1]
        assert "[musicout]atrim=duration=10,apad=whole_dur=10[outa]" in graph

    @pytest.mark.asyncio
    async def test_cancel_removes_workspace(self, executor, make_request, output_dir, monkeypatch):
        started = asyncio.Event()

        async def hang(cmd, duration, on_progress):
            started.set()
            await asyncio.sleep(60)

        monkeypatch.setattr(executor, "_run_ffmpeg", hang)
        task = asyncio.create_task(executor.execute(make_request()))
        await started.wait()
        assert len(_workspaces(output_dir)) == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert _workspaces(output_dir) == []

    @pytest.mark.asyncio
    async def test_concurrent_renders_use_separate_workspaces(
        self, executor, make_request, output_dir, monkeypatch
    ):
        seen: list[Path] = []
        both_running = asyncio.Event()

        async def run(cmd, duration, on_progress):
            png = next(arg for arg in cmd if arg.endswith(".png"))
            seen.append(Path(png).parent)
            if len(seen) == 2:
                both_running.set()
            await both_running.wait()
            Path(cmd[-1]).write_bytes(b"data")

        monkeypatch.setattr(executor, "_run_ffmpeg", run)

        await asyncio.gather(
            executor.execute(make_request(output_path=str(output_dir / "a.mp4"))),
            executor.execute(make_request(output_path=str(output_dir / "b.mp4"))),
        )

        assert len(set(seen)) == 2
        assert _workspaces(output_dir) == []


class TestOverlayWorkspace:
    def test_removed_on_exception(self, temp_output_dir):
        with pytest.raises(RuntimeError):
            with overlay_workspace(temp_output_dir) as workspace:
                (workspace / "x.png").write_bytes(b"png")
                raise RuntimeError("boom")
        assert not workspace.exists()

    def test_unique_per_call(self, temp_output_dir):
        with overlay_workspace(temp_output_dir) as a, overlay_workspace(temp_output_dir) as b:
            assert a != b
            assert a.name.startswith("overlays_")


class TestRunFFmpeg:
    """Subprocess handling, exercised with a Python child process."""

    def _executor(self, render_settings: Settings, **overrides) -> RenderExecutor:
        return RenderExecutor(render_settings.model_copy(update=overrides))

    def _script(self, code: str) -> list[str]:
        return [sys.executable, "-c", code]

    @pytest.mark.asyncio
    async def test_success(self, render_settings):
        executor = self._executor(render_settings)
        await executor._run_ffmpeg(self._script("pass"), 1.0, None)

    @pytest.mark.asyncio
    async def test_nonzero_exit_carries_stderr_tail(self, render_settings):
        executor = self._executor(render_settings, render_stderr_tail_chars=20)
        code = "import sys; sys.stderr.write('x' * 100 + 'Invalid filter'); sys.exit(3)"

        with pytest.raises(SubprocessError) as exc_info:
            await executor._run_ffmpeg(self._script(code), 1.0, None)

        error = exc_info.value
        assert error.reason == "exit"
        assert error.returncode == 3
        assert error.stderr.endswith("Invalid filter")
        assert len(error.stderr) == 20
        assert error.code == "SUBPROCESS_FAILED"

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, render_settings):
        executor = self._executor(render_settings, render_timeout_s=0.5)

        with pytest.raises(SubprocessError) as exc_info:
            await executor._run_ffmpeg(self._script("import time; time.sleep(30)"), 1.0, None)

        assert exc_info.value.reason == "timeout"
        assert exc_info.value.code == "SUBPROCESS_TIMEOUT"

    @pytest.mark.asyncio
    async def test_output_limit(self, render_settings):
        executor = self._executor(render_settings, render_max_output_bytes=1000)
        code = "import sys, time; sys.stderr.write('e' * 5000); sys.stderr.flush(); time.sleep(30)"

        with pytest.raises(SubprocessError) as exc_info:
            await executor._run_ffmpeg(self._script(code), 1.0, None)

        assert exc_info.value.reason == "output_limit"
        assert exc_info.value.code == "SUBPROCESS_OUTPUT_LIMIT"

    @pytest.mark.asyncio
    async def test_binary_not_found(self, render_settings):
        executor = self._executor(render_settings)

        with pytest.raises(SubprocessError) as exc_info:
            await executor._run_ffmpeg(["/nonexistent/ffmpeg", "-version"], 1.0, None)

        assert exc_info.value.reason == "not_found"

    @pytest.mark.asyncio
    async def test_progress_parsing(self, render_settings):
        executor = self._executor(render_settings)
        code = (
            "print('out_time_us=N/A'); "
            "print('out_time_us=1500000'); "
            "print('out_time_us=3000000'); "
            "print('progress=end')"
        )
        progress: list[int] = []

        await executor._run_ffmpeg(self._script(code), 6.0, progress.append)

        assert progress == [25, 50, 100]


@pytest.mark.requires_ffmpeg
class TestRealRender:
    """Renders with a real ffmpeg binary."""

    @pytest.mark.asyncio
    async def test_video_only_output(self, render_settings, ffmpeg_video, monkeypatch):
        monkeypatch.setattr("adreel.utils.media_info._get_settings", lambda: render_settings)
        source = ffmpeg_video("silent.mp4", duration=2.0, with_audio=False)
        output = Path(render_settings.output_dir) / "silent_out.mp4"
        request = RenderRequest(
            input_video_path=str(source),
            output_path=str(output),
            video_duration=2.0,
            overlays=[TextOverlay(id="a", text="Hello", start_time=0, end_time=2)],
            quality="draft",
        )

        result = await RenderExecutor(render_settings).execute(request)

        info = get_video_info(str(result))
        assert (info.width, info.height) == (1080, 1920)
        assert not info.has_audio
        assert _workspaces(Path(render_settings.output_dir)) == []

    @pytest.mark.asyncio
    async def test_trimmed_output_duration(self, render_settings, ffmpeg_video, monkeypatch):
        monkeypatch.setattr("adreel.utils.media_info._get_settings", lambda: render_settings)
        source = ffmpeg_video("long.mp4", duration=10.0, with_audio=True)
        output = Path(render_settings.output_dir) / "trimmed.mp4"
        request = RenderRequest(
            input_video_path=str(source),
            output_path=str(output),
            video_duration=10.0,
            overlays=[
                TextOverlay(id="early", text="Visible", start_time=0, end_time=6),
                TextOverlay(id="late", text="Never shown", start_time=7, end_time=9),
            ],
            trim_start=2,
            trim_end=8,
            quality="draft",
        )

        result = await RenderExecutor(render_settings).execute(request)

        info = get_video_info(str(result))
        assert info.duration == pytest.approx(6.0, abs=0.15)
        assert info.has_audio
