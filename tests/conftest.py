"""
Pytest fixtures for adreel tests.

Tests that spawn a real compositor are marked with @pytest.mark.requires_ffmpeg and are
skipped when ffmpeg/ffprobe are not on PATH.
Run `pytest -m "not requires_ffmpeg"` to skip them explicitly.
"""

import shutil
import subprocess
import tempfile
from pathlib import Path

import pytest

from adreel.config import Settings
from adreel.render.text_renderer import TextOverlay, TextStyle
from adreel.render.text_shaper import TextFont


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as requiring ffmpeg/ffprobe binaries (skipped otherwise)"
    )


def _ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None


def pytest_collection_modifyitems(config, items):
    """Skip @pytest.mark.requires_ffmpeg tests when the binaries are missing."""
    if _ffmpeg_available():
        return
    skip = pytest.mark.skip(reason="ffmpeg/ffprobe not installed")
    for item in items:
        if "requires_ffmpeg" in item.keywords:
            item.add_marker(skip)


class FixedWidthFace:
    """Font stand-in where every character advances 10px."""

    def getlength(self, text: str) -> float:
        return 10.0 * len(text)


@pytest.fixture
def fixed_font() -> TextFont:
    """10px per character; emoji advance 11px (10px glyph + 1px gap)."""
    return TextFont(face=FixedWidthFace(), size=10)


@pytest.fixture
def temp_output_dir():
    """Temporary directory for test outputs."""
    with tempfile.TemporaryDirectory(prefix="adreel_test_") as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def render_settings(temp_output_dir: Path) -> Settings:
    """Settings whose allowed roots and output dirs live in the temp dir."""
    public_dir = temp_output_dir / "public"
    for sub in ("uploads", "outputs", "music"):
        (public_dir / sub).mkdir(parents=True, exist_ok=True)
    return Settings(
        _env_file=None,
        public_dir=str(public_dir),
        upload_dir=str(public_dir / "uploads"),
        output_dir=str(public_dir / "outputs"),
        music_dir=str(public_dir),
        logs_dir=str(temp_output_dir / "logs"),
        render_timeout_s=60,
    )


@pytest.fixture
def input_video(render_settings: Settings) -> Path:
    """A placeholder source video file (content is never decoded by fakes)."""
    path = Path(render_settings.upload_dir) / "clip.mp4"
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42")
    return path


@pytest.fixture
def sample_overlays() -> list[TextOverlay]:
    """Three overlays, deliberately out of start-time order."""
    return [
        TextOverlay(id="cta", text="Tap the link below", start_time=4.0, end_time=10.0),
        TextOverlay(id="hook", text="Stop scrolling 👋", start_time=0.0, end_time=10.0),
        TextOverlay(
            id="offer",
            text="50% off this week only",
            start_time=2.0,
            end_time=10.0,
            style=TextStyle(font_size=24, bg_color="#ffe066", text_align="left"),
        ),
    ]


@pytest.fixture
def ffmpeg_video(temp_output_dir: Path):
    """Factory for small real test videos generated with lavfi sources."""

    def make(name: str, duration: float = 3.0, with_audio: bool = True) -> Path:
        public_dir = temp_output_dir / "public" / "uploads"
        public_dir.mkdir(parents=True, exist_ok=True)
        path = public_dir / name
        cmd = [
            "ffmpeg", "-y",
            "-f", "lavfi", "-i", f"testsrc=size=320x240:rate=25:duration={duration}",
        ]
        if with_audio:
            cmd += ["-f", "lavfi", "-i", f"sine=frequency=440:duration={duration}"]
        cmd += ["-c:v", "libx264", "-preset", "ultrafast", "-pix_fmt", "yuv420p"]
        if with_audio:
            cmd += ["-c:a", "aac", "-shortest"]
        cmd.append(str(path))
        subprocess.run(cmd, capture_output=True, check=True)
        return path

    return make
