"""Media file information utilities using FFprobe."""

import json
import logging
import subprocess
from dataclasses import dataclass

from adreel.config import get_settings
from adreel.exceptions import SubprocessError

logger = logging.getLogger(__name__)

PROBE_TIMEOUT_S = 30


def _get_settings():
    """Get settings lazily to avoid import issues in tests."""
    return get_settings()


@dataclass
class VideoInfo:
    """Video stream metadata needed to build a render request."""

    width: int
    height: int
    duration: float
    codec: str
    has_audio: bool


def _run_ffprobe(file_path: str, *args: str) -> dict:
    """Run ffprobe and return parsed JSON."""
    settings = _get_settings()
    cmd = [
        settings.ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        *args,
        file_path,
    ]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=PROBE_TIMEOUT_S)
    except FileNotFoundError as e:
        raise SubprocessError(
            f"ffprobe not found: {settings.ffprobe_path}", reason="not_found", stage="probe"
        ) from e
    except subprocess.TimeoutExpired as e:
        raise SubprocessError(
            f"ffprobe timed out on {file_path}", reason="timeout", stage="probe"
        ) from e

    if result.returncode != 0:
        raise SubprocessError(
            f"ffprobe failed on {file_path}",
            returncode=result.returncode,
            stderr=result.stderr.strip(),
            stage="probe",
        )

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise SubprocessError(
            f"Failed to parse ffprobe output for {file_path}: {e}", stage="probe"
        ) from e


def has_audio_track(file_path: str) -> bool:
    """
    Check if media file has an audio track.

    Args:
        file_path: Path to media file

    Returns:
        True if audio track exists, False otherwise (including probe failures)
    """
    try:
        data = _run_ffprobe(file_path, "-show_streams", "-select_streams", "a")
    except SubprocessError as e:
        logger.warning(f"[PROBE] Audio probe failed for {file_path}, assuming no audio: {e.message}")
        return False
    return len(data.get("streams", [])) > 0


def get_video_info(file_path: str) -> VideoInfo:
    """
    Get width, height, duration, codec and audio presence for a video.

    Raises:
        SubprocessError: If ffprobe fails or the file has no video stream
    """
    data = _run_ffprobe(file_path, "-show_format", "-show_streams")
    streams = data.get("streams", [])

    video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)

    if video_stream is None:
        raise SubprocessError(f"No video stream found in: {file_path}", stage="probe")

    duration = data.get("format", {}).get("duration") or video_stream.get("duration") or 0

    return VideoInfo(
        width=int(video_stream.get("width", 0)),
        height=int(video_stream.get("height", 0)),
        duration=float(duration),
        codec=video_stream.get("codec_name", "unknown"),
        has_audio=audio_stream is not None,
    )


def check_ffmpeg() -> bool:
    """Return True if the configured ffmpeg binary runs."""
    settings = _get_settings()
    try:
        result = subprocess.run(
            [settings.ffmpeg_path, "-version"],
            capture_output=True,
            timeout=PROBE_TIMEOUT_S,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"[HEALTH] ffmpeg unavailable: {e}")
        return False
    return result.returncode == 0
