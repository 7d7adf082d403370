"""
Background music sub-graph for the render filter graph.

This module handles:
- Music offset (start the track part way in)
- Volume control
- Fade in/out effects
- Reconciling music with the source clip's own audio (mix or pad)
"""

import math
from dataclasses import dataclass

from adreel.exceptions import InvalidFieldValueError

MUSIC_LABEL = "musicout"
AUDIO_OUTPUT_LABEL = "outa"
# Seconds over which amix ramps volume when an input ends
MIX_DROPOUT_TRANSITION_S = 2


def format_number(value: float) -> str:
    """Format a filter argument rounded to millisecond precision.

    ``1.2300000000000002`` becomes ``1.23`` and ``4.0`` becomes ``4`` so the
    filter parser never sees float artifacts.
    """
    rounded = round(value, 3) + 0.0  # drops negative zero
    text = f"{rounded:.3f}".rstrip("0").rstrip(".")
    return text or "0"


@dataclass(frozen=True)
class MusicTrack:
    """Background music applied to every video of a render request."""

    file: str
    volume: float = 1.0
    fade_in: float = 0.0
    fade_out: float = 0.0
    start_offset: float = 0.0  # seconds into the track where playback begins

    def __post_init__(self) -> None:
        if not self.file:
            raise InvalidFieldValueError("Music file path is required", field="music.file")
        if not (0 <= self.volume <= 1) or math.isnan(self.volume):
            raise InvalidFieldValueError(field="music.volume", value=self.volume)
        for name in ("fade_in", "fade_out", "start_offset"):
            value = getattr(self, name)
            if not value >= 0 or not math.isfinite(value):
                raise InvalidFieldValueError(field=f"music.{name}", value=value)


def build_music_filter(track: MusicTrack, input_index: int, duration: float) -> str:
    """
    Build the chain shaping the music input into ``[musicout]``.

    Fade-in starts at the track start; fade-out lasts ``min(fade_out, duration)``
    and ends exactly at ``duration``. Zero-length fades are omitted.

    Args:
        track: Music settings
        input_index: FFmpeg input index of the music file
        duration: Effective (post-trim) video duration in seconds
    """
    parts: list[str] = []

    if track.start_offset > 0:
        parts.append(f"atrim=start={format_number(track.start_offset)}")
        parts.append("asetpts=PTS-STARTPTS")  # Reset timestamps after trim

    parts.append(f"volume={format_number(track.volume)}")

    fade_in = min(track.fade_in, duration)
    if fade_in > 0:
        parts.append(f"afade=t=in:st=0:d={format_number(fade_in)}")

    fade_out = min(track.fade_out, duration)
    if fade_out > 0:
        fade_start = duration - fade_out
        parts.append(f"afade=t=out:st={format_number(fade_start)}:d={format_number(fade_out)}")

    return f"[{input_index}:a]{','.join(parts)}[{MUSIC_LABEL}]"


def build_mix_filter(source_has_audio: bool, duration: float) -> str:
    """
    Combine ``[musicout]`` with the source audio into ``[outa]``.

    With source audio the mix lasts as long as the first (source) input.
    Without it the music alone is trimmed and zero-padded to ``duration``
    so audio and video streams end together.
    """
    if source_has_audio:
        return (
            f"[0:a][{MUSIC_LABEL}]amix=inputs=2:duration=first:"
            f"dropout_transition={MIX_DROPOUT_TRANSITION_S}[{AUDIO_OUTPUT_LABEL}]"
        )

    d = format_number(duration)
    return f"[{MUSIC_LABEL}]atrim=duration={d},apad=whole_dur={d}[{AUDIO_OUTPUT_LABEL}]"
