"""
FFmpeg filter graph construction for overlay compositing.

Input order is fixed: ``0`` is the background video, ``1`` the music file
when present, then one input per visible overlay PNG in composition order.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from adreel.exceptions import InvalidFieldValueError
from adreel.render.audio_mixer import (
    AUDIO_OUTPUT_LABEL,
    build_mix_filter,
    build_music_filter,
    format_number,
)
from adreel.render.text_renderer import RasterizedOverlay

if TYPE_CHECKING:
    from adreel.render.pipeline import RenderRequest

logger = logging.getLogger(__name__)

VIDEO_OUTPUT_LABEL = "outv"
# Horizontally centered on the frame
OVERLAY_X_EXPR = "(main_w-overlay_w)/2"


@dataclass
class FilterGraphSpec:
    """Everything the executor needs besides the background input itself."""

    video_filters: list[str] = field(default_factory=list)
    audio_filters: list[str] = field(default_factory=list)
    video_output: str = f"[{VIDEO_OUTPUT_LABEL}]"
    audio_output: str | None = None  # filter label, or None to map no filtered audio
    map_source_audio: bool = False  # copy-through of input 0's audio (no music)
    music_input: str | None = None
    overlay_inputs: list[Path] = field(default_factory=list)

    @property
    def filter_complex(self) -> str:
        return ";".join(self.video_filters + self.audio_filters)

    @property
    def has_audio_mix(self) -> bool:
        return bool(self.audio_filters)

    @property
    def extra_inputs(self) -> list[str]:
        """Input paths after the background video, in input-index order."""
        inputs = [self.music_input] if self.music_input else []
        return inputs + [str(p) for p in self.overlay_inputs]


def build_background_filter(width: int, height: int, output_label: str) -> str:
    """Scale the source to cover the frame, then center-crop to exact size."""
    return (
        f"[0:v]scale={width}:{height}:force_original_aspect_ratio=increase,"
        f"crop={width}:{height}[{output_label}]"
    )


def build_filter_graph(
    request: "RenderRequest",
    rasterized: Sequence[RasterizedOverlay],
    positions: Sequence[int],
    *,
    source_has_audio: bool,
    music_available: bool,
    width: int,
    height: int,
) -> FilterGraphSpec:
    """
    Build the filter graph for one render.

    Overlays are chained sequentially in ascending ``start_time`` order so later
    overlays draw on top of earlier ones. Each is enabled only between its
    start and end (clamped to the effective duration); overlays starting at or
    after the effective duration are left out entirely.

    Args:
        request: The render request (overlays, music, trim)
        rasterized: PNGs aligned with ``request.overlays``
        positions: Layout y positions aligned with ``request.overlays``
        source_has_audio: Whether input 0 carries an audio stream
        music_available: Whether the music file exists and should be mixed
        width: Output frame width
        height: Output frame height
    """
    overlays = request.overlays
    if not (len(overlays) == len(rasterized) == len(positions)):
        raise InvalidFieldValueError(
            f"Overlay count mismatch: {len(overlays)} overlays, "
            f"{len(rasterized)} images, {len(positions)} positions",
            field="overlays",
        )

    duration = request.effective_duration
    spec = FilterGraphSpec()

    next_input = 1
    if music_available and request.music is not None:
        spec.music_input = request.music.file
        music_index = next_input
        next_input += 1

    order = sorted(range(len(overlays)), key=lambda i: overlays[i].start_time)
    visible = []
    for i in order:
        if overlays[i].start_time >= duration:
            logger.info(
                f"[RENDER] Skipping overlay {overlays[i].id}: starts at {overlays[i].start_time}s, "
                f"after the {duration}s output"
            )
            continue
        visible.append(i)

    if not visible:
        spec.video_filters.append(build_background_filter(width, height, VIDEO_OUTPUT_LABEL))
    else:
        spec.video_filters.append(build_background_filter(width, height, "base"))
        prev_label = "base"
        for n, i in enumerate(visible):
            overlay = overlays[i]
            image = rasterized[i]
            if image.source_overlay_id != overlay.id:
                raise InvalidFieldValueError(
                    f"Rasterized image {image.source_overlay_id} does not match overlay {overlay.id}",
                    field="overlays",
                )

            spec.overlay_inputs.append(image.png_path)
            input_index = next_input + n
            out_label = VIDEO_OUTPUT_LABEL if n == len(visible) - 1 else f"v{n}"
            start = format_number(overlay.start_time)
            end = format_number(min(overlay.end_time, duration))
            spec.video_filters.append(
                f"[{prev_label}][{input_index}:v]overlay=x={OVERLAY_X_EXPR}:y={positions[i]}:"
                f"enable='between(t,{start},{end})'[{out_label}]"
            )
            prev_label = out_label

    if spec.music_input is not None:
        spec.audio_filters.append(build_music_filter(request.music, music_index, duration))
        spec.audio_filters.append(build_mix_filter(source_has_audio, duration))
        spec.audio_output = f"[{AUDIO_OUTPUT_LABEL}]"
    elif source_has_audio:
        spec.map_source_audio = True

    return spec
