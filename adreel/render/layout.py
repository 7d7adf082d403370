"""Vertical stacking of overlays inside the frame's safe zone."""

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass

from adreel.config import get_settings
from adreel.exceptions import InvalidFieldValueError
from adreel.render.text_renderer import TextOverlay

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SafeZone:
    """Pixel band where overlays may be placed, clear of platform UI."""

    top: int
    bottom: int

    @property
    def height(self) -> int:
        return self.bottom - self.top


def compute_safe_zone(
    frame_height: int,
    top_ratio: float | None = None,
    bottom_ratio: float | None = None,
) -> SafeZone:
    settings = get_settings()
    if top_ratio is None:
        top_ratio = settings.render_safe_top_ratio
    if bottom_ratio is None:
        bottom_ratio = settings.render_safe_bottom_ratio
    return SafeZone(
        top=int(math.floor(frame_height * top_ratio + 0.5)),
        bottom=int(math.floor(frame_height * bottom_ratio + 0.5)),
    )


def stack_scale(heights: Sequence[float], zone_height: float) -> float:
    """Advance compression factor: 1 when the stack fits, else zone / total."""
    total = sum(heights)
    if total <= zone_height or total <= 0:
        return 1.0
    return zone_height / total


def layout_stack(
    overlays: Sequence[TextOverlay],
    heights: Sequence[int],
    frame_height: int,
    *,
    zone: SafeZone | None = None,
) -> list[int]:
    """
    Compute the y position of every overlay.

    Overlays are stacked top-down in ascending ``start_time`` order (ties keep
    input order) starting at the safe zone top. If the natural stacked height
    overflows the zone, every advance is compressed by the same factor so the
    last box's advance ends exactly on the zone bottom. Timing only gates
    visibility, never position.

    Args:
        overlays: Overlays in any order
        heights: Box height of ``overlays[i]`` at the same index
        frame_height: Output frame height in pixels
        zone: Safe zone override; defaults to the configured ratios of frame_height

    Returns:
        Positions aligned with the input order of ``overlays``
    """
    if len(overlays) != len(heights):
        raise InvalidFieldValueError(
            f"Got {len(heights)} heights for {len(overlays)} overlays", field="heights"
        )
    if not overlays:
        return []
    for overlay, height in zip(overlays, heights):
        if height < 0:
            raise InvalidFieldValueError(field=f"heights[{overlay.id}]", value=height)

    if zone is None:
        zone = compute_safe_zone(frame_height)
    order = sorted(range(len(overlays)), key=lambda i: overlays[i].start_time)
    scale = stack_scale([heights[i] for i in order], zone.height)

    if scale < 1:
        logger.info(
            f"[LAYOUT] Stack of {len(overlays)} overlays ({sum(heights)}px) exceeds safe zone "
            f"({zone.height}px), compressing by {scale:.3f}"
        )

    positions = [0] * len(overlays)
    y = float(zone.top)
    for i in order:
        positions[i] = int(math.floor(y + 0.5))
        y += heights[i] * scale
    return positions
