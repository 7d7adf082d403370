"""Text overlay rasterization for video compositing.

Features:
- Word-wrapped text inside a rounded, semi-transparent background box
- Emoji glyphs from a color emoji font (fallback glyphs when none is installed)
- Geometry scaled from a 360px reference width to the output frame
- Transparent PNG output for FFmpeg's overlay filter
"""

import logging
import math
import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from PIL import Image, ImageColor, ImageDraw, ImageFont, ImageOps

from adreel.config import get_settings
from adreel.exceptions import InvalidFieldValueError, InvalidTimeRangeError, RasterizeError
from adreel.render import text_shaper
from adreel.render.text_shaper import TextFont

logger = logging.getLogger(__name__)

LINE_HEIGHT_RATIO = 1.4

FONT_CANDIDATES: dict[str, list[str]] = {
    "normal": [
        "/usr/share/fonts/truetype/noto/NotoSans-Regular.ttf",
        "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
        "/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf",
        "/System/Library/Fonts/Supplemental/Arial.ttf",  # macOS
        "C:\\Windows\\Fonts\\arial.ttf",
    ],
    "bold": [
        "/usr/share/fonts/truetype/noto/NotoSans-Bold.ttf",
        "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
        "/usr/share/fonts/truetype/liberation/LiberationSans-Bold.ttf",
        "/System/Library/Fonts/Supplemental/Arial Bold.ttf",
        "C:\\Windows\\Fonts\\arialbd.ttf",
    ],
    "extrabold": [
        "/usr/share/fonts/truetype/noto/NotoSans-ExtraBold.ttf",
        "/usr/share/fonts/truetype/noto/NotoSans-Black.ttf",
        "/System/Library/Fonts/Supplemental/Arial Black.ttf",
        "C:\\Windows\\Fonts\\ariblk.ttf",
    ],
}

EMOJI_FONT_CANDIDATES = [
    "/usr/share/fonts/truetype/noto/NotoColorEmoji.ttf",  # Linux (fonts-noto-color-emoji)
    "/usr/share/fonts/noto/NotoColorEmoji.ttf",
    "/System/Library/Fonts/Apple Color Emoji.ttc",  # macOS
    "C:\\Windows\\Fonts\\seguiemj.ttf",  # Windows Segoe UI Emoji
]
# Bitmap color fonts only load at their embedded strike sizes
EMOJI_STRIKE_SIZES = (109, 160, 96, 64)

_emoji_warning_lock = threading.Lock()
_emoji_warning_logged = False


class FontWeight(str, Enum):
    NORMAL = "normal"
    BOLD = "bold"
    EXTRABOLD = "extrabold"


class TextAlign(str, Enum):
    LEFT = "left"
    CENTER = "center"
    RIGHT = "right"


def parse_color(value: str, alpha: int = 255) -> tuple[int, int, int, int]:
    """Parse ``#rgb``, ``#rrggbb``, ``#rrggbbaa`` or a CSS color name to RGBA.

    An alpha embedded in the color is multiplied by ``alpha``, so ``#ffffff80``
    at opacity 0.5 is drawn at a quarter opacity.
    """
    rgba = ImageColor.getcolor(value, "RGBA")
    return (rgba[0], rgba[1], rgba[2], _round_px(rgba[3] * alpha / 255))


@dataclass(frozen=True)
class TextStyle:
    """Visual style of one overlay box, in reference (360px-wide) units."""

    font_size: float = 28
    font_weight: FontWeight = FontWeight.BOLD
    text_color: str = "#1a1a1a"
    bg_color: str = "#ffffff"
    bg_opacity: float = 0.9
    border_radius: float = 16
    padding_x: float = 28
    padding_y: float = 20
    max_width: float = 90  # percent of frame width
    text_align: TextAlign = TextAlign.CENTER

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "font_weight", FontWeight(self.font_weight))
        except ValueError:
            raise InvalidFieldValueError(field="font_weight", value=self.font_weight) from None
        try:
            object.__setattr__(self, "text_align", TextAlign(self.text_align))
        except ValueError:
            raise InvalidFieldValueError(field="text_align", value=self.text_align) from None

        for name in ("font_size", "bg_opacity", "border_radius", "padding_x", "padding_y", "max_width"):
            if not math.isfinite(getattr(self, name)):
                raise InvalidFieldValueError(field=name, value=getattr(self, name))
        if not self.font_size > 0:
            raise InvalidFieldValueError(field="font_size", value=self.font_size)
        if not 0 <= self.bg_opacity <= 1:
            raise InvalidFieldValueError(field="bg_opacity", value=self.bg_opacity)
        if not 0 < self.max_width <= 100:
            raise InvalidFieldValueError(field="max_width", value=self.max_width)
        for name in ("border_radius", "padding_x", "padding_y"):
            if getattr(self, name) < 0:
                raise InvalidFieldValueError(field=name, value=getattr(self, name))
        for name in ("text_color", "bg_color"):
            try:
                ImageColor.getcolor(getattr(self, name), "RGBA")
            except ValueError:
                raise InvalidFieldValueError(field=name, value=getattr(self, name)) from None


DEFAULT_TEXT_STYLE = TextStyle()


@dataclass(frozen=True)
class TextOverlay:
    """A time-windowed text box. Times are seconds on the output timeline."""

    id: str
    text: str
    start_time: float
    end_time: float
    style: TextStyle = field(default_factory=lambda: DEFAULT_TEXT_STYLE)
    emoji: str | None = None  # legacy leading glyph, prefixed to the text

    def __post_init__(self) -> None:
        if not (0 <= self.start_time < self.end_time) or not math.isfinite(self.end_time):
            raise InvalidTimeRangeError(
                start=self.start_time, end=self.end_time, field=f"overlays[{self.id}]"
            )

    @property
    def display_text(self) -> str:
        return f"{self.emoji} {self.text}" if self.emoji else self.text


@dataclass(frozen=True)
class OverlayBox:
    """Pixel geometry of a rasterized overlay at a given frame width."""

    width: int
    height: int
    lines: tuple[str, ...]
    font_size: int
    line_height: float
    padding_x: int
    padding_y: int
    border_radius: int


@dataclass(frozen=True)
class RasterizedOverlay:
    """A rendered overlay PNG owned by exactly one render invocation."""

    source_overlay_id: str
    png_path: Path
    pixel_width: int
    pixel_height: int


def _round_px(value: float) -> int:
    """Round half up, matching browser canvas pixel rounding."""
    return int(math.floor(value + 0.5))


def _load_truetype(candidates: list[str], size: int) -> ImageFont.FreeTypeFont | None:
    for path in candidates:
        if not os.path.exists(path):
            continue
        try:
            return ImageFont.truetype(path, size)
        except OSError:
            continue
    return None


def _log_missing_emoji_font() -> None:
    global _emoji_warning_logged
    with _emoji_warning_lock:
        if _emoji_warning_logged:
            return
        _emoji_warning_logged = True
    logger.warning("[TEXT] No color emoji font found, emoji will render as fallback glyphs")


class TextRenderer:
    """Measures and rasterizes text overlays.

    Fonts and emoji glyphs are cached per instance; create one renderer per
    render so concurrent renders never share font handles.
    """

    def __init__(self, frame_width: int | None = None, reference_width: int | None = None):
        settings = get_settings()
        self.frame_width = frame_width or settings.render_output_width
        self.reference_width = reference_width or settings.render_reference_width
        self._font_override = settings.render_font_path
        self._emoji_font_override = settings.render_emoji_font_path
        self._fonts: dict[tuple[FontWeight, int], TextFont] = {}
        self._emoji_font: ImageFont.FreeTypeFont | None = None
        self._emoji_font_loaded = False
        self._emoji_glyphs: dict[tuple[str, int], Image.Image | None] = {}

    @property
    def scale(self) -> float:
        return self.frame_width / self.reference_width

    def load_font(self, weight: FontWeight, size: int) -> TextFont:
        """Load the text face for ``weight`` at ``size`` pixels."""
        key = (weight, size)
        if key in self._fonts:
            return self._fonts[key]

        candidates = FONT_CANDIDATES[weight.value]
        if weight == FontWeight.EXTRABOLD:
            candidates = candidates + FONT_CANDIDATES["bold"]
        if self._font_override:
            candidates = [self._font_override] + candidates

        face = _load_truetype(candidates, size)
        if face is None:
            logger.warning(f"[TEXT] No {weight.value} font found, using PIL default")
            face = ImageFont.load_default(size=size)

        font = TextFont(face=face, size=size)
        self._fonts[key] = font
        return font

    def _load_emoji_font(self) -> ImageFont.FreeTypeFont | None:
        if self._emoji_font_loaded:
            return self._emoji_font
        self._emoji_font_loaded = True

        candidates = EMOJI_FONT_CANDIDATES
        if self._emoji_font_override:
            candidates = [self._emoji_font_override] + candidates

        for path in candidates:
            if not os.path.exists(path):
                continue
            for strike in EMOJI_STRIKE_SIZES:
                try:
                    self._emoji_font = ImageFont.truetype(path, strike)
                    logger.info(f"[TEXT] Loaded emoji font: {path} ({strike}px)")
                    return self._emoji_font
                except OSError:
                    continue

        _log_missing_emoji_font()
        return None

    def _emoji_glyph(self, cluster: str, size: int) -> Image.Image | None:
        key = (cluster, size)
        if key in self._emoji_glyphs:
            return self._emoji_glyphs[key]

        glyph = None
        emoji_font = self._load_emoji_font()
        if emoji_font is not None:
            strike = int(emoji_font.size)
            canvas = Image.new("RGBA", (strike * 2, strike * 2), (0, 0, 0, 0))
            ImageDraw.Draw(canvas).text((0, 0), cluster, font=emoji_font, embedded_color=True)
            bbox = canvas.getbbox()
            if bbox is not None:
                glyph = ImageOps.contain(canvas.crop(bbox), (size, size), Image.Resampling.LANCZOS)

        self._emoji_glyphs[key] = glyph
        return glyph

    def measure_box(self, overlay: TextOverlay) -> OverlayBox:
        """Compute the box geometry ``rasterize`` will draw for ``overlay``.

        Layout uses this height, so layout and rasterization always agree.
        """
        style = overlay.style
        scale = self.scale
        font_size = max(1, _round_px(style.font_size * scale))
        padding_x = _round_px(style.padding_x * scale)
        padding_y = _round_px(style.padding_y * scale)
        border_radius = _round_px(style.border_radius * scale)

        box_width = max(1, _round_px(self.frame_width * style.max_width / 100))
        text_width = max(1, box_width - padding_x * 2)
        line_height = font_size * LINE_HEIGHT_RATIO

        font = self.load_font(style.font_weight, font_size)
        lines = text_shaper.wrap(overlay.display_text, text_width, font)
        box_height = math.ceil(len(lines) * line_height) + padding_y * 2

        return OverlayBox(
            width=box_width,
            height=box_height,
            lines=tuple(lines),
            font_size=font_size,
            line_height=line_height,
            padding_x=padding_x,
            padding_y=padding_y,
            border_radius=border_radius,
        )

    def _draw_line(
        self,
        layer: Image.Image,
        draw: ImageDraw.ImageDraw,
        line: str,
        x: float,
        y: float,
        font: TextFont,
        fill: tuple[int, int, int, int],
    ) -> None:
        cursor_x = x
        emoji_size = font.emoji_size
        for kind, value in text_shaper.tokenize(line):
            if kind == "text":
                draw.text((cursor_x, y), value, font=font.face, fill=fill)
                cursor_x += float(font.face.getlength(value))
                continue

            glyph = self._emoji_glyph(value, emoji_size)
            if glyph is not None:
                emoji_y = y + (font.size - glyph.height) / 2
                layer.paste(glyph, (_round_px(cursor_x), _round_px(emoji_y)), glyph)
            else:
                draw.text((cursor_x, y), value, font=font.face, fill=fill)
            cursor_x += float(font.emoji_advance)

    def rasterize(
        self,
        overlay: TextOverlay,
        frame_height: int,
        output_path: str | os.PathLike[str],
    ) -> RasterizedOverlay:
        """Render ``overlay`` to a transparent PNG at ``output_path``.

        Raises:
            RasterizeError: If the directory cannot be created, drawing fails,
                or the PNG cannot be encoded
        """
        output_path = Path(output_path)
        try:
            box = self.measure_box(overlay)
            if box.height > frame_height:
                logger.warning(
                    f"[TEXT] Overlay {overlay.id} is taller than the frame "
                    f"({box.height}px > {frame_height}px)"
                )

            style = overlay.style
            font = self.load_font(style.font_weight, box.font_size)
            size = (box.width, box.height)

            image = Image.new("RGBA", size, (0, 0, 0, 0))
            bg_rgba = parse_color(style.bg_color, _round_px(style.bg_opacity * 255))
            if bg_rgba[3] > 0:
                ImageDraw.Draw(image).rounded_rectangle(
                    [(0, 0), (box.width - 1, box.height - 1)],
                    radius=box.border_radius,
                    fill=bg_rgba,
                )

            # Text goes on its own layer so glyph antialiasing blends over the box
            text_layer = Image.new("RGBA", size, (0, 0, 0, 0))
            text_draw = ImageDraw.Draw(text_layer)
            text_rgba = parse_color(style.text_color)

            for i, line in enumerate(box.lines):
                line_width = text_shaper.measure(line, font)
                if style.text_align == TextAlign.CENTER:
                    x = (box.width - line_width) / 2
                elif style.text_align == TextAlign.RIGHT:
                    x = box.width - box.padding_x - line_width
                else:
                    x = box.padding_x
                y = box.padding_y + i * box.line_height
                self._draw_line(text_layer, text_draw, line, x, y, font, text_rgba)

            image = Image.alpha_composite(image, text_layer)

            output_path.parent.mkdir(parents=True, exist_ok=True)
            image.save(output_path, "PNG")
        except (OSError, ValueError, OverflowError) as e:
            raise RasterizeError(overlay.id, str(e)) from e

        logger.info(f"[TEXT] Generated PNG: {output_path} ({box.width}x{box.height}, {len(box.lines)} lines)")
        return RasterizedOverlay(
            source_overlay_id=overlay.id,
            png_path=output_path,
            pixel_width=box.width,
            pixel_height=box.height,
        )


def rasterize(
    overlay: TextOverlay,
    frame_width: int,
    frame_height: int,
    output_path: str | os.PathLike[str],
) -> RasterizedOverlay:
    """Rasterize a single overlay with a fresh renderer."""
    return TextRenderer(frame_width).rasterize(overlay, frame_height, output_path)
