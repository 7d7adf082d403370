from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from adreel.render.audio_mixer import MusicTrack
from adreel.render.batch import VideoSource
from adreel.render.text_renderer import DEFAULT_TEXT_STYLE, TextOverlay, TextStyle
from adreel.schemas.envelope import ErrorInfo


class TextStyleInput(BaseModel):
    """Overlay box style in 360px-reference units.

    Accepts snake_case input. camelCase aliases are accepted for compatibility.
    """

    model_config = ConfigDict(populate_by_name=True, allow_inf_nan=False)

    font_size: float = Field(default=DEFAULT_TEXT_STYLE.font_size, alias="fontSize", gt=0)
    font_weight: Literal["normal", "bold", "extrabold"] = Field(
        default=DEFAULT_TEXT_STYLE.font_weight.value, alias="fontWeight"
    )
    text_color: str = Field(default=DEFAULT_TEXT_STYLE.text_color, alias="textColor")
    bg_color: str = Field(default=DEFAULT_TEXT_STYLE.bg_color, alias="bgColor")
    bg_opacity: float = Field(default=DEFAULT_TEXT_STYLE.bg_opacity, alias="bgOpacity", ge=0.0, le=1.0)
    border_radius: float = Field(default=DEFAULT_TEXT_STYLE.border_radius, alias="borderRadius", ge=0)
    padding_x: float = Field(default=DEFAULT_TEXT_STYLE.padding_x, alias="paddingX", ge=0)
    padding_y: float = Field(default=DEFAULT_TEXT_STYLE.padding_y, alias="paddingY", ge=0)
    max_width: float = Field(
        default=DEFAULT_TEXT_STYLE.max_width,
        alias="maxWidth",
        gt=0,
        le=100,
        description="Box width as a percentage of the frame width",
    )
    text_align: Literal["left", "center", "right"] = Field(
        default=DEFAULT_TEXT_STYLE.text_align.value, alias="textAlign"
    )

    def to_domain(self) -> TextStyle:
        return TextStyle(**self.model_dump())


class TextOverlayInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, allow_inf_nan=False)

    id: str
    text: str
    start_time: float = Field(alias="startTime", ge=0)
    end_time: float = Field(alias="endTime", gt=0)
    style: TextStyleInput = Field(default_factory=TextStyleInput)
    emoji: str | None = Field(default=None, description="Deprecated leading emoji")

    def to_domain(self) -> TextOverlay:
        return TextOverlay(
            id=self.id,
            text=self.text,
            start_time=self.start_time,
            end_time=self.end_time,
            style=self.style.to_domain(),
            emoji=self.emoji or None,
        )


class MusicTrackInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, allow_inf_nan=False)

    file: str = Field(description="Path relative to the public directory, e.g. /music/track.mp3")
    name: str | None = None
    volume: float = Field(default=1.0, ge=0.0, le=1.0)
    fade_in: float = Field(default=0.0, alias="fadeIn", ge=0)
    fade_out: float = Field(default=0.0, alias="fadeOut", ge=0)
    start_offset: float = Field(
        default=0.0, alias="startTime", ge=0, description="Offset into the music track in seconds"
    )

    def to_domain(self, file: str) -> MusicTrack:
        return MusicTrack(
            file=file,
            volume=self.volume,
            fade_in=self.fade_in,
            fade_out=self.fade_out,
            start_offset=self.start_offset,
        )


class VideoInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, allow_inf_nan=False)

    id: str
    path: str = Field(description="Path relative to the upload directory")
    original_name: str | None = Field(default=None, alias="originalName")
    duration: float | None = Field(
        default=None, gt=0, description="Seconds; probed from the file when omitted"
    )
    width: int | None = None
    height: int | None = None
    trim_start: float | None = Field(default=None, alias="trimStart", ge=0)
    trim_end: float | None = Field(default=None, alias="trimEnd", gt=0)

    def to_domain(self, path: str, duration: float | None = None) -> VideoSource:
        return VideoSource(
            path=path,
            duration=duration if duration is not None else self.duration,
            trim_start=self.trim_start,
            trim_end=self.trim_end,
        )


class RenderBatchRequest(BaseModel):
    videos: list[VideoInput]
    overlays: list[TextOverlayInput]
    music: MusicTrackInput | None = None
    quality: Literal["draft", "final"] = "final"


class RenderResultItem(BaseModel):
    video_id: str
    original_name: str | None = None
    status: Literal["completed", "failed", "cancelled"]
    output_url: str | None = None
    error: ErrorInfo | None = None


class RenderBatchResponse(BaseModel):
    results: list[RenderResultItem]


class HealthResponse(BaseModel):
    status: Literal["healthy", "degraded"]
    version: str
    checks: dict[str, bool]
