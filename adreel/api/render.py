"""Render API endpoints - synchronous batch rendering."""

import asyncio
import logging
from pathlib import Path

from fastapi import APIRouter, Response, status

from adreel.config import get_settings
from adreel.exceptions import InvalidFieldValueError
from adreel.render.batch import BatchRenderer, build_batch_requests
from adreel.schemas.render import (
    HealthResponse,
    RenderBatchRequest,
    RenderBatchResponse,
    RenderResultItem,
)
from adreel.services.output_cleaner import clean_old_outputs
from adreel.utils.media_info import check_ffmpeg, get_video_info
from adreel.utils.path_safety import join_under

router = APIRouter()
logger = logging.getLogger(__name__)


def _public_url(path: Path) -> str:
    """URL of a file served from the public directory."""
    public_dir = Path(get_settings().public_dir).resolve()
    try:
        return "/" + path.resolve().relative_to(public_dir).as_posix()
    except ValueError:
        return f"/outputs/{path.name}"


@router.post("/render", response_model=RenderBatchResponse)
async def render_videos(body: RenderBatchRequest) -> RenderBatchResponse:
    """
    Render every uploaded video with the same overlays and music.

    Returns when the whole batch has finished. Each video reports its own
    status, so a partly failed batch still returns 200 with per-video errors.
    """
    settings = get_settings()

    if not body.videos:
        raise InvalidFieldValueError("No videos to render", field="videos")
    if not body.overlays:
        raise InvalidFieldValueError("No text overlays defined", field="overlays")

    videos = []
    for video in body.videos:
        path = str(join_under(settings.upload_dir, video.path))
        duration = video.duration
        if duration is None:
            info = await asyncio.to_thread(get_video_info, path)
            logger.info(f"[RENDER] Probed duration of {video.id}: {info.duration}s")
            duration = info.duration
        videos.append(video.to_domain(path, duration))

    overlays = [o.to_domain() for o in body.overlays]
    music = None
    if body.music is not None and body.music.file:
        music = body.music.to_domain(str(join_under(settings.music_dir, body.music.file)))

    await asyncio.to_thread(clean_old_outputs, settings.output_dir, settings.render_output_max_age_s)

    requests = build_batch_requests(videos, overlays, music, body.quality, settings.output_dir)
    logger.info(f"[RENDER] Batch of {len(requests)} videos, {len(overlays)} overlays")
    result = await BatchRenderer().render_batch(requests)

    results = []
    for video, item in zip(body.videos, result.items):
        results.append(
            RenderResultItem(
                video_id=video.id,
                original_name=video.original_name,
                status=item.status.value,
                output_url=_public_url(item.output_path) if item.output_path else None,
                error=item.error,
            )
        )
    return RenderBatchResponse(results=results)


@router.get("/health", response_model=HealthResponse)
async def health_check(response: Response) -> HealthResponse:
    """Report whether the compositor binary is usable."""
    ffmpeg_ok = await asyncio.to_thread(check_ffmpeg)
    if not ffmpeg_ok:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return HealthResponse(
        status="healthy" if ffmpeg_ok else "degraded",
        version=get_settings().app_version,
        checks={"ffmpeg": ffmpeg_ok},
    )
