from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Hard ceiling for the batch worker pool regardless of configuration
MAX_RENDER_CONCURRENCY = 4


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = "AdReel Render API"
    app_version: str = "0.1.0"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = True

    # CORS - comma-separated origins
    cors_origins_raw: str = "http://localhost:3000"

    @computed_field
    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins_raw.split(",") if origin.strip()]

    # Filesystem layout
    public_dir: str = "public"
    upload_dir: str = "public/uploads"
    output_dir: str = "public/outputs"
    logs_dir: str = "logs"
    # Music paths from the HTTP surface are relative to this directory
    music_dir: str = "public"
    # Every path taking part in a render must resolve under one of these.
    # Empty means "public_dir and logs_dir".
    render_allowed_roots: list[str] = []

    @computed_field
    @property
    def allowed_roots(self) -> list[Path]:
        """Resolved allow-list of base directories for render paths."""
        roots = self.render_allowed_roots or [self.public_dir, self.logs_dir]
        return [Path(root).resolve() for root in roots]

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    # Render output (fixed 9:16 vertical format)
    render_output_width: int = 1080
    render_output_height: int = 1920
    render_reference_width: int = 360
    render_audio_bitrate: str = "192k"

    # Safe zone, as fractions of frame height
    render_safe_top_ratio: float = 0.15
    render_safe_bottom_ratio: float = 0.65

    # Subprocess limits
    render_ffmpeg_threads: int = 2
    render_timeout_s: float = 600.0
    render_max_output_bytes: int = 10 * 1024 * 1024
    render_stderr_tail_chars: int = 2000

    # Batch
    render_max_concurrency: int = 1

    @computed_field
    @property
    def batch_concurrency(self) -> int:
        """Worker pool size clamped to [1, MAX_RENDER_CONCURRENCY]."""
        return max(1, min(self.render_max_concurrency, MAX_RENDER_CONCURRENCY))

    # Output housekeeping
    render_output_max_age_s: int = 30 * 60

    # Fonts (optional overrides; empty = search system locations)
    render_font_path: str = ""
    render_emoji_font_path: str = ""


@lru_cache
def get_settings() -> Settings:
    return Settings()
