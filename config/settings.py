"""Application settings resolved from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from media.quality import QualitySpec

_ENV_PREFIX = "WIITUBE_"

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 5005
DEFAULT_STORAGE_PATH = "./data"
DEFAULT_VIDEO_QUALITY = "360"
DEFAULT_VIDEO_URL_FORMAT = "https://www.youtube.com/watch?v=%s"
DEFAULT_FFMPEG_BIN = "ffmpeg"
DEFAULT_LOG_LEVEL = "INFO"

# Live relay reads the engine's stdout in fixed-size chunks.
DEFAULT_LIVE_CHUNK_SIZE = 32 * 1024

# Concurrent download+transcode jobs; each holds a worker thread for minutes.
DEFAULT_MAX_PRODUCTIONS = 4


@dataclass(frozen=True)
class Settings:
    host: str
    port: int
    download_dir: str
    cache_dir: str
    video_quality: QualitySpec
    video_url_format: str
    ffmpeg_bin: str
    log_dir: str | None
    log_level: str
    live_chunk_size: int
    max_productions: int


def _get(environ: Mapping[str, str], key: str, default: str | None = None) -> str | None:
    raw = environ.get(_ENV_PREFIX + key)
    if raw is None:
        return default
    raw = raw.strip()
    return raw or default


def _positive_int(name: str, raw: str | None) -> int:
    try:
        value = int(str(raw))
    except (TypeError, ValueError):
        raise ValueError(f"{_ENV_PREFIX}{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{_ENV_PREFIX}{name} must be positive, got {value}")
    return value


def _quality(raw: str | None) -> QualitySpec:
    try:
        return QualitySpec.parse(raw)
    except ValueError:
        raise ValueError(f"{_ENV_PREFIX}VIDEO_QUALITY must be a height such as 360 or 360p, got {raw!r}") from None


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build :class:`Settings` from ``environ`` (defaults to ``os.environ``).

    Raises:
        ValueError: when a numeric setting is malformed or the video URL
            format does not contain exactly one ``%s`` placeholder.
    """
    env = os.environ if environ is None else environ

    storage_path = _get(env, "STORAGE_PATH", DEFAULT_STORAGE_PATH)
    storage_root = Path(storage_path).resolve()
    download_dir = Path(_get(env, "DOWNLOAD_FOLDER") or storage_root / "downloads").resolve()
    cache_dir = Path(_get(env, "CACHE_DIR") or storage_root / "cache" / "videos").resolve()

    url_format = _get(env, "VIDEO_URL_FORMAT", DEFAULT_VIDEO_URL_FORMAT)
    if url_format.count("%s") != 1:
        raise ValueError(f"{_ENV_PREFIX}VIDEO_URL_FORMAT must contain exactly one %s: {url_format!r}")

    return Settings(
        host=_get(env, "HOST", DEFAULT_HOST),
        port=_positive_int("PORT", _get(env, "PORT", str(DEFAULT_PORT))),
        download_dir=str(download_dir),
        cache_dir=str(cache_dir),
        video_quality=_quality(_get(env, "VIDEO_QUALITY", DEFAULT_VIDEO_QUALITY)),
        video_url_format=url_format,
        ffmpeg_bin=_get(env, "FFMPEG_BIN", DEFAULT_FFMPEG_BIN),
        log_dir=_get(env, "LOG_DIR"),
        log_level=(_get(env, "LOG_LEVEL", DEFAULT_LOG_LEVEL) or DEFAULT_LOG_LEVEL).upper(),
        live_chunk_size=_positive_int(
            "LIVE_CHUNK_SIZE", _get(env, "LIVE_CHUNK_SIZE", str(DEFAULT_LIVE_CHUNK_SIZE))
        ),
        max_productions=_positive_int(
            "MAX_PRODUCTIONS", _get(env, "MAX_PRODUCTIONS", str(DEFAULT_MAX_PRODUCTIONS))
        ),
    )
