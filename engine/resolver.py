"""Source resolution through yt-dlp."""

from __future__ import annotations

import logging
import os
from typing import Protocol

from yt_dlp import YoutubeDL
from yt_dlp.utils import DownloadError, ExtractorError

from engine.errors import ResolutionError
from media.quality import QualitySpec

logger = logging.getLogger(__name__)

# Live transcoding needs a single URL carrying both audio and video.
_DIRECT_URL_FORMAT = "best[vcodec!=none][acodec!=none]/best"


def video_page_url(url_format: str, video_id: str) -> str:
    return url_format % video_id


class SourceResolver(Protocol):
    def fetch_to_file(self, url: str, quality: QualitySpec, dest_path: str) -> None:
        """Download ``url`` to ``dest_path`` or raise ``ResolutionError``."""

    def resolve_direct_url(self, url: str, quality: QualitySpec) -> str:
        """Return a direct media URL for ``url`` without writing any file."""


def _base_opts(quality: QualitySpec) -> dict:
    return {
        "quiet": True,
        "no_warnings": True,
        "noprogress": True,
        "noplaylist": True,
        "format_sort": quality.format_sort,
        "retries": 2,
        "fragment_retries": 2,
    }


class YtDlpResolver:
    def __init__(self, extra_opts: dict | None = None) -> None:
        self._extra_opts = dict(extra_opts or {})

    def _opts(self, quality: QualitySpec, **overrides) -> dict:
        opts = _base_opts(quality)
        opts.update(self._extra_opts)
        opts.update(overrides)
        return opts

    def fetch_to_file(self, url: str, quality: QualitySpec, dest_path: str) -> None:
        opts = self._opts(
            quality,
            outtmpl={"default": dest_path.replace("%", "%%")},
            overwrites=False,
            continuedl=True,
            merge_output_format="mp4",
        )
        logger.info("Downloading video %s at quality %s", url, quality.height)
        try:
            with YoutubeDL(opts) as ydl:
                info = ydl.extract_info(url, download=True)
        except (DownloadError, ExtractorError) as exc:
            raise ResolutionError(f"yt-dlp failed for {url}: {exc}") from exc
        except OSError as exc:
            raise ResolutionError(f"yt-dlp could not write {dest_path}: {exc}") from exc

        if os.path.isfile(dest_path):
            return
        # Merged or remuxed downloads may land under a different extension.
        for download in (info or {}).get("requested_downloads") or []:
            produced = download.get("filepath")
            if produced and os.path.isfile(produced):
                os.replace(produced, dest_path)
                return
        raise ResolutionError(f"yt-dlp produced no file for {url}")

    def resolve_direct_url(self, url: str, quality: QualitySpec) -> str:
        opts = self._opts(quality, format=_DIRECT_URL_FORMAT, skip_download=True)
        try:
            with YoutubeDL(opts) as ydl:
                info = ydl.extract_info(url, download=False)
        except (DownloadError, ExtractorError) as exc:
            raise ResolutionError(f"yt-dlp failed for {url}: {exc}") from exc

        if not isinstance(info, dict):
            raise ResolutionError(f"no url returned for {url}")
        direct = info.get("url")
        if not direct:
            requested = info.get("requested_formats") or []
            direct = next((fmt.get("url") for fmt in requested if fmt.get("url")), None)
        if not direct:
            raise ResolutionError(f"no url returned for {url}")
        return direct
