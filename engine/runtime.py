import shutil
import sys

from yt_dlp.version import __version__ as ytdlp_version


def get_runtime_info(settings):
    """Facts logged once at startup; a missing ffmpeg shows up here before any request fails."""
    ffmpeg_path = shutil.which(settings.ffmpeg_bin)
    return {
        "python_version": sys.version.split()[0],
        "yt_dlp_version": ytdlp_version,
        "ffmpeg_bin": settings.ffmpeg_bin,
        "ffmpeg_path": ffmpeg_path,
        "ffmpeg_found": ffmpeg_path is not None,
        "video_quality": settings.video_quality.height,
        "max_productions": settings.max_productions,
    }
