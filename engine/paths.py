import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

from engine.errors import InvalidRequest

RAW_EXT = ".mp4"
CACHED_EXT = ".webm"

STAGE_RAW = "raw"
STAGE_CACHED = "cached"

_VIDEO_ID_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def _is_within_base(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    return os.path.commonpath([real, base]) == base


def sanitize_video_id(value):
    """Return ``value`` as a safe single path component or raise ``InvalidRequest``."""
    video_id = (value or "").strip()
    if not video_id:
        raise InvalidRequest("Missing video_id parameter")
    if "/" in video_id or "\\" in video_id or ".." in video_id:
        raise InvalidRequest(f"Invalid video_id: {video_id!r}")
    if not _VIDEO_ID_RE.match(video_id):
        raise InvalidRequest(f"Invalid video_id: {video_id!r}")
    return video_id


@dataclass(frozen=True)
class MediaArtifact:
    video_id: str
    stage: str
    path: str
    size: int
    modified_at: datetime

    @classmethod
    def from_path(cls, video_id, stage, path):
        st = os.stat(path)
        return cls(
            video_id=video_id,
            stage=stage,
            path=str(path),
            size=st.st_size,
            modified_at=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        )


@dataclass(frozen=True)
class StorageLayout:
    raw_dir: str
    cache_dir: str

    def ensure_dirs(self):
        ensure_dir(self.raw_dir)
        ensure_dir(self.cache_dir)

    def raw_path(self, video_id):
        return os.path.join(self.raw_dir, sanitize_video_id(video_id) + RAW_EXT)

    def cached_path(self, video_id):
        return os.path.join(self.cache_dir, sanitize_video_id(video_id) + CACHED_EXT)

    def temp_path_for(self, final_path):
        # Hidden sibling in the same directory so os.replace stays atomic.
        directory, name = os.path.split(final_path)
        stem, ext = os.path.splitext(name)
        return os.path.join(directory, f".{stem}.{uuid4().hex[:12]}.part{ext}")

    def existing(self, video_id, stage):
        path = self.raw_path(video_id) if stage == STAGE_RAW else self.cached_path(video_id)
        if not os.path.isfile(path):
            return None
        try:
            return MediaArtifact.from_path(video_id, stage, path)
        except FileNotFoundError:
            return None

    def find_served_file(self, filename):
        """Resolve a client-supplied filename to a file in the cache or raw dir.

        Only the base name is considered. Hidden names are refused, which keeps
        in-progress temporary artifacts out of reach.
        """
        name = os.path.basename((filename or "").replace("\\", "/"))
        if not name or name in (".", "..") or name.startswith("."):
            return None
        for base in (self.cache_dir, self.raw_dir):
            candidate = os.path.join(base, name)
            if os.path.isfile(candidate) and _is_within_base(candidate, base):
                return candidate
        return None


def publish(temp_path, final_path):
    os.replace(temp_path, final_path)


def discard(path):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def discard_partials(temp_path):
    """Remove ``temp_path`` and any downloader side files that share its stem."""
    directory, name = os.path.split(temp_path)
    stem, _ = os.path.splitext(name)
    discard(temp_path)
    try:
        siblings = list(Path(directory).glob(f"{stem}*"))
    except OSError:
        return
    for sibling in siblings:
        if sibling.is_file():
            discard(str(sibling))
