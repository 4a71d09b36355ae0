import json
import logging

from engine.errors import ArtifactNotFound, ResolutionError, TranscodeError
from engine.inflight import InFlightRegistry
from engine.live import (
    DEFAULT_CHUNK_SIZE,
    LiveTranscodeStream,
    parse_range_start,
    seek_seconds_for_offset,
)
from engine.paths import (
    STAGE_CACHED,
    STAGE_RAW,
    MediaArtifact,
    StorageLayout,
    discard_partials,
    publish,
    sanitize_video_id,
)
from engine.resolver import YtDlpResolver, video_page_url
from media.ffmpeg import FFmpegEngine, batch_params, live_params

logger = logging.getLogger(__name__)


def log_event(level, message, **fields):
    payload = {"message": message, **fields}
    try:
        logger.log(level, json.dumps(payload, sort_keys=True, default=str))
    except (TypeError, ValueError) as exc:
        logger.log(level, f"log_event_serialization_failed: {exc} message={message}")


class DownloadStage:
    def __init__(self, layout, resolver, quality, video_url_format):
        self.layout = layout
        self.resolver = resolver
        self.quality = quality
        self.video_url_format = video_url_format

    def ensure_raw(self, video_id):
        existing = self.layout.existing(video_id, STAGE_RAW)
        if existing is not None:
            return existing

        raw_path = self.layout.raw_path(video_id)
        temp_path = self.layout.temp_path_for(raw_path)
        url = video_page_url(self.video_url_format, video_id)
        log_event(logging.INFO, "download_started", video_id=video_id, url=url, quality=self.quality.height)
        try:
            self.resolver.fetch_to_file(url, self.quality, temp_path)
            publish(temp_path, raw_path)
        except ResolutionError as exc:
            discard_partials(temp_path)
            log_event(logging.ERROR, "download_failed", video_id=video_id, error=str(exc))
            raise
        except OSError as exc:
            discard_partials(temp_path)
            log_event(logging.ERROR, "download_failed", video_id=video_id, error=str(exc))
            raise ResolutionError(f"download of {video_id} left no usable file: {exc}") from exc
        except BaseException:
            discard_partials(temp_path)
            raise
        artifact = MediaArtifact.from_path(video_id, STAGE_RAW, raw_path)
        log_event(logging.INFO, "download_complete", video_id=video_id, path=raw_path, size=artifact.size)
        return artifact


class TranscodeStage:
    def __init__(self, layout, engine, quality, download_stage):
        self.layout = layout
        self.engine = engine
        self.quality = quality
        self.download_stage = download_stage

    def ensure_cached(self, video_id):
        existing = self.layout.existing(video_id, STAGE_CACHED)
        if existing is not None:
            return existing

        raw = self.download_stage.ensure_raw(video_id)
        cached_path = self.layout.cached_path(video_id)
        temp_path = self.layout.temp_path_for(cached_path)
        params = batch_params(self.quality)
        log_event(
            logging.INFO,
            "transcode_started",
            video_id=video_id,
            source=raw.path,
            height=params.height,
            video_bitrate=params.video_bitrate,
        )
        try:
            self.engine.convert(raw.path, temp_path, params)
            publish(temp_path, cached_path)
        except TranscodeError as exc:
            discard_partials(temp_path)
            log_event(logging.ERROR, "transcode_failed", video_id=video_id, error=str(exc))
            raise
        except OSError as exc:
            discard_partials(temp_path)
            log_event(logging.ERROR, "transcode_failed", video_id=video_id, error=str(exc))
            raise TranscodeError(f"transcode of {video_id} left no usable file: {exc}") from exc
        except BaseException:
            discard_partials(temp_path)
            raise
        artifact = MediaArtifact.from_path(video_id, STAGE_CACHED, cached_path)
        log_event(logging.INFO, "transcode_complete", video_id=video_id, path=cached_path, size=artifact.size)
        return artifact


class VideoPipeline:
    """Cache-backed delivery of transcoded videos plus live transcoding.

    One instance owns one :class:`InFlightRegistry`; request handlers share
    the instance. Download and batch transcode block the calling thread and
    are meant to run in a worker thread, never on the event loop.
    """

    def __init__(
        self,
        layout,
        resolver,
        engine,
        quality,
        *,
        video_url_format="https://www.youtube.com/watch?v=%s",
        registry=None,
        live_chunk_size=DEFAULT_CHUNK_SIZE,
    ):
        self.layout = layout
        self.resolver = resolver
        self.engine = engine
        self.quality = quality
        self.video_url_format = video_url_format
        self.registry = registry if registry is not None else InFlightRegistry()
        self.live_chunk_size = live_chunk_size
        self.downloads = DownloadStage(layout, resolver, quality, video_url_format)
        self.transcodes = TranscodeStage(layout, engine, quality, self.downloads)

    def cached_artifact(self, video_id):
        return self.layout.existing(sanitize_video_id(video_id), STAGE_CACHED)

    def ensure_raw(self, video_id):
        return self.downloads.ensure_raw(sanitize_video_id(video_id))

    def ensure_cached(self, video_id):
        """Return the cached artifact for ``video_id``, producing it if needed.

        Raises:
            InFlightConflict: another caller is producing the same identifier.
            ResolutionError: the source resolver could not download the video.
            TranscodeError: the transcoding engine failed.
        """
        video_id = sanitize_video_id(video_id)
        existing = self.layout.existing(video_id, STAGE_CACHED)
        if existing is not None:
            return existing
        with self.registry.hold(video_id):
            return self.transcodes.ensure_cached(video_id)

    def stream_live(self, video_id, range_header=None):
        """Start a live transcode for ``video_id`` and return the relay.

        ``range_header`` only contributes an approximate seek offset. Errors
        raised here happen before any response bytes are produced.
        """
        video_id = sanitize_video_id(video_id)
        url = video_page_url(self.video_url_format, video_id)
        try:
            direct_url = self.resolver.resolve_direct_url(url, self.quality)
        except ResolutionError as exc:
            log_event(logging.ERROR, "live_resolve_failed", video_id=video_id, error=str(exc))
            raise

        offset = parse_range_start(range_header)
        seek_seconds = seek_seconds_for_offset(offset)
        params = live_params(self.quality, seek_seconds if seek_seconds > 0 else None)
        try:
            process = self.engine.open_stream(direct_url, params)
        except TranscodeError as exc:
            log_event(logging.ERROR, "live_engine_start_failed", video_id=video_id, error=str(exc))
            raise
        log_event(
            logging.INFO,
            "live_stream_started",
            video_id=video_id,
            range_start=offset,
            seek_seconds=round(seek_seconds, 2),
        )
        return LiveTranscodeStream(process, video_id=video_id, chunk_size=self.live_chunk_size)

    def find_served_file(self, filename):
        path = self.layout.find_served_file(filename)
        if path is None:
            raise ArtifactNotFound(f"no artifact named {filename!r}")
        return path


def build_pipeline(settings):
    layout = StorageLayout(raw_dir=settings.download_dir, cache_dir=settings.cache_dir)
    layout.ensure_dirs()
    return VideoPipeline(
        layout,
        YtDlpResolver(),
        FFmpegEngine(settings.ffmpeg_bin),
        settings.video_quality,
        video_url_format=settings.video_url_format,
        live_chunk_size=settings.live_chunk_size,
    )
