"""Live transcode relay: engine stdout -> bounded channel -> HTTP response."""

from __future__ import annotations

import logging
import queue
import subprocess
import threading

logger = logging.getLogger(__name__)

# The real encoded bitrate is unknown without probing the stream, so byte
# offsets are mapped to seek times with a fixed assumed bitrate. Seeks are
# approximate and may land a few seconds off the requested byte.
ASSUMED_VIDEO_BITRATE_BPS = 500_000
ASSUMED_AUDIO_BITRATE_BPS = 96_000
ASSUMED_COMBINED_BITRATE_BPS = ASSUMED_VIDEO_BITRATE_BPS + ASSUMED_AUDIO_BITRATE_BPS

DEFAULT_CHUNK_SIZE = 32 * 1024
DEFAULT_MAX_PENDING_CHUNKS = 8

_PUT_POLL_SECONDS = 0.2
_TERMINATE_GRACE_SECONDS = 2.0
_JOIN_TIMEOUT_SECONDS = 2.0


def parse_range_start(header: str | None) -> int:
    """Return the first byte offset of a ``bytes=<start>-`` header, 0 if absent or unparsable."""
    if not header:
        return 0
    header = header.strip()
    if not header.lower().startswith("bytes="):
        return 0
    first = header[len("bytes="):].split(",", 1)[0]
    start_raw = first.split("-", 1)[0].strip()
    if not start_raw.isdigit():
        return 0
    return int(start_raw)


def seek_seconds_for_offset(offset_bytes: int, bitrate_bps: int = ASSUMED_COMBINED_BITRATE_BPS) -> float:
    if offset_bytes <= 0 or bitrate_bps <= 0:
        return 0.0
    bytes_per_second = bitrate_bps / 8
    return offset_bytes / bytes_per_second


class LiveTranscodeStream:
    """Relay chunks from a running transcoding process to a single consumer.

    A producer thread reads the process's stdout into a bounded queue; the
    consumer pulls with :meth:`next_chunk` or by iterating. :meth:`close` is the
    single cleanup path: it stops the producer and terminates the process if it
    is still running, so a consumer that goes away never leaves the engine
    running unobserved.
    """

    def __init__(
        self,
        process,
        *,
        video_id: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_pending: int = DEFAULT_MAX_PENDING_CHUNKS,
    ) -> None:
        self._process = process
        self.video_id = video_id
        self._chunk_size = chunk_size
        self._queue: queue.Queue[bytes | None] = queue.Queue(maxsize=max_pending)
        self._stop = threading.Event()
        self._close_lock = threading.Lock()
        self._closed = False
        self._eof = False
        self.bytes_relayed = 0
        self._producer = threading.Thread(
            target=self._pump,
            name=f"live-relay-{video_id}",
            daemon=True,
        )
        self._producer.start()

    @property
    def closed(self) -> bool:
        return self._closed

    def _put(self, item: bytes | None) -> bool:
        while not self._stop.is_set():
            try:
                self._queue.put(item, timeout=_PUT_POLL_SECONDS)
                return True
            except queue.Full:
                continue
        return False

    def _pump(self) -> None:
        stdout = self._process.stdout
        read = getattr(stdout, "read1", stdout.read)
        try:
            while not self._stop.is_set():
                chunk = read(self._chunk_size)
                if not chunk:
                    break
                if not self._put(chunk):
                    break
        except (OSError, ValueError) as exc:
            if not self._stop.is_set():
                logger.error("live relay read failed video_id=%s error=%s", self.video_id, exc)
        finally:
            self._put(None)

    def next_chunk(self) -> bytes | None:
        """Block for the next chunk; ``None`` once the engine output is exhausted."""
        if self._closed or self._eof:
            return None
        item = self._queue.get()
        if item is None:
            self._eof = True
            return None
        self.bytes_relayed += len(item)
        return item

    def close(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._stop.set()

        if self._eof:
            try:
                self._process.wait(timeout=_TERMINATE_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                pass

        terminated = False
        if self._process.poll() is None:
            terminated = True
            self._process.terminate()
            try:
                self._process.wait(timeout=_TERMINATE_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                self._process.kill()
                self._process.wait()

        # Wake a consumer still blocked in next_chunk().
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            pass
        self._producer.join(timeout=_JOIN_TIMEOUT_SECONDS)
        try:
            self._process.stdout.close()
        except (OSError, ValueError):
            pass

        code = self._process.returncode
        if terminated:
            logger.info(
                "live stream stopped before engine finished video_id=%s bytes=%s",
                self.video_id,
                self.bytes_relayed,
            )
        elif code not in (0, None):
            stderr_text = getattr(self._process, "stderr_text", lambda: "")()
            logger.error(
                "live transcode failed video_id=%s code=%s bytes=%s stderr=%s",
                self.video_id,
                code,
                self.bytes_relayed,
                stderr_text,
            )
        else:
            logger.info("live stream complete video_id=%s bytes=%s", self.video_id, self.bytes_relayed)

    def __iter__(self):
        try:
            while True:
                chunk = self.next_chunk()
                if chunk is None:
                    return
                yield chunk
        finally:
            self.close()

    def __enter__(self) -> "LiveTranscodeStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
