"""Wrapper around the ``ffmpeg`` binary used as the transcoding engine."""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from collections import deque
from dataclasses import dataclass
from typing import Protocol, Sequence

from engine.errors import TranscodeError
from media.quality import QualitySpec

logger = logging.getLogger(__name__)

PIPE_OUTPUT = "pipe:1"
_STDERR_TAIL_LINES = 40


@dataclass(frozen=True)
class TranscodeParams:
    height: int
    scale_filter: str
    video_bitrate: str
    audio_bitrate: str
    frame_rate: int
    keyframe_interval: int
    video_codec: str
    audio_codec: str
    container: str
    seek_offset_seconds: float | None = None
    pixel_format: str | None = None
    audio_sample_rate: int | None = None
    extra_output_args: tuple[str, ...] = ()


def batch_params(quality: QualitySpec) -> TranscodeParams:
    """Parameters for the cached artifact: VP8/Vorbis in WebM."""
    return TranscodeParams(
        height=quality.height,
        scale_filter=quality.scale_filter,
        video_bitrate=quality.video_bitrate,
        audio_bitrate="128k",
        frame_rate=30,
        keyframe_interval=30,
        video_codec="libvpx",
        audio_codec="libvorbis",
        container="webm",
        pixel_format="yuv420p",
        extra_output_args=("-cpu-used", "8"),
    )


def live_params(quality: QualitySpec, seek_offset_seconds: float | None = None) -> TranscodeParams:
    """Parameters for live streaming: Sorenson Spark/MP3 in FLV."""
    return TranscodeParams(
        height=quality.height,
        scale_filter=quality.scale_filter,
        video_bitrate=quality.video_bitrate,
        audio_bitrate="96k",
        frame_rate=24,
        keyframe_interval=24,
        video_codec="flv1",
        audio_codec="libmp3lame",
        container="flv",
        seek_offset_seconds=seek_offset_seconds,
        audio_sample_rate=44100,
    )


def build_ffmpeg_argv(binary: str, source: str, output: str, params: TranscodeParams) -> list[str]:
    argv = [binary, "-hide_banner", "-nostdin", "-loglevel", "error"]
    if params.seek_offset_seconds and params.seek_offset_seconds > 0:
        # Input-side seek: ffmpeg skips ahead before decoding.
        argv += ["-ss", f"{params.seek_offset_seconds:.2f}"]
    argv += ["-i", source]
    argv += ["-vf", params.scale_filter]
    argv += ["-c:v", params.video_codec, "-b:v", params.video_bitrate]
    if params.pixel_format:
        argv += ["-pix_fmt", params.pixel_format]
    argv += ["-c:a", params.audio_codec, "-b:a", params.audio_bitrate]
    if params.audio_sample_rate:
        argv += ["-ar", str(params.audio_sample_rate)]
    argv += ["-r", str(params.frame_rate), "-g", str(params.keyframe_interval)]
    argv += list(params.extra_output_args)
    argv += ["-f", params.container]
    if output != PIPE_OUTPUT:
        argv.append("-y")
    argv.append(output)
    return argv


def _tail(text: str, lines: int = _STDERR_TAIL_LINES) -> str:
    return "\n".join((text or "").strip().splitlines()[-lines:])


class TranscodingEngine(Protocol):
    def convert(self, input_path: str, output_path: str, params: TranscodeParams) -> None:
        """Transcode ``input_path`` into ``output_path`` or raise ``TranscodeError``."""

    def open_stream(self, input_url: str, params: TranscodeParams) -> "EngineProcess":
        """Start a transcode whose output is readable from ``stdout``."""


class EngineProcess:
    """A running ffmpeg child with stdout piped and stderr drained in the background."""

    def __init__(self, proc: subprocess.Popen, argv: Sequence[str]) -> None:
        self._proc = proc
        self.argv = list(argv)
        self._stderr_lines: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self._reader = threading.Thread(target=self._read_stderr, name="ffmpeg-stderr-reader", daemon=True)
        self._reader.start()

    def _read_stderr(self) -> None:
        stream = self._proc.stderr
        if stream is None:
            return
        for raw_line in iter(stream.readline, b""):
            self._stderr_lines.append(raw_line.decode("utf-8", errors="replace").rstrip())
        try:
            stream.close()
        except OSError:
            pass

    @property
    def stdout(self):
        return self._proc.stdout

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    def poll(self) -> int | None:
        return self._proc.poll()

    def wait(self, timeout: float | None = None) -> int:
        code = self._proc.wait(timeout=timeout)
        self._reader.join(timeout=1)
        return code

    def terminate(self) -> None:
        self._proc.terminate()

    def kill(self) -> None:
        self._proc.kill()

    def stderr_text(self) -> str:
        return "\n".join(self._stderr_lines)


class FFmpegEngine:
    def __init__(self, binary: str = "ffmpeg") -> None:
        self.binary = binary

    def convert(self, input_path: str, output_path: str, params: TranscodeParams) -> None:
        """Run a blocking file-to-file transcode.

        Raises:
            TranscodeError: if ffmpeg is missing, exits non-zero, or leaves no
                output behind.
        """
        argv = build_ffmpeg_argv(self.binary, input_path, output_path, params)
        logger.debug("ffmpeg convert argv=%s", argv)
        try:
            subprocess.run(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                check=True,
            )
        except FileNotFoundError as exc:
            raise TranscodeError(f"{self.binary} is not installed or not available in PATH") from exc
        except subprocess.CalledProcessError as exc:
            stderr_text = _tail((exc.stderr or b"").decode("utf-8", errors="replace"))
            raise TranscodeError(
                f"ffmpeg exited with code {exc.returncode} for {input_path}: {stderr_text or 'no output'}"
            ) from exc

        if not os.path.isfile(output_path) or os.path.getsize(output_path) == 0:
            raise TranscodeError(f"ffmpeg produced no output for {input_path}")

    def open_stream(self, input_url: str, params: TranscodeParams) -> EngineProcess:
        argv = build_ffmpeg_argv(self.binary, input_url, PIPE_OUTPUT, params)
        logger.debug("ffmpeg stream argv=%s", argv)
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise TranscodeError(f"failed to start {self.binary}: {exc}") from exc
        return EngineProcess(proc, argv)
