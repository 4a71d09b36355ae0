from __future__ import annotations

from pathlib import Path

import pytest
from yt_dlp.utils import DownloadError

from engine.errors import ResolutionError
from engine.resolver import YtDlpResolver, video_page_url
from media.quality import QualitySpec


class _FakeYoutubeDL:
    instances: list["_FakeYoutubeDL"] = []
    info: dict | None = None
    error: Exception | None = None
    writes: dict[str, bytes] = {}

    def __init__(self, opts):
        self.opts = opts
        self.calls = []
        _FakeYoutubeDL.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def extract_info(self, url, download=True):
        self.calls.append((url, download))
        if self.error is not None:
            raise self.error
        for path, payload in self.writes.items():
            Path(path).write_bytes(payload)
        return self.info


@pytest.fixture()
def fake_ytdl(monkeypatch):
    _FakeYoutubeDL.instances = []
    _FakeYoutubeDL.info = {}
    _FakeYoutubeDL.error = None
    _FakeYoutubeDL.writes = {}
    monkeypatch.setattr("engine.resolver.YoutubeDL", _FakeYoutubeDL)
    return _FakeYoutubeDL


def test_video_page_url_substitutes_identifier() -> None:
    assert video_page_url("https://www.youtube.com/watch?v=%s", "abc123") == "https://www.youtube.com/watch?v=abc123"


def test_fetch_to_file_passes_quality_and_output(fake_ytdl, tmp_path: Path) -> None:
    dest = tmp_path / ".abc123.0a1b2c.mp4"
    fake_ytdl.writes = {str(dest): b"mp4"}

    YtDlpResolver().fetch_to_file("https://www.youtube.com/watch?v=abc123", QualitySpec(480), str(dest))

    ydl = fake_ytdl.instances[0]
    assert ydl.calls == [("https://www.youtube.com/watch?v=abc123", True)]
    assert ydl.opts["format_sort"] == ["res:480", "ext:mp4:m4a"]
    assert ydl.opts["noplaylist"] is True
    assert ydl.opts["overwrites"] is False
    assert ydl.opts["continuedl"] is True
    assert ydl.opts["outtmpl"] == {"default": str(dest)}
    assert dest.read_bytes() == b"mp4"


def test_fetch_to_file_adopts_renamed_download(fake_ytdl, tmp_path: Path) -> None:
    dest = tmp_path / "abc123.mp4"
    produced = tmp_path / "abc123.mkv"
    fake_ytdl.writes = {str(produced): b"merged"}
    fake_ytdl.info = {"requested_downloads": [{"filepath": str(produced)}]}

    YtDlpResolver().fetch_to_file("https://www.youtube.com/watch?v=abc123", QualitySpec(360), str(dest))

    assert dest.read_bytes() == b"merged"
    assert not produced.exists()


def test_fetch_to_file_without_output_fails(fake_ytdl, tmp_path: Path) -> None:
    with pytest.raises(ResolutionError, match="produced no file"):
        YtDlpResolver().fetch_to_file("https://www.youtube.com/watch?v=abc123", QualitySpec(360), str(tmp_path / "x.mp4"))


def test_fetch_to_file_maps_download_error(fake_ytdl, tmp_path: Path) -> None:
    fake_ytdl.error = DownloadError("ERROR: Video unavailable")

    with pytest.raises(ResolutionError, match="Video unavailable"):
        YtDlpResolver().fetch_to_file("https://www.youtube.com/watch?v=abc123", QualitySpec(360), str(tmp_path / "x.mp4"))


def test_resolve_direct_url_does_not_download(fake_ytdl) -> None:
    fake_ytdl.info = {"url": "https://media.example.test/stream"}

    url = YtDlpResolver({"socket_timeout": 5}).resolve_direct_url("https://www.youtube.com/watch?v=abc123", QualitySpec(360))

    ydl = fake_ytdl.instances[0]
    assert url == "https://media.example.test/stream"
    assert ydl.calls == [("https://www.youtube.com/watch?v=abc123", False)]
    assert ydl.opts["skip_download"] is True
    assert ydl.opts["socket_timeout"] == 5


def test_resolve_direct_url_falls_back_to_requested_formats(fake_ytdl) -> None:
    fake_ytdl.info = {"requested_formats": [{"url": None}, {"url": "https://media.example.test/av"}]}

    assert YtDlpResolver().resolve_direct_url("u", QualitySpec(360)) == "https://media.example.test/av"


@pytest.mark.parametrize("info", [None, {}, {"requested_formats": []}])
def test_resolve_direct_url_without_url_fails(fake_ytdl, info) -> None:
    fake_ytdl.info = info

    with pytest.raises(ResolutionError, match="no url returned"):
        YtDlpResolver().resolve_direct_url("u", QualitySpec(360))
