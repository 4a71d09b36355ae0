import subprocess
import sys
import threading
from pathlib import Path

import pytest

# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from engine.errors import TranscodeError  # noqa: E402
from engine.paths import StorageLayout  # noqa: E402
from engine.pipeline import VideoPipeline  # noqa: E402
from media.quality import QualitySpec  # noqa: E402


def python_child(script: str) -> subprocess.Popen:
    """Start the running interpreter as a stand-in for an engine process."""
    return subprocess.Popen([sys.executable, "-c", script], stdout=subprocess.PIPE)


class FakeResolver:
    def __init__(self) -> None:
        self.payload = b"raw-mp4-bytes"
        self.direct_url = "https://media.example.test/abc123.mp4"
        self.error: Exception | None = None
        self.entered = threading.Event()
        self.gate: threading.Event | None = None
        self.fetch_calls: list[tuple] = []
        self.resolve_calls: list[tuple] = []

    def fetch_to_file(self, url, quality, dest_path):
        self.fetch_calls.append((url, quality, dest_path))
        self.entered.set()
        if self.gate is not None:
            assert self.gate.wait(timeout=10), "gate was never opened"
        if self.error is not None:
            Path(dest_path).write_bytes(b"half")
            raise self.error
        Path(dest_path).write_bytes(self.payload)

    def resolve_direct_url(self, url, quality):
        self.resolve_calls.append((url, quality))
        if self.error is not None:
            raise self.error
        return self.direct_url


class FakeEngine:
    def __init__(self) -> None:
        self.output = b"webm-bytes-" * 64
        self.error: Exception | None = None
        self.live_payload = b"FLV\x01" + b"x" * 100_000
        self.live_script: str | None = None
        self.children: list[subprocess.Popen] = []
        self.convert_calls: list[tuple] = []
        self.stream_calls: list[tuple] = []

    def convert(self, input_path, output_path, params):
        self.convert_calls.append((input_path, output_path, params))
        if self.error is not None:
            Path(output_path).write_bytes(b"partial")
            raise self.error
        Path(output_path).write_bytes(self.output)

    def open_stream(self, input_url, params):
        self.stream_calls.append((input_url, params))
        if isinstance(self.error, TranscodeError):
            raise self.error
        script = self.live_script or (
            "import sys\n"
            f"sys.stdout.buffer.write({self.live_payload!r})\n"
            "sys.stdout.buffer.flush()\n"
        )
        child = python_child(script)
        self.children.append(child)
        return child


@pytest.fixture()
def layout(tmp_path: Path) -> StorageLayout:
    layout = StorageLayout(
        raw_dir=str(tmp_path / "downloads"),
        cache_dir=str(tmp_path / "cache" / "videos"),
    )
    layout.ensure_dirs()
    return layout


@pytest.fixture()
def resolver() -> FakeResolver:
    return FakeResolver()


@pytest.fixture()
def engine():
    engine = FakeEngine()
    yield engine
    for child in engine.children:
        if child.poll() is None:
            child.kill()
        child.wait()
        if child.stdout is not None:
            child.stdout.close()


@pytest.fixture()
def pipeline(layout, resolver, engine) -> VideoPipeline:
    return VideoPipeline(layout, resolver, engine, QualitySpec(360))


@pytest.fixture()
def spawn_python():
    """Factory for interpreter children; anything still running is killed afterwards."""
    children: list[subprocess.Popen] = []

    def _spawn(script: str) -> subprocess.Popen:
        child = python_child(script)
        children.append(child)
        return child

    yield _spawn
    for child in children:
        if child.poll() is None:
            child.kill()
        child.wait()
        if child.stdout is not None:
            child.stdout.close()
