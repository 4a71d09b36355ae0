from __future__ import annotations

import socket
import threading
import time

import anyio
import pytest
import uvicorn

import api.main as main

ENDLESS_SCRIPT = (
    "import sys\n"
    "while True:\n"
    "    sys.stdout.buffer.write(b'x' * 4096)\n"
    "    sys.stdout.buffer.flush()\n"
)


@pytest.fixture()
def live_server(monkeypatch, pipeline):
    monkeypatch.setattr(main.app.state, "pipeline", pipeline, raising=False)
    monkeypatch.setattr(main.app.state, "production_limiter", anyio.CapacityLimiter(2), raising=False)

    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    listener.bind(("127.0.0.1", 0))
    port = listener.getsockname()[1]

    config = uvicorn.Config(main.app, log_level="warning", lifespan="off")
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, kwargs={"sockets": [listener]}, daemon=True)
    thread.start()
    deadline = time.monotonic() + 10
    while not server.started:
        assert time.monotonic() < deadline, "server did not start"
        time.sleep(0.05)

    yield port

    server.should_exit = True
    thread.join(timeout=10)
    listener.close()


def _wait_for_exit(child, timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if child.poll() is not None:
            return True
        time.sleep(0.1)
    return False


def test_client_disconnect_stops_live_engine(live_server, engine) -> None:
    engine.live_script = ENDLESS_SCRIPT

    client = socket.create_connection(("127.0.0.1", live_server), timeout=10)
    try:
        client.sendall(b"GET /git_video?video_id=abc123 HTTP/1.1\r\nHost: wiitube.test\r\n\r\n")
        received = b""
        while len(received) < 200_000:
            chunk = client.recv(65536)
            assert chunk, "server closed the live stream early"
            received += chunk
    finally:
        client.close()

    assert received.startswith(b"HTTP/1.1 200")
    assert b"video/x-flv" in received.split(b"\r\n\r\n", 1)[0]
    assert len(engine.children) == 1
    assert _wait_for_exit(engine.children[0], timeout=10), "engine kept running after the client left"
