import socket
import threading
import time

import pytest

httpx = pytest.importorskip("httpx", reason="httpx not installed")

from apps.server import host as host_module
from apps.server.host import ServerHost
from apps.server.listener import ListenerConfig, StartupError
from pocketserve.engine.adapters.echo import EchoAdapter
from pocketserve.engine.chat_engine import ChatEngine


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def _refuses_connections(port):
    try:
        with socket.create_connection(("127.0.0.1", port), timeout=1.0):
            return False
    except ConnectionRefusedError:
        return True


@pytest.fixture
def local_address(monkeypatch):
    monkeypatch.setattr(host_module, "display_address", lambda port, preferred=(): f"http://192.168.1.20:{port}")


def test_launch_serves_and_preloads(local_address):
    engine = ChatEngine(EchoAdapter())
    server = ServerHost(engine, listener_config=ListenerConfig(host="127.0.0.1", port=0))
    server.launch()
    try:
        assert server.running
        assert server.port != 0
        assert server.address() == f"http://192.168.1.20:{server.port}"
        assert _wait_until(lambda: engine.is_loaded)

        resp = httpx.get(f"http://127.0.0.1:{server.port}/health")
        assert resp.json() == {"ok": True}

        status = server.status()
        assert status["running"] is True
        assert status["model_loaded"] is True
        assert status["address"].endswith(f":{server.port}")
    finally:
        server.terminate()

    assert not server.running
    assert not engine.is_loaded


def test_launch_is_idempotent(local_address):
    server = ServerHost(ChatEngine(EchoAdapter()), listener_config=ListenerConfig(host="127.0.0.1", port=0))
    server.launch()
    try:
        port = server.port
        server.launch()
        assert server.port == port
    finally:
        server.terminate()


def test_background_then_foreground_reuses_port(local_address):
    server = ServerHost(
        ChatEngine(EchoAdapter()),
        listener_config=ListenerConfig(host="127.0.0.1", port=0),
        preload=False,
    )
    server.launch()
    try:
        port = server.port
        url = f"http://127.0.0.1:{port}/health"
        assert httpx.get(url).status_code == 200

        server.enter_background()
        assert not server.running
        assert _wait_until(lambda: _refuses_connections(port))

        server.enter_foreground()
        assert server.running
        assert server.port == port
        assert httpx.get(url).status_code == 200
    finally:
        server.terminate()


def test_foreground_before_launch_does_nothing():
    server = ServerHost(ChatEngine(EchoAdapter()), listener_config=ListenerConfig(host="127.0.0.1", port=0))
    server.enter_foreground()
    assert not server.running
    server.terminate()


def test_port_in_use_is_startup_error():
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", 0))
    blocker.listen(1)
    try:
        port = blocker.getsockname()[1]
        server = ServerHost(
            ChatEngine(EchoAdapter()),
            listener_config=ListenerConfig(host="127.0.0.1", port=port),
            preload=False,
        )
        with pytest.raises(StartupError):
            server.launch()
        assert not server.running
    finally:
        blocker.close()


def test_invalid_port_is_startup_error():
    server = ServerHost(
        ChatEngine(EchoAdapter()),
        listener_config=ListenerConfig(host="127.0.0.1", port=70000),
        preload=False,
    )
    with pytest.raises(StartupError):
        server.launch()


def test_preload_failure_is_not_fatal(local_address, tmp_path):
    from pocketserve.engine.chat_engine import EngineConfig

    engine = ChatEngine(EchoAdapter(), config=EngineConfig(bundle_dir=tmp_path / "missing"))
    server = ServerHost(engine, listener_config=ListenerConfig(host="127.0.0.1", port=0))
    server.launch()
    try:
        resp = httpx.get(f"http://127.0.0.1:{server.port}/health")
        assert resp.status_code == 200
        assert not engine.is_loaded
    finally:
        server.terminate()


def test_background_does_not_wait_for_stream_in_flight(local_address):
    from pocketserve.engine.chat_engine import EngineConfig

    engine = ChatEngine(EchoAdapter(delay_s=0.2), config=EngineConfig(warmup=False))
    server = ServerHost(engine, listener_config=ListenerConfig(host="127.0.0.1", port=0), preload=False)
    server.launch()
    port = server.port
    first_chunk = threading.Event()
    body = []

    def _stream():
        prompt = "one two three four five six seven eight nine ten"
        with httpx.stream(
            "POST", f"http://127.0.0.1:{port}/api/generate", json={"prompt": prompt, "stream": True}, timeout=10.0
        ) as resp:
            for chunk in resp.iter_bytes():
                first_chunk.set()
                body.append(chunk)

    reader = threading.Thread(target=_stream)
    reader.start()
    try:
        assert first_chunk.wait(5)

        started = time.monotonic()
        server.enter_background()
        assert time.monotonic() - started < 1.0
        assert not server.running

        reader.join(10)
        assert not reader.is_alive()
        assert b"event: done" in b"".join(body)

        server.enter_foreground()
        assert server.port == port
        assert httpx.get(f"http://127.0.0.1:{port}/health").status_code == 200
    finally:
        server.terminate()
        reader.join(5)
