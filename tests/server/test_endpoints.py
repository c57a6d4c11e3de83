import json
import socket

import pytest

httpx = pytest.importorskip("httpx", reason="httpx not installed")

from apps.server.bridge import EngineLoop
from apps.server.listener import Listener, ListenerConfig
from apps.server.router import create_router
from pocketserve.engine.adapters.echo import EchoAdapter
from pocketserve.engine.chat_engine import ChatEngine, EngineConfig
from pocketserve.engine.chat_types import (
    DeltaEvent,
    ErrorEvent,
    FinalEvent,
    GenerationResult,
    Usage,
)
from pocketserve.engine.errors import GenerationError


def _collect_sse_events(raw: str) -> list[tuple[str, dict]]:
    events = []
    for block in raw.split("\n\n"):
        block = block.strip()
        if not block:
            continue
        name = "message"
        data = None
        for line in block.splitlines():
            if line.startswith("event: "):
                name = line[len("event: ") :]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: ") :])
        events.append((name, data))
    return events


@pytest.fixture
def serve():
    started = []

    def _serve(engine, **router_kwargs):
        loop = EngineLoop(name="test-engine-loop")
        loop.start()
        router = create_router(engine=engine, loop=loop, **router_kwargs)
        listener = Listener(router, config=ListenerConfig(host="127.0.0.1", port=0, read_timeout_s=2.0))
        listener.serve_in_background()
        started.append((loop, listener))
        return f"http://127.0.0.1:{listener.port}"

    yield _serve

    for loop, listener in started:
        listener.close()
        loop.stop()


def _raw_exchange(base_url: str, data: bytes) -> bytes:
    port = int(base_url.rsplit(":", 1)[1])
    with socket.create_connection(("127.0.0.1", port), timeout=5) as sock:
        sock.sendall(data)
        chunks = []
        while True:
            chunk = sock.recv(65536)
            if not chunk:
                break
            chunks.append(chunk)
    return b"".join(chunks)


def test_health(serve):
    base = serve(ChatEngine(EchoAdapter()))
    resp = httpx.get(f"{base}/health")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}
    assert resp.headers["access-control-allow-origin"] == "*"
    assert resp.headers["connection"] == "close"


def test_echo_generate(serve):
    base = serve(ChatEngine(EchoAdapter()))
    resp = httpx.post(f"{base}/api/generate", json={"messages": [{"role": "user", "content": "hello"}]})
    assert resp.status_code == 200
    assert resp.json() == {"text": "echo: hello"}


@pytest.mark.parametrize("path", ["/api/generate", "/api/chat", "/generate"])
def test_every_generate_path_is_served(serve, path):
    base = serve(ChatEngine(EchoAdapter()))
    resp = httpx.post(f"{base}{path}", json={"prompt": "hello"})
    assert resp.status_code == 200
    assert resp.json() == {"text": "echo: hello"}


def test_generate_paths_can_be_restricted(serve):
    base = serve(ChatEngine(EchoAdapter()), generate_paths=["/generate"])
    assert httpx.post(f"{base}/api/generate", json={"prompt": "hello"}).status_code == 404
    assert httpx.post(f"{base}/generate", json={"prompt": "hello"}).status_code == 200


def test_full_result_shape(serve):
    class FakeEngine:
        async def generate_once(self, req):
            return GenerationResult(
                text="hi there",
                model="demo-q4f16_1",
                finish_reason="stop",
                usage=Usage(prompt_tokens=3, completion_tokens=2),
            )

        async def astream(self, req):
            if False:
                yield None

    base = serve(FakeEngine())
    resp = httpx.post(f"{base}/api/generate", json={"prompt": "hi"})
    assert resp.status_code == 200
    assert resp.json() == {
        "text": "hi there",
        "model": "demo-q4f16_1",
        "finish_reason": "stop",
        "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5},
    }


def test_empty_messages_is_400(serve):
    base = serve(ChatEngine(EchoAdapter()))
    resp = httpx.post(f"{base}/api/generate", json={"messages": []})
    assert resp.status_code == 400
    assert "non-empty message" in resp.json()["error"]


def test_invalid_json_is_400(serve):
    base = serve(ChatEngine(EchoAdapter()))
    resp = httpx.post(
        f"{base}/api/generate",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert resp.status_code == 400
    assert resp.json()["error"].startswith("request body is not valid JSON")


def test_invalid_top_p_is_400(serve):
    base = serve(ChatEngine(EchoAdapter()))
    resp = httpx.post(f"{base}/api/generate", json={"prompt": "hi", "top_p": 2})
    assert resp.status_code == 400
    assert "top_p" in resp.json()["error"]


def test_options_preflight(serve):
    base = serve(ChatEngine(EchoAdapter()))
    resp = httpx.options(f"{base}/api/generate")
    assert resp.status_code == 204
    assert resp.headers["access-control-allow-origin"] == "*"
    assert resp.headers["access-control-allow-methods"] == "POST, GET, OPTIONS"
    assert resp.headers["access-control-allow-headers"] == "Content-Type"
    assert resp.content == b""


def test_unknown_route_is_404(serve):
    base = serve(ChatEngine(EchoAdapter()))
    resp = httpx.get(f"{base}/nope")
    assert resp.status_code == 404
    assert resp.text == "Not Found"
    assert httpx.get(f"{base}/api/generate").status_code == 404


def test_stream_deltas_then_done(serve):
    class FakeEngine:
        async def generate_once(self, req):
            raise AssertionError("blocking path must not be used")

        async def astream(self, req):
            yield DeltaEvent("Hel")
            yield DeltaEvent("lo")
            yield FinalEvent(finish_reason="stop")

    base = serve(FakeEngine())
    with httpx.stream("POST", f"{base}/api/generate", json={"prompt": "hi", "stream": True}) as resp:
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "text/event-stream"
        resp.read()
        raw = resp.text

    events = _collect_sse_events(raw)
    assert events == [
        ("message", {"output": "Hel"}),
        ("message", {"output": "lo"}),
        ("done", {"output": ""}),
    ]


def test_stream_with_echo_engine(serve):
    base = serve(ChatEngine(EchoAdapter()))
    with httpx.stream("POST", f"{base}/api/generate", json={"prompt": "hello world", "stream": True}) as resp:
        resp.read()
        raw = resp.text
    events = _collect_sse_events(raw)
    assert events[-1] == ("done", {"output": ""})
    assert "".join(data["output"] for name, data in events[:-1]) == "echo: hello world"


def test_engine_failure_blocking_is_500(serve):
    class FailingEngine:
        async def generate_once(self, req):
            raise GenerationError("model exploded")

        async def astream(self, req):
            if False:
                yield None

    base = serve(FailingEngine())
    resp = httpx.post(f"{base}/api/generate", json={"prompt": "hi"})
    assert resp.status_code == 500
    assert resp.json() == {"error": "model exploded"}


def test_engine_failure_streaming_sends_error_event(serve):
    class FailingEngine:
        async def generate_once(self, req):
            raise AssertionError("blocking path must not be used")

        async def astream(self, req):
            yield DeltaEvent("par")
            yield ErrorEvent("model exploded")

    base = serve(FailingEngine())
    with httpx.stream("POST", f"{base}/generate", json={"prompt": "hi", "stream": True}) as resp:
        assert resp.status_code == 200
        resp.read()
        raw = resp.text

    events = _collect_sse_events(raw)
    assert events == [
        ("message", {"output": "par"}),
        ("error", {"error": "model exploded"}),
    ]


def test_model_load_failure_reaches_client(serve, tmp_path):
    engine = ChatEngine(EchoAdapter(), config=EngineConfig(bundle_dir=tmp_path / "missing"))
    base = serve(engine)
    resp = httpx.post(f"{base}/api/generate", json={"prompt": "hi"})
    assert resp.status_code == 500
    assert "Bundle directory not found" in resp.json()["error"]


def test_malformed_request_is_closed_without_response(serve):
    base = serve(ChatEngine(EchoAdapter()))
    assert _raw_exchange(base, b"\x00\x01garbage\r\n\r\n") == b""

    # The listener keeps serving afterwards.
    assert httpx.get(f"{base}/health").status_code == 200


def test_oversized_request_is_dropped():
    class SmallEngine:
        async def generate_once(self, req):
            raise AssertionError("must not be called")

        async def astream(self, req):
            if False:
                yield None

    loop = EngineLoop()
    loop.start()
    listener = Listener(
        create_router(engine=SmallEngine(), loop=loop),
        config=ListenerConfig(host="127.0.0.1", port=0, max_request_bytes=1024, read_timeout_s=2.0),
    )
    listener.serve_in_background()
    try:
        body = b"x" * 4096
        raw = b"POST /generate HTTP/1.1\r\nContent-Length: 4096\r\n\r\n" + body
        base = f"http://127.0.0.1:{listener.port}"
        try:
            reply = _raw_exchange(base, raw)
        except ConnectionError:
            reply = b""
        assert reply == b""
    finally:
        listener.close()
        loop.stop()


def test_cli_client_round_trip(serve):
    from apps.cli.client import PocketClient

    base = serve(ChatEngine(EchoAdapter()))
    client = PocketClient(base_url=base, timeout_s=5.0)
    assert client.health() == {"ok": True}
    assert client.generate({"prompt": "hello"})["text"] == "echo: hello"
    assert "".join(client.stream_generate({"prompt": "hello"})) == "echo: hello"


class _RejectingEngine:
    """Fails the test if the router ever hands it a request."""

    def __init__(self):
        self.calls = []

    async def generate_once(self, req):
        self.calls.append(req)
        raise AssertionError("engine must not be invoked")

    async def astream(self, req):
        self.calls.append(req)
        raise AssertionError("engine must not be invoked")
        yield


@pytest.mark.parametrize("max_tokens", [0, -1])
@pytest.mark.parametrize("stream", [False, True])
def test_non_positive_max_tokens_never_reaches_engine(serve, max_tokens, stream):
    engine = _RejectingEngine()
    base = serve(engine)
    resp = httpx.post(f"{base}/api/generate", json={"prompt": "hi", "max_tokens": max_tokens, "stream": stream})
    assert resp.status_code == 400
    assert "max_tokens" in resp.json()["error"]
    assert engine.calls == []


def test_truncated_body_is_closed_without_response(serve):
    class SpyAdapter(EchoAdapter):
        def __init__(self):
            super().__init__()
            self.prompts = []

        def stream_generate(self, request):
            self.prompts.append(request.last_content)
            return super().stream_generate(request)

    adapter = SpyAdapter()
    base = serve(ChatEngine(adapter, config=EngineConfig(warmup=False)))
    port = int(base.rsplit(":", 1)[1])

    body = b'{"prompt":"hi"}'
    assert len(body) < 40
    with socket.create_connection(("127.0.0.1", port), timeout=5) as sock:
        sock.sendall(b"POST /api/generate HTTP/1.1\r\nContent-Type: application/json\r\nContent-Length: 40\r\n\r\n" + body)
        sock.shutdown(socket.SHUT_WR)
        chunks = []
        while True:
            chunk = sock.recv(65536)
            if not chunk:
                break
            chunks.append(chunk)

    assert b"".join(chunks) == b""
    assert adapter.prompts == []
    assert httpx.get(f"{base}/health").status_code == 200
