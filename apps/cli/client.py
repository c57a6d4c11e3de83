"""HTTP client for talking to a pocketserve device from another machine.

This module provides small, dependency-free primitives for JSON requests and SSE streaming.
"""

from __future__ import annotations

import json
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, BinaryIO, Iterator


DEFAULT_URL = "http://127.0.0.1:5000"
DEFAULT_GENERATE_PATH = "/api/generate"


@dataclass(frozen=True)
class HttpError(RuntimeError):
    message: str
    url: str | None = None
    status_code: int | None = None
    body: str | None = None

    def __str__(self) -> str:  # pragma: no cover
        parts = [self.message]
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.url:
            parts.append(f"url={self.url}")
        if self.body:
            parts.append(f"body={self.body}")
        return " ".join(parts)


class StreamError(RuntimeError):
    """The server ended a stream with an `error` event."""


def _join_url(base_url: str, path: str) -> str:
    if not path.startswith("/"):
        path = "/" + path
    # Ensure base_url ends with "/" so urljoin doesn't drop the path.
    return urllib.parse.urljoin(base_url.rstrip("/") + "/", path.lstrip("/"))


def iter_sse_events(stream: BinaryIO) -> Iterator[tuple[str, str]]:
    """Yield `(event_name, data)` per SSE event; unnamed events are called "message"."""
    event_name = "message"
    data_lines: list[str] = []
    for raw in stream:
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        if not line:
            if data_lines:
                yield event_name, "\n".join(data_lines)
            event_name = "message"
            data_lines = []
            continue
        if line.startswith("event:"):
            event_name = line[6:].strip() or "message"
        elif line.startswith("data:"):
            data_lines.append(line[5:].lstrip())

    if data_lines:
        yield event_name, "\n".join(data_lines)


def iter_output_deltas(stream: BinaryIO) -> Iterator[str]:
    """Yield generated text deltas; stops on `done`, raises `StreamError` on `error`."""
    for event_name, data in iter_sse_events(stream):
        payload = json.loads(data)
        if event_name == "error":
            raise StreamError(str(payload.get("error") if isinstance(payload, dict) else payload))
        if event_name == "done":
            return
        if isinstance(payload, dict) and isinstance(payload.get("output"), str):
            if payload["output"]:
                yield payload["output"]


class PocketClient:
    def __init__(
        self,
        *,
        base_url: str = DEFAULT_URL,
        generate_path: str = DEFAULT_GENERATE_PATH,
        timeout_s: float = 300.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.generate_path = generate_path
        self.timeout_s = float(timeout_s)

    def _open(
        self,
        method: str,
        path: str,
        *,
        payload: Any | None,
        accept: str,
        timeout_s: float | None,
    ) -> Any:
        url = _join_url(self.base_url, path)
        body: bytes | None = None
        if payload is not None:
            body = json.dumps(payload, ensure_ascii=False).encode("utf-8")

        req = urllib.request.Request(url=url, method=method.upper(), data=body)
        req.add_header("Accept", accept)
        if payload is not None:
            req.add_header("Content-Type", "application/json")

        try:
            return urllib.request.urlopen(req, timeout=self.timeout_s if timeout_s is None else timeout_s)
        except urllib.error.HTTPError as exc:
            body_text: str | None
            try:
                body_text = exc.read().decode("utf-8", errors="replace")
            except OSError:
                body_text = None
            raise HttpError(
                "HTTP error",
                url=url,
                status_code=getattr(exc, "code", None),
                body=body_text,
            ) from exc
        except urllib.error.URLError as exc:
            raise HttpError("Failed to reach server", url=url) from exc
        except socket.timeout as exc:
            raise HttpError("Request timed out", url=url) from exc

    def request_json(
        self,
        method: str,
        path: str,
        *,
        payload: Any | None = None,
        timeout_s: float | None = None,
    ) -> Any:
        with self._open(method, path, payload=payload, accept="application/json", timeout_s=timeout_s) as resp:
            raw = resp.read()
            try:
                return json.loads(raw.decode("utf-8"))
            except ValueError as exc:
                raise HttpError(
                    "Invalid JSON response",
                    url=_join_url(self.base_url, path),
                    status_code=getattr(resp, "status", None),
                    body=raw.decode("utf-8", errors="replace"),
                ) from exc

    def health(self) -> dict[str, Any]:
        result = self.request_json("GET", "/health", timeout_s=min(self.timeout_s, 5.0))
        if not isinstance(result, dict):
            raise HttpError("Invalid /health response", url=_join_url(self.base_url, "/health"))
        return result

    def generate(self, payload: dict[str, Any]) -> dict[str, Any]:
        body = dict(payload)
        body.pop("stream", None)
        result = self.request_json("POST", self.generate_path, payload=body)
        if not isinstance(result, dict) or not isinstance(result.get("text"), str):
            raise HttpError("Invalid generate response", url=_join_url(self.base_url, self.generate_path))
        return result

    def stream_generate(self, payload: dict[str, Any]) -> Iterator[str]:
        body = dict(payload)
        body["stream"] = True
        resp = self._open("POST", self.generate_path, payload=body, accept="text/event-stream", timeout_s=None)
        try:
            yield from iter_output_deltas(resp)
        finally:
            resp.close()
