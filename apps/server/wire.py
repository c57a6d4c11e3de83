"""Minimal HTTP/1.1 wire codec.

The server only needs the request line, `Content-Length` and the body, and every
response closes the connection, so this module stays deliberately small:

- `parse_request()` turns raw request bytes into an `HttpRequest` (or None when the
  request line is unusable).
- `encode_response()` / `encode_json_response()` build complete responses.
- `encode_stream_head()` + `encode_sse()` build a close-delimited
  `text/event-stream` response one event at a time.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any

CRLF = b"\r\n"
_HEADER_SEPARATORS = (b"\r\n\r\n", b"\n\n")

CORS_ALLOW_METHODS = "POST, GET, OPTIONS"
CORS_ALLOW_HEADERS = "Content-Type"


class TransportError(ConnectionError):
    """Socket closed early, or the request bytes cannot be served."""


@dataclass(frozen=True)
class HttpRequest:
    method: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)  # lower-cased names
    body: bytes = b""

    def header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name.lower(), default)

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


def _split_head(raw: bytes) -> tuple[bytes, bytes] | None:
    best: tuple[int, int] | None = None
    for sep in _HEADER_SEPARATORS:
        idx = raw.find(sep)
        if idx != -1 and (best is None or idx < best[0]):
            best = (idx, len(sep))
    if best is None:
        return None
    idx, sep_len = best
    return raw[:idx], raw[idx + sep_len :]


def _parse_headers(lines: list[str]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for line in lines:
        name, sep, value = line.partition(":")
        if not sep:
            continue
        headers[name.strip().lower()] = value.strip()
    return headers


def content_length(headers: dict[str, str]) -> int:
    raw = headers.get("content-length")
    if raw is None:
        return 0
    try:
        value = int(raw)
    except ValueError:
        return 0
    return max(value, 0)


def request_complete(raw: bytes) -> bool:
    """True once the header block and the declared body have fully arrived."""
    split = _split_head(raw)
    if split is None:
        return False
    head, body = split
    lines = head.decode("latin-1").splitlines()
    return len(body) >= content_length(_parse_headers(lines[1:]))


def parse_request(raw: bytes) -> HttpRequest | None:
    """Parse one HTTP request.

    Returns None when no method/path can be extracted from the request line. A request
    without a blank-line separator is treated as header-only with an empty body.
    """
    if not raw:
        return None

    split = _split_head(raw)
    if split is None:
        head, body = raw, b""
    else:
        head, body = split

    lines = head.decode("latin-1").splitlines()
    if not lines:
        return None

    parts = lines[0].strip().split()
    if len(parts) < 2:
        return None
    method, target = parts[0].upper(), parts[1]
    if not method.isalpha() or not (target.startswith("/") or target == "*"):
        return None

    path = target.split("?", 1)[0].split("#", 1)[0] or "/"
    headers = _parse_headers(lines[1:])

    declared = headers.get("content-length")
    if declared is not None:
        body = body[: content_length(headers)]

    return HttpRequest(method=method, path=path, headers=headers, body=body)


def status_line(status: int) -> bytes:
    status = int(status)
    try:
        reason = HTTPStatus(status).phrase
    except ValueError:
        reason = "Unknown"
    return f"HTTP/1.1 {status} {reason}".encode("ascii") + CRLF


def _cors_headers(*, preflight: bool) -> list[str]:
    headers = ["Access-Control-Allow-Origin: *"]
    if preflight:
        headers.append(f"Access-Control-Allow-Methods: {CORS_ALLOW_METHODS}")
        headers.append(f"Access-Control-Allow-Headers: {CORS_ALLOW_HEADERS}")
    return headers


def encode_response(
    status: int,
    content_type: str | None,
    body: bytes = b"",
    *,
    cors: bool = True,
    preflight: bool = False,
) -> bytes:
    headers: list[str] = []
    if content_type:
        headers.append(f"Content-Type: {content_type}")
    headers.append(f"Content-Length: {len(body)}")
    if cors or preflight:
        headers.extend(_cors_headers(preflight=preflight))
    headers.append("Connection: close")
    head = status_line(status) + CRLF.join(h.encode("latin-1") for h in headers) + CRLF + CRLF
    return head + body


def dumps(obj: Any) -> bytes:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def encode_json_response(status: int, obj: Any, *, cors: bool = True) -> bytes:
    return encode_response(status, "application/json; charset=utf-8", dumps(obj), cors=cors)


def encode_text_response(status: int, text: str, *, cors: bool = True) -> bytes:
    return encode_response(status, "text/plain; charset=utf-8", text.encode("utf-8"), cors=cors)


def encode_preflight_response() -> bytes:
    return encode_response(HTTPStatus.NO_CONTENT, None, b"", preflight=True)


def encode_stream_head(*, content_type: str = "text/event-stream", cors: bool = True) -> bytes:
    """Response head for a body delimited by connection close."""
    headers = [
        f"Content-Type: {content_type}",
        "Cache-Control: no-cache",
    ]
    if cors:
        headers.extend(_cors_headers(preflight=False))
    headers.append("Connection: close")
    return status_line(HTTPStatus.OK) + CRLF.join(h.encode("latin-1") for h in headers) + CRLF + CRLF


def encode_sse(payload: Any, *, event: str | None = None) -> bytes:
    data = b"data: " + dumps(payload) + b"\n\n"
    if event:
        return f"event: {event}\n".encode("utf-8") + data
    return data
