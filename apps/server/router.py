"""Request routing and handlers for the embedded HTTP server.

Routes:
    GET     /health                               -> 200 {"ok": true}
    OPTIONS *                                     -> 204 + CORS headers
    POST    /api/generate, /api/chat, /generate   -> generation (blocking or SSE)
    anything else                                 -> 404 "Not Found"

Handlers run on the listener thread. Generation is scheduled on the engine loop;
blocking requests wait on the returned future, streaming requests drain a
`BridgeQueue` that the generation task fills.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import logging
import math
from http import HTTPStatus
from typing import Any, Callable, Iterable, Protocol

from apps.server.bridge import BridgeQueue, EngineLoop
from apps.server.wire import (
    HttpRequest,
    encode_json_response,
    encode_preflight_response,
    encode_sse,
    encode_stream_head,
    encode_text_response,
)
from pocketserve.engine.chat_types import (
    ROLES,
    ChatMessage,
    DeltaEvent,
    ErrorEvent,
    GenerationRequest,
    GenerationResult,
)
from pocketserve.engine.errors import EngineError, GenerationError

logger = logging.getLogger(__name__)

GENERATE_PATHS: tuple[str, ...] = ("/api/generate", "/api/chat", "/generate")

HEALTH_BODY = {"ok": True}

Send = Callable[[bytes], None]


class ValidationError(ValueError):
    """Client-side request problem; the message names the violated field."""


class Engine(Protocol):
    async def generate_once(self, request: GenerationRequest) -> GenerationResult: ...

    def astream(self, request: GenerationRequest) -> Any: ...


class Router:
    """Dispatches one parsed request and writes exactly one response."""

    def __init__(
        self,
        *,
        engine: Engine,
        loop: EngineLoop,
        generate_paths: Iterable[str] = GENERATE_PATHS,
        generate_timeout_s: float | None = None,
    ) -> None:
        self._engine = engine
        self._loop = loop
        self._generate_paths = frozenset(generate_paths)
        self._generate_timeout_s = generate_timeout_s

    @property
    def generate_paths(self) -> frozenset[str]:
        return self._generate_paths

    def handle(self, request: HttpRequest, send: Send) -> int:
        """Serve `request`, writing the response through `send`. Returns the status code."""
        if request.method == "OPTIONS":
            send(encode_preflight_response())
            return HTTPStatus.NO_CONTENT

        if request.method == "GET" and request.path == "/health":
            send(encode_json_response(HTTPStatus.OK, HEALTH_BODY))
            return HTTPStatus.OK

        if request.method == "POST" and request.path in self._generate_paths:
            return self._handle_generate(request, send)

        send(encode_text_response(HTTPStatus.NOT_FOUND, "Not Found"))
        return HTTPStatus.NOT_FOUND

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def _handle_generate(self, request: HttpRequest, send: Send) -> int:
        try:
            payload = json.loads(request.text() or "null")
        except json.JSONDecodeError as exc:
            return _send_error(send, HTTPStatus.BAD_REQUEST, f"request body is not valid JSON: {exc.msg}")

        try:
            gen_req = parse_generate_request(payload)
        except ValidationError as exc:
            return _send_error(send, HTTPStatus.BAD_REQUEST, str(exc))

        logger.info(
            "generate: messages=%d last_len=%d stream=%s",
            len(gen_req.messages),
            len(gen_req.last_content),
            gen_req.stream,
        )

        if gen_req.stream:
            return self._stream(gen_req, send)
        return self._generate_blocking(gen_req, send)

    def _generate_blocking(self, gen_req: GenerationRequest, send: Send) -> int:
        future = self._loop.submit(self._engine.generate_once(gen_req))
        try:
            result = future.result(timeout=self._generate_timeout_s)
        except concurrent.futures.TimeoutError:
            future.cancel()
            return _send_error(send, HTTPStatus.INTERNAL_SERVER_ERROR, "generation timed out")
        except EngineError as exc:
            return _send_error(send, HTTPStatus.INTERNAL_SERVER_ERROR, str(exc))
        except Exception as exc:
            logger.exception("generation failed")
            return _send_error(send, HTTPStatus.INTERNAL_SERVER_ERROR, str(exc) or type(exc).__name__)

        send(encode_json_response(HTTPStatus.OK, result.to_dict()))
        return HTTPStatus.OK

    def _stream(self, gen_req: GenerationRequest, send: Send) -> int:
        queue = BridgeQueue()
        self._loop.submit(_produce_sse(self._engine, gen_req, queue))

        try:
            send(encode_stream_head())
        except OSError:
            logger.info("client disconnected before the stream started")
            return HTTPStatus.OK

        while True:
            try:
                chunk = queue.pull()
            except Exception as exc:
                # The error event has already been forwarded.
                logger.info("stream ended with engine error: %s", exc)
                break
            if chunk is None:
                break
            try:
                send(chunk)
            except OSError:
                logger.info("client disconnected mid-stream; generation continues orphaned")
                break
        return HTTPStatus.OK


async def _produce_sse(engine: Engine, gen_req: GenerationRequest, queue: BridgeQueue) -> None:
    """Drive the engine stream and push SSE-encoded chunks into `queue`."""
    try:
        async for event in engine.astream(gen_req):
            if isinstance(event, str):
                event = DeltaEvent(event)
            if isinstance(event, DeltaEvent):
                if event.text:
                    queue.push(encode_sse({"output": event.text}))
            elif isinstance(event, ErrorEvent):
                raise GenerationError(event.message)
        queue.push(encode_sse({"output": ""}, event="done"))
        queue.finish()
    except asyncio.CancelledError:
        queue.finish(GenerationError("generation cancelled"))
        raise
    except Exception as exc:
        logger.warning("streaming generation failed: %s", exc)
        queue.push(encode_sse({"error": str(exc) or type(exc).__name__}, event="error"))
        queue.finish(exc)


def _send_error(send: Send, status: int, message: str) -> int:
    send(encode_json_response(status, {"error": message}))
    return status


def create_router(
    *,
    engine: Engine,
    loop: EngineLoop,
    generate_paths: Iterable[str] = GENERATE_PATHS,
    generate_timeout_s: float | None = None,
) -> Router:
    return Router(
        engine=engine,
        loop=loop,
        generate_paths=generate_paths,
        generate_timeout_s=generate_timeout_s,
    )


# -------------------------------------------------------------------------
# Request normalization
# -------------------------------------------------------------------------


def parse_generate_request(payload: Any) -> GenerationRequest:
    """Normalize and validate a generation payload.

    Accepts either a `messages` list or a legacy `prompt` string. Messages whose
    content is blank are dropped; when none remain, `prompt` becomes a single user
    message. Raises `ValidationError` naming the first violated constraint.
    """
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")

    messages = _parse_messages(payload.get("messages"))

    prompt = payload.get("prompt")
    if prompt is not None and not isinstance(prompt, str):
        raise ValidationError("prompt must be a string")

    messages = [m for m in messages if m.content.strip()]
    if not messages and prompt is not None and prompt.strip():
        messages = [ChatMessage(role="user", content=prompt)]
    if not messages:
        raise ValidationError("prompt or messages must contain at least one non-empty message")

    max_tokens = payload.get("max_tokens")
    if max_tokens is not None:
        if isinstance(max_tokens, float) and max_tokens.is_integer():
            max_tokens = int(max_tokens)
        if isinstance(max_tokens, bool) or not isinstance(max_tokens, int) or max_tokens <= 0:
            raise ValidationError("max_tokens must be a positive integer")

    temperature = _optional_number(payload, "temperature")
    if temperature is not None and not temperature >= 0:
        raise ValidationError("temperature must be >= 0")

    top_p = _optional_number(payload, "top_p")
    if top_p is not None and not 0 < top_p <= 1:
        raise ValidationError("top_p must be greater than 0 and at most 1")

    stop = payload.get("stop")
    if stop is None:
        stop = []
    if isinstance(stop, str):
        stop = [stop]
    if not isinstance(stop, list) or not all(isinstance(s, str) for s in stop):
        raise ValidationError("stop must be a string or a list of strings")
    stop = [s.strip() for s in stop if s.strip()]

    presence_penalty = _optional_number(payload, "presence_penalty")
    frequency_penalty = _optional_number(payload, "frequency_penalty")

    stream = payload.get("stream", False)
    if stream is None:
        stream = False
    if not isinstance(stream, bool):
        raise ValidationError("stream must be a boolean")

    return GenerationRequest(
        messages=messages,
        max_tokens=max_tokens,
        temperature=temperature,
        top_p=top_p,
        stop=stop,
        presence_penalty=presence_penalty,
        frequency_penalty=frequency_penalty,
        stream=stream,
    )


def _parse_messages(raw: Any) -> list[ChatMessage]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("messages must be a list")

    messages: list[ChatMessage] = []
    for msg in raw:
        if not isinstance(msg, dict):
            raise ValidationError("each message must be an object")
        role = msg.get("role")
        if role not in ROLES:
            raise ValidationError(f"invalid message role: {role!r}")
        messages.append(ChatMessage(role=role, content=_coerce_content(msg.get("content"))))
    return messages


def _coerce_content(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content

    # Minimal support for the "content parts" format (text-only).
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if not isinstance(part, dict):
                continue
            if part.get("type") != "text":
                continue
            text = part.get("text")
            if isinstance(text, str):
                parts.append(text)
        return "".join(parts)

    raise ValidationError("message content must be a string")


def _optional_number(payload: dict[str, Any], name: str) -> float | None:
    value = payload.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError(f"{name} must be a number")
    return float(value)
