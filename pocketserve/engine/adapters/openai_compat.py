"""Adapter for an on-device runtime exposing OpenAI-style Chat Completions.

MLC LLM (`mlc_llm serve`), llama.cpp's server and similar runtimes run next to
the app and listen on loopback. This adapter drives their streaming
`/v1/chat/completions` endpoint and turns the chunks into engine events.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterator

import httpx

from pocketserve.engine.adapters.base import BaseAdapter
from pocketserve.engine.chat_types import (
    DeltaEvent,
    FinalEvent,
    GenerationRequest,
    StreamEvent,
    Usage,
    UsageExtra,
)
from pocketserve.engine.errors import GenerationError, ModelLoadError, ModelNotReadyError
from pocketserve.engine.packaged_model import PackagedModel

logger = logging.getLogger(__name__)

DEFAULT_RUNTIME_URL = "http://127.0.0.1:8000"


class OpenAICompatAdapter(BaseAdapter):
    """
    Streams completions from a local OpenAI-compatible runtime.

    The packaged model descriptor (if any) supplies the `model` field sent with every
    request; otherwise the first model listed by the runtime's `/v1/models` is used.
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_RUNTIME_URL,
        timeout_s: float = 300.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_s = float(timeout_s)
        self._transport = transport
        self._client: httpx.Client | None = None
        self._model_id: str | None = None
        self._model_lib: str | None = None

    def load(self, model: PackagedModel | None, **kwargs) -> None:
        if self._client is None:
            self._client = httpx.Client(
                base_url=self._base_url,
                timeout=self._timeout_s,
                transport=self._transport,
            )

        try:
            resp = self._client.get("/v1/models")
            resp.raise_for_status()
            listed = resp.json().get("data") or []
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            raise ModelLoadError(f"Runtime at {self._base_url} is not reachable: {exc}") from exc

        if model is not None:
            self._model_id = model.model_id
            self._model_lib = model.model_lib
        else:
            ids = [m.get("id") for m in listed if isinstance(m, dict) and isinstance(m.get("id"), str)]
            if not ids:
                raise ModelLoadError(f"Runtime at {self._base_url} reports no models.")
            self._model_id = ids[0]
            self._model_lib = None

        logger.info("runtime ready: url=%s model=%s", self._base_url, self._model_id)

    def stream_generate(self, request: GenerationRequest) -> Iterator[StreamEvent]:
        if self._client is None or self._model_id is None:
            raise ModelNotReadyError("Runtime adapter is not loaded.")

        body: dict[str, Any] = {
            "model": self._model_id,
            "messages": [{"role": m.role, "content": m.content} for m in request.messages],
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        body.update(request.sampling_params())

        finish_reason: str | None = None
        usage: Usage | None = None

        try:
            with self._client.stream("POST", "/v1/chat/completions", json=body) as resp:
                if resp.status_code >= 400:
                    resp.read()
                    raise GenerationError(
                        f"Runtime returned HTTP {resp.status_code}: {resp.text.strip() or resp.reason_phrase}"
                    )
                for payload in _iter_sse_payloads(resp.iter_lines()):
                    if payload == "[DONE]":
                        break
                    try:
                        chunk = json.loads(payload)
                    except json.JSONDecodeError as exc:
                        raise GenerationError(f"Runtime sent an invalid chunk: {payload[:200]!r}") from exc
                    if not isinstance(chunk, dict):
                        continue

                    if isinstance(chunk.get("error"), (str, dict)):
                        err = chunk["error"]
                        message = err.get("message") if isinstance(err, dict) else err
                        raise GenerationError(str(message))

                    choices = chunk.get("choices") or []
                    if choices and isinstance(choices[0], dict):
                        choice = choices[0]
                        delta = choice.get("delta") or {}
                        text = _delta_text(delta.get("content"))
                        if text:
                            yield DeltaEvent(text)
                        if choice.get("finish_reason"):
                            finish_reason = str(choice["finish_reason"])

                    if isinstance(chunk.get("usage"), dict):
                        usage = _parse_usage(chunk["usage"])
        except httpx.HTTPError as exc:
            raise GenerationError(f"Runtime request failed: {exc}") from exc

        yield FinalEvent(finish_reason=finish_reason, usage=usage, model=self._model_id)

    @property
    def model_info(self) -> dict[str, Any]:
        return {
            "runtime": "openai",
            "base_url": self._base_url,
            "model_id": self._model_id,
            "model_lib": self._model_lib,
            "loaded": self._model_id is not None,
        }

    def unload(self) -> None:
        if self._client is not None:
            self._client.close()
        self._client = None
        self._model_id = None
        self._model_lib = None


def _iter_sse_payloads(lines: Iterator[str]) -> Iterator[str]:
    """Yield SSE `data:` payloads, one per event."""
    data_lines: list[str] = []
    for line in lines:
        line = line.rstrip("\r\n")
        if not line:
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
    if data_lines:
        yield "\n".join(data_lines)


def _delta_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    # Content-parts format (text-only).
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text" and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)
    return ""


def _parse_usage(raw: dict[str, Any]) -> Usage:
    extra: UsageExtra | None = None
    raw_extra = raw.get("extra")
    if isinstance(raw_extra, dict):
        extra = UsageExtra(
            prefill_tokens_per_s=_opt_float(raw_extra.get("prefill_tokens_per_s")),
            decode_tokens_per_s=_opt_float(raw_extra.get("decode_tokens_per_s")),
            num_prefill_tokens=_opt_int(raw_extra.get("num_prefill_tokens")),
        )
    return Usage(
        prompt_tokens=_opt_int(raw.get("prompt_tokens")) or 0,
        completion_tokens=_opt_int(raw.get("completion_tokens")) or 0,
        extra=extra,
    )


def _opt_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _opt_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)
