"""Core generation request/result and streaming event types.

These types are internal to the library and are intentionally decoupled from:
- HTTP transport (wire codec / SSE framing)
- The JSON request envelope accepted by the server

The HTTP layer normalizes incoming payloads into a `GenerationRequest` and turns
`GenerationResult` / stream events back into JSON.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal


Role = Literal["system", "user", "assistant", "tool"]

ROLES: frozenset[str] = frozenset({"system", "user", "assistant", "tool"})


@dataclass(frozen=True)
class ChatMessage:
    """A normalized chat message."""

    role: Role
    content: str


@dataclass(frozen=True)
class GenerationRequest:
    """Normalized internal generation request.

    Sampling parameters left as None are not forwarded to the runtime, which then
    applies the packaged model's own defaults.
    """

    messages: list[ChatMessage]
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    stop: list[str] = field(default_factory=list)
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    stream: bool = False

    @property
    def last_content(self) -> str:
        return self.messages[-1].content if self.messages else ""

    def sampling_params(self) -> dict[str, Any]:
        """Sampling parameters that were explicitly set, keyed by their wire names."""
        params: dict[str, Any] = {}
        if self.max_tokens is not None:
            params["max_tokens"] = self.max_tokens
        if self.temperature is not None:
            params["temperature"] = self.temperature
        if self.top_p is not None:
            params["top_p"] = self.top_p
        if self.stop:
            params["stop"] = list(self.stop)
        if self.presence_penalty is not None:
            params["presence_penalty"] = self.presence_penalty
        if self.frequency_penalty is not None:
            params["frequency_penalty"] = self.frequency_penalty
        return params


@dataclass(frozen=True)
class UsageExtra:
    """Runtime-reported throughput figures."""

    prefill_tokens_per_s: float | None = None
    decode_tokens_per_s: float | None = None
    num_prefill_tokens: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.prefill_tokens_per_s is not None:
            out["prefill_tokens_per_s"] = self.prefill_tokens_per_s
        if self.decode_tokens_per_s is not None:
            out["decode_tokens_per_s"] = self.decode_tokens_per_s
        if self.num_prefill_tokens is not None:
            out["num_prefill_tokens"] = self.num_prefill_tokens
        return out


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int
    completion_tokens: int
    extra: UsageExtra | None = None

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }
        if self.extra is not None:
            extra = self.extra.to_dict()
            if extra:
                out["extra"] = extra
        return out


@dataclass(frozen=True)
class GenerationResult:
    """Result of one non-streaming generation."""

    text: str
    model: str | None = None
    finish_reason: str | None = None
    usage: Usage | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"text": self.text}
        if self.model is not None:
            out["model"] = self.model
        if self.finish_reason is not None:
            out["finish_reason"] = self.finish_reason
        if self.usage is not None:
            out["usage"] = self.usage.to_dict()
        return out


@dataclass(frozen=True)
class DeltaEvent:
    """Incremental text delta."""

    text: str


@dataclass(frozen=True)
class FinalEvent:
    """Terminal event for a successful generation."""

    finish_reason: str | None = None
    usage: Usage | None = None
    model: str | None = None


@dataclass(frozen=True)
class ErrorEvent:
    """Terminal error event."""

    message: str


StreamEvent = DeltaEvent | FinalEvent | ErrorEvent
