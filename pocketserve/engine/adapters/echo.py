"""Deterministic echo runtime.

Replies with `echo: <last message>`. Used when no on-device runtime is available
(development on a laptop, UI work) and as the stub engine in tests.
"""

from __future__ import annotations

import re
import time
from typing import Any, Iterator

from pocketserve.engine.adapters.base import BaseAdapter
from pocketserve.engine.chat_types import DeltaEvent, GenerationRequest, StreamEvent
from pocketserve.engine.packaged_model import PackagedModel

_PIECE_RE = re.compile(r"\S+\s*|\s+")


class EchoAdapter(BaseAdapter):
    def __init__(self, *, prefix: str = "echo: ", delay_s: float = 0.0) -> None:
        self._prefix = prefix
        self._delay_s = float(delay_s)
        self._model: PackagedModel | None = None
        self._loaded = False

    def load(self, model: PackagedModel | None, **kwargs) -> None:
        self._model = model
        self._loaded = True

    def stream_generate(self, request: GenerationRequest) -> Iterator[StreamEvent]:
        text = f"{self._prefix}{request.last_content}"
        pieces = _PIECE_RE.findall(text)
        if request.max_tokens is not None:
            pieces = pieces[: request.max_tokens]
        for piece in pieces:
            if self._delay_s > 0:
                time.sleep(self._delay_s)
            yield DeltaEvent(piece)

    @property
    def model_info(self) -> dict[str, Any]:
        info: dict[str, Any] = {"runtime": "echo", "loaded": self._loaded}
        if self._model is not None:
            info["model_id"] = self._model.model_id
            info["model_lib"] = self._model.model_lib
        return info

    def unload(self) -> None:
        self._model = None
        self._loaded = False
