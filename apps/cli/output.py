from __future__ import annotations

import json
from typing import Any


def print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True))


def format_usage(usage: dict[str, Any]) -> str:
    parts = [
        f"prompt={usage.get('prompt_tokens', 0)}",
        f"completion={usage.get('completion_tokens', 0)}",
        f"total={usage.get('total_tokens', 0)}",
    ]
    extra = usage.get("extra")
    if isinstance(extra, dict) and isinstance(extra.get("decode_tokens_per_s"), (int, float)):
        parts.append(f"decode={extra['decode_tokens_per_s']:.1f} tok/s")
    return " ".join(parts)
