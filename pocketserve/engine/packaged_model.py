"""Packaged model descriptor.

The app ships its model inside a bundle directory laid out by the packaging
script:

    bundle/
      mlc-app-config.json
      <model_path or model_id>/     weights + tokenizer + mlc-chat-config.json

`mlc-app-config.json` lists the packaged models; only the first record is served.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pocketserve.engine.errors import ModelLoadError

logger = logging.getLogger(__name__)

APP_CONFIG_NAME = "mlc-app-config.json"
BUNDLE_DIR_ENV = "POCKETSERVE_BUNDLE_DIR"


@dataclass(frozen=True)
class PackagedModel:
    """Model identifier, compiled library reference and weight directory."""

    model_id: str
    model_lib: str
    model_path: Path


def default_bundle_dir() -> Path | None:
    raw = os.environ.get(BUNDLE_DIR_ENV)
    if not raw:
        return None
    return Path(raw).expanduser()


def load_packaged_model(bundle_dir: str | os.PathLike[str]) -> PackagedModel:
    """Read and validate the first packaged model under `bundle_dir`.

    Raises:
        ModelLoadError: The bundle, config file or model directory is missing, or the
            first `model_list` record lacks `model_id` / `model_lib`.
    """
    bundle = Path(bundle_dir)
    if not bundle.is_dir():
        raise ModelLoadError(f"Bundle directory not found: {bundle}")

    config_path = bundle / APP_CONFIG_NAME
    try:
        raw = config_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ModelLoadError(f"{APP_CONFIG_NAME} not found in {bundle}") from exc
    except OSError as exc:
        raise ModelLoadError(f"Cannot read {config_path}: {exc}") from exc

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ModelLoadError(f"{APP_CONFIG_NAME} is not valid JSON: {exc}") from exc

    record = _first_model_record(payload)

    model_id = record.get("model_id")
    if not isinstance(model_id, str) or not model_id:
        raise ModelLoadError(f"{APP_CONFIG_NAME}: 'model_id' is empty.")

    model_lib = record.get("model_lib")
    if not isinstance(model_lib, str) or not model_lib:
        raise ModelLoadError(f"{APP_CONFIG_NAME}: 'model_lib' is empty.")

    relative = record.get("model_path") or model_id
    if not isinstance(relative, str):
        raise ModelLoadError(f"{APP_CONFIG_NAME}: 'model_path' must be a string.")

    model_path = bundle / relative
    if not model_path.is_dir():
        raise ModelLoadError(f"Model directory ({relative}) not found in {bundle}")

    logger.debug("packaged model: id=%s lib=%s path=%s", model_id, model_lib, model_path)
    return PackagedModel(model_id=model_id, model_lib=model_lib, model_path=model_path)


def _first_model_record(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise ModelLoadError(f"{APP_CONFIG_NAME} must contain a JSON object.")
    model_list = payload.get("model_list")
    if not isinstance(model_list, list) or not model_list:
        raise ModelLoadError(f"{APP_CONFIG_NAME}: 'model_list' is empty.")
    record = model_list[0]
    if not isinstance(record, dict):
        raise ModelLoadError(f"{APP_CONFIG_NAME}: 'model_list' entries must be objects.")
    return record
