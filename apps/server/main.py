"""pocketserve entrypoint: serve the packaged on-device model to the local network.

Example:
    python -m apps.server.main --bundle ./bundle --engine openai --runtime-url http://127.0.0.1:8000
    python -m apps.server.main --engine echo --port 5000
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
from pathlib import Path

from apps.server.host import ServerHost
from apps.server.listener import DEFAULT_MAX_REQUEST_BYTES, DEFAULT_PORT, ListenerConfig, StartupError
from apps.server.router import GENERATE_PATHS
from pocketserve.engine.adapters.openai_compat import DEFAULT_RUNTIME_URL
from pocketserve.engine.chat_engine import ChatEngine, EngineConfig
from pocketserve.engine.packaged_model import BUNDLE_DIR_ENV
from pocketserve.engine.registry import get_adapter, list_adapters


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise SystemExit(f"{name} must be an integer (got {raw!r})") from exc


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="pocketserve on-device inference server")
    p.add_argument(
        "--bundle",
        default=os.environ.get(BUNDLE_DIR_ENV),
        help=f"App bundle directory containing mlc-app-config.json (default: ${BUNDLE_DIR_ENV})",
    )
    p.add_argument(
        "--engine",
        default=os.environ.get("POCKETSERVE_ENGINE", "openai"),
        choices=list_adapters(),
        help="Runtime back end (default: %(default)s)",
    )
    p.add_argument(
        "--runtime-url",
        default=os.environ.get("POCKETSERVE_RUNTIME_URL", DEFAULT_RUNTIME_URL),
        help="Base URL of the local OpenAI-compatible runtime (default: %(default)s)",
    )
    p.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    p.add_argument(
        "--port",
        type=int,
        default=_env_int("POCKETSERVE_PORT", DEFAULT_PORT),
        help="Bind port (default: %(default)s)",
    )
    p.add_argument(
        "--max-request-bytes",
        type=int,
        default=DEFAULT_MAX_REQUEST_BYTES,
        help="Reject requests larger than this (default: %(default)s)",
    )
    p.add_argument(
        "--generate-path",
        dest="generate_paths",
        action="append",
        default=None,
        help=f"Serve generation on this path; repeatable (default: {', '.join(GENERATE_PATHS)})",
    )

    warmup_group = p.add_mutually_exclusive_group()
    warmup_group.add_argument(
        "--warmup",
        dest="warmup",
        action="store_true",
        help="Run a one-token warm-up after model load (default: on)",
    )
    warmup_group.add_argument(
        "--no-warmup",
        dest="warmup",
        action="store_false",
        help="Disable warm-up",
    )
    p.set_defaults(warmup=True)
    p.add_argument("--no-preload", action="store_true", help="Load the model on the first request instead of at launch")
    p.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    adapter_kwargs = {"base_url": args.runtime_url} if args.engine == "openai" else {}
    adapter = get_adapter(args.engine, **adapter_kwargs)
    engine = ChatEngine(
        adapter,
        config=EngineConfig(
            bundle_dir=Path(args.bundle).expanduser() if args.bundle else None,
            warmup=bool(args.warmup),
        ),
    )

    host = ServerHost(
        engine,
        listener_config=ListenerConfig(
            host=args.host,
            port=int(args.port),
            max_request_bytes=int(args.max_request_bytes),
        ),
        preload=not args.no_preload,
        generate_paths=args.generate_paths or GENERATE_PATHS,
    )

    try:
        host.launch()
    except StartupError as exc:
        print(f"!! failed to start server: {exc}", flush=True)
        raise SystemExit(1) from exc

    print(f"== pocketserve listening on {host.address()} (engine={args.engine}) ==", flush=True)
    print("[server] endpoints: GET /health, OPTIONS *, POST " + ", POST ".join(args.generate_paths or GENERATE_PATHS), flush=True)

    stop = threading.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, lambda *_: stop.set())

    def _foreground(*_: object) -> None:
        try:
            host.enter_foreground()
        except StartupError as exc:
            print(f"!! failed to resume server: {exc}", flush=True)

    # SIGUSR1/SIGUSR2 stand in for the app moving to the background / foreground.
    if hasattr(signal, "SIGUSR1"):
        signal.signal(signal.SIGUSR1, lambda *_: host.enter_background())
        signal.signal(signal.SIGUSR2, _foreground)

    try:
        while not stop.wait(1.0):
            pass
    finally:
        print("[server] shutting down", flush=True)
        host.terminate()


if __name__ == "__main__":
    main()
