"""`pocketserve-cli`: client for a pocketserve device on the local network.

Run from source with:
  `python -m apps.cli.main --help`
"""

from __future__ import annotations

import argparse
import sys
from typing import Any, Sequence

from apps.cli.client import DEFAULT_GENERATE_PATH, DEFAULT_URL, HttpError, PocketClient, StreamError
from apps.cli.output import format_usage, print_json
from apps.server.listener import DEFAULT_PORT
from apps.server.netinfo import display_address


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="pocketserve-cli", description="pocketserve CLI (HTTP client)")
    p.add_argument(
        "--url",
        default=DEFAULT_URL,
        help="Server base URL (default: %(default)s)",
    )
    p.add_argument(
        "--path",
        default=DEFAULT_GENERATE_PATH,
        help="Generation endpoint path (default: %(default)s)",
    )
    p.add_argument("--timeout", type=float, default=300.0, help="Request timeout in seconds (default: 300)")

    sub = p.add_subparsers(dest="command")

    sub.add_parser("health", help="Check that the server is reachable")

    gen = sub.add_parser("generate", help="Generate a completion")
    gen.add_argument("--prompt", required=True, help="User prompt")
    gen.add_argument("--system", default=None, help="Optional system message")
    gen.add_argument("--max-tokens", type=int, default=None)
    gen.add_argument("--temperature", type=float, default=None)
    gen.add_argument("--top-p", type=float, default=None)
    gen.add_argument("--stop", action="append", default=None, help="Stop string; repeatable")
    gen.add_argument("--stream", action="store_true", help="Stream output as it is generated")
    gen.add_argument("--json", action="store_true", help="Print the raw JSON response")

    addr = sub.add_parser("address", help="Show the address this machine would serve on")
    addr.add_argument("--port", type=int, default=DEFAULT_PORT, help="Port (default: %(default)s)")
    return p


def build_generate_payload(args: argparse.Namespace) -> dict[str, Any]:
    messages: list[dict[str, str]] = []
    if args.system:
        messages.append({"role": "system", "content": args.system})
    messages.append({"role": "user", "content": args.prompt})

    payload: dict[str, Any] = {"messages": messages}
    if args.max_tokens is not None:
        payload["max_tokens"] = int(args.max_tokens)
    if args.temperature is not None:
        payload["temperature"] = float(args.temperature)
    if args.top_p is not None:
        payload["top_p"] = float(args.top_p)
    if args.stop:
        payload["stop"] = list(args.stop)
    return payload


def _generate(client: PocketClient, args: argparse.Namespace) -> int:
    payload = build_generate_payload(args)
    if args.stream:
        for delta in client.stream_generate(payload):
            sys.stdout.write(delta)
            sys.stdout.flush()
        sys.stdout.write("\n")
        return 0

    result = client.generate(payload)
    if args.json:
        print_json(result)
        return 0
    print(result["text"])
    usage = result.get("usage")
    if isinstance(usage, dict):
        print(f"[{format_usage(usage)}]", file=sys.stderr)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(sys.argv[1:]) if argv is None else list(argv))

    command = args.command or "health"
    if command == "address":
        print(display_address(int(args.port)))
        return 0

    client = PocketClient(base_url=args.url, generate_path=args.path, timeout_s=args.timeout)
    try:
        if command == "health":
            print_json(client.health())
            return 0
        if command == "generate":
            return _generate(client, args)
    except (HttpError, StreamError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130

    parser.print_help()
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
