import io

import pytest

from apps.cli import main as cli_main
from apps.cli.client import StreamError, iter_output_deltas, iter_sse_events
from apps.cli.main import build_generate_payload, build_parser
from apps.cli.output import format_usage


def test_sse_events_carry_names():
    stream = io.BytesIO(
        b'data: {"output": "Hel"}\n\n'
        b'data: {"output": "lo"}\n\n'
        b'event: done\ndata: {"output": ""}\n\n'
    )
    assert list(iter_sse_events(stream)) == [
        ("message", '{"output": "Hel"}'),
        ("message", '{"output": "lo"}'),
        ("done", '{"output": ""}'),
    ]


def test_output_deltas_stop_on_done():
    stream = io.BytesIO(
        b'data: {"output": "Hel"}\r\n\r\n'
        b'data: {"output": "lo"}\r\n\r\n'
        b'event: done\r\ndata: {"output": ""}\r\n\r\n'
        b'data: {"output": "ignored"}\r\n\r\n'
    )
    assert list(iter_output_deltas(stream)) == ["Hel", "lo"]


def test_output_deltas_raise_on_error_event():
    stream = io.BytesIO(b'data: {"output": "par"}\n\nevent: error\ndata: {"error": "model exploded"}\n\n')
    deltas = iter_output_deltas(stream)
    assert next(deltas) == "par"
    with pytest.raises(StreamError, match="model exploded"):
        next(deltas)


def test_parser_global_url():
    parser = build_parser()
    args = parser.parse_args(["--url", "http://192.168.1.20:5000", "health"])
    assert args.url == "http://192.168.1.20:5000"
    assert args.command == "health"


def test_generate_payload():
    parser = build_parser()
    args = parser.parse_args(
        [
            "generate",
            "--prompt",
            "hello",
            "--system",
            "be brief",
            "--max-tokens",
            "32",
            "--top-p",
            "0.9",
            "--stop",
            "###",
        ]
    )
    assert build_generate_payload(args) == {
        "messages": [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "hello"},
        ],
        "max_tokens": 32,
        "top_p": 0.9,
        "stop": ["###"],
    }


def test_address_command(monkeypatch, capsys):
    monkeypatch.setattr(cli_main, "display_address", lambda port: f"http://10.0.0.5:{port}")
    assert cli_main.main(["address", "--port", "8080"]) == 0
    assert capsys.readouterr().out.strip() == "http://10.0.0.5:8080"


def test_format_usage():
    usage = {
        "prompt_tokens": 4,
        "completion_tokens": 2,
        "total_tokens": 6,
        "extra": {"decode_tokens_per_s": 31.0},
    }
    assert format_usage(usage) == "prompt=4 completion=2 total=6 decode=31.0 tok/s"
