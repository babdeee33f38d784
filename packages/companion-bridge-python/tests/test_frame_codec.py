from __future__ import annotations

import socket
import threading

import pytest

from companion_bridge.core.errors import FrameError
from companion_bridge.protocol.frame import (
    DROPPED,
    SHIFTED,
    decode_frame,
    encode_frame,
    inspect_frame,
    read_frame,
    write_frame,
)
from companion_bridge.protocol.sentinel import ERROR_TAG, is_failure, make_sentinel


def test_encode_frame_is_one_line_per_element() -> None:
    assert encode_frame(["transcribe", "sk-1:org", "/tmp/a.wav"]) == b"transcribe\nsk-1:org\n/tmp/a.wav\n"


def test_encode_frame_keeps_utf8_and_spaces() -> None:
    data = encode_frame(["image.generate", "k", "  灯塔 at dusk  "])
    assert data.decode("utf-8").splitlines() == ["image.generate", "k", "  灯塔 at dusk  "]


def test_encode_frame_drops_empty_elements_and_reports_shift() -> None:
    """
    空元素与“没有更多数据”无法区分：编码端直接丢弃，后续元素左移。
    """

    frame = ["image.edit", "k", "prompt", "", "2"]
    assert encode_frame(frame) == b"image.edit\nk\nprompt\n2\n"
    assert decode_frame(encode_frame(frame)).frame == ["image.edit", "k", "prompt", "2"]

    anomaly = inspect_frame(frame)
    assert anomaly is not None
    assert anomaly.kind == SHIFTED
    assert anomaly.positions == (3,)
    assert inspect_frame(["a", "b"]) is None


@pytest.mark.parametrize(
    "frame",
    [
        ["transcribe", "sk-1:org", "/tmp/a.wav"],
        ["image.generate", "k", "  灯塔 at dusk  ", "3", "512x512"],
        ["file not found", "error"],
        ["ready", "companion_worker", "4242"],
    ],
)
def test_decode_returns_frames_without_empty_elements_unchanged(frame: list[str]) -> None:
    result = decode_frame(encode_frame(frame))
    assert result.frame == frame
    assert result.anomaly is None


@pytest.mark.parametrize("bad", ["two\nlines", "carriage\rreturn"])
def test_encode_frame_rejects_line_breaks(bad: str) -> None:
    with pytest.raises(FrameError):
        encode_frame(["verb", bad])


def test_encode_frame_rejects_non_str_elements() -> None:
    with pytest.raises(FrameError, match="must be str"):
        encode_frame(["verb", 3])  # type: ignore[list-item]


def test_decode_frame_stops_at_first_blank_line() -> None:
    result = decode_frame(b"a\nb\n\nc\n")
    assert result.ok
    assert result.frame == ["a", "b"]


def test_decode_frame_tolerates_crlf_and_missing_trailing_newline() -> None:
    assert decode_frame(b"a\r\nb\r\n").frame == ["a", "b"]
    assert decode_frame(b"a\nb").frame == ["a", "b"]


def test_decode_frame_empty_or_undecodable_is_dropped() -> None:
    for data in [b"", b"\n", b"\xff\xfe\n"]:
        result = decode_frame(data)
        assert not result.ok
        assert result.frame == []
        assert result.anomaly is not None and result.anomaly.kind == DROPPED


def test_write_then_read_over_a_connected_socket() -> None:
    a, b = socket.socketpair()
    with a, b:
        write_frame(a, encode_frame(["success-text", "success"]))
        result = read_frame(b, max_bytes=1024)
    assert result.ok
    assert result.frame == ["success-text", "success"]


def test_read_frame_over_limit_is_dropped() -> None:
    a, b = socket.socketpair()
    payload = encode_frame(["x" * 4096])

    t = threading.Thread(target=lambda: write_frame(a, payload), daemon=True)
    with a, b:
        t.start()
        result = read_frame(b, max_bytes=100)
        t.join(timeout=2.0)
    assert not result.ok
    assert result.anomaly is not None
    assert "exceeds 100 bytes" in result.anomaly.reason


def test_read_frame_peer_closed_without_data_is_dropped() -> None:
    a, b = socket.socketpair()
    a.close()
    with b:
        result = read_frame(b, max_bytes=1024)
    assert result.anomaly is not None and result.anomaly.kind == DROPPED


def test_make_sentinel_flattens_message_into_two_elements() -> None:
    assert make_sentinel("file not found") == ["file not found", ERROR_TAG]
    assert make_sentinel("line one\nline two") == ["line one line two", ERROR_TAG]
    assert make_sentinel("") == ["unknown error", ERROR_TAG]


def test_is_failure_rules() -> None:
    marker = "companion_worker"
    assert is_failure([], marker=marker)
    assert is_failure([""], marker=marker)
    assert is_failure(["file not found", "error"], marker=marker)
    assert is_failure(["companion_worker: failed to write response: broken pipe"], marker=marker)

    assert not is_failure(["hello world"], marker=marker)
    assert not is_failure(["translated", "success"], marker=marker)
    assert not is_failure(["https://a/1.png", "https://a/2.png"], marker=marker)
