"""
Frame 编解码（行分隔的字符串列表）。

Wire 格式：
- 每个元素一行（UTF-8，`\\n` 结尾）；写端写完即半关闭连接。
- 读端逐行读取，遇到空行或流结束即停止。
- 没有类型标记，也没有长度前缀；元素个数与含义由 verb 决定。

已知缺陷（保持兼容，不做转义）：
- 空字符串元素与“没有更多数据”无法区分。编码端直接丢弃空元素，
  后续元素整体左移一位，并通过 `ProtocolAnomaly(kind=SHIFTED)` 让调用方可观测。
"""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from companion_bridge.core.errors import FrameError

logger = logging.getLogger(__name__)

Frame = List[str]

DROPPED = "dropped"
SHIFTED = "shifted"
UNKNOWN_VERB = "unknown_verb"
DECLINED = "declined"

_ENCODING = "utf-8"
_RECV_CHUNK = 65536


@dataclass(frozen=True)
class ProtocolAnomaly:
    """
    协议层异常情况（不是异常类型，而是可观测的标签）。

    字段：
    - kind：dropped|shifted|unknown_verb|declined
    - reason：可读原因
    - positions：SHIFTED 时被丢弃的元素下标
    """

    kind: str
    reason: str
    positions: Tuple[int, ...] = ()


@dataclass(frozen=True)
class DecodeResult:
    """
    一次读取的结果。

    说明：
    - anomaly 为 None 时 frame 非空且完整；
    - DROPPED 时 frame 恒为空（不做部分恢复）。
    """

    frame: Frame = field(default_factory=list)
    anomaly: Optional[ProtocolAnomaly] = None

    @property
    def ok(self) -> bool:
        """是否读到了一个可派发的 frame。"""

        return self.anomaly is None and bool(self.frame)


def _dropped(reason: str) -> DecodeResult:
    """构造 DROPPED 结果。"""

    return DecodeResult(frame=[], anomaly=ProtocolAnomaly(kind=DROPPED, reason=reason))


def inspect_frame(frame: Sequence[str]) -> Optional[ProtocolAnomaly]:
    """
    检查 frame 中会被编码端丢弃的空元素。

    返回：
    - None：没有空元素
    - ProtocolAnomaly(kind=SHIFTED)：positions 为空元素下标（其后元素会左移）
    """

    positions = tuple(i for i, item in enumerate(frame) if item == "")
    if not positions:
        return None
    return ProtocolAnomaly(
        kind=SHIFTED,
        reason=f"empty elements at {list(positions)} are dropped; later elements shift left",
        positions=positions,
    )


def encode_frame(frame: Sequence[str]) -> bytes:
    """
    编码 frame 为字节流。

    参数：
    - frame：字符串序列

    异常：
    - FrameError：元素不是 str，或元素内含 `\\r`/`\\n`（会被拆成两个元素）

    说明：
    - 空元素被丢弃并记 warning（见模块说明）。
    """

    lines: list[str] = []
    for i, item in enumerate(frame):
        if not isinstance(item, str):
            raise FrameError(f"frame element {i} must be str, got {type(item).__name__}")
        if "\n" in item or "\r" in item:
            raise FrameError(f"frame element {i} contains a line break")
        if item == "":
            continue
        lines.append(item)

    anomaly = inspect_frame(frame)
    if anomaly is not None:
        logger.warning("encode_frame: %s", anomaly.reason)

    return "".join(f"{line}\n" for line in lines).encode(_ENCODING)


def decode_frame(data: bytes) -> DecodeResult:
    """
    从完整字节流解码 frame。

    规则：
    - 容忍 `\\r\\n`；
    - 第一个空行即终止（其后的内容忽略）；
    - 非 UTF-8 或没有任何元素时返回 DROPPED。
    """

    try:
        text = data.decode(_ENCODING)
    except UnicodeDecodeError as exc:
        return _dropped(f"undecodable frame: {exc}")

    frame: Frame = []
    for raw in text.split("\n"):
        line = raw[:-1] if raw.endswith("\r") else raw
        if line == "":
            break
        frame.append(line)

    if not frame:
        return _dropped("empty frame")
    return DecodeResult(frame=frame)


def read_frame(sock: socket.socket, *, max_bytes: int) -> DecodeResult:
    """
    从已连接的 socket 读到 EOF 并解码。

    参数：
    - sock：已连接的 stream socket
    - max_bytes：单个 frame 的字节上限

    说明：
    - 任何 OSError/超限都视为“什么也没收到”（DROPPED），不抛异常。
    """

    chunks: list[bytes] = []
    total = 0
    try:
        while True:
            b = sock.recv(_RECV_CHUNK)
            if not b:
                break
            total += len(b)
            if total > max_bytes:
                return _dropped(f"frame exceeds {max_bytes} bytes")
            chunks.append(b)
    except OSError as exc:
        return _dropped(f"read failed: {exc}")
    return decode_frame(b"".join(chunks))


def write_frame(sock: socket.socket, payload: bytes) -> None:
    """
    把已编码的 frame（`encode_frame` 的输出）写入已连接的 socket，并半关闭写端。

    说明：
    - 编码与写入分开：调用方可以在建立连接之前就拿到 FrameError。
    - 对端据半关闭得到 EOF，从而结束一次读取。

    异常：
    - OSError：写入失败（由调用方映射为 ChannelWriteError）
    """

    sock.sendall(payload)
    sock.shutdown(socket.SHUT_WR)
