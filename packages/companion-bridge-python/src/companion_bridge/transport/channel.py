"""
单次使用的通道端点（Unix domain socket）。

说明：
- InboundListener：server 角色。持有 lease -> bind -> accept 一个对端 -> 读一个 frame -> 关闭。
  下一次调用必须新建 listener（one-shot）。
- OutboundChannel：client 角色。连接 -> 写一个 frame -> 关闭。
- 两端都不跨调用保持连接；因此两个进程之间任意时刻至多有一个进行中的逻辑调用。
"""

from __future__ import annotations

import contextlib
import logging
import os
import socket
import stat
import time
from pathlib import Path
from typing import Optional, Sequence

from companion_bridge.config.loader import BridgeChannelConfig
from companion_bridge.core.errors import (
    ChannelConnectError,
    ChannelError,
    ChannelWriteError,
    FrameError,
    ListenTimeoutError,
)
from companion_bridge.protocol.frame import DecodeResult, encode_frame, read_frame, write_frame
from companion_bridge.transport.lease import ChannelLease
from companion_bridge.transport.paths import ChannelPaths

logger = logging.getLogger(__name__)


class InboundListener:
    """
    一次性 inbound listener。

    用法：
    - `with InboundListener(name, paths=..., config=...) as lis: result = lis.accept_frame()`
    - 也可以先 `open()`（例如握手前先 bind），稍后再 `accept_frame()`。
    """

    def __init__(self, name: str, *, paths: ChannelPaths, config: BridgeChannelConfig) -> None:
        """
        参数：
        - name：通道名
        - paths：通道路径集合
        - config：通道配置（backlog/max_frame_bytes）
        """

        self._name = name
        self._config = config
        self._socket_path = paths.socket_path(name)
        self._lease = ChannelLease(paths.lease_path(name), channel=name)
        self._sock: Optional[socket.socket] = None

    @property
    def name(self) -> str:
        """通道名。"""

        return self._name

    @property
    def socket_path(self) -> Path:
        """绑定的 socket 文件路径。"""

        return self._socket_path

    @property
    def is_open(self) -> bool:
        """是否已经 bind 并处于 listen 状态。"""

        return self._sock is not None

    def open(self) -> None:
        """
        获取 lease 并 bind/listen（幂等）。

        异常：
        - ChannelBusyError：同名通道已被另一个活动 listener 持有
        - ChannelError：bind/listen 失败
        """

        if self._sock is not None:
            return
        self._lease.acquire()
        s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            # 持有 lease 时残留的 socket 文件必然来自已退出的 listener
            with contextlib.suppress(FileNotFoundError):
                self._socket_path.unlink()
            s.bind(str(self._socket_path))
            os.chmod(self._socket_path, stat.S_IRUSR | stat.S_IWUSR)  # 0600
            s.listen(int(self._config.backlog))
        except OSError as exc:
            s.close()
            self._lease.release()
            raise ChannelError(f"failed to listen on {self._name}: {exc}", channel=self._name) from exc
        self._sock = s
        logger.debug("listener open: %s (%s)", self._name, self._socket_path)

    def accept_frame(self, timeout_ms: Optional[int] = None) -> DecodeResult:
        """
        等待一个对端连接并读取恰好一个 frame，然后关闭 listener。

        参数：
        - timeout_ms：等待连接/读取的上限；None 表示无限等待

        返回：
        - DecodeResult：读取失败时为 DROPPED（不抛异常）

        异常：
        - ListenTimeoutError：超时没有对端连接
        """

        self.open()
        assert self._sock is not None
        timeout = None if timeout_ms is None else max(0.001, timeout_ms / 1000.0)
        try:
            self._sock.settimeout(timeout)
            try:
                conn, _ = self._sock.accept()
            except socket.timeout as exc:
                raise ListenTimeoutError(
                    f"no peer connected to {self._name} within {timeout_ms} ms", channel=self._name
                ) from exc
            except OSError as exc:
                raise ChannelError(f"accept failed on {self._name}: {exc}", channel=self._name) from exc
            with conn:
                conn.settimeout(timeout)
                return read_frame(conn, max_bytes=int(self._config.max_frame_bytes))
        finally:
            self.close()

    def close(self) -> None:
        """关闭 socket、删除 socket 文件并释放 lease（幂等）。"""

        s, self._sock = self._sock, None
        if s is not None:
            with contextlib.suppress(OSError):
                s.close()
            with contextlib.suppress(FileNotFoundError):
                self._socket_path.unlink()
        self._lease.release()

    def __enter__(self) -> "InboundListener":
        """open 并返回自身。"""

        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        """关闭 listener。"""

        self.close()


class OutboundChannel:
    """一次性 outbound channel（client 角色）。"""

    def __init__(self, name: str, *, paths: ChannelPaths, config: BridgeChannelConfig) -> None:
        """
        参数：
        - name：对端 listener 的通道名
        - paths：通道路径集合
        - config：通道配置（connect_timeout_ms/connect_retry_interval_ms）
        """

        self._name = name
        self._config = config
        self._socket_path = paths.socket_path(name)

    def _connect(self) -> socket.socket:
        """
        连接对端 listener；在 connect_timeout_ms 内按固定间隔重试。

        异常：
        - ChannelConnectError：超时后仍没有 listener 在等待
        """

        deadline = time.monotonic() + int(self._config.connect_timeout_ms) / 1000.0
        interval = int(self._config.connect_retry_interval_ms) / 1000.0
        while True:
            s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                s.connect(str(self._socket_path))
                return s
            except OSError as exc:
                s.close()
                if time.monotonic() >= deadline:
                    raise ChannelConnectError(
                        f"no listener on {self._name}: {exc}", channel=self._name
                    ) from exc
            time.sleep(interval)

    def send(self, frame: Sequence[str]) -> None:
        """
        发送一个 frame 并关闭连接。

        异常：
        - FrameError：frame 为空或不可编码（在连接之前抛出）
        - ChannelConnectError：没有 listener
        - ChannelWriteError：写入失败
        """

        if not frame:
            raise FrameError("frame must not be empty")
        payload = encode_frame(frame)
        s = self._connect()
        with s:
            try:
                write_frame(s, payload)
            except OSError as exc:
                raise ChannelWriteError(f"write failed on {self._name}: {exc}", channel=self._name) from exc
        logger.debug("sent frame on %s: verb=%s elements=%d", self._name, frame[0], len(frame))
