"""
Host 侧同步调用 client。

说明：
- 一次调用 = 打开 host inbound listener -> 发送请求 -> 等待唯一的回复 -> 关闭 listener。
- listener 在发送之前打开：worker 回写时对端一定已经在 accept。
- 没有关联 id：两端通道名都是 lease 保护的单例，同一时刻只有一个进行中的调用。
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Union

from companion_bridge.config.loader import BridgeConfig
from companion_bridge.core.errors import FrameError
from companion_bridge.protocol.frame import Frame
from companion_bridge.protocol.sentinel import is_failure
from companion_bridge.transport.channel import InboundListener, OutboundChannel
from companion_bridge.transport.paths import ChannelPaths, get_channel_paths

logger = logging.getLogger(__name__)

MIN_REQUEST_ELEMENTS = 3

# `call` 未显式传 timeout_ms 时使用 config.channel.response_timeout_ms
USE_CONFIG_TIMEOUT = object()


class BridgeClient:
    """向 worker 发起同步调用。"""

    def __init__(self, config: BridgeConfig, *, paths: Optional[ChannelPaths] = None) -> None:
        """
        参数：
        - config：已校验的配置
        - paths：通道路径（默认按 config.channel 推导）
        """

        self._config = config
        self._paths = paths or get_channel_paths(config.channel)

    @property
    def marker(self) -> str:
        """sentinel 保留前缀（worker 进程名）。"""

        return self._config.worker.process_name

    def call(self, frame: Sequence[str], *, timeout_ms: Union[int, None, object] = USE_CONFIG_TIMEOUT) -> Frame:
        """
        发送请求并阻塞等待回复。

        参数：
        - frame：`[verb, credential, *args]`，至少 3 个元素且不含空元素
        - timeout_ms：等待回复的上限（不传则取 config.channel.response_timeout_ms；显式 None 为无限等待）

        返回：
        - 回复 frame（读取失败时为空列表；用 `is_failure` 判断）

        异常：
        - FrameError：请求不满足契约
        - ChannelError 及子类：传输失败（向上抛给调用方）
        """

        request = list(frame)
        if len(request) < MIN_REQUEST_ELEMENTS:
            raise FrameError(f"request needs at least {MIN_REQUEST_ELEMENTS} elements, got {len(request)}")
        empty = [i for i, item in enumerate(request) if item == ""]
        if empty:
            raise FrameError(f"request has empty elements at {empty}")

        channel = self._config.channel
        wait_ms: Optional[int] = channel.response_timeout_ms if timeout_ms is USE_CONFIG_TIMEOUT else timeout_ms  # type: ignore[assignment]
        listener = InboundListener(channel.host_inbound, paths=self._paths, config=channel)
        listener.open()
        try:
            OutboundChannel(channel.worker_inbound, paths=self._paths, config=channel).send(request)
            result = listener.accept_frame(timeout_ms=wait_ms)
        finally:
            listener.close()

        if result.anomaly is not None:
            logger.warning("reply for %s dropped: %s", request[0], result.anomaly.reason)
        return list(result.frame)

    def is_failure(self, frame: Sequence[str]) -> bool:
        """按 sentinel 约定判断回复是否失败。"""

        return is_failure(frame, marker=self.marker)
