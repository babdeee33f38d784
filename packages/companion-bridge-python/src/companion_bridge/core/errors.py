"""
Bridge 错误分类（异常类型）。

说明：
- Transport：管道连接/accept/读写失败（ChannelError 及子类）。host 发起的调用向上抛；worker 侧清理路径只记日志。
- Protocol：畸形/空 frame、未知 verb。不以异常表达，而是 `ProtocolAnomaly`（见 `protocol.frame`）。
- Application：handler 内部失败（OperationError/ProviderError）。worker 派发层统一转换为 sentinel frame。
- Fatal：协议内不存在；worker 只会被 watchdog 或显式 kill 结束。
"""

from __future__ import annotations

from typing import Optional


class BridgeError(Exception):
    """Bridge 内部错误基类（不建议直接抛出）。"""


class FrameError(BridgeError, ValueError):
    """Frame 不满足契约（为空、含空元素、元素内含换行等）。"""


class ChannelError(BridgeError):
    """管道传输错误基类。"""

    def __init__(self, message: str, *, channel: Optional[str] = None) -> None:
        """
        创建传输错误。

        参数：
        - message：可读错误信息
        - channel：出错的通道名（可选，便于日志定位）
        """

        super().__init__(message)
        self.channel = channel


class ChannelConnectError(ChannelError):
    """连接失败：对端当前没有 listener 在等待。"""


class ChannelWriteError(ChannelError):
    """已连接但写入失败（broken pipe 等）。"""


class ChannelBusyError(ChannelError):
    """同名通道已被另一个活动 listener 持有（lease 冲突）。"""


class ListenTimeoutError(ChannelError):
    """listener 在给定时间内没有等到对端连接。"""


class OperationError(BridgeError):
    """worker 操作失败（参数非法、文件缺失等）；消息会原样进入 sentinel frame。"""


class ProviderError(OperationError):
    """托管 API 返回非 2xx 或无法解析的响应。"""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        """
        创建 provider 错误。

        参数：
        - message：provider 返回的错误消息（优先取 `error.message`）
        - status_code：HTTP 状态码（可选）
        """

        super().__init__(message)
        self.status_code = status_code
