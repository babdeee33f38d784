"""
Sentinel 约定（以位置/文本表示的失败回复）。

没有专门的错误 frame 类型：
- worker 失败时回复两元素 frame `[message, "error"]`；
- 以 worker 进程名开头的首元素同样视为失败（worker 自身的协议级报错）。
"""

from __future__ import annotations

from typing import Sequence

from companion_bridge.protocol.frame import Frame

ERROR_TAG = "error"
SUCCESS_TAG = "success"


def make_sentinel(message: str) -> Frame:
    """
    构造失败回复 `[message, "error"]`。

    说明：
    - message 中的换行压平为空格，保证 frame 仍是两个元素；
    - 空消息用 `"unknown error"` 兜底（空元素会被编码端丢弃）。
    """

    text = " ".join(str(message or "").split())
    return [text or "unknown error", ERROR_TAG]


def is_failure(frame: Sequence[str], *, marker: str) -> bool:
    """
    判断回复是否为失败。

    规则：
    - 空 frame 或首元素为空：失败（什么也没收到）
    - 首元素以 marker（worker 进程名）开头：失败
    - 第二个元素为 `"error"`：失败
    - 其它：成功
    """

    if not frame or not frame[0]:
        return True
    if marker and frame[0].startswith(marker):
        return True
    if len(frame) > 1 and frame[1] == ERROR_TAG:
        return True
    return False
