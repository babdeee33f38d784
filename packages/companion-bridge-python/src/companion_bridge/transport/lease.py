"""
通道 lease（单实例所有权）。

说明：
- 每个通道名对应一个 `<name>.lock` 文件；listener 在 bind 之前必须持有其排他 `flock`。
- 非阻塞获取：已被持有时立即失败（ChannelBusyError），绝不覆盖活动 listener 的 socket。
- 进程崩溃时内核自动释放 flock，不存在“陈旧 lease”。
"""

from __future__ import annotations

import contextlib
import fcntl
import os
from pathlib import Path
from typing import Optional

from companion_bridge.core.errors import ChannelBusyError


class ChannelLease:
    """一个通道名上的排他 lease。"""

    def __init__(self, path: Path, *, channel: str) -> None:
        """
        参数：
        - path：lease 文件路径
        - channel：通道名（用于错误信息）
        """

        self._path = Path(path)
        self._channel = channel
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        """当前对象是否持有 lease。"""

        return self._fd is not None

    def acquire(self) -> None:
        """
        获取 lease（非阻塞）。

        异常：
        - ChannelBusyError：同名通道已有活动 listener
        """

        if self._fd is not None:
            return
        fd = os.open(str(self._path), os.O_CREAT | os.O_RDWR, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise ChannelBusyError(f"channel is held by another listener: {self._channel}", channel=self._channel)
        except OSError:
            os.close(fd)
            raise
        with contextlib.suppress(OSError):
            os.ftruncate(fd, 0)
            os.write(fd, str(os.getpid()).encode("ascii"))
        self._fd = fd

    def release(self) -> None:
        """释放 lease（幂等）；lock 文件保留，便于下一次获取。"""

        fd, self._fd = self._fd, None
        if fd is None:
            return
        with contextlib.suppress(OSError):
            fcntl.flock(fd, fcntl.LOCK_UN)
        with contextlib.suppress(OSError):
            os.close(fd)

    def __enter__(self) -> "ChannelLease":
        """获取 lease。"""

        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        """释放 lease。"""

        self.release()
