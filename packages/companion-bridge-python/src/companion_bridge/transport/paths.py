from __future__ import annotations

from dataclasses import dataclass
import hashlib
import os
from pathlib import Path
import tempfile
from typing import Optional

from companion_bridge.config.loader import BridgeChannelConfig

_MAX_SOCKET_PATH = 90


@dataclass(frozen=True)
class ChannelPaths:
    """通道目录与关键文件路径集合。"""

    channel_dir: Path

    def socket_path(self, name: str) -> Path:
        """
        获取通道 `name` 的 socket 路径（位于 channel_dir 下）。

        参数：
        - name：通道名（已由配置校验为安全文件名）
        """

        path = (self.channel_dir / f"{name}.sock").resolve()
        # macOS/部分 Unix 的 AF_UNIX 路径长度有上限（常见 ~104 bytes）。
        # channel_dir 若位于较深的临时目录，则降级到更短的 `/tmp` socket 路径。
        if len(str(path)) > _MAX_SOCKET_PATH:
            h = hashlib.sha256(str(path).encode("utf-8", errors="replace")).hexdigest()[:16]
            path = (Path(tempfile.gettempdir()) / f"companion_bridge_{h}.sock").resolve()
        return path

    def lease_path(self, name: str) -> Path:
        """获取通道 `name` 的 lease 文件路径（不受 socket 长度限制影响）。"""

        return (self.channel_dir / f"{name}.lock").resolve()

    def log_path(self, filename: str) -> Path:
        """获取 channel_dir 下的日志文件路径（worker stdout/stderr）。"""

        return (self.channel_dir / filename).resolve()


def default_channel_dir() -> Path:
    """默认通道目录：`<tmp>/companion_bridge-<uid>`（同一用户共享一对通道名）。"""

    uid = os.getuid() if hasattr(os, "getuid") else 0
    return Path(tempfile.gettempdir()) / f"companion_bridge-{uid}"


def get_channel_paths(cfg: BridgeChannelConfig, *, channel_dir: Optional[Path] = None) -> ChannelPaths:
    """
    获取通道路径集合，并确保目录存在（权限 0700）。

    参数：
    - cfg：通道配置（`dir` 为 None 时使用默认目录）
    - channel_dir：显式目录（优先于 cfg.dir）
    """

    base = Path(channel_dir or cfg.dir or default_channel_dir()).expanduser().resolve()
    base.mkdir(parents=True, exist_ok=True, mode=0o700)
    return ChannelPaths(channel_dir=base)
