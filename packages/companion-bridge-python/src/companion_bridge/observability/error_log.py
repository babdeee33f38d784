"""
Rotating error log（host 与 worker 共用）。

说明：
- 挂在 `companion_bridge` 包 logger 上，只收 ERROR 及以上；
- 单文件超过 `max_bytes` 时轮转（默认 100 MiB），保留 `backup_count` 份；
- 每条记录写成一个块：标题行 + 消息 + 分隔线，便于人工翻阅。
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from companion_bridge.config.loader import BridgeLoggingConfig

PACKAGE_LOGGER = "companion_bridge"
DEFAULT_LOG_NAME = "bridge_errors.log"
_RULE = "=" * 74


class ErrorBlockFormatter(logging.Formatter):
    """把一条日志格式化为 `<label> Error at <time>:` + 消息 + 分隔线。"""

    def __init__(self, label: str) -> None:
        """
        参数：
        - label：块标题里的来源标签（例如 `companion_worker` / `Host`）
        """

        super().__init__(datefmt="%Y-%m-%d %H:%M:%S")
        self._label = label

    def format(self, record: logging.LogRecord) -> str:
        """渲染块格式（异常堆栈附在消息之后）。"""

        when = self.formatTime(record, self.datefmt)
        body = record.getMessage()
        if record.exc_info:
            body = f"{body}\n{self.formatException(record.exc_info)}"
        return f"{self._label} Error at {when}:\n{body}\n{_RULE}\n"


def default_error_log_path() -> Path:
    """默认路径：`~/.companion_bridge/bridge_errors.log`。"""

    return Path.home() / ".companion_bridge" / DEFAULT_LOG_NAME


def configure_error_log(
    cfg: BridgeLoggingConfig,
    *,
    label: str,
    path: Optional[Path] = None,
) -> Path:
    """
    给包 logger 挂载 rotating error log，并返回实际日志路径。

    参数：
    - cfg：日志配置（max_bytes/backup_count/error_log_path）
    - label：块标题来源标签
    - path：显式路径（优先于 cfg.error_log_path）

    说明：
    - 重复调用会先移除之前挂载的同类 handler（同一进程内幂等）。
    """

    log_path = Path(path or cfg.error_log_path or default_error_log_path()).expanduser()
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(PACKAGE_LOGGER)
    for h in list(logger.handlers):
        if isinstance(h, RotatingFileHandler) and getattr(h, "_bridge_error_log", False):
            logger.removeHandler(h)
            h.close()

    handler = RotatingFileHandler(
        log_path,
        maxBytes=int(cfg.max_bytes),
        backupCount=int(cfg.backup_count),
        encoding="utf-8",
    )
    handler.setLevel(logging.ERROR)
    handler.setFormatter(ErrorBlockFormatter(label))
    handler._bridge_error_log = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    return log_path
