"""
Observability（rotating error log）。

说明：
- 只依赖标准库 `logging`；不引入第三方监控依赖。
"""

from __future__ import annotations

__all__ = [
    "error_log",
]
